"""
控制台命令

    help                              显示帮助
    status                            连接与任务状态
    reload                            重新加载配置中的任务
    run <任务名>                      立即执行一个定时任务
    requests [群号]                   查看挂起的进群申请
    requests info <flag>              查看一条申请的详情
    requests approve <flag>           同意申请
    requests reject <flag> [理由]     拒绝申请
    requests clean                    清理过期申请
    requests stats                    各群挂起数量
    logs [recent N]                   最近的执行记录
    logs task <任务名>                指定任务的执行记录
    logs export <任务名> [N]          导出执行记录到文本文件
    exit                              退出程序
"""

import asyncio
import logging
import sys
import threading
from typing import Optional

from .app import Application
from .core import RequestNotFoundError, TaskExecutionError, UnknownTaskError

logger = logging.getLogger("scheduler-bot")

HELP_TEXT = __doc__.strip()

_TIME_FMT = "%Y-%m-%d %H:%M:%S"


class CommandHandler:
    """解析并执行一行控制台命令，返回要输出的文本"""

    def __init__(self, app: Application):
        self.app = app
        self.exit_requested = False

    async def handle(self, line: str) -> str:
        parts = line.strip().split()
        if not parts:
            return ""
        command, args = parts[0].lower(), parts[1:]

        if command == "help":
            return HELP_TEXT
        if command == "status":
            return self._status()
        if command == "reload":
            return self._reload()
        if command == "run":
            return await self._run(args)
        if command == "requests":
            return await self._requests(args)
        if command == "logs":
            return self._logs(args)
        if command in ("exit", "quit"):
            self.exit_requested = True
            return "正在退出..."
        return f"未知命令: {command}，输入 help 查看帮助"

    # -------- 基础命令 --------

    def _status(self) -> str:
        status = self.app.status()
        lines = [
            f"网关连接: {'已连接' if status['connected'] else '未连接'}",
            f"任务总数: {status['tasks']}，定时任务: {status['scheduled']}",
            f"挂起的进群申请: {status['suspended_requests']}",
        ]
        for name in self.app.scheduler.job_names:
            next_time = self.app.scheduler.next_fire_time(name)
            when = next_time.strftime(_TIME_FMT) if next_time else "-"
            lines.append(f"  {name}: 下次执行 {when}")
        return "\n".join(lines)

    def _reload(self) -> str:
        try:
            count = self.app.reload()
        except Exception as e:
            logger.error("重新加载配置失败: %s", e)
            return f"重新加载失败: {e}"
        return f"配置已重新加载，调度 {count} 个定时任务"

    async def _run(self, args: list[str]) -> str:
        if not args:
            return "用法: run <任务名>"
        name = " ".join(args)
        try:
            record = await self.app.executor.on_fire(name)
        except UnknownTaskError:
            return f"任务不存在: {name}"
        except TaskExecutionError as e:
            return str(e)
        if record is None:
            return f"任务 {name} 未执行（间隔限制或非定时任务）"
        return record.summary()

    # -------- 进群申请 --------

    async def _requests(self, args: list[str]) -> str:
        registry = self.app.join_requests
        if not args:
            return self._list_requests(None)

        sub = args[0].lower()
        if sub.isdigit():
            return self._list_requests(int(sub))
        if sub == "info":
            if len(args) < 2:
                return "用法: requests info <flag>"
            return self._request_info(args[1])
        if sub == "approve":
            if len(args) < 2:
                return "用法: requests approve <flag>"
            return await self._answer(args[1], True, None)
        if sub == "reject":
            if len(args) < 2:
                return "用法: requests reject <flag> [理由]"
            reason = " ".join(args[2:]) or None
            return await self._answer(args[1], False, reason)
        if sub == "clean":
            return f"清理了 {registry.cleanup_expired()} 个过期申请"
        if sub == "stats":
            stats = registry.statistics()
            if not stats:
                return "没有挂起的进群申请"
            lines = [f"挂起申请总数: {registry.count()}"]
            lines.extend(f"  群 {group_id}: {n} 个" for group_id, n in sorted(stats.items()))
            return "\n".join(lines)
        return f"未知的 requests 子命令: {sub}"

    def _list_requests(self, group_id: Optional[int]) -> str:
        requests = self.app.join_requests.suspended(group_id)
        if not requests:
            return "没有挂起的进群申请"
        lines = []
        for r in requests:
            lines.append(f"[{r.flag}] 群 {r.group_id} 用户 {r.user_id} "
                         f"{r.received_at.strftime(_TIME_FMT)}")
            lines.append(f"  验证信息: {r.comment}")
            lines.append(f"  挂起原因: {r.reason}")
        return "\n".join(lines)

    def _request_info(self, flag: str) -> str:
        try:
            r = self.app.join_requests.get(flag)
        except RequestNotFoundError:
            return f"找不到挂起的申请: {flag}"
        return "\n".join([
            "申请详情:",
            f"  flag: {r.flag}",
            f"  群号: {r.group_id}",
            f"  用户: {r.user_id}",
            f"  申请时间: {r.received_at.strftime(_TIME_FMT)}",
            f"  验证信息: {r.comment}",
            f"  挂起原因: {r.reason}",
        ])

    async def _answer(self, flag: str, approve: bool, reason: Optional[str]) -> str:
        registry = self.app.join_requests
        try:
            if approve:
                ok = await registry.approve(flag)
            else:
                ok = await registry.reject(flag, reason)
        except RequestNotFoundError:
            return f"找不到挂起的申请: {flag}"
        action = "同意" if approve else "拒绝"
        return f"已{action}申请 {flag}" if ok else f"{action}申请 {flag} 失败，申请仍保留"

    # -------- 执行记录 --------

    def _logs(self, args: list[str]) -> str:
        store = self.app.task_logs
        if not args or args[0].lower() == "recent":
            limit = 10
            if len(args) > 1:
                if not args[1].isdigit():
                    return "用法: logs recent <数量>"
                limit = int(args[1])
            return _format_records(store.recent(limit))

        sub = args[0].lower()
        if sub == "task":
            if len(args) < 2:
                return "用法: logs task <任务名>"
            return _format_records(store.task_logs(" ".join(args[1:])))
        if sub == "export":
            if len(args) < 2:
                return "用法: logs export <任务名> [数量]"
            limit = 0
            name_parts = args[1:]
            if len(name_parts) > 1 and name_parts[-1].isdigit():
                limit = int(name_parts.pop())
            path = store.export(" ".join(name_parts), limit)
            return f"已导出到 {path}" if path else "没有可导出的记录"
        return f"未知的 logs 子命令: {sub}"


def _format_records(records) -> str:
    if not records:
        return "没有执行记录"
    return "\n".join(r.summary() for r in records)


async def run_console(handler: CommandHandler, stop: asyncio.Event):
    """
    读取标准输入并执行命令，直到输入 exit 或 stop 被设置。
    标准输入关闭后不再读取命令，继续等待 stop。

    阻塞的 readline 在守护线程中执行，行内容通过队列交给事件循环。
    """
    loop = asyncio.get_running_loop()
    lines: asyncio.Queue[Optional[str]] = asyncio.Queue()

    def reader():
        for line in sys.stdin:
            loop.call_soon_threadsafe(lines.put_nowait, line)
        loop.call_soon_threadsafe(lines.put_nowait, None)

    threading.Thread(target=reader, name="console-reader", daemon=True).start()
    print("输入 help 查看可用命令")

    while not stop.is_set():
        getter = asyncio.ensure_future(lines.get())
        stopper = asyncio.ensure_future(stop.wait())
        done, _ = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        stopper.cancel()
        if getter not in done:
            getter.cancel()
            break
        line = getter.result()
        if line is None:
            logger.info("标准输入已关闭，控制台停止，机器人继续运行")
            await stop.wait()
            break
        try:
            output = await handler.handle(line)
        except Exception:
            logger.exception("执行控制台命令出错: %s", line.strip())
            continue
        if output:
            print(output)
        if handler.exit_requested:
            stop.set()
