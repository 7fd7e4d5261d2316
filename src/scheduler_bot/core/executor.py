"""
定时任务执行器

每次触发:
    1. 全局间隔检查: 距上一次任务执行不足 min_interval 秒则跳过本次触发（只记日志）
    2. 按任务类型生成网关指令并逐个目标发送
    3. 出错时固定间隔重试，直到达到 max_attempts
    4. 无论成功失败都写入一条执行记录；全部尝试失败时抛出 TaskExecutionError
"""

import asyncio
import logging
import threading
import time
from typing import Awaitable, Callable, Optional

from ..models import ScheduledTask, TargetType, TaskType
from .catalog import TaskCatalog
from .gateway import GatewayClient
from .message import format_duration
from .task_log import ExecutionRecord, TaskLogStore

logger = logging.getLogger("scheduler-bot")


class TaskExecutionError(RuntimeError):
    """任务在所有尝试后仍然失败"""

    def __init__(self, task_name: str, cause: Optional[BaseException]):
        super().__init__(f"任务 {task_name} 执行失败: {cause}")
        self.task_name = task_name
        self.cause = cause


class _Dispatch:
    """一次尝试中的发送上下文：收集执行详情，并在连续消息之间留出间隔"""

    def __init__(self, gateway: GatewayClient, spacing: float):
        self.gateway = gateway
        self.spacing = spacing
        self.details: list[str] = []
        self._sent_message = False

    async def message(self, target_type: TargetType, target_id: int, text: str, label: str):
        if self._sent_message and self.spacing > 0:
            await asyncio.sleep(self.spacing)
        self._sent_message = True

        if target_type == TargetType.GROUP:
            sent = await self.gateway.send_group_msg(target_id, text)
        else:
            sent = await self.gateway.send_private_msg(target_id, text)
        self.details.append(label if sent else f"{label} (频率限制，已丢弃)")


class TaskExecutor:
    """按任务类型把定时任务转换为网关指令"""

    def __init__(
        self,
        gateway: GatewayClient,
        catalog: TaskCatalog,
        log_store: TaskLogStore,
        *,
        min_interval: float = 5.0,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        send_spacing: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            min_interval: 任意两次任务执行之间的最小间隔秒数
            max_attempts: 每次触发最多尝试次数
            retry_delay:  两次尝试之间的等待秒数（至少为 send_spacing）
            send_spacing: 同一次执行中连续两条消息之间的等待秒数
        """
        self.gateway = gateway
        self.catalog = catalog
        self.log_store = log_store
        self.min_interval = min_interval
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.send_spacing = send_spacing
        self._clock = clock

        self._lock = threading.Lock()
        self._last_execution: Optional[float] = None

        self._handlers: dict[TaskType, Callable[[ScheduledTask, _Dispatch], Awaitable[None]]] = {
            TaskType.SEND_MESSAGE: self._send_message,
            TaskType.GROUP_BAN_ALL: self._ban_all,
            TaskType.GROUP_BAN_MEMBER: self._ban_member,
        }

    @property
    def retry_wait(self) -> float:
        """重试前的等待秒数，不短于连续消息间隔"""
        return max(self.retry_delay, self.send_spacing)

    def try_acquire_slot(self) -> bool:
        """检查并更新全局最近执行时间，两步在同一把锁内完成"""
        with self._lock:
            now = self._clock()
            if self._last_execution is not None and now - self._last_execution < self.min_interval:
                return False
            self._last_execution = now
            return True

    async def on_fire(self, task_name: str) -> Optional[ExecutionRecord]:
        """
        调度器触发回调。

        Returns:
            执行记录；被全局间隔跳过或任务不可执行时返回 None

        Raises:
            UnknownTaskError:   任务不存在
            TaskExecutionError: 所有尝试均失败
        """
        task = self.catalog.get(task_name)
        if not task.is_scheduled:
            logger.warning("任务 %s 由事件触发，不能定时执行", task.name)
            return None
        if not self.try_acquire_slot():
            logger.warning("距上次任务执行不足 %.1f 秒，跳过任务 %s", self.min_interval, task.name)
            return None
        return await self.execute(task)

    async def execute(self, task: ScheduledTask) -> ExecutionRecord:
        logger.info("执行定时任务: %s", task.name)
        record = ExecutionRecord(
            task_name=task.name,
            task_type=task.type.value,
            target_type=task.target_type.value,
            target_ids=list(task.target_ids),
            member_ids=list(task.member_ids),
        )

        handler = self._handlers[task.type]
        last_error: Optional[BaseException] = None
        dispatch = _Dispatch(self.gateway, self.send_spacing)
        for attempt in range(1, self.max_attempts + 1):
            dispatch = _Dispatch(self.gateway, self.send_spacing)
            try:
                await handler(task, dispatch)
            except Exception as e:
                last_error = e
                logger.warning("任务 %s 第 %d/%d 次执行失败: %s",
                               task.name, attempt, self.max_attempts, e)
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_wait)
                continue

            record.success = True
            record.details = "; ".join(dispatch.details)
            if attempt > 1:
                record.details += f" (第 {attempt} 次尝试成功)"
            self.log_store.append(record)
            logger.info("任务 %s 执行完成", task.name)
            return record

        record.success = False
        record.details = "; ".join(dispatch.details)
        record.error_message = f"{type(last_error).__name__}: {last_error}"
        self.log_store.append(record)
        logger.error("任务 %s 在 %d 次尝试后仍失败", task.name, self.max_attempts)
        raise TaskExecutionError(task.name, last_error) from last_error

    # -------- 各类型任务 --------

    async def _send_message(self, task: ScheduledTask, dispatch: _Dispatch):
        kind = "群消息" if task.target_type == TargetType.GROUP else "私聊消息"
        for target_id in task.target_ids:
            await dispatch.message(task.target_type, target_id, task.content,
                                   f"发送{kind}到 {target_id}")

    async def _ban_all(self, task: ScheduledTask, dispatch: _Dispatch):
        action = "禁言" if task.enable else "解禁"
        for group_id in task.target_ids:
            await self.gateway.set_group_whole_ban(group_id, task.enable)
            dispatch.details.append(f"设置群 {group_id} 全体{action}")
            if task.send_notice and task.notice_content:
                await dispatch.message(TargetType.GROUP, group_id, task.notice_content,
                                       f"发送全体{action}通知到 {group_id}")

    async def _ban_member(self, task: ScheduledTask, dispatch: _Dispatch):
        action = "禁言" if task.duration > 0 else "解禁"
        duration_text = format_duration(task.duration)
        for group_id in task.target_ids:
            for member_id in task.member_ids:
                await self.gateway.set_group_ban(group_id, member_id, task.duration)
                if task.duration > 0:
                    dispatch.details.append(f"群 {group_id} 成员 {member_id} 禁言 {duration_text}")
                else:
                    dispatch.details.append(f"群 {group_id} 成员 {member_id} 解除禁言")
                if task.send_notice and task.notice_content:
                    notice = (task.notice_content
                              .replace("{memberId}", str(member_id))
                              .replace("{duration}", duration_text))
                    await dispatch.message(TargetType.GROUP, group_id, notice,
                                           f"发送成员{action}通知到 {group_id}")
