"""
Cron 调度器

每个定时任务对应一个后台循环: 计算下一次触发时间 → 休眠 → 以独立任务触发回调。
触发回调在独立任务中运行，回调耗时（含重试）不会推迟下一次触发的计算。

load() 先停止全部旧循环再安装新循环；已经开始的触发不受影响，继续执行完毕。
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional

from croniter import croniter

from ..cron import normalize_cron
from ..models import ScheduledTask

logger = logging.getLogger("scheduler-bot")

FireCallback = Callable[[str], Awaitable[object]]


class CronScheduler:
    """基于 croniter 的异步调度器"""

    def __init__(self, on_fire: FireCallback):
        self.on_fire = on_fire
        self._jobs: dict[str, asyncio.Task] = {}
        self._next_fire: dict[str, datetime] = {}
        self._inflight: set[asyncio.Task] = set()

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    def next_fire_time(self, name: str) -> Optional[datetime]:
        return self._next_fire.get(name)

    def load(self, tasks: Iterable[ScheduledTask]) -> int:
        """清空现有调度并按任务列表重建，返回成功调度的任务数"""
        self.clear()
        count = 0
        for task in tasks:
            if not task.is_scheduled:
                continue
            if self.schedule(task):
                count += 1
        logger.info("成功调度 %d 个定时任务", count)
        return count

    def schedule(self, task: ScheduledTask) -> bool:
        try:
            itr = croniter(normalize_cron(task.cron), datetime.now())
        except (ValueError, KeyError) as e:
            logger.error("任务 %s 的 cron 表达式 %s 无效: %s", task.name, task.cron, e)
            return False

        if task.name in self._jobs:
            self._jobs.pop(task.name).cancel()
        self._jobs[task.name] = asyncio.create_task(self._job_loop(task.name, itr))
        logger.info("已加载定时任务: %s (%s)", task.name, task.cron)
        return True

    def clear(self):
        """停止所有调度循环，不影响正在执行的触发"""
        if self._jobs:
            logger.info("清除 %d 个现有调度", len(self._jobs))
        for job in self._jobs.values():
            job.cancel()
        self._jobs.clear()
        self._next_fire.clear()

    async def _job_loop(self, name: str, itr: croniter):
        while True:
            next_time = itr.get_next(datetime)
            self._next_fire[name] = next_time
            logger.debug("任务 %s 下一次执行时间: %s", name, next_time)
            delay = (next_time - datetime.now()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            self._fire(name)

    def _fire(self, name: str) -> asyncio.Task:
        task = asyncio.create_task(self._run_fire(name))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _run_fire(self, name: str):
        try:
            await self.on_fire(name)
        except Exception:
            # 单次触发失败不影响调度器
            logger.exception("定时任务 %s 执行失败", name)

    async def stop(self):
        self.clear()
        for task in self._inflight:
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._inflight.clear()
