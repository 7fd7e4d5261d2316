"""任务目录：持有当前生效的任务配置，重载时整体替换"""

import logging
import threading
from typing import Iterable, Optional

from ..models import ScheduledTask, TargetType, TaskType

logger = logging.getLogger("scheduler-bot")


class UnknownTaskError(KeyError):
    """任务名称不存在"""


class TaskCatalog:
    """
    不可变任务快照的持有者。

    replace() 以新元组整体替换旧快照，读取方拿到的要么是旧目录要么是新目录，
    不会看到只加载了一半的状态；正在执行的任务继续持有旧的任务对象。
    """

    def __init__(self, tasks: Iterable[ScheduledTask] = ()):
        self._lock = threading.Lock()
        self._tasks: tuple[ScheduledTask, ...] = tuple(tasks)

    def replace(self, tasks: Iterable[ScheduledTask]):
        snapshot = tuple(tasks)
        with self._lock:
            self._tasks = snapshot
        logger.info("任务目录已更新，共 %d 个任务", len(snapshot))

    def all(self) -> tuple[ScheduledTask, ...]:
        return self._tasks

    def get(self, name: str) -> ScheduledTask:
        for task in self._tasks:
            if task.name == name:
                return task
        raise UnknownTaskError(name)

    def scheduled(self) -> list[ScheduledTask]:
        return [t for t in self._tasks if t.is_scheduled]

    def verify_task_for_group(self, group_id: int) -> Optional[ScheduledTask]:
        """查找绑定到该群的进群审核任务，存在多个时使用第一个"""
        matches = [
            t for t in self._tasks
            if t.type == TaskType.GROUP_REQUEST_VERIFY
            and t.target_type == TargetType.GROUP
            and group_id in t.target_ids
        ]
        if len(matches) > 1:
            logger.warning("群 %s 绑定了 %d 个进群审核任务，使用 %s",
                           group_id, len(matches), matches[0].name)
        return matches[0] if matches else None

    def __len__(self) -> int:
        return len(self._tasks)
