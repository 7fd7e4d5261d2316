"""
消息发送频率限制

两道闸门:
    - 全局最小间隔: 任意两条消息之间至少间隔 min_interval 秒
    - 单目标上限:   每个群 / 私聊每分钟的消息条数上限

单目标计数在距该目标上一次发送超过 60 秒时惰性清零，并非滑动窗口。
被拒绝的消息由调用方丢弃，这里不排队也不阻塞。
占用额度后写出失败的消息可通过 release() 退还额度。
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger("scheduler-bot")

# 单目标计数的清零阈值（秒）
COUNTER_RESET_SECONDS = 60


@dataclass
class _Bucket:
    count: int = 0
    last_sent: float = 0.0


class RateLimiter:
    """全局间隔 + 单目标每分钟上限"""

    def __init__(
        self,
        *,
        min_interval: float = 1.5,
        group_limit: int = 20,
        private_limit: int = 10,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval = min_interval
        self.group_limit = group_limit
        self.private_limit = private_limit
        self.enabled = enabled
        self._clock = clock

        self._lock = threading.Lock()
        self._last_sent: Optional[float] = None
        self._group_buckets: dict[int, _Bucket] = {}
        self._private_buckets: dict[int, _Bucket] = {}
        # 每个目标最近一次占用前的状态: (占用时刻, 全局上次发送, 计数, 目标上次发送)
        self._undo: dict[tuple[bool, int], tuple[float, Optional[float], int, float]] = {}

    def try_acquire(self, target_id: int, is_group: bool) -> bool:
        """检查并占用一次发送额度。返回 False 表示本次发送应被丢弃"""
        if not self.enabled:
            return True

        with self._lock:
            now = self._clock()
            if self._last_sent is not None and now - self._last_sent < self.min_interval:
                logger.warning("发送过于频繁，距上条消息仅 %.2fs，丢弃发往 %s 的消息",
                               now - self._last_sent, target_id)
                return False

            buckets = self._group_buckets if is_group else self._private_buckets
            limit = self.group_limit if is_group else self.private_limit
            bucket = buckets.setdefault(target_id, _Bucket())
            if now - bucket.last_sent > COUNTER_RESET_SECONDS:
                bucket.count = 0
            if bucket.count >= limit:
                logger.warning("%s %s 每分钟消息数已达上限 %d，丢弃本条消息",
                               "群" if is_group else "私聊", target_id, limit)
                return False

            self._undo[(is_group, target_id)] = (now, self._last_sent, bucket.count, bucket.last_sent)
            bucket.count += 1
            bucket.last_sent = now
            self._last_sent = now
            return True

    def release(self, target_id: int, is_group: bool):
        """退还该目标最近一次 try_acquire 占用的额度，之后又有新发送的部分保持不变"""
        if not self.enabled:
            return

        with self._lock:
            undo = self._undo.pop((is_group, target_id), None)
            if undo is None:
                return
            acquired_at, last_sent, count, bucket_last_sent = undo
            if self._last_sent == acquired_at:
                self._last_sent = last_sent
            buckets = self._group_buckets if is_group else self._private_buckets
            bucket = buckets.get(target_id)
            if bucket is not None and bucket.last_sent == acquired_at:
                bucket.count = count
                bucket.last_sent = bucket_last_sent
