"""
进群申请处理

自动处理流程 (request.group.add):
    提取答案 → 查找本群的审核任务（无则忽略） → 查询申请人等级
    → 判定 → 同意 / 拒绝立即答复网关，挂起则放入待处理列表

挂起的申请以 flag 为键，由管理员手动同意或拒绝；
超过 7 天的挂起申请在调用 cleanup_expired() 时清理。
"""

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from ..models import ScheduledTask
from ..protocol import Event
from .catalog import TaskCatalog
from .gateway import GatewayClient, GatewayError
from .verification import Decision, Outcome, decide

logger = logging.getLogger("scheduler-bot")

JOIN_REQUEST_EVENT = "request.group.add"

# 挂起申请的保留时长
SUSPENDED_TTL = timedelta(days=7)

# 申请附言中答案的标记，如 "问题：1+1=?\n答案：2"
_ANSWER_MARKER_RE = re.compile(r"(?:answer|答案)\s*[:：]", re.IGNORECASE)

DEFAULT_MANUAL_REJECT_REASON = "申请被拒绝"

# 网关错误和写入连接时的底层错误都按调用失败处理
_GATEWAY_FAILURES = (GatewayError, OSError)


class RequestStatus(str, Enum):
    SUSPENDED = "suspended"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class PendingGroupRequest:
    """
    挂起的进群申请

    Attributes:
        group_id:    群号
        user_id:     申请人 QQ 号
        flag:        网关给出的申请标识
        comment:     申请附言
        reason:      挂起原因
        received_at: 收到申请的时间
        status:      当前状态
    """
    group_id: int
    user_id: int
    flag: str
    comment: str
    reason: str
    received_at: datetime
    status: RequestStatus = RequestStatus.SUSPENDED

    def to_dict(self) -> dict:
        return {
            "group_id": self.group_id,
            "user_id": self.user_id,
            "flag": self.flag,
            "comment": self.comment,
            "reason": self.reason,
            "received_at": self.received_at.isoformat(timespec="seconds"),
            "status": self.status.value,
        }


class RequestNotFoundError(KeyError):
    """挂起列表中不存在该 flag"""


def extract_answer(comment: str) -> str:
    """取答案标记之后的文本，没有标记时返回整段附言"""
    comment = comment or ""
    matches = list(_ANSWER_MARKER_RE.finditer(comment))
    if matches:
        return comment[matches[-1].end():].strip()
    return comment.strip()


class JoinRequestCoordinator:
    """进群申请的自动审核与挂起申请管理"""

    def __init__(
        self,
        gateway: GatewayClient,
        catalog: TaskCatalog,
        *,
        level_timeout: Optional[float] = None,
        ttl: timedelta = SUSPENDED_TTL,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.gateway = gateway
        self.catalog = catalog
        self.level_timeout = level_timeout
        self.ttl = ttl
        self._clock = clock

        self._lock = threading.Lock()
        self._suspended: dict[str, PendingGroupRequest] = {}

    # -------- 事件入口 --------

    async def handle_event(self, event: Event):
        """网关事件监听器，只处理进群申请"""
        if event.name == JOIN_REQUEST_EVENT:
            await self.handle_join_request(event.data)

    async def handle_join_request(self, data: dict) -> Optional[Decision]:
        """处理一条进群申请，返回判定结果；本群未配置审核任务时返回 None"""
        group_id = int(data["group_id"])
        user_id = int(data["user_id"])
        flag = str(data["flag"])
        comment = str(data.get("comment") or "")
        logger.info("收到进群申请: 群 %s, 用户 %s, 验证信息: %s", group_id, user_id, comment)

        task = self.catalog.verify_task_for_group(group_id)
        if task is None:
            logger.info("群 %s 没有配置进群审核任务，忽略此申请", group_id)
            return None

        policy = task.verify
        answer = extract_answer(comment)
        level = await self.fetch_level(user_id) if policy.uses_level else 0
        decision = decide(policy, answer, level)
        logger.debug("申请 %s 答案=%r 等级=%s → %s (%s)",
                     flag, answer, level, decision.outcome.value, decision.reason)

        if decision.outcome == Outcome.HOLD:
            self.suspend(PendingGroupRequest(
                group_id=group_id,
                user_id=user_id,
                flag=flag,
                comment=comment,
                reason=decision.reason,
                received_at=self._clock(),
            ))
            return decision

        approve = decision.outcome == Outcome.ACCEPT
        reject_message = None if approve else self.reject_message(task)
        try:
            await self.gateway.set_group_add_request(flag, approve, reject_message)
        except _GATEWAY_FAILURES as e:
            logger.error("答复进群申请 %s 失败: %s", flag, e)
            return decision

        if approve:
            logger.info("验证通过，同意 %s 加入群 %s (%s)", user_id, group_id, decision.reason)
        else:
            logger.info("验证失败，拒绝 %s 加入群 %s (%s)", user_id, group_id, decision.reason)
        return decision

    async def fetch_level(self, user_id: int) -> int:
        """查询申请人等级，超时或出错时按 0 级处理"""
        try:
            return await self.gateway.get_user_level(user_id, timeout=self.level_timeout)
        except _GATEWAY_FAILURES as e:
            logger.warning("查询用户 %s 等级失败，按 0 级处理: %s", user_id, e)
            return 0

    @staticmethod
    def reject_message(task: ScheduledTask) -> str:
        policy = task.verify
        if policy.reject_message:
            return policy.reject_message
        return f"验证答案错误，请重新申请并正确回答问题：{policy.question}"

    # -------- 挂起列表 --------

    def suspend(self, request: PendingGroupRequest):
        with self._lock:
            self._suspended[request.flag] = request
        logger.info("进群申请已挂起: 群 %s, 用户 %s, 原因: %s",
                    request.group_id, request.user_id, request.reason)

    def get(self, flag: str) -> PendingGroupRequest:
        with self._lock:
            request = self._suspended.get(flag)
        if request is None:
            raise RequestNotFoundError(flag)
        return request

    def suspended(self, group_id: Optional[int] = None) -> list[PendingGroupRequest]:
        """按申请时间排列的挂起申请，可按群号过滤"""
        with self._lock:
            requests = [
                r for r in self._suspended.values()
                if r.status == RequestStatus.SUSPENDED
                and (group_id is None or r.group_id == group_id)
            ]
        return sorted(requests, key=lambda r: r.received_at)

    def count(self) -> int:
        return len(self.suspended())

    def statistics(self) -> dict[int, int]:
        """各群挂起申请数量"""
        stats: dict[int, int] = {}
        for request in self.suspended():
            stats[request.group_id] = stats.get(request.group_id, 0) + 1
        return stats

    def cleanup_expired(self) -> int:
        """清理超过保留时长的挂起申请，返回清理数量"""
        expire_before = self._clock() - self.ttl
        with self._lock:
            expired = [f for f, r in self._suspended.items() if r.received_at < expire_before]
            removed = [self._suspended.pop(f) for f in expired]
        for request in removed:
            logger.info("清理过期的挂起申请: 群 %s, 用户 %s", request.group_id, request.user_id)
        if removed:
            logger.info("清理了 %d 个过期的挂起申请", len(removed))
        return len(removed)

    # -------- 人工处理 --------

    async def approve(self, flag: str) -> bool:
        """
        手动同意挂起的申请。

        Returns:
            网关确认成功返回 True，失败时申请保留在挂起列表中

        Raises:
            RequestNotFoundError: 挂起列表中没有该申请
        """
        request = self.get(flag)
        if not await self._answer(request, True, None):
            logger.error("同意进群申请失败: 群 %s, 用户 %s", request.group_id, request.user_id)
            return False
        self._resolve(request, RequestStatus.APPROVED)
        logger.info("手动同意进群申请: 群 %s, 用户 %s", request.group_id, request.user_id)
        return True

    async def reject(self, flag: str, reason: Optional[str] = None) -> bool:
        """手动拒绝挂起的申请，reason 为空时使用默认理由"""
        request = self.get(flag)
        message = reason.strip() if reason and reason.strip() else DEFAULT_MANUAL_REJECT_REASON
        if not await self._answer(request, False, message):
            logger.error("拒绝进群申请失败: 群 %s, 用户 %s", request.group_id, request.user_id)
            return False
        self._resolve(request, RequestStatus.REJECTED)
        logger.info("手动拒绝进群申请: 群 %s, 用户 %s, 原因: %s",
                    request.group_id, request.user_id, message)
        return True

    async def _answer(self, request: PendingGroupRequest, approve: bool,
                      reason: Optional[str]) -> bool:
        command = GatewayClient.group_request_command(request.flag, approve, reason)
        try:
            response = await self.gateway.call(command)
        except _GATEWAY_FAILURES as e:
            logger.warning("答复进群申请 %s 时出错: %s", request.flag, e)
            return False
        if not response.ok:
            logger.warning("网关拒绝了进群申请答复 %s: retcode=%s %s",
                           request.flag, response.retcode, response.message)
        return response.ok

    def _resolve(self, request: PendingGroupRequest, status: RequestStatus):
        request.status = status
        with self._lock:
            self._suspended.pop(request.flag, None)
