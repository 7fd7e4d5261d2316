"""测试共用的假网关与任务构造工具"""

import asyncio
import json
from typing import Any, Optional, Union

import pytest

from scheduler_bot.core import GatewayClient, NotConnectedError
from scheduler_bot.models import ScheduledTask
from scheduler_bot.protocol import Command, Response


class FakeGateway:
    """
    记录所有指令的内存网关。

    failures:      接下来若干次发送直接抛出 NotConnectedError
    rate_limited:  发往这些目标的消息返回 False（模拟频率限制丢弃）
    level:         get_user_level 返回的等级
    level_error:   设置后 get_user_level 抛出该异常
    call_response: call() 的返回值，为异常时抛出
    """

    def __init__(self):
        self.sent: list[tuple[str, dict]] = []
        self.calls: list[Command] = []
        self.failures = 0
        self.rate_limited: set[int] = set()
        self.level = 0
        self.level_error: Optional[Exception] = None
        self.level_queries: list[int] = []
        self.call_response: Union[Response, Exception] = Response(echo="", status="ok", retcode=0)
        self.listeners: list = []
        self.connected = True
        self.pending_count = 0
        self._stopped = asyncio.Event()

    def actions(self) -> list[str]:
        return [action for action, _ in self.sent]

    def messages(self) -> list[tuple[int, str]]:
        return [
            (p.get("group_id", p.get("user_id")), p["message"])
            for action, p in self.sent if action in ("send_group_msg", "send_private_msg")
        ]

    async def _send(self, action: str, **params: Any) -> bool:
        if self.failures:
            self.failures -= 1
            raise NotConnectedError("offline")
        self.sent.append((action, params))
        return True

    async def send_group_msg(self, group_id: int, message: str) -> bool:
        if group_id in self.rate_limited:
            return False
        return await self._send("send_group_msg", group_id=group_id, message=message)

    async def send_private_msg(self, user_id: int, message: str) -> bool:
        if user_id in self.rate_limited:
            return False
        return await self._send("send_private_msg", user_id=user_id, message=message)

    async def set_group_whole_ban(self, group_id: int, enable: bool) -> bool:
        return await self._send("set_group_whole_ban", group_id=group_id, enable=enable)

    async def set_group_ban(self, group_id: int, user_id: int, duration: int) -> bool:
        return await self._send("set_group_ban", group_id=group_id, user_id=user_id, duration=duration)

    async def set_group_add_request(self, flag: str, approve: bool, reason: Optional[str] = None) -> bool:
        return await self._send("set_group_add_request", flag=flag, approve=approve, reason=reason)

    async def get_user_level(self, user_id: int, *, timeout: Optional[float] = None) -> int:
        self.level_queries.append(user_id)
        if self.level_error is not None:
            raise self.level_error
        return self.level

    async def call(self, action, params=None, *, timeout=None) -> Response:
        command = action if isinstance(action, Command) else Command(action, params or {})
        self.calls.append(command)
        if isinstance(self.call_response, Exception):
            raise self.call_response
        return self.call_response

    def add_listener(self, listener):
        self.listeners.append(listener)
        return listener

    async def run(self):
        await self._stopped.wait()

    async def stop(self):
        self._stopped.set()


class FakeWebSocket:
    """替代 aiohttp 客户端连接，只记录写出的 JSON"""

    def __init__(self):
        self.closed = False
        self.sent: list[dict] = []

    async def send_str(self, data: str):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True


class ResettingWebSocket(FakeWebSocket):
    """前 failures 次写入抛出 ConnectionResetError"""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def send_str(self, data: str):
        if self.failures:
            self.failures -= 1
            raise ConnectionResetError("reset")
        await super().send_str(data)


def attach_socket(client: GatewayClient, ws: Optional[FakeWebSocket] = None) -> FakeWebSocket:
    """让客户端处于已连接状态"""
    ws = ws or FakeWebSocket()
    client._ws = ws
    client._connected = True
    return ws


def make_task(**overrides) -> ScheduledTask:
    data: dict[str, Any] = {
        "name": "早安",
        "type": "SEND_MESSAGE",
        "target_type": "GROUP",
        "target_ids": [100],
        "cron": "0 8 * * *",
        "content": "hi",
    }
    data.update(overrides)
    return ScheduledTask.model_validate(data)


def make_verify_task(group_id: int = 123, **verify) -> ScheduledTask:
    policy: dict[str, Any] = {"question": "1+1=?", "answers": ["2", "二", "两"]}
    policy.update(verify)
    return ScheduledTask.model_validate({
        "name": f"审核-{group_id}",
        "type": "GROUP_REQUEST_VERIFY",
        "target_ids": [group_id],
        "verify": policy,
    })


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()
