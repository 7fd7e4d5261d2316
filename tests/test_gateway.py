import asyncio
import json
import logging

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from conftest import ResettingWebSocket, attach_socket, make_verify_task
from scheduler_bot.core import (
    CallTimeoutError,
    GatewayClient,
    JoinRequestCoordinator,
    NotConnectedError,
    RateLimiter,
    TaskCatalog,
)
from scheduler_bot.protocol import Command, Event, EventKind, Response


async def _wait_sent(ws, count=1):
    for _ in range(100):
        if len(ws.sent) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError("指令未写出")


def _reply(echo, **fields) -> str:
    payload = {"echo": echo, "status": "ok", "retcode": 0, "data": None}
    payload.update(fields)
    return json.dumps(payload)


class TestProtocol:
    def test_command_wire_format(self):
        command = Command("send_group_msg", {"group_id": 1, "message": "hi"})
        assert command.to_wire() == {
            "action": "send_group_msg",
            "params": {"group_id": 1, "message": "hi"},
            "echo": command.echo,
        }

    def test_echoes_are_unique(self):
        assert Command("a").echo != Command("a").echo

    @pytest.mark.parametrize("status,retcode,ok", [
        ("ok", 0, True),
        ("async", 1, True),
        ("failed", 100, False),
        ("ok", 1200, False),
    ])
    def test_response_ok(self, status, retcode, ok):
        assert Response.from_wire({"echo": "e", "status": status, "retcode": retcode}).ok is ok

    def test_response_message_from_wording(self):
        response = Response.from_wire({"echo": "e", "status": "failed", "retcode": 1, "wording": "账号风控"})
        assert response.message == "账号风控"

    def test_event_name(self):
        event = Event.from_wire({"post_type": "request", "request_type": "group", "sub_type": "add"})
        assert event.kind == EventKind.REQUEST
        assert event.name == "request.group.add"

    def test_unknown_post_type(self):
        assert Event.from_wire({"post_type": "something"}) is None


class TestSend:
    @pytest.mark.asyncio
    async def test_send_formats_message_markup(self):
        client = GatewayClient("ws://test")
        ws = attach_socket(client)

        assert await client.send_group_msg(100, "{@all} 开会")

        assert ws.sent[0]["action"] == "send_group_msg"
        assert ws.sent[0]["params"] == {"group_id": 100, "message": "[CQ:at,qq=all] 开会"}

    @pytest.mark.asyncio
    async def test_send_while_disconnected_raises(self):
        client = GatewayClient("ws://test")
        with pytest.raises(NotConnectedError):
            await client.send_group_msg(100, "hi")

    @pytest.mark.asyncio
    async def test_rate_limited_message_is_dropped(self):
        now = [0.0]
        client = GatewayClient("ws://test", rate_limiter=RateLimiter(clock=lambda: now[0]))
        ws = attach_socket(client)

        assert await client.send_group_msg(100, "first")
        assert not await client.send_group_msg(100, "second")
        now[0] += 1.5
        assert await client.send_private_msg(7, "third")

        assert [c["params"]["message"] for c in ws.sent] == ["first", "third"]

    @pytest.mark.asyncio
    async def test_failed_write_gives_back_rate_limit_slot(self):
        client = GatewayClient("ws://test", rate_limiter=RateLimiter(clock=lambda: 0.0))
        ws = attach_socket(client, ResettingWebSocket(failures=1))

        with pytest.raises(ConnectionResetError):
            await client.send_group_msg(100, "first")
        assert await client.send_group_msg(100, "again")

        assert [c["params"]["message"] for c in ws.sent] == ["again"]

    @pytest.mark.asyncio
    async def test_non_message_actions_bypass_rate_limit(self):
        client = GatewayClient("ws://test", rate_limiter=RateLimiter(clock=lambda: 0.0))
        ws = attach_socket(client)

        assert await client.send_group_msg(100, "hi")
        assert await client.set_group_ban(100, 10001, 60)
        assert await client.set_group_whole_ban(100, True)

        assert [c["action"] for c in ws.sent] == ["send_group_msg", "set_group_ban", "set_group_whole_ban"]

    def test_group_request_command(self):
        approve = GatewayClient.group_request_command("f", True, "ignored")
        reject = GatewayClient.group_request_command("f", False, "答案错误")
        assert approve.params == {"flag": "f", "sub_type": "add", "approve": True}
        assert reject.params == {"flag": "f", "sub_type": "add", "approve": False, "reason": "答案错误"}


class TestCall:
    @pytest.mark.asyncio
    async def test_response_resolves_matching_call(self):
        client = GatewayClient("ws://test")
        ws = attach_socket(client)

        pending = asyncio.create_task(client.call("get_stranger_info", {"user_id": 1}))
        await _wait_sent(ws)
        assert client.pending_count == 1
        client._handle_text(_reply(ws.sent[0]["echo"], data={"level": 12}))
        response = await pending

        assert response.ok
        assert response.data == {"level": 12}
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_calls_are_correlated_by_echo(self):
        client = GatewayClient("ws://test")
        ws = attach_socket(client)

        first = asyncio.create_task(client.call("a"))
        second = asyncio.create_task(client.call("b"))
        await _wait_sent(ws, 2)
        echoes = {c["action"]: c["echo"] for c in ws.sent}
        client._handle_text(_reply(echoes["b"], data="B"))
        client._handle_text(_reply(echoes["a"], data="A"))

        assert (await first).data == "A"
        assert (await second).data == "B"

    @pytest.mark.asyncio
    async def test_timeout_removes_pending_entry(self):
        client = GatewayClient("ws://test")
        ws = attach_socket(client)

        with pytest.raises(CallTimeoutError):
            await client.call("get_stranger_info", {"user_id": 1}, timeout=0.05)

        assert client.pending_count == 0
        # 迟到的回执直接丢弃
        client._handle_text(_reply(ws.sent[0]["echo"]))
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_timeout_is_a_timeout_error(self):
        client = GatewayClient("ws://test")
        attach_socket(client)
        with pytest.raises(TimeoutError):
            await client.call("x", timeout=0.01)

    @pytest.mark.asyncio
    async def test_unknown_echo_is_ignored(self):
        client = GatewayClient("ws://test")
        client._handle_text(_reply("nobody-waits"))
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending_calls(self):
        client = GatewayClient("ws://test")
        ws = attach_socket(client)

        pending = asyncio.create_task(client.call("get_stranger_info", timeout=5))
        await _wait_sent(ws)
        await client._mark_disconnected()

        with pytest.raises(NotConnectedError):
            await pending
        assert client.pending_count == 0
        assert ws.closed

    @pytest.mark.asyncio
    async def test_call_while_disconnected_raises(self):
        client = GatewayClient("ws://test")
        with pytest.raises(NotConnectedError):
            await client.call("get_status")
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_get_user_level(self):
        client = GatewayClient("ws://test")
        ws = attach_socket(client)

        pending = asyncio.create_task(client.get_user_level(10001))
        await _wait_sent(ws)
        assert ws.sent[0]["params"] == {"user_id": 10001, "no_cache": True}
        client._handle_text(_reply(ws.sent[0]["echo"], data={"qq_level": "33"}))

        assert await pending == 33

    @pytest.mark.asyncio
    async def test_get_user_level_failed_response_is_zero(self):
        client = GatewayClient("ws://test")
        ws = attach_socket(client)

        pending = asyncio.create_task(client.get_user_level(10001))
        await _wait_sent(ws)
        client._handle_text(_reply(ws.sent[0]["echo"], status="failed", retcode=100))

        assert await pending == 0


class TestInbound:
    @pytest.mark.asyncio
    async def test_events_reach_listeners(self):
        client = GatewayClient("ws://test")
        received = []
        done = asyncio.Event()

        @client.add_listener
        async def on_event(event):
            received.append(event)
            done.set()

        client._handle_text(json.dumps({
            "post_type": "request", "request_type": "group", "sub_type": "add",
            "group_id": 1, "user_id": 2, "flag": "f", "comment": "",
        }))
        await asyncio.wait_for(done.wait(), 1)

        assert received[0].name == "request.group.add"
        assert received[0].data["flag"] == "f"

    @pytest.mark.asyncio
    async def test_heartbeat_is_not_dispatched(self):
        client = GatewayClient("ws://test")
        received = []
        client.add_listener(received.append)

        client._handle_text(json.dumps({"post_type": "meta_event", "meta_event_type": "heartbeat"}))
        client._handle_text(json.dumps({"post_type": "meta_event", "meta_event_type": "lifecycle",
                                        "sub_type": "connect"}))
        await asyncio.sleep(0.01)

        assert [e.name for e in received] == ["meta_event.lifecycle.connect"]

    @pytest.mark.asyncio
    async def test_listener_errors_are_logged(self, caplog):
        client = GatewayClient("ws://test")
        calls = []

        def broken(event):
            raise ValueError("boom")

        client.add_listener(broken)
        client.add_listener(calls.append)
        with caplog.at_level(logging.ERROR, logger="scheduler-bot"):
            client._handle_text(json.dumps({"post_type": "notice", "notice_type": "group_increase"}))
            await asyncio.sleep(0.01)

        assert len(calls) == 1
        assert "notice.group_increase" in caplog.text

    @pytest.mark.asyncio
    async def test_removed_listener_gets_nothing(self):
        client = GatewayClient("ws://test")
        received = []
        client.add_listener(received.append)
        client.remove_listener(received.append)

        client._handle_text(json.dumps({"post_type": "notice", "notice_type": "x"}))
        await asyncio.sleep(0.01)

        assert received == []

    def test_malformed_payload_is_ignored(self):
        client = GatewayClient("ws://test")
        client._handle_text("not json")
        client._handle_text("[1, 2]")

    @pytest.mark.asyncio
    async def test_risk_control_retcode_is_logged(self, caplog):
        client = GatewayClient("ws://test", risk_control_retcodes=(1200,))
        with caplog.at_level(logging.WARNING, logger="scheduler-bot"):
            client._handle_text(_reply("e", status="failed", retcode=1200, message="发送失败"))
        assert "风控" in caplog.text

    @pytest.mark.asyncio
    async def test_risk_control_warning_can_be_disabled(self, caplog):
        client = GatewayClient("ws://test", risk_control_retcodes=(1200,), warn_on_risk_control=False)
        with caplog.at_level(logging.WARNING, logger="scheduler-bot"):
            client._handle_text(_reply("e", status="failed", retcode=1200))
        assert "风控" not in caplog.text


@pytest.mark.asyncio
async def test_join_request_answered_over_gateway():
    client = GatewayClient("ws://test")
    ws = attach_socket(client)
    coordinator = JoinRequestCoordinator(client, TaskCatalog([make_verify_task(123)]))
    client.add_listener(coordinator.handle_event)

    client._handle_text(json.dumps({
        "post_type": "request", "request_type": "group", "sub_type": "add",
        "group_id": 123, "user_id": 10001, "flag": "flag-9", "comment": "问题：1+1=?\nanswer: 2",
    }))
    await _wait_sent(ws)

    assert ws.sent[0]["action"] == "set_group_add_request"
    assert ws.sent[0]["params"] == {"flag": "flag-9", "sub_type": "add", "approve": True}


@pytest.mark.asyncio
async def test_round_trip_against_websocket_server():
    headers = {}

    async def onebot(request):
        headers.update(request.headers)
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        async for msg in ws:
            command = json.loads(msg.data)
            if command["action"] == "get_stranger_info":
                await ws.send_json({"post_type": "meta_event", "meta_event_type": "heartbeat"})
                await ws.send_json({"status": "ok", "retcode": 0, "data": {"level": 42},
                                    "echo": command["echo"]})
        return ws

    app = web.Application()
    app.router.add_get("/", onebot)
    server = TestServer(app)
    await server.start_server()

    client = GatewayClient(str(server.make_url("/")), access_token="secret", reconnect_interval=0.05)
    runner = asyncio.create_task(client.run())
    try:
        for _ in range(200):
            if client.connected:
                break
            await asyncio.sleep(0.01)
        assert client.connected
        assert await client.get_user_level(10001) == 42
        assert headers["Authorization"] == "Bearer secret"
    finally:
        await client.stop()
        await asyncio.wait_for(runner, 5)
        await server.close()

    assert not client.running
    assert not client.connected


@pytest.mark.asyncio
async def test_reconnects_after_connection_refused():
    client = GatewayClient("ws://127.0.0.1:9", reconnect_interval=0.01)
    runner = asyncio.create_task(client.run())
    await asyncio.sleep(0.1)

    assert client.running
    assert not client.connected
    assert not runner.done()

    await client.stop()
    await asyncio.wait_for(runner, 5)
