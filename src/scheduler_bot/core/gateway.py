"""
OneBot 正向 WebSocket 客户端

负责:
    - 连接: 携带 Bearer 令牌连接网关，断线后按固定间隔无限重连
    - 发送: 指令序列化后写入同一条连接，消息类指令经过频率限制
    - 关联: 需要结果的指令通过 echo 与回执一一对应，超时即移除
    - 分发: 入站事件过滤心跳后，以扁平事件名分发给已注册的监听器

入站消息分类:
    带 echo 且带 status / retcode  → 指令回执，交给等待中的调用方，无人等待则丢弃
    meta_event.heartbeat           → 忽略
    其余 post_type                 → 事件，分发给监听器
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union

import aiohttp

from ..protocol import Command, Event, EventKind, Response
from .message import format_message
from .rate_limiter import RateLimiter

logger = logging.getLogger("scheduler-bot")

# 事件监听器签名: 接收 Event，可为同步或异步函数
EventListener = Callable[[Event], Union[None, Awaitable[None]]]

# 需要经过频率限制的消息动作 → (目标参数名, 是否群消息)
_MESSAGE_ACTIONS: dict[str, tuple[str, bool]] = {
    "send_group_msg": ("group_id", True),
    "send_private_msg": ("user_id", False),
}

# 回执说明中出现即视为风控的关键字
_RISK_CONTROL_KEYWORD = "风控"


class GatewayError(RuntimeError):
    """网关相关错误的基类"""


class NotConnectedError(GatewayError):
    """未连接时发送指令"""


class CallTimeoutError(GatewayError, TimeoutError):
    """等待指令回执超时"""


class GatewayClient:
    """OneBot 网关客户端，全程只维护一条上游连接"""

    def __init__(
        self,
        url: str,
        *,
        access_token: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        call_timeout: float = 5.0,
        reconnect_interval: float = 5.0,
        risk_control_retcodes: tuple[int, ...] = (),
        warn_on_risk_control: bool = True,
        log_messages: bool = False,
    ):
        """
        Args:
            url:                   OneBot 正向 WebSocket 地址
            access_token:          鉴权令牌，为空则不携带 Authorization 头
            rate_limiter:          消息频率限制器，None 表示不限制
            call_timeout:          call() 默认超时秒数
            reconnect_interval:    断线重连间隔秒数
            risk_control_retcodes: 视为账号风控的返回码
            warn_on_risk_control:  收到风控回执时是否输出警告
            log_messages:          是否以 INFO 级别记录收到的聊天消息
        """
        self.url = url
        self.access_token = access_token
        self.rate_limiter = rate_limiter
        self.call_timeout = call_timeout
        self.reconnect_interval = reconnect_interval
        self.risk_control_retcodes = frozenset(risk_control_retcodes)
        self.warn_on_risk_control = warn_on_risk_control
        self.log_messages = log_messages

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._send_lock = asyncio.Lock()
        self._running = False
        self._connected = False
        self._pending: dict[str, asyncio.Future[Response]] = {}
        self._listeners: list[EventListener] = []
        self._tasks: set[asyncio.Task] = set()

    # -------- 连接状态 --------

    @property
    def connected(self) -> bool:
        return self._connected and self._ws is not None and not self._ws.closed

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending_count(self) -> int:
        """等待回执的指令数量"""
        return len(self._pending)

    # -------- 监听器 --------

    def add_listener(self, listener: EventListener) -> EventListener:
        """注册事件监听器，可作为装饰器使用"""
        self._listeners.append(listener)
        logger.debug("注册事件监听器: %r", listener)
        return listener

    def remove_listener(self, listener: EventListener):
        if listener in self._listeners:
            self._listeners.remove(listener)
            logger.debug("移除事件监听器: %r", listener)

    # -------- 发送 --------

    def _prepare(self, command: Command) -> Command:
        """消息类指令: 截断超长内容并转换内联标记"""
        if command.action in _MESSAGE_ACTIONS:
            message = command.params.get("message")
            if isinstance(message, str):
                command.params["message"] = format_message(message)
        return command

    async def _write(self, command: Command):
        ws = self._ws
        if ws is None or ws.closed or not self._connected:
            raise NotConnectedError(f"未连接到 OneBot 服务器，无法执行 {command.action}")
        payload = json.dumps(command.to_wire(), ensure_ascii=False)
        async with self._send_lock:
            logger.debug("发送指令: %s", payload[:500])
            await ws.send_str(payload)

    async def send(self, command: Command) -> bool:
        """
        发送无需等待结果的指令。

        Returns:
            True 表示已写出；False 表示被频率限制丢弃

        Raises:
            NotConnectedError: 当前未连接
            OSError:           写入连接失败，已占用的频率额度会被退还
        """
        command = self._prepare(command)
        if not self.connected:
            logger.warning("未连接到 OneBot 服务器，丢弃指令 %s", command.action)
            raise NotConnectedError(f"未连接到 OneBot 服务器，无法执行 {command.action}")

        target = _MESSAGE_ACTIONS.get(command.action)
        if target is None or self.rate_limiter is None:
            await self._write(command)
            return True

        key, is_group = target
        target_id = int(command.params.get(key, 0))
        if not self.rate_limiter.try_acquire(target_id, is_group):
            return False
        try:
            await self._write(command)
        except Exception:
            # 未写出的消息不占用频率额度
            self.rate_limiter.release(target_id, is_group)
            raise
        return True

    async def call(
        self,
        action: Union[str, Command],
        params: Optional[dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Response:
        """
        发送指令并等待对应回执。

        无论成功、超时还是出错，等待表中的条目都会被移除。

        Raises:
            NotConnectedError: 当前未连接，或等待期间连接断开
            CallTimeoutError:  超时仍未收到回执
        """
        command = action if isinstance(action, Command) else Command(action, params or {})
        command = self._prepare(command)
        if not self.connected:
            raise NotConnectedError(f"未连接到 OneBot 服务器，无法执行 {command.action}")

        timeout = self.call_timeout if timeout is None else timeout
        fut: asyncio.Future[Response] = asyncio.get_running_loop().create_future()
        self._pending[command.echo] = fut
        try:
            await self._write(command)
            return await asyncio.wait_for(fut, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("等待 %s 回执超时 (%.1fs)", command.action, timeout)
            raise CallTimeoutError(f"{command.action} 超时未响应") from None
        finally:
            self._pending.pop(command.echo, None)

    # -------- 常用指令 --------

    async def send_group_msg(self, group_id: int, message: str) -> bool:
        logger.info("发送群消息到 %s: %s", group_id, message[:100])
        return await self.send(Command("send_group_msg", {"group_id": group_id, "message": message}))

    async def send_private_msg(self, user_id: int, message: str) -> bool:
        logger.info("发送私聊消息到 %s: %s", user_id, message[:100])
        return await self.send(Command("send_private_msg", {"user_id": user_id, "message": message}))

    async def set_group_whole_ban(self, group_id: int, enable: bool) -> bool:
        logger.info("设置群 %s 全体禁言: %s", group_id, enable)
        return await self.send(Command("set_group_whole_ban", {"group_id": group_id, "enable": enable}))

    async def set_group_ban(self, group_id: int, user_id: int, duration: int) -> bool:
        """duration 为 0 表示解除禁言"""
        logger.info("设置群 %s 成员 %s 禁言 %d 秒", group_id, user_id, duration)
        return await self.send(Command("set_group_ban", {
            "group_id": group_id,
            "user_id": user_id,
            "duration": duration,
        }))

    @staticmethod
    def group_request_command(flag: str, approve: bool, reason: Optional[str] = None) -> Command:
        params: dict[str, Any] = {"flag": flag, "sub_type": "add", "approve": approve}
        if not approve and reason:
            params["reason"] = reason
        return Command("set_group_add_request", params)

    async def set_group_add_request(self, flag: str, approve: bool,
                                    reason: Optional[str] = None) -> bool:
        logger.info("%s进群申请 %s", "同意" if approve else "拒绝", flag)
        return await self.send(self.group_request_command(flag, approve, reason))

    async def get_user_level(self, user_id: int, *, timeout: Optional[float] = None) -> int:
        """查询用户等级，回执失败或缺少等级字段时返回 0"""
        response = await self.call("get_stranger_info", {"user_id": user_id, "no_cache": True},
                                   timeout=timeout)
        if not response.ok or not isinstance(response.data, dict):
            logger.warning("查询用户 %s 等级失败: retcode=%s %s",
                           user_id, response.retcode, response.message)
            return 0
        level = response.data.get("level", response.data.get("qq_level", 0))
        try:
            return int(level)
        except (TypeError, ValueError):
            return 0

    # -------- 入站处理 --------

    def _handle_text(self, raw: str):
        """解析并分类一条入站消息"""
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("无法解析的入站消息: %s", raw[:200])
            return
        if not isinstance(payload, dict):
            return

        if "echo" in payload and ("status" in payload or "retcode" in payload):
            self._resolve(Response.from_wire(payload))
            return

        if payload.get("post_type") == "meta_event" and payload.get("meta_event_type") == "heartbeat":
            return

        event = Event.from_wire(payload)
        if event is None:
            logger.debug("未知的入站消息: %s", raw[:200])
            return

        if event.kind == EventKind.MESSAGE and self.log_messages:
            logger.info("收到消息 [%s] %s: %s", event.name,
                        payload.get("user_id"), str(payload.get("raw_message", ""))[:100])
        else:
            logger.debug("收到事件 %s", event.name)
        self._dispatch(event)

    def _resolve(self, response: Response):
        self._check_risk_control(response)
        fut = self._pending.pop(response.echo, None)
        if fut is None:
            logger.debug("丢弃无人等待的回执 %s (status=%s)", response.echo, response.status)
            return
        if not fut.done():
            fut.set_result(response)

    def _check_risk_control(self, response: Response):
        # 仅告警，不反馈给频率限制或重连策略
        if response.ok or not self.warn_on_risk_control:
            return
        if response.retcode in self.risk_control_retcodes or _RISK_CONTROL_KEYWORD in response.message:
            logger.warning("账号可能已被风控: retcode=%s %s", response.retcode, response.message)

    def _spawn_task(self, coro) -> asyncio.Task:
        """创建后台任务并自动管理生命周期"""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _dispatch(self, event: Event):
        # 在后台任务中执行监听器，不阻塞接收循环（监听器内可能再调用 call()）
        for listener in list(self._listeners):
            self._spawn_task(self._invoke(listener, event))

    async def _invoke(self, listener: EventListener, event: Event):
        try:
            result = listener(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("事件监听器处理 %s 时出错", event.name)

    # -------- 主循环 --------

    @property
    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            raise RuntimeError("GatewayClient 尚未启动, 请先调用 run()")
        return self._session

    async def connect(self) -> aiohttp.ClientWebSocketResponse:
        """建立一次 WebSocket 连接"""
        headers = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
            logger.debug("添加 Authorization 头: Bearer %s...", self.access_token[:5])

        logger.info("正在连接到 OneBot 服务器: %s", self.url)
        self._ws = await self._http.ws_connect(self.url, headers=headers)
        self._connected = True
        logger.info("已连接到 OneBot 服务器: %s", self.url)
        return self._ws

    async def run(self):
        """启动客户端: 连接 → 事件循环 → 断线后固定间隔重连，直到 stop()"""
        self._running = True
        self._session = aiohttp.ClientSession()
        try:
            while self._running:
                try:
                    ws = await self.connect()
                    await self._event_loop(ws)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning("OneBot 连接异常: %s", e)
                finally:
                    await self._mark_disconnected()
                if not self._running:
                    break
                logger.info("将在 %.0f 秒后重连...", self.reconnect_interval)
                await asyncio.sleep(self.reconnect_interval)
        finally:
            await self._cleanup()

    async def _event_loop(self, ws: aiohttp.ClientWebSocketResponse):
        async for msg in ws:
            if not self._running:
                return
            if msg.type == aiohttp.WSMsgType.TEXT:
                self._handle_text(msg.data)
            elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                logger.warning("WebSocket 连接关闭: %s", msg)
                return
        logger.warning("与 OneBot 服务器的连接已关闭: code=%s", ws.close_code)

    async def _mark_disconnected(self):
        was_connected = self._connected
        self._connected = False
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        # 连接已断，等待中的回执不会再到达
        for echo, fut in list(self._pending.items()):
            if not fut.done():
                fut.set_exception(NotConnectedError("等待回执期间连接断开"))
            self._pending.pop(echo, None)
        if was_connected:
            logger.info("已断开与 OneBot 服务器的连接")

    # -------- 停止 --------

    async def stop(self):
        """停止客户端：不再重连，关闭连接并取消所有监听器任务"""
        logger.info("正在停止 GatewayClient...")
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._ws and not self._ws.closed:
            await self._ws.close()

    async def _cleanup(self):
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
        logger.info("GatewayClient 已停止")
