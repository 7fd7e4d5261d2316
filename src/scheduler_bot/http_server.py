"""
HTTP 管理接口

负责:
    - GET  /api/health                     运行状态
    - GET  /api/requests?group_id=         挂起的进群申请
    - GET  /api/requests/{flag}            一条申请的详情
    - POST /api/requests/{flag}/approve    同意申请
    - POST /api/requests/{flag}/reject     拒绝申请，可选请求体 {"reason": "..."}
    - POST /api/requests/clean             清理过期申请
    - GET  /api/logs?task=&limit=          执行记录
    - POST /api/reload                     重新加载任务配置
"""

import json
import logging
from typing import Optional

from aiohttp import web

from .app import Application
from .core import RequestNotFoundError

logger = logging.getLogger("scheduler-bot")


class AdminServer:
    """对外 HTTP 管理服务，搭配 Application 使用"""

    def __init__(
        self,
        app: Application,
        *,
        host: str = "127.0.0.1",
        port: int = 8080,
    ):
        self.app = app
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    # -------- HTTP 路由 --------

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/api/health", self._handle_health)
        app.router.add_get("/api/requests", self._handle_list_requests)
        app.router.add_get("/api/requests/{flag}", self._handle_get_request)
        app.router.add_post("/api/requests/clean", self._handle_clean_requests)
        app.router.add_post("/api/requests/{flag}/approve", self._handle_approve)
        app.router.add_post("/api/requests/{flag}/reject", self._handle_reject)
        app.router.add_get("/api/logs", self._handle_logs)
        app.router.add_post("/api/reload", self._handle_reload)
        return app

    async def _handle_health(self, request: web.Request) -> web.Response:
        """GET /api/health: 返回服务运行状态"""
        return web.json_response({"ok": True, **self.app.status()})

    async def _handle_list_requests(self, request: web.Request) -> web.Response:
        group_id = request.query.get("group_id")
        if group_id is not None and not group_id.isdigit():
            return web.json_response(
                {"ok": False, "error": f"invalid group_id: {group_id}"}, status=400
            )
        requests = self.app.join_requests.suspended(int(group_id) if group_id else None)
        return web.json_response({
            "ok": True,
            "requests": [r.to_dict() for r in requests],
        })

    async def _handle_get_request(self, request: web.Request) -> web.Response:
        flag = request.match_info["flag"]
        try:
            pending = self.app.join_requests.get(flag)
        except RequestNotFoundError:
            return web.json_response({"ok": False, "error": "request not found"}, status=404)
        return web.json_response({"ok": True, "request": pending.to_dict()})

    async def _handle_clean_requests(self, request: web.Request) -> web.Response:
        removed = self.app.join_requests.cleanup_expired()
        return web.json_response({"ok": True, "removed": removed})

    async def _handle_approve(self, request: web.Request) -> web.Response:
        flag = request.match_info["flag"]
        try:
            ok = await self.app.join_requests.approve(flag)
        except RequestNotFoundError:
            return web.json_response({"ok": False, "error": "request not found"}, status=404)
        return self._answer_response(ok)

    async def _handle_reject(self, request: web.Request) -> web.Response:
        """
        POST /api/requests/{flag}/reject

        请求体 JSON (可选):
            {"reason": "拒绝理由"}
        """
        flag = request.match_info["flag"]
        reason = None
        if request.can_read_body:
            try:
                data = await request.json()
            except json.JSONDecodeError:
                return web.json_response(
                    {"ok": False, "error": "invalid json"}, status=400
                )
            if isinstance(data, dict):
                reason = data.get("reason")
        try:
            ok = await self.app.join_requests.reject(flag, reason)
        except RequestNotFoundError:
            return web.json_response({"ok": False, "error": "request not found"}, status=404)
        return self._answer_response(ok)

    @staticmethod
    def _answer_response(ok: bool) -> web.Response:
        if ok:
            return web.json_response({"ok": True})
        return web.json_response({"ok": False, "error": "gateway rejected the answer"}, status=502)

    async def _handle_logs(self, request: web.Request) -> web.Response:
        limit_str = request.query.get("limit", "10")
        if not limit_str.isdigit():
            return web.json_response(
                {"ok": False, "error": f"invalid limit: {limit_str}"}, status=400
            )
        limit = int(limit_str)
        task = request.query.get("task")
        store = self.app.task_logs
        records = store.task_logs(task)[:limit] if task else store.recent(limit)
        return web.json_response({
            "ok": True,
            "records": [r.model_dump(mode="json") for r in records],
        })

    async def _handle_reload(self, request: web.Request) -> web.Response:
        try:
            count = self.app.reload()
        except Exception as e:
            logger.exception("API reload 失败")
            return web.json_response({"ok": False, "error": str(e)}, status=500)
        return web.json_response({"ok": True, "scheduled": count})

    # -------- 启停 --------

    async def start(self):
        """启动 HTTP 管理服务"""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("HTTP 管理接口已启动: http://%s:%d", self.host, self.port)

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("HTTP 管理接口已停止")
