"""
应用上下文

显式构造并持有所有服务，依赖通过构造参数传入，不使用全局单例:

    RateLimiter ─┐
                 ├─ GatewayClient ─┬─ TaskExecutor ── CronScheduler
    TaskCatalog ─┼─────────────────┤
                 └─────────────────┴─ JoinRequestCoordinator
    TaskLogStore ── TaskExecutor
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from .core import (
    CronScheduler,
    GatewayClient,
    JoinRequestCoordinator,
    RateLimiter,
    TaskCatalog,
    TaskExecutor,
    TaskLogStore,
)
from .models import AppConfig

logger = logging.getLogger("scheduler-bot")

# 连续消息之间在限速间隔之外额外留出的余量（秒）
_SPACING_MARGIN = 0.05


class Application:
    """机器人运行时上下文"""

    def __init__(self, config: AppConfig, *, config_path: Optional[str | Path] = None,
                 gateway: Optional[GatewayClient] = None):
        self.config = config
        self.config_path = Path(config_path) if config_path else None

        safety = config.safety
        msg_interval = safety.msg_interval_ms / 1000
        self.rate_limiter = RateLimiter(
            min_interval=msg_interval,
            group_limit=safety.group_msg_limit,
            private_limit=safety.private_msg_limit,
            enabled=safety.enable_msg_limit,
        )
        self.gateway = gateway or GatewayClient(
            config.bot.websocket,
            access_token=config.bot.access_token,
            rate_limiter=self.rate_limiter,
            call_timeout=config.bot.call_timeout,
            reconnect_interval=config.bot.reconnect_interval,
            risk_control_retcodes=safety.risk_control_retcodes,
            warn_on_risk_control=safety.enable_auto_risk_control,
            log_messages=config.log.enable_message_log,
        )
        self.catalog = TaskCatalog(config.scheduled_tasks)
        self.task_logs = TaskLogStore(
            config.log.task_log_dir,
            max_per_task=config.log.max_logs_per_task,
            export_dir=config.log.export_dir,
        )
        self.executor = TaskExecutor(
            self.gateway,
            self.catalog,
            self.task_logs,
            min_interval=safety.task_min_interval_ms / 1000,
            max_attempts=config.executor.max_attempts,
            retry_delay=config.executor.retry_delay,
            send_spacing=msg_interval + _SPACING_MARGIN if safety.enable_msg_limit else 0.0,
        )
        self.join_requests = JoinRequestCoordinator(
            self.gateway,
            self.catalog,
            level_timeout=config.bot.call_timeout,
        )
        self.scheduler = CronScheduler(self.executor.on_fire)
        self.gateway.add_listener(self.join_requests.handle_event)

        self._gateway_task: Optional[asyncio.Task] = None

    @classmethod
    def from_file(cls, path: str | Path) -> "Application":
        return cls(AppConfig.from_yaml(path), config_path=path)

    # -------- 启停 --------

    async def start(self):
        """安装调度并在后台启动网关连接循环"""
        self.scheduler.load(self.catalog.scheduled())
        self._gateway_task = asyncio.create_task(self.gateway.run())
        logger.info("机器人已启动，共 %d 个任务", len(self.catalog))

    async def stop(self):
        await self.scheduler.stop()
        await self.gateway.stop()
        if self._gateway_task is not None:
            try:
                await asyncio.wait_for(self._gateway_task, timeout=5)
            except asyncio.TimeoutError:
                self._gateway_task.cancel()
            except Exception:
                logger.exception("网关任务退出时出错")
            self._gateway_task = None

    # -------- 重载 --------

    def reload(self) -> int:
        """
        重新读取配置文件中的任务并重建调度。

        连接与安全配置需要重启后生效。读取失败时抛出异常，当前任务保持不变。

        Returns:
            重建后调度中的任务数
        """
        if self.config_path is None:
            raise RuntimeError("未指定配置文件路径，无法重新加载")
        logger.info("正在重新加载配置: %s", self.config_path)
        config = AppConfig.from_yaml(self.config_path)
        self.scheduler.clear()
        self.catalog.replace(config.scheduled_tasks)
        self.config.scheduled_tasks = config.scheduled_tasks
        count = self.scheduler.load(self.catalog.scheduled())
        logger.info("配置重新加载完成")
        return count

    def status(self) -> dict:
        return {
            "connected": self.gateway.connected,
            "tasks": len(self.catalog),
            "scheduled": len(self.scheduler.job_names),
            "suspended_requests": self.join_requests.count(),
            "pending_calls": self.gateway.pending_count,
        }
