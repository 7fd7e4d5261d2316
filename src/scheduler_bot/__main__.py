"""
Scheduler Bot 入口脚本

用法:
    python -m scheduler_bot                        # 读取当前目录的 config.yaml
    python -m scheduler_bot --config bot.yaml      # 指定配置文件
    python -m scheduler_bot --log-dir logs         # 日志同时输出到目录
    python -m scheduler_bot --env /path/to/.env    # 指定环境变量文件
    python -m scheduler_bot --no-console           # 不读取标准输入（后台运行）

启动流程:
    1. 解析命令行参数
    2. 加载 .env 环境变量
    3. 读取配置文件（不存在则退出）
    4. 初始化日志
    5. 创建 Application 并启动网关与调度
    6. 按配置启动 HTTP 管理接口
    7. 运行控制台直到 exit / Ctrl+C，然后优雅退出
"""

import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from .app import Application
from .config import load_env, setup_logging
from .console import CommandHandler, run_console
from .http_server import AdminServer
from .models import AppConfig

logger = logging.getLogger("scheduler-bot")


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        prog="scheduler-bot",
        description="Scheduler Bot: OneBot 定时任务与进群审核机器人",
    )
    p.add_argument(
        "--config", default="config.yaml",
        help="配置文件路径 (默认: config.yaml)",
    )
    p.add_argument(
        "--env", default=None,
        help=".env 文件路径 (默认: 当前目录下的 .env)",
    )
    p.add_argument(
        "--log-dir", default=None,
        help="日志输出目录，覆盖配置文件中的 log.dir",
    )
    p.add_argument(
        "--no-console", action="store_true",
        help="不启用控制台命令",
    )
    return p.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)

    load_env(args.env)
    setup_logging()

    try:
        config = AppConfig.from_yaml(args.config)
    except FileNotFoundError as e:
        logger.error("%s，请参考 config.example.yaml 创建配置文件", e)
        return 1
    except ValidationError as e:
        logger.error("配置文件格式错误: %s", e)
        return 1

    setup_logging(args.log_dir or config.log.dir, config.log.level)
    for warning in config.placeholder_warnings():
        logger.warning("配置检查: %s", warning)

    app = Application(config, config_path=args.config)
    server = None
    if config.server.enabled:
        server = AdminServer(app, host=config.server.host, port=config.server.port)

    stop = asyncio.Event()
    try:
        await app.start()
        if server:
            await server.start()
        if args.no_console:
            await stop.wait()
        else:
            await run_console(CommandHandler(app), stop)
    finally:
        if server:
            await server.stop()
        await app.stop()
        logger.info("程序已退出")
    return 0


def cli():
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    cli()
