"""
环境变量加载与日志配置

    load_env()      从 .env 文件加载 ONEBOT_WS_URL / ONEBOT_ACCESS_TOKEN 等环境变量
    setup_logging() 配置全局日志格式，可选同时输出到目录
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def load_env(env_path: Optional[str] = None) -> bool:
    """
    加载 .env 文件到 os.environ，已存在的环境变量不会被覆盖。

    Args:
        env_path: .env 文件路径。未指定时使用当前目录下的 .env

    Returns:
        是否找到并加载了文件
    """
    path = Path(env_path) if env_path else Path.cwd() / ".env"
    return load_dotenv(path)


def setup_logging(log_dir: Optional[str] = None, level: Union[int, str] = logging.INFO):
    """
    配置全局日志。

    日志始终输出到控制台，指定 log_dir 时同时写入该目录下
    以启动时间命名的日志文件（scheduler-bot_YYYYMMDD_HHMMSS.log）。

    Args:
        log_dir: 日志输出目录，None 表示仅控制台输出
        level:   日志级别，可为 logging 常量或 "DEBUG" / "INFO" 等名称
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_dir:
        dir_path = Path(log_dir)
        dir_path.mkdir(parents=True, exist_ok=True)
        filename = "scheduler-bot_" + datetime.now().strftime("%Y%m%d_%H%M%S") + ".log"
        handlers.append(logging.FileHandler(dir_path / filename, encoding="utf-8"))

    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT,
                        handlers=handlers, force=True)
    # aiohttp 的访问日志过于冗长
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
