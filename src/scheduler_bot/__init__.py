"""OneBot 定时任务与进群审核机器人"""

__version__ = "1.3.0"
