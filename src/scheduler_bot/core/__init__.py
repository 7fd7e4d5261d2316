from .catalog import TaskCatalog, UnknownTaskError
from .executor import TaskExecutionError, TaskExecutor
from .gateway import CallTimeoutError, GatewayClient, GatewayError, NotConnectedError
from .join_requests import JoinRequestCoordinator, PendingGroupRequest, RequestNotFoundError, RequestStatus
from .rate_limiter import RateLimiter
from .scheduler import CronScheduler
from .task_log import ExecutionRecord, TaskLogStore
from .verification import Decision, Outcome, decide

__all__ = [
    "CallTimeoutError",
    "CronScheduler",
    "Decision",
    "ExecutionRecord",
    "GatewayClient",
    "GatewayError",
    "JoinRequestCoordinator",
    "NotConnectedError",
    "Outcome",
    "PendingGroupRequest",
    "RateLimiter",
    "RequestNotFoundError",
    "RequestStatus",
    "TaskCatalog",
    "TaskExecutionError",
    "TaskExecutor",
    "TaskLogStore",
    "UnknownTaskError",
    "decide",
]
