"""
Pydantic 配置模型

通过 config.yaml 管理机器人连接、安全限制、日志以及定时任务。
OneBot 连接地址与令牌也可由 .env 环境变量提供（ONEBOT_WS_URL / ONEBOT_ACCESS_TOKEN）。

定时任务逐条校验: 某条任务配置有误（cron 无效、缺少必需字段、名称重复）
只会跳过该任务，不影响其余任务加载。
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .cron import is_valid_cron

logger = logging.getLogger("scheduler-bot")

DEFAULT_WEBSOCKET = "ws://127.0.0.1:6700"

# 配置模板中的示例群号 / QQ 号，启动时若仍存在则提示修改
PLACEHOLDER_IDS = frozenset({123456789, 987654321, 111222333})


class TaskType(str, Enum):
    SEND_MESSAGE = "SEND_MESSAGE"                   # 发送消息
    GROUP_BAN_ALL = "GROUP_BAN_ALL"                 # 全体禁言 / 解禁
    GROUP_BAN_MEMBER = "GROUP_BAN_MEMBER"           # 禁言 / 解禁指定成员
    GROUP_REQUEST_VERIFY = "GROUP_REQUEST_VERIFY"   # 进群申请审核（事件驱动，不参与调度）


class TargetType(str, Enum):
    GROUP = "GROUP"
    PRIVATE = "PRIVATE"


class VerifyMode(str, Enum):
    IGNORE_ALL = "IGNORE_ALL"                                   # 全部同意
    ANY_ONE_PASS = "ANY_ONE_PASS"                               # 答案或等级任一通过
    BOTH_REQUIRED = "BOTH_REQUIRED"                             # 答案和等级都需通过
    ANSWER_ONLY = "ANSWER_ONLY"                                 # 仅校验答案
    LEVEL_ONLY = "LEVEL_ONLY"                                   # 仅校验等级
    ANSWER_PASS_LEVEL_PENDING = "ANSWER_PASS_LEVEL_PENDING"     # 答案对、等级不足时挂起
    LEVEL_PASS_ANSWER_PENDING = "LEVEL_PASS_ANSWER_PENDING"     # 等级够、答案错时挂起


class VerificationPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    question: str = Field("", description="验证问题")
    answers: tuple[str, ...] = Field((), description="可接受的答案")
    case_sensitive: bool = Field(False, description="答案是否区分大小写")
    ignore_whitespace: bool = Field(True, description="比较前是否去除所有空白")
    fuzzy_match: bool = Field(False, description="是否启用包含匹配")
    min_level: int = Field(0, description="最低等级，<=0 表示不检查")
    auto_accept_level: int = Field(0, description="达到该等级直接通过，<=0 表示关闭")
    mode: VerifyMode = Field(VerifyMode.ANSWER_ONLY, description="审核模式")
    reject_message: Optional[str] = Field(None, description="拒绝时发送给申请人的理由")

    @model_validator(mode="before")
    @classmethod
    def _merge_single_answer(cls, data: Any) -> Any:
        # 兼容旧写法: answer 单个答案 + answers 额外答案
        if isinstance(data, dict) and "answer" in data:
            data = dict(data)
            single = data.pop("answer")
            extra = list(data.get("answers") or [])
            if single not in (None, "") and str(single) not in extra:
                extra.insert(0, str(single))
            data["answers"] = extra
        return data

    @property
    def uses_level(self) -> bool:
        """判定过程是否需要申请人等级"""
        if self.auto_accept_level > 0:
            return True
        return self.mode not in (VerifyMode.IGNORE_ALL, VerifyMode.ANSWER_ONLY)


class ScheduledTask(BaseModel):
    """一条任务配置，加载后不可变，重载时整体替换"""

    model_config = ConfigDict(frozen=True)

    name: str
    type: TaskType
    target_type: TargetType = TargetType.GROUP
    target_ids: tuple[int, ...] = ()
    cron: Optional[str] = None
    content: str = ""
    enable: bool = True
    member_ids: tuple[int, ...] = ()
    duration: int = 0
    send_notice: bool = False
    notice_content: str = ""
    verify: Optional[VerificationPolicy] = None

    @model_validator(mode="before")
    @classmethod
    def _merge_single_ids(cls, data: Any) -> Any:
        # 兼容旧写法: target_id / member_id 单个 ID
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for single, plural in (("target_id", "target_ids"), ("member_id", "member_ids")):
            if single in data:
                value = data.pop(single)
                ids = list(data.get(plural) or [])
                if value is not None and value not in ids:
                    ids.insert(0, value)
                data[plural] = ids
        return data

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("任务名称不能为空")
        return v

    @field_validator("cron")
    @classmethod
    def _check_cron(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not is_valid_cron(v):
            raise ValueError(f"无效的 cron 表达式: {v!r}")
        return v

    @model_validator(mode="after")
    def _check_payload(self) -> "ScheduledTask":
        if not self.target_ids:
            raise ValueError("至少需要一个目标 ID")
        if self.type == TaskType.GROUP_REQUEST_VERIFY:
            if self.verify is None:
                raise ValueError("进群审核任务缺少 verify 配置")
            if self.target_type != TargetType.GROUP:
                raise ValueError("进群审核任务的目标类型必须为 GROUP")
            return self

        if not self.cron:
            raise ValueError("定时任务缺少 cron 表达式")
        if self.type == TaskType.SEND_MESSAGE and not self.content:
            raise ValueError("发送消息任务缺少 content")
        if self.type in (TaskType.GROUP_BAN_ALL, TaskType.GROUP_BAN_MEMBER):
            if self.target_type != TargetType.GROUP:
                raise ValueError("禁言任务的目标类型必须为 GROUP")
        if self.type == TaskType.GROUP_BAN_MEMBER and not self.member_ids:
            raise ValueError("成员禁言任务缺少 member_ids")
        if self.duration < 0:
            raise ValueError("禁言时长不能为负数")
        return self

    @property
    def is_scheduled(self) -> bool:
        return self.type != TaskType.GROUP_REQUEST_VERIFY


class BotConfig(BaseModel):
    websocket: str = Field(DEFAULT_WEBSOCKET, description="OneBot 正向 WebSocket 地址")
    access_token: Optional[str] = Field(None, description="鉴权令牌，以 Bearer 方式发送")
    call_timeout: float = Field(5.0, description="等待指令回执的超时秒数")
    reconnect_interval: float = Field(5.0, description="断线后重连间隔秒数")


class SafetyConfig(BaseModel):
    enable_msg_limit: bool = Field(True, description="是否启用发送频率限制")
    msg_interval_ms: int = Field(1500, description="任意两条消息之间的最小间隔")
    group_msg_limit: int = Field(20, description="单个群每分钟消息上限")
    private_msg_limit: int = Field(10, description="单个私聊每分钟消息上限")
    task_min_interval_ms: int = Field(5000, description="任意两次任务执行之间的最小间隔")
    enable_auto_risk_control: bool = Field(True, description="是否对风控返回码给出警告")
    risk_control_retcodes: tuple[int, ...] = Field((1200,), description="视为风控的返回码")


class ExecutorConfig(BaseModel):
    max_attempts: int = Field(3, ge=1, description="任务最多尝试次数")
    retry_delay: float = Field(1.0, ge=0, description="重试间隔秒数")


class LogConfig(BaseModel):
    level: str = Field("INFO", description="日志级别")
    dir: Optional[str] = Field(None, description="日志输出目录，不指定则仅控制台")
    enable_message_log: bool = Field(False, description="是否记录收到的聊天消息")
    task_log_dir: str = Field("logs/tasks", description="任务执行记录目录")
    max_logs_per_task: int = Field(100, ge=1, description="每个任务保留的执行记录数量")
    export_dir: str = Field("exports", description="执行记录导出目录")


class ServerConfig(BaseModel):
    enabled: bool = Field(False, description="是否启用 HTTP 管理接口")
    host: str = Field("127.0.0.1", description="HTTP 监听地址")
    port: int = Field(8080, description="HTTP 监听端口")


class AppConfig(BaseModel):
    bot: BotConfig = Field(default_factory=BotConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    log: LogConfig = Field(default_factory=LogConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    scheduled_tasks: list[ScheduledTask] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: str | Path = "config.yaml") -> "AppConfig":
        """
        读取配置文件。

        配置文件不存在时抛出 FileNotFoundError；
        除 scheduled_tasks 外的配置有误时抛出 ValidationError。
        """
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"配置文件不存在: {p}")
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        data = dict(data)
        raw_tasks = data.pop("scheduled_tasks", None) or []
        config = cls.model_validate(data)
        config.scheduled_tasks = load_tasks(raw_tasks)
        config.apply_env()
        return config

    def apply_env(self):
        """环境变量优先于配置文件"""
        url = os.environ.get("ONEBOT_WS_URL")
        if url:
            self.bot.websocket = url
        token = os.environ.get("ONEBOT_ACCESS_TOKEN")
        if token:
            self.bot.access_token = token

    def placeholder_warnings(self) -> list[str]:
        """检查配置中是否仍有模板默认值"""
        warnings = []
        if self.bot.websocket == DEFAULT_WEBSOCKET:
            warnings.append(f"bot.websocket 仍为默认值 {DEFAULT_WEBSOCKET}")
        for task in self.scheduled_tasks:
            ids = set(task.target_ids) | set(task.member_ids)
            if ids & PLACEHOLDER_IDS:
                warnings.append(f"任务 {task.name} 中的群号/QQ号仍为示例值")
        return warnings


def load_tasks(raw_tasks: list) -> list[ScheduledTask]:
    """逐条校验任务配置，无效或重名的任务被跳过"""
    tasks: list[ScheduledTask] = []
    names: set[str] = set()
    for index, raw in enumerate(raw_tasks):
        label = raw.get("name", f"#{index + 1}") if isinstance(raw, dict) else f"#{index + 1}"
        try:
            task = ScheduledTask.model_validate(raw)
        except ValidationError as e:
            logger.warning("任务 %s 配置无效，已跳过: %s", label, _brief(e))
            continue
        if task.name in names:
            logger.warning("任务名称 %s 重复，已跳过", task.name)
            continue
        names.add(task.name)
        tasks.append(task)
    logger.info("共加载 %d 个任务 (配置中 %d 个)", len(tasks), len(raw_tasks))
    return tasks


def _brief(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'task'}: {err['msg']}"
        for err in error.errors()
    )
