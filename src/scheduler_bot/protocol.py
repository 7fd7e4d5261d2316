"""
OneBot 通信协议数据结构

出站指令:   {"action", "params", "echo"}
入站回执:   {"echo", "status", "retcode", "data"}
入站事件:   {"post_type", ...}

所有模型基于标准库 dataclass，与网关之间只交换 JSON。
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class EventKind(str, Enum):
    """入站事件类型"""

    MESSAGE = "message"   # 群聊/私聊消息
    REQUEST = "request"   # 加好友/进群申请
    NOTICE = "notice"     # 群成员变动、禁言等通知
    META = "meta_event"   # 生命周期等元事件（心跳在分发前已被过滤）


# 事件中标识二级类型的字段，按 post_type 区分
_DETAIL_TYPE_KEYS: dict[str, str] = {
    "message": "message_type",
    "message_sent": "message_type",
    "request": "request_type",
    "notice": "notice_type",
    "meta_event": "meta_event_type",
}


def new_echo() -> str:
    """生成唯一的关联标识"""
    return uuid.uuid4().hex


@dataclass
class Command:
    """
    出站指令

    Attributes:
        action: 网关动作名，如 send_group_msg
        params: 动作参数
        echo:   关联标识，网关在回执中原样返回
    """
    action: str
    params: dict[str, Any] = field(default_factory=dict)
    echo: str = field(default_factory=new_echo)

    def to_wire(self) -> dict[str, Any]:
        return {"action": self.action, "params": self.params, "echo": self.echo}


@dataclass
class Response:
    """
    指令回执

    Attributes:
        echo:    对应指令的关联标识
        status:  ok / async / failed
        retcode: 返回码，0 表示成功
        data:    返回数据
        message: 失败时网关给出的说明
    """
    echo: str
    status: str
    retcode: int
    data: Any = None
    message: str = ""

    @property
    def ok(self) -> bool:
        # async 回执的 retcode 固定为 1
        return self.status == "async" or (self.status == "ok" and self.retcode == 0)

    @classmethod
    def from_wire(cls, payload: dict) -> "Response":
        retcode = payload.get("retcode", 0)
        try:
            retcode = int(retcode)
        except (TypeError, ValueError):
            retcode = -1
        return cls(
            echo=str(payload.get("echo", "")),
            status=str(payload.get("status", "")),
            retcode=retcode,
            data=payload.get("data"),
            message=str(payload.get("wording") or payload.get("message") or payload.get("msg") or ""),
        )


@dataclass
class Event:
    """
    入站事件

    Attributes:
        kind: 事件类型
        name: 扁平化事件名，如 request.group.add、message.group.normal
        data: 原始事件数据
    """
    kind: EventKind
    name: str
    data: dict = field(default_factory=dict)

    @classmethod
    def from_wire(cls, payload: dict) -> Optional["Event"]:
        """将原始事件解析为 Event，未知 post_type 返回 None"""
        post_type = payload.get("post_type", "")
        if post_type == "message_sent":
            kind = EventKind.MESSAGE
        else:
            try:
                kind = EventKind(post_type)
            except ValueError:
                return None

        parts = [post_type]
        detail = payload.get(_DETAIL_TYPE_KEYS[post_type])
        if detail:
            parts.append(str(detail))
        sub_type = payload.get("sub_type")
        if sub_type:
            parts.append(str(sub_type))
        return cls(kind=kind, name=".".join(parts), data=payload)
