"""
消息文本处理: 长度截断、内联标记转换为 CQ 码、禁言时长格式化

内联标记:
    {@all}              → [CQ:at,qq=all]
    {@123456}           → [CQ:at,qq=123456]
    {image:https://...} → [CQ:image,file=https://...]
    {image:/path/a.png} → [CQ:image,file=file:///path/a.png]
"""

import re
from pathlib import Path

# 单条消息最大长度
MAX_MESSAGE_LENGTH = 4500

_AT_ALL_RE = re.compile(r"\{@(?:all|全体成员)\}")
_AT_USER_RE = re.compile(r"\{@(\d+)\}")
_IMAGE_RE = re.compile(r"\{image:([^{}]+)\}")
# 参数值已转义，CQ 码内不会出现 "]"
_CQ_CODE_RE = re.compile(r"\[CQ:[^\]]*\]")


def escape_cq(value: str) -> str:
    """转义 CQ 码参数值中的特殊字符"""
    return (
        value.replace("&", "&amp;")
        .replace("[", "&#91;")
        .replace("]", "&#93;")
        .replace(",", "&#44;")
    )


def _image_code(match: re.Match) -> str:
    source = match.group(1).strip()
    if not source.startswith(("http://", "https://", "file://", "base64://")):
        source = Path(source).expanduser().resolve().as_uri()
    return f"[CQ:image,file={escape_cq(source)}]"


def truncate(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """截断到 limit 个字符以内；跨过截断位置的 CQ 码整段舍弃"""
    if len(text) <= limit:
        return text
    cut = limit
    for match in _CQ_CODE_RE.finditer(text):
        if match.start() >= limit:
            break
        if match.end() > limit:
            cut = match.start()
            break
    return text[:cut]


def format_message(text: str) -> str:
    """将内联标记替换为 CQ 码，再截断超长文本"""
    text = _AT_ALL_RE.sub("[CQ:at,qq=all]", text)
    text = _AT_USER_RE.sub(lambda m: f"[CQ:at,qq={m.group(1)}]", text)
    text = _IMAGE_RE.sub(_image_code, text)
    return truncate(text)


def format_duration(seconds: int) -> str:
    """将禁言秒数格式化为 1天2小时3分钟4秒，<=0 视为永久"""
    if seconds <= 0:
        return "永久"

    days, seconds = divmod(seconds, 24 * 3600)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)

    parts = []
    if days:
        parts.append(f"{days}天")
    if hours:
        parts.append(f"{hours}小时")
    if minutes:
        parts.append(f"{minutes}分钟")
    if seconds or not parts:
        parts.append(f"{seconds}秒")
    return "".join(parts)
