"""
Cron 表达式工具

同时支持两种写法:
    - 标准 5 段:       分 时 日 月 周
    - Quartz 6/7 段:   秒 分 时 日 月 周 [年]

Quartz 写法会被转换为 croniter 的 6 段格式（秒位于末尾），
其中 "?" 视作 "*"，周字段的数字 1-7（周日=1）平移为 0-6（周日=0）。
"""

import re

from croniter import croniter


def _shift_quartz_dow(field: str) -> str:
    items = []
    for item in field.split(","):
        head, hash_sep, nth = item.partition("#")
        head, slash, step = head.partition("/")
        head = re.sub(r"\d+", lambda m: str(int(m.group()) - 1), head)
        items.append(head + slash + step + hash_sep + nth)
    return ",".join(items)


def normalize_cron(expr: str) -> str:
    """将 cron 表达式转换为 croniter 可识别的格式，无法转换时抛出 ValueError"""
    fields = expr.split()
    if len(fields) == 5:
        return " ".join("*" if f == "?" else f for f in fields)

    if len(fields) == 7:
        if fields[6] not in ("*", "?"):
            raise ValueError(f"不支持指定年份的 cron 表达式: {expr!r}")
        fields = fields[:6]
    if len(fields) != 6:
        raise ValueError(f"cron 表达式字段数应为 5、6 或 7: {expr!r}")

    fields = ["*" if f == "?" else f for f in fields]
    second, minute, hour, dom, month, dow = fields
    dow = _shift_quartz_dow(dow)
    return " ".join([minute, hour, dom, month, dow, second])


def is_valid_cron(expr: str) -> bool:
    try:
        return croniter.is_valid(normalize_cron(expr))
    except ValueError:
        return False
