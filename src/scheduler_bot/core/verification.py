"""
进群申请判定

decide(policy, answer, level) 根据答案、等级与审核模式给出 同意 / 拒绝 / 挂起。

判定顺序:
    1. 配置了自动通过等级且申请人等级达标 → 直接同意
    2. 否则按审核模式查表决定
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from ..models import VerificationPolicy, VerifyMode

_WHITESPACE_RE = re.compile(r"\s+")


class Outcome(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    HOLD = "hold"   # 暂不答复网关，等待人工处理


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    reason: str


def normalize_answer(text: str, policy: VerificationPolicy) -> str:
    text = text.strip()
    if policy.ignore_whitespace:
        text = _WHITESPACE_RE.sub("", text)
    if not policy.case_sensitive:
        text = text.lower()
    return text


def check_answer(policy: VerificationPolicy, answer: str) -> bool:
    """答案是否与任一可接受答案匹配。未配置答案时视为通过"""
    accepted = [normalize_answer(a, policy) for a in policy.answers]
    accepted = [a for a in accepted if a]
    if not accepted:
        return True

    candidate = normalize_answer(answer or "", policy)
    if not candidate:
        return False
    if policy.fuzzy_match:
        return any(a in candidate or candidate in a for a in accepted)
    return candidate in accepted


def check_level(policy: VerificationPolicy, level: int) -> bool:
    if policy.min_level <= 0:
        return True
    return level >= policy.min_level


@dataclass(frozen=True)
class _Checks:
    answer_ok: bool
    level_ok: bool
    level: int
    min_level: int

    @property
    def answer_text(self) -> str:
        return "答案正确" if self.answer_ok else "答案错误"

    @property
    def level_text(self) -> str:
        if self.level_ok:
            return f"等级 {self.level} 达标"
        return f"等级不足 ({self.level} < {self.min_level})"


def _ignore_all(c: _Checks) -> Decision:
    return Decision(Outcome.ACCEPT, "未启用验证，直接同意")


def _any_one_pass(c: _Checks) -> Decision:
    if c.answer_ok or c.level_ok:
        return Decision(Outcome.ACCEPT, f"{c.answer_text}，{c.level_text}")
    return Decision(Outcome.REJECT, f"{c.answer_text}且{c.level_text}")


def _both_required(c: _Checks) -> Decision:
    if c.answer_ok and c.level_ok:
        return Decision(Outcome.ACCEPT, f"{c.answer_text}，{c.level_text}")
    failed = []
    if not c.answer_ok:
        failed.append(c.answer_text)
    if not c.level_ok:
        failed.append(c.level_text)
    return Decision(Outcome.REJECT, "，".join(failed))


def _answer_only(c: _Checks) -> Decision:
    return Decision(Outcome.ACCEPT if c.answer_ok else Outcome.REJECT, c.answer_text)


def _level_only(c: _Checks) -> Decision:
    return Decision(Outcome.ACCEPT if c.level_ok else Outcome.REJECT, c.level_text)


def _answer_pass_level_pending(c: _Checks) -> Decision:
    if not c.answer_ok:
        return Decision(Outcome.REJECT, c.answer_text)
    if not c.level_ok:
        return Decision(Outcome.HOLD, f"答案正确但{c.level_text}，等待人工审核")
    return Decision(Outcome.ACCEPT, f"{c.answer_text}，{c.level_text}")


def _level_pass_answer_pending(c: _Checks) -> Decision:
    if not c.level_ok:
        return Decision(Outcome.REJECT, c.level_text)
    if not c.answer_ok:
        return Decision(Outcome.HOLD, f"{c.level_text}但答案错误，等待人工审核")
    return Decision(Outcome.ACCEPT, f"{c.answer_text}，{c.level_text}")


_MODE_RULES: dict[VerifyMode, Callable[[_Checks], Decision]] = {
    VerifyMode.IGNORE_ALL: _ignore_all,
    VerifyMode.ANY_ONE_PASS: _any_one_pass,
    VerifyMode.BOTH_REQUIRED: _both_required,
    VerifyMode.ANSWER_ONLY: _answer_only,
    VerifyMode.LEVEL_ONLY: _level_only,
    VerifyMode.ANSWER_PASS_LEVEL_PENDING: _answer_pass_level_pending,
    VerifyMode.LEVEL_PASS_ANSWER_PENDING: _level_pass_answer_pending,
}


def decide(policy: VerificationPolicy, answer: str, level: int) -> Decision:
    if policy.auto_accept_level > 0 and level >= policy.auto_accept_level:
        return Decision(Outcome.ACCEPT, f"等级 {level} 达到自动通过等级 {policy.auto_accept_level}")

    checks = _Checks(
        answer_ok=check_answer(policy, answer),
        level_ok=check_level(policy, level),
        level=level,
        min_level=policy.min_level,
    )
    return _MODE_RULES[policy.mode](checks)
