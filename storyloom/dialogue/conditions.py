"""
Condition evaluation - pure boolean logic over the two flag stores.
"""

from __future__ import annotations

import logging
import operator
from typing import Any, Callable

from storyloom.dialogue.definitions import (
    AndCondition,
    CheckCondition,
    Condition,
    NotCondition,
    OrCondition,
)
from storyloom.dialogue.flags import ScopedFlags

logger = logging.getLogger(__name__)

_ORDERING: dict[str, Callable[[Any, Any], bool]] = {
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
}

OPERATORS = frozenset({"==", "!="} | set(_ORDERING))


def _kind(value: Any) -> str | None:
    """Comparison family of a value (booleans are not numbers here)."""
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return None


def compare(left: Any, op: str, right: Any) -> bool:
    """
    Apply a check operator.

    Equality is strict on kind: True == 1 is False. Ordering only holds
    between two numbers or two strings; anything else is False.
    """
    if op == "==":
        return _kind(left) is not None and _kind(left) == _kind(right) and left == right
    if op == "!=":
        return not compare(left, "==", right)

    fn = _ORDERING.get(op)
    if fn is None:
        logger.debug(f"Unknown condition operator {op!r}, failing closed")
        return False

    kind = _kind(left)
    if kind not in ("number", "string") or kind != _kind(right):
        return False
    return fn(left, right)


def evaluate(condition: Condition, flags: ScopedFlags) -> bool:
    """
    Evaluate a condition tree.

    Args:
        condition: check / and / or / not node
        flags: Game and conversation stores

    Returns:
        The boolean result. Unrecognised shapes evaluate to False.
    """
    if isinstance(condition, CheckCondition):
        return compare(flags.get(condition.flag), condition.operator, condition.value)

    if isinstance(condition, AndCondition):
        # all()/any() short-circuit left to right over the generator
        return all(evaluate(c, flags) for c in condition.conditions)

    if isinstance(condition, OrCondition):
        return any(evaluate(c, flags) for c in condition.conditions)

    if isinstance(condition, NotCondition):
        return not evaluate(condition.condition, flags)

    logger.debug(f"Unrecognised condition {condition!r}, failing closed")
    return False


class ConditionEvaluator:
    """Evaluates conditions against a fixed pair of flag stores."""

    def __init__(self, flags: ScopedFlags):
        self.flags = flags

    def evaluate(self, condition: Condition) -> bool:
        return evaluate(condition, self.flags)
