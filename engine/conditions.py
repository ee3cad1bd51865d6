"""
OpenClaw - Condition Evaluation

Step conditions and conditional tool grants are small boolean
expressions evaluated against accumulated run state:

    classification.category == 'refund'
    classification.confidence >= 0.8 and not escalated
    trigger.type != 'schedule' or project.vip == true
    tags contains 'urgent'

Grammar (no parentheses; `and` binds tighter than `or`):
    expr   := term ('or' term)*
    term   := factor ('and' factor)*
    factor := 'not' factor | comparison | path | 'true' | 'false'
    comparison := path OP value      OP ∈ == != >= <= > < contains
    value      := 'quoted' | "quoted" | number | true | false | null

Quoted values are opaque: `and` / `or` inside them are not operators.

Paths are resolved by the caller-supplied lookup (RunState.get). An
unresolvable path is None, which makes comparisons false rather than
raising, so a condition on a skipped step's output quietly skips.
"""

from __future__ import annotations

import re
from typing import Any, Callable

Lookup = Callable[[str], Any]

_COMPARISON = re.compile(
    r"^([A-Za-z_][A-Za-z0-9_.\-]*)\s*(==|!=|>=|<=|>|<|\bcontains\b)\s*(.+)$"
)
_PATH = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")


class ConditionSyntaxError(ValueError):
    """Raised when a condition expression cannot be parsed."""


def evaluate_condition(condition: str | None, lookup: Lookup) -> bool:
    """Evaluate a condition; an empty condition is always true."""
    if condition is None or not condition.strip():
        return True
    return any(
        all(_evaluate_factor(f, lookup) for f in _split(term, "and"))
        for term in _split(condition, "or")
    )


def validate_condition(condition: str) -> None:
    """Parse without evaluating; raises ConditionSyntaxError on bad syntax."""
    evaluate_condition(condition, lambda _path: None)


def _split(expr: str, keyword: str) -> list[str]:
    # Padded so a leading or trailing keyword leaves an empty part
    padded = f" {expr.strip()} "
    parts, start = [], 0
    for m in re.finditer(rf"'[^']*'|\"[^\"]*\"|(\s+{keyword}\s+)", padded):
        if m.group(1):
            parts.append(padded[start:m.start()])
            start = m.end()
    parts.append(padded[start:])
    if any(not p.strip() for p in parts):
        raise ConditionSyntaxError(f"Dangling '{keyword}' in condition: {expr!r}")
    return parts


def _evaluate_factor(factor: str, lookup: Lookup) -> bool:
    factor = factor.strip()
    if factor.startswith("not "):
        return not _evaluate_factor(factor[4:], lookup)
    if factor.lower() == "true":
        return True
    if factor.lower() == "false":
        return False

    m = _COMPARISON.match(factor)
    if m:
        path, op, raw_value = m.group(1), m.group(2), m.group(3).strip()
        return _compare(lookup(path), op, _parse_value(raw_value))

    if _PATH.match(factor):
        return bool(lookup(factor))

    raise ConditionSyntaxError(f"Cannot parse condition: {factor!r}")


def _parse_value(raw: str) -> Any:
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "'\"":
        return raw[1:-1]
    if raw.lower() == "true":
        return True
    if raw.lower() == "false":
        return False
    if raw.lower() in ("null", "none"):
        return None
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        pass
    return raw


def _compare(actual: Any, op: str, expected: Any) -> bool:
    try:
        if op == "==":
            return actual == expected
        if op == "!=":
            return actual != expected
        if op == "contains":
            if isinstance(actual, (list, tuple, set, str)):
                return expected in actual
            if isinstance(actual, dict):
                return expected in actual
            return False
        if actual is None:
            return False
        if op == ">":
            return float(actual) > float(expected)
        if op == "<":
            return float(actual) < float(expected)
        if op == ">=":
            return float(actual) >= float(expected)
        if op == "<=":
            return float(actual) <= float(expected)
    except (TypeError, ValueError):
        return False
    return False
