"""
flow_engines.rules -- Pure rule evaluation.

Responsibility:
    Evaluate a ``{all?, any?}`` rule set of ``{field, operator, value}``
    conditions against a nested payload.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import flow_kernel/domain/ types.

Invariants enforced:
    - Empty ``all`` and empty ``any`` are each vacuously true, so a policy
      without rules always matches.
    - Result = every ``all`` condition matches AND (``any`` is empty OR at
      least one ``any`` condition matches).
    - ``gt``/``gte``/``lt``/``lte`` only compare numbers; any other type
      fails closed (False).  Booleans are not numbers.
    - Equality is strict: ``1`` does not equal ``True`` or ``"1"``.
    - A missing path is distinct from an explicit ``None``.

Failure modes:
    - InvalidRuleError when an unparsed rule document is malformed.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping

from flow_kernel.domain.rules import (
    NUMERIC_OPERATORS,
    RuleCondition,
    RuleOperator,
    RuleSet,
    parse_rule_set,
)


class _Missing:
    """Sentinel for a path that does not resolve."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


def resolve_path(payload: Any, path: str) -> Any:
    """Dot-path traversal over nested mappings (and list indexes).

    Returns ``MISSING`` when any segment does not resolve.
    """
    current = payload
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _strict_equals(left: Any, right: Any) -> bool:
    if left is MISSING or right is MISSING:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
            return list(left) == list(right)
        return False
    return left == right


def match_condition(condition: RuleCondition, payload: Any) -> bool:
    """Evaluate one condition against ``payload``."""
    actual = resolve_path(payload, condition.field)
    expected = condition.value
    op = condition.operator

    if op == RuleOperator.EXISTS:
        return actual is not MISSING and actual is not None
    if op == RuleOperator.EQ:
        return _strict_equals(actual, expected)
    if op == RuleOperator.NEQ:
        return not _strict_equals(actual, expected)
    if op in NUMERIC_OPERATORS:
        if not (_is_number(actual) and _is_number(expected)):
            return False
        if op == RuleOperator.GT:
            return actual > expected
        if op == RuleOperator.GTE:
            return actual >= expected
        if op == RuleOperator.LT:
            return actual < expected
        return actual <= expected
    if op == RuleOperator.IN:
        if not isinstance(expected, (list, tuple)):
            return False
        return any(_strict_equals(actual, candidate) for candidate in expected)
    if op == RuleOperator.CONTAINS:
        if isinstance(actual, (list, tuple)):
            return any(_strict_equals(item, expected) for item in actual)
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        return False
    raise AssertionError(f"unhandled operator {op!r}")


def evaluate(rules: RuleSet | Mapping[str, Any] | None, payload: Any) -> bool:
    """``allMatch(all) AND anyMatch(any)`` with empty groups vacuously true."""
    if rules is None:
        return True
    if not isinstance(rules, RuleSet):
        rules = parse_rule_set(rules)

    all_match = all(match_condition(c, payload) for c in rules.all_of)
    any_match = not rules.any_of or any(match_condition(c, payload) for c in rules.any_of)
    return all_match and any_match
