"""
Rule types -- field-path + operator conditions.

Responsibility:
    Typed, immutable representation of the rule DSL used by approval
    policies and transition guards:

        {"all": [{"field": "amount", "operator": "gt", "value": 1000}],
         "any": [...]}

    ``parse_rule_set`` validates the wire document once; evaluation lives
    in ``flow_engines.rules``.

Architecture position:
    Kernel > Domain -- pure, zero I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from flow_kernel.exceptions import InvalidRuleError


class RuleOperator(str, Enum):
    """Supported comparison operators."""

    EXISTS = "exists"
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    CONTAINS = "contains"


# Operators that only compare numbers and fail closed otherwise.
NUMERIC_OPERATORS = frozenset(
    {RuleOperator.GT, RuleOperator.GTE, RuleOperator.LT, RuleOperator.LTE}
)


@dataclass(frozen=True)
class RuleCondition:
    """One ``{field, operator, value}`` predicate."""

    field: str
    operator: RuleOperator
    value: Any = None

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {"field": self.field, "operator": self.operator.value}
        if self.operator != RuleOperator.EXISTS:
            doc["value"] = self.value
        return doc


@dataclass(frozen=True)
class RuleSet:
    """Conjunction of ``all`` with disjunction of ``any``.

    Empty ``all_of`` and empty ``any_of`` are each vacuously true.
    """

    all_of: tuple[RuleCondition, ...] = ()
    any_of: tuple[RuleCondition, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.all_of and not self.any_of

    def to_document(self) -> dict[str, Any]:
        return {
            "all": [c.to_document() for c in self.all_of],
            "any": [c.to_document() for c in self.any_of],
        }


def parse_rule_condition(doc: Any) -> RuleCondition:
    """Validate and build a single condition.

    Raises:
        InvalidRuleError: missing field, unknown operator, or a value of the
            wrong shape for ``in``.
    """
    if not isinstance(doc, Mapping):
        raise InvalidRuleError("condition must be an object", rule=doc)
    field = doc.get("field")
    if not isinstance(field, str) or not field:
        raise InvalidRuleError("condition field must be a non-empty string", rule=doc)
    try:
        operator = RuleOperator(doc.get("operator"))
    except ValueError:
        raise InvalidRuleError(
            f"unknown operator {doc.get('operator')!r}", rule=doc
        ) from None
    value = doc.get("value")
    if operator == RuleOperator.IN and not isinstance(value, (list, tuple)):
        raise InvalidRuleError("'in' requires a list value", rule=doc)
    if isinstance(value, list):
        value = tuple(value)
    return RuleCondition(field=field, operator=operator, value=value)


def parse_rule_set(doc: Any) -> RuleSet:
    """Validate a ``{all?, any?}`` document.  ``None`` means no rules."""
    if doc is None:
        return RuleSet()
    if not isinstance(doc, Mapping):
        raise InvalidRuleError("rules must be an object with 'all' and/or 'any'", rule=doc)
    unknown = set(doc) - {"all", "any"}
    if unknown:
        raise InvalidRuleError(f"unknown rule keys: {sorted(unknown)}", rule=doc)

    groups: dict[str, tuple[RuleCondition, ...]] = {}
    for group in ("all", "any"):
        items = doc.get(group) or []
        if not isinstance(items, (list, tuple)):
            raise InvalidRuleError(f"'{group}' must be a list", rule=doc)
        groups[group] = tuple(parse_rule_condition(item) for item in items)
    return RuleSet(all_of=groups["all"], any_of=groups["any"])
