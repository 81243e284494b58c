"""
Predicate compiler for segment rules.

Lowers a rule tree into a backend-agnostic filter expression with positional
`?` placeholders and the ordered list of values bound to them. Every node
compiles to its own (expression, params) fragment and the parent
concatenates them, so parameter order always follows emission order:
depth-first, left to right.

Relative dates ("visited within 30 days") are resolved to absolute
timestamps here, at compile time, so the emitted expression needs no
database-specific date arithmetic.

Leaves whose (field, operator) pair is not in OPERATOR_TABLE, or whose
value does not fit the operator's shape, compile to nothing and are
dropped from their parent. They are reported in `CompiledPredicate.dropped`;
pass `strict=True` to reject them instead.
"""
import enum
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from src.api.middleware.error_handler import RuleValidationError
from src.lib.logging import get_logger
from src.models.customers import CustomerStatus
from src.services.segment_rules import (
    Condition,
    CompositeRule,
    RuleTree,
    parse_rule_tree,
)

logger = get_logger(__name__)


class ValueShape(str, enum.Enum):
    """Accepted value shapes for a leaf condition."""
    NUMBER = "number"
    INTEGER = "integer"
    DAYS = "days"
    STATUS = "status"
    DATE = "date"
    NUMBER_RANGE = "number_range"  # {"min": ..., "max": ...}
    DATE_RANGE = "date_range"      # {"start": ..., "end": ...}
    NONE = "none"


@dataclass(frozen=True)
class OperatorSpec:
    """How one (field, operator) pair is emitted."""
    template: str
    shape: ValueShape


OPERATOR_TABLE: Dict[Tuple[str, str], OperatorSpec] = {
    ("total_spent", "greater_than"): OperatorSpec("total_spent > ?", ValueShape.NUMBER),
    ("total_spent", "less_than"): OperatorSpec("total_spent < ?", ValueShape.NUMBER),
    ("total_spent", "equals"): OperatorSpec("total_spent = ?", ValueShape.NUMBER),
    ("total_spent", "between"): OperatorSpec("total_spent BETWEEN ? AND ?", ValueShape.NUMBER_RANGE),

    ("total_orders", "greater_than"): OperatorSpec("total_orders > ?", ValueShape.INTEGER),
    ("total_orders", "less_than"): OperatorSpec("total_orders < ?", ValueShape.INTEGER),
    ("total_orders", "equals"): OperatorSpec("total_orders = ?", ValueShape.INTEGER),

    # "days_ago N": last visit is older than N days
    ("last_visit", "days_ago"): OperatorSpec("last_visit < ?", ValueShape.DAYS),
    ("last_visit", "within_days"): OperatorSpec("last_visit >= ?", ValueShape.DAYS),
    ("last_visit", "is_null"): OperatorSpec("last_visit IS NULL", ValueShape.NONE),

    ("status", "equals"): OperatorSpec("status = ?", ValueShape.STATUS),
    ("status", "not_equals"): OperatorSpec("status != ?", ValueShape.STATUS),

    ("registration_date", "after"): OperatorSpec("registration_date > ?", ValueShape.DATE),
    ("registration_date", "before"): OperatorSpec("registration_date < ?", ValueShape.DATE),
    ("registration_date", "between"): OperatorSpec(
        "registration_date BETWEEN ? AND ?", ValueShape.DATE_RANGE
    ),
}

SEGMENT_FIELDS = tuple(sorted({field_name for field_name, _ in OPERATOR_TABLE}))


def operators_for(field_name: str) -> List[str]:
    """Operators supported for a customer field, in table order."""
    return [op for (f, op) in OPERATOR_TABLE if f == field_name]


@dataclass(frozen=True)
class DroppedCondition:
    """A leaf that compiled to nothing, with where and why."""
    path: str
    condition: Condition
    reason: str


@dataclass(frozen=True)
class CompiledPredicate:
    """Filter expression with positional placeholders and bound values."""
    expression: str
    params: Tuple[Any, ...] = ()
    param_fields: Tuple[str, ...] = ()
    dropped: Tuple[DroppedCondition, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.expression

    @property
    def placeholder_count(self) -> int:
        return self.expression.count("?")

    def bound_params(self) -> List[Tuple[str, Any]]:
        """(field, value) pairs in placeholder order."""
        return list(zip(self.param_fields, self.params))


@dataclass(frozen=True)
class _Fragment:
    expression: str = ""
    params: Tuple[Any, ...] = ()
    fields: Tuple[str, ...] = ()
    dropped: Tuple[DroppedCondition, ...] = field(default_factory=tuple)


class _ShapeMismatch(ValueError):
    """Value does not fit the operator's declared shape."""


def compile_rules(
    rule: RuleTree,
    now: Optional[datetime] = None,
    strict: bool = False,
) -> CompiledPredicate:
    """
    Compile a parsed rule tree.

    Args:
        rule: Root Condition or CompositeRule
        now: Reference time for relative-date operators (defaults to UTC now)
        strict: Raise RuleValidationError instead of dropping unsupported leaves

    Returns:
        CompiledPredicate; `expression` is empty when nothing survived
    """
    reference = now or datetime.now(timezone.utc)
    fragment = _compile_node(rule, "", reference)

    if strict and fragment.dropped:
        raise RuleValidationError(
            "Segment rules contain unsupported conditions",
            errors=[{"path": d.path or "/", "msg": d.reason} for d in fragment.dropped],
        )

    for dropped in fragment.dropped:
        logger.warning(
            f"Dropped segment condition at '{dropped.path or '/'}': {dropped.reason}",
            extra={"field": dropped.condition.field, "operator": dropped.condition.operator},
        )

    return CompiledPredicate(
        expression=fragment.expression,
        params=fragment.params,
        param_fields=fragment.fields,
        dropped=fragment.dropped,
    )


def compile_segment_rules(
    rules: Any,
    now: Optional[datetime] = None,
    strict: bool = False,
) -> CompiledPredicate:
    """
    Parse, compile and require a non-empty predicate.

    This is the entry point for anything that will be run against the
    customer store: an empty predicate would otherwise match everyone.

    Raises:
        RuleValidationError: malformed tree or empty compiled expression
    """
    tree = rules if isinstance(rules, (Condition, CompositeRule)) else parse_rule_tree(rules)
    compiled = compile_rules(tree, now=now, strict=strict)
    if compiled.is_empty:
        raise RuleValidationError(
            "Invalid segment rules",
            errors=[{"path": d.path or "/", "msg": d.reason} for d in compiled.dropped]
            or [{"path": "/", "msg": "Rules compile to an empty predicate"}],
        )
    return compiled


def _compile_node(node: RuleTree, path: str, now: datetime) -> _Fragment:
    if isinstance(node, CompositeRule):
        return _compile_composite(node, path, now)
    if isinstance(node, Condition):
        return _compile_condition(node, path, now)
    raise TypeError(f"Unsupported rule node: {type(node).__name__}")


def _compile_composite(node: CompositeRule, path: str, now: datetime) -> _Fragment:
    children = [
        _compile_node(child, f"{path}/conditions/{index}" if path else f"conditions/{index}", now)
        for index, child in enumerate(node.conditions)
    ]
    dropped = tuple(d for child in children for d in child.dropped)
    survivors = [child for child in children if child.expression]
    if not survivors:
        return _Fragment(dropped=dropped)

    joined = f" {node.operator} ".join(child.expression for child in survivors)
    return _Fragment(
        expression=f"({joined})",
        params=tuple(p for child in survivors for p in child.params),
        fields=tuple(f for child in survivors for f in child.fields),
        dropped=dropped,
    )


def _compile_condition(node: Condition, path: str, now: datetime) -> _Fragment:
    entry = OPERATOR_TABLE.get((node.field, node.operator))
    if entry is None:
        reason = f"Unsupported operator '{node.operator}' for field '{node.field}'"
        return _Fragment(dropped=(DroppedCondition(path, node, reason),))

    try:
        params = _coerce(entry.shape, node.value, now)
    except _ShapeMismatch as exc:
        reason = f"Invalid value for {node.field} {node.operator}: {exc}"
        return _Fragment(dropped=(DroppedCondition(path, node, reason),))

    return _Fragment(
        expression=entry.template,
        params=params,
        fields=(node.field,) * len(params),
    )


# ===== Value coercion =====


def _coerce(shape: ValueShape, value: Any, now: datetime) -> Tuple[Any, ...]:
    if shape is ValueShape.NONE:
        return ()
    if shape is ValueShape.NUMBER:
        return (_to_number(value),)
    if shape is ValueShape.INTEGER:
        return (_to_integer(value),)
    if shape is ValueShape.DAYS:
        days = _to_integer(value)
        if days < 0:
            raise _ShapeMismatch("day count must not be negative")
        return (now - timedelta(days=days),)
    if shape is ValueShape.STATUS:
        return (_to_status(value),)
    if shape is ValueShape.DATE:
        return (_to_datetime(value),)
    if shape is ValueShape.NUMBER_RANGE:
        low, high = _range_bounds(value, "min", "max")
        return (_to_number(low), _to_number(high))
    if shape is ValueShape.DATE_RANGE:
        start, end = _range_bounds(value, "start", "end")
        return (_to_datetime(start), _to_datetime(end))
    raise TypeError(f"Unhandled value shape: {shape}")


def _to_number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise _ShapeMismatch(f"expected a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise _ShapeMismatch(f"expected a number, got {value!r}") from None
    if not math.isfinite(number):
        raise _ShapeMismatch(f"expected a finite number, got {value!r}")
    return number


def _to_integer(value: Any) -> int:
    return int(_to_number(value))


def _to_status(value: Any) -> str:
    if not isinstance(value, str):
        raise _ShapeMismatch(f"expected a status string, got {value!r}")
    try:
        return CustomerStatus(value.strip().lower()).value
    except ValueError:
        allowed = ", ".join(s.value for s in CustomerStatus)
        raise _ShapeMismatch(f"status must be one of {allowed}") from None


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            text = value.strip()
            if text[-1:] in ("Z", "z"):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise _ShapeMismatch(f"expected an ISO date, got {value!r}") from None
    else:
        raise _ShapeMismatch(f"expected an ISO date, got {value!r}")

    # Stored timestamps are UTC and SQLite compares them as text
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _range_bounds(value: Any, low_key: str, high_key: str) -> Tuple[Any, Any]:
    if not isinstance(value, dict) or low_key not in value or high_key not in value:
        raise _ShapeMismatch(f"expected {{{low_key}, {high_key}}}, got {value!r}")
    return value[low_key], value[high_key]
