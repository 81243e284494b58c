"""
Segment rule model.

A rule tree is either a single Condition leaf or a CompositeRule that joins
an ordered list of child trees with AND / OR. Trees arrive as JSON (from the
operator UI or from the rule-generation assistant) and are parsed here into
frozen dataclasses; nothing in this module knows how a rule is evaluated.

Shape:
    {"field": "total_spent", "operator": "greater_than", "value": 10000}

    {"operator": "AND", "conditions": [
        {"field": "status", "operator": "equals", "value": "active"},
        {"operator": "OR", "conditions": [...]}
    ]}
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Tuple, Union

from src.api.middleware.error_handler import RuleValidationError


LOGICAL_OPERATORS = ("AND", "OR")


@dataclass(frozen=True)
class Condition:
    """Leaf comparison on a single customer field."""

    field: str
    operator: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class CompositeRule:
    """AND / OR over an ordered sequence of child rules."""

    operator: str
    conditions: Tuple["RuleTree", ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operator": self.operator,
            "conditions": [child.to_dict() for child in self.conditions],
        }


RuleTree = Union[Condition, CompositeRule]


def parse_rule_tree(data: Any) -> RuleTree:
    """
    Parse and structurally validate a JSON rule tree.

    Only structure is checked here: composites need AND/OR and a list of
    children, leaves need a field, an operator and a `value` key (null is
    allowed, e.g. for `is_null`). Whether a (field, operator, value) triple
    is supported is the compiler's concern.

    Raises:
        RuleValidationError: with one entry per malformed node
    """
    errors: List[Dict[str, str]] = []
    tree = _parse_node(data, "", errors)
    if errors:
        raise RuleValidationError("Invalid segment rules", errors=errors)
    return tree


def _parse_node(data: Any, path: str, errors: List[Dict[str, str]]) -> RuleTree:
    if not isinstance(data, dict):
        errors.append({"path": path or "/", "msg": "Rule must be an object"})
        return Condition(field="", operator="")

    operator = data.get("operator")
    is_composite = "conditions" in data or (
        isinstance(operator, str) and operator.upper() in LOGICAL_OPERATORS
    )
    if is_composite:
        return _parse_composite(data, path, errors)
    return _parse_condition(data, path, errors)


def _parse_composite(data: Dict[str, Any], path: str, errors: List[Dict[str, str]]) -> CompositeRule:
    operator = data.get("operator")
    if not isinstance(operator, str) or operator.upper() not in LOGICAL_OPERATORS:
        errors.append({
            "path": _join(path, "operator"),
            "msg": f"Composite operator must be one of {', '.join(LOGICAL_OPERATORS)}",
        })
        operator = "AND"

    children = data.get("conditions")
    if not isinstance(children, list):
        errors.append({"path": _join(path, "conditions"), "msg": "Conditions must be a list"})
        children = []

    parsed = tuple(
        _parse_node(child, _join(path, f"conditions/{index}"), errors)
        for index, child in enumerate(children)
    )
    return CompositeRule(operator=operator.upper(), conditions=parsed)


def _parse_condition(data: Dict[str, Any], path: str, errors: List[Dict[str, str]]) -> Condition:
    field = data.get("field")
    operator = data.get("operator")

    if not isinstance(field, str) or not field.strip():
        errors.append({"path": _join(path, "field"), "msg": "Field is required"})
        field = ""
    if not isinstance(operator, str) or not operator.strip():
        errors.append({"path": _join(path, "operator"), "msg": "Operator is required"})
        operator = ""
    if "value" not in data:
        errors.append({"path": _join(path, "value"), "msg": "Value is required"})

    return Condition(field=field.strip(), operator=operator.strip(), value=data.get("value"))


def _join(path: str, key: str) -> str:
    return f"{path}/{key}" if path else key


def iter_conditions(tree: RuleTree) -> Iterator[Condition]:
    """Yield leaf conditions depth-first, left to right."""
    if isinstance(tree, Condition):
        yield tree
    elif isinstance(tree, CompositeRule):
        for child in tree.conditions:
            yield from iter_conditions(child)
    else:
        raise TypeError(f"Unsupported rule node: {type(tree).__name__}")
