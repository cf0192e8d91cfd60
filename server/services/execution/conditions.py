"""Rule evaluation for condition nodes and gated actions.

Evaluates nested rule groups built in the logic editor:

    {
        "combinator": "AND",
        "rules": [
            {"valueA": "{{price.usd}}", "operator": ">", "valueB": "3000"},
            {"combinator": "OR", "rules": [...]}
        ]
    }

Supported operators:
- >: Greater than (numeric)
- <: Less than (numeric)
- ==: Equal
- !=: Not equal
- contains: String/list/dict contains value
- is_empty: Value is empty (None, "", [], {}); valueB is ignored
"""

from typing import Any, Dict, Optional

from core.logging import get_logger
from services.parameter_resolver import resolve_value

logger = get_logger(__name__)


# Type alias for rule / group dicts
RuleDict = Dict[str, Any]

COMBINATOR_AND = "AND"
COMBINATOR_OR = "OR"


def is_group(rule: RuleDict) -> bool:
    """A group carries a combinator and a rules list."""
    return isinstance(rule, dict) and "rules" in rule


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _loose_equals(a: Any, b: Any) -> bool:
    """Equality that tolerates numbers arriving as strings from the editor."""
    if a == b:
        return True
    num_a, num_b = _to_number(a), _to_number(b)
    if num_a is not None and num_b is not None:
        return num_a == num_b
    return False


def _evaluate_operator(operator: str, actual: Any, target: Any) -> bool:
    """Evaluate a single operator against resolved operands."""
    if operator == ">":
        a, b = _to_number(actual), _to_number(target)
        return a is not None and b is not None and a > b

    elif operator == "<":
        a, b = _to_number(actual), _to_number(target)
        return a is not None and b is not None and a < b

    elif operator == "==":
        return _loose_equals(actual, target)

    elif operator == "!=":
        return not _loose_equals(actual, target)

    elif operator == "contains":
        if actual is None or target is None:
            return False
        if isinstance(actual, str):
            return str(target) in actual
        if isinstance(actual, (list, tuple)):
            return target in actual or str(target) in [str(item) for item in actual]
        if isinstance(actual, dict):
            return str(target) in actual
        return False

    elif operator == "is_empty":
        if actual is None:
            return True
        if isinstance(actual, str):
            return actual.strip() == ""
        if isinstance(actual, (list, dict, tuple)):
            return len(actual) == 0
        return False

    logger.warning("Unknown operator", operator=operator)
    return False


def evaluate_rule(rule: RuleDict, context: Dict[str, Any]) -> bool:
    """Evaluate a single {valueA, operator, valueB} rule.

    Operands are resolved against the context first, so "{{node_1.price}}"
    compares the value produced by node_1.
    """
    operator = rule.get("operator", "==")
    actual = resolve_value(rule.get("valueA"), context)
    target = resolve_value(rule.get("valueB"), context)

    result = _evaluate_operator(operator, actual, target)
    logger.debug("Rule evaluated", operator=operator, actual=actual,
                 target=target, result=result)
    return result


def evaluate_group(group: RuleDict, context: Dict[str, Any]) -> bool:
    """Evaluate a rule group with short-circuit AND/OR.

    An empty group evaluates to True.
    """
    combinator = str(group.get("combinator", COMBINATOR_AND)).upper()
    rules = group.get("rules") or []

    if combinator == COMBINATOR_OR:
        return any(_evaluate_item(item, context) for item in rules) if rules else True
    return all(_evaluate_item(item, context) for item in rules)


def _evaluate_item(item: RuleDict, context: Dict[str, Any]) -> bool:
    if is_group(item):
        return evaluate_group(item, context)
    return evaluate_rule(item, context)


def rule_tree_from_inputs(inputs: Dict[str, Any]) -> RuleDict:
    """Extract the rule tree a condition node carries.

    Accepts, in order:
    - inputs["logic"]: a group built in the logic editor
    - inputs themselves when shaped like a group
    - legacy single rule {"variable", "operator", "value"}
    """
    logic = inputs.get("logic")
    if is_group(logic):
        return logic
    if is_group(inputs):
        return {"combinator": inputs.get("combinator", COMBINATOR_AND), "rules": inputs["rules"]}

    return {
        "combinator": COMBINATOR_AND,
        "rules": [{
            "valueA": inputs.get("valueA", inputs.get("variable")),
            "operator": inputs.get("operator", "=="),
            "valueB": inputs.get("valueB", inputs.get("value")),
        }],
    }


def evaluate(tree: RuleDict, context: Optional[Dict[str, Any]] = None) -> bool:
    """Evaluate a rule tree (group or single rule)."""
    context = context or {}
    try:
        return _evaluate_item(tree, context)
    except RecursionError:
        logger.error("Rule tree too deeply nested")
        return False


# Operator metadata for the logic editor
OPERATORS = {
    ">": {"label": "Greater Than", "requires_value": True},
    "<": {"label": "Less Than", "requires_value": True},
    "==": {"label": "Equals", "requires_value": True},
    "!=": {"label": "Not Equals", "requires_value": True},
    "contains": {"label": "Contains", "requires_value": True},
    "is_empty": {"label": "Is Empty", "requires_value": False},
}
