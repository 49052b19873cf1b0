"""
Condition expression grammar: safety limits, structural validation and
evaluation.

A condition is either a simple comparison::

    {"field": "order.total", "operator": ">=", "value": 100, "dataType": "NUMBER"}

or a logical group of sub-conditions::

    {"operator": "AND", "rules": [...]}

Any mapping carrying a ``rules`` key is treated as a group. ``None`` means
"no condition" and always evaluates to true.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, List, Mapping, Optional, Tuple

from shared.errors import ConditionEvaluationError

from .models import ComparisonOperator, DataType, LogicalOperator, ValidationResult
from .paths import FieldPathError, is_valid_field_path, template_reference

Resolver = Callable[[str], Any]

LOGICAL_OPERATORS = {op.value for op in LogicalOperator}
COMPARISON_OPERATORS = {op.value for op in ComparisonOperator}
DATA_TYPES = {dt.value for dt in DataType}

VALUELESS_OPERATORS = {ComparisonOperator.IS_EMPTY.value, ComparisonOperator.IS_NOT_EMPTY.value}
LIST_OPERATORS = {ComparisonOperator.IN.value, ComparisonOperator.NOT_IN.value}

TRUTHY_STRINGS = {"true", "1", "yes", "on"}
FALSY_STRINGS = {"false", "0", "no", "off", ""}


@dataclass(frozen=True)
class ConditionLimits:
    """Bounds applied to condition trees before they are stored or run."""
    max_depth: int = 10
    max_rules_per_group: int = 50
    max_field_path_length: int = 200
    max_regex_length: int = 500
    max_structural_depth: int = 5

    @classmethod
    def from_config(cls, config: Any) -> "ConditionLimits":
        return cls(
            max_depth=config.max_condition_depth,
            max_rules_per_group=config.max_rules_per_group,
            max_field_path_length=config.max_field_path_length,
            max_regex_length=config.max_regex_length,
            max_structural_depth=config.max_structural_depth,
        )

    def safety_message(self) -> str:
        return (
            "Condition expression exceeds safety limits "
            f"(max depth: {self.max_depth}, "
            f"max rules per group: {self.max_rules_per_group}, "
            f"max field path length: {self.max_field_path_length})"
        )


DEFAULT_LIMITS = ConditionLimits()


def is_group(expr: Any) -> bool:
    return isinstance(expr, Mapping) and "rules" in expr


def is_safe_expression(expr: Any, limits: ConditionLimits = DEFAULT_LIMITS) -> bool:
    """Cheap bounds check run ahead of structural validation.

    Stops descending as soon as a limit is crossed, so arbitrarily deep
    payloads are rejected without walking them in full.
    """
    if expr is None:
        return True

    def _check(node: Any, depth: int) -> bool:
        if depth > limits.max_depth:
            return False
        if not isinstance(node, Mapping):
            return True
        if is_group(node):
            rules = node.get("rules")
            if not isinstance(rules, list):
                return True
            if len(rules) > limits.max_rules_per_group:
                return False
            return all(_check(child, depth + 1) for child in rules)
        field = node.get("field")
        if field is not None and len(str(field)) > limits.max_field_path_length:
            return False
        return True

    return _check(expr, 0)


def validate_condition_expression(
    expr: Any,
    depth: int = 0,
    max_depth: Optional[int] = None,
    limits: ConditionLimits = DEFAULT_LIMITS
) -> ValidationResult:
    """Collect every structural error in ``expr``.

    Errors inside groups carry their location, e.g. ``rules[1].rules[0]: ...``.
    """
    if max_depth is None:
        max_depth = limits.max_depth

    problems = _collect_errors(expr, depth, max_depth, limits)
    if not problems:
        return ValidationResult.ok()
    return ValidationResult.failed([_format_error(location, message) for location, message in problems])


def validate_condition_expression_for_api(
    expr: Any,
    limits: ConditionLimits = DEFAULT_LIMITS
) -> ValidationResult:
    """Validate an optional condition coming from a request body."""
    if expr is None:
        return ValidationResult.ok()

    if not is_safe_expression(expr, limits):
        return ValidationResult.failed([limits.safety_message()])

    result = validate_condition_expression(expr, max_depth=limits.max_structural_depth, limits=limits)
    if result.valid:
        return result
    return ValidationResult.failed(result.errors, prefix="Invalid condition expression: ")


def _format_error(location: List[str], message: str) -> str:
    if not location:
        return message
    return f"{'.'.join(location)}: {message}"


def _collect_errors(node: Any, depth: int, max_depth: int, limits: ConditionLimits) -> List[Tuple[List[str], str]]:
    if depth > max_depth:
        return [([], f"Maximum nesting depth of {max_depth} exceeded")]
    if not isinstance(node, Mapping):
        return [([], "Condition must be an object")]
    if is_group(node):
        return _collect_group_errors(node, depth, max_depth, limits)
    return [([], message) for message in _simple_condition_errors(node, limits)]


def _collect_group_errors(node: Mapping, depth: int, max_depth: int, limits: ConditionLimits) -> List[Tuple[List[str], str]]:
    problems: List[Tuple[List[str], str]] = []

    operator = node.get("operator")
    if operator not in LOGICAL_OPERATORS:
        problems.append(([], f"Invalid logical operator: {operator}"))

    rules = node.get("rules")
    if not isinstance(rules, list):
        problems.append(([], "Condition group rules must be an array"))
        return problems
    if not rules:
        problems.append(([], "Condition group must contain at least one rule"))
        return problems
    if operator == LogicalOperator.NOT.value and len(rules) != 1:
        problems.append(([], "NOT group must contain exactly one rule"))

    for index, child in enumerate(rules):
        for location, message in _collect_errors(child, depth + 1, max_depth, limits):
            problems.append(([f"rules[{index}]"] + location, message))
    return problems


def _simple_condition_errors(node: Mapping, limits: ConditionLimits) -> List[str]:
    errors: List[str] = []

    field = node.get("field")
    if not isinstance(field, str) or not field.strip():
        errors.append("Field path is required")
    elif not is_valid_field_path(field, limits.max_field_path_length):
        errors.append(f"Invalid field path: {field}")

    operator = node.get("operator")
    if operator not in COMPARISON_OPERATORS:
        errors.append(f"Invalid comparison operator: {operator}")
    elif operator not in VALUELESS_OPERATORS:
        errors.extend(_value_errors(node, operator, limits))

    data_type = node.get("dataType")
    if data_type is not None and data_type not in DATA_TYPES:
        errors.append(f"Invalid data type: {data_type}")

    return errors


def _value_errors(node: Mapping, operator: str, limits: ConditionLimits) -> List[str]:
    if "value" not in node:
        return [f"Operator {operator} requires a value"]

    value = node["value"]
    reference = template_reference(value)
    if reference is not None:
        if not is_valid_field_path(reference, limits.max_field_path_length):
            return [f"Invalid field path: {reference}"]
        return []

    if operator in LIST_OPERATORS and not isinstance(value, list):
        return [f"Operator {operator} requires an array value"]

    if operator == ComparisonOperator.MATCHES.value:
        if not isinstance(value, str):
            return ["Invalid regular expression: pattern must be a string"]
        if len(value) > limits.max_regex_length:
            return [f"Invalid regular expression: pattern exceeds {limits.max_regex_length} characters"]
        try:
            re.compile(value)
        except re.error as e:
            return [f"Invalid regular expression: {e}"]

    return []


# Evaluation

def evaluate_condition(expr: Any, resolver: Resolver) -> bool:
    """Evaluate ``expr`` with field values supplied by ``resolver``."""
    if expr is None:
        return True
    return _evaluate(expr, resolver)


def _evaluate(node: Any, resolver: Resolver) -> bool:
    if not isinstance(node, Mapping):
        raise ConditionEvaluationError("Condition must be an object")

    if not is_group(node):
        return _evaluate_simple(node, resolver)

    operator = node.get("operator")
    rules = node.get("rules")
    if not isinstance(rules, list) or not rules:
        raise ConditionEvaluationError("Condition group must contain at least one rule")

    if operator == LogicalOperator.AND.value:
        return all(_evaluate(child, resolver) for child in rules)
    if operator == LogicalOperator.OR.value:
        return any(_evaluate(child, resolver) for child in rules)
    if operator == LogicalOperator.NOT.value:
        if len(rules) != 1:
            raise ConditionEvaluationError("NOT group must contain exactly one rule")
        return not _evaluate(rules[0], resolver)
    raise ConditionEvaluationError(f"Invalid logical operator: {operator}")


def _evaluate_simple(node: Mapping, resolver: Resolver) -> bool:
    field = node.get("field")
    operator = node.get("operator")
    if operator not in COMPARISON_OPERATORS:
        raise ConditionEvaluationError(f"Invalid comparison operator: {operator}")

    try:
        actual = resolver(field)
        expected = _resolve_expected(node.get("value"), resolver)
    except FieldPathError as e:
        raise ConditionEvaluationError(str(e), {"field": field}) from e

    data_type = node.get("dataType")
    if data_type is not None:
        if data_type not in DATA_TYPES:
            raise ConditionEvaluationError(f"Invalid data type: {data_type}")
        try:
            actual = coerce_value(actual, data_type)
            if operator in LIST_OPERATORS and isinstance(expected, list):
                expected = [coerce_value(item, data_type) for item in expected]
            else:
                expected = coerce_value(expected, data_type)
        except (TypeError, ValueError):
            return False

    return compare(actual, operator, expected)


def _resolve_expected(value: Any, resolver: Resolver) -> Any:
    reference = template_reference(value)
    if reference is not None:
        return resolver(reference)
    return value


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Apply one comparison operator."""
    op = ComparisonOperator(operator)

    if op in (ComparisonOperator.EQUALS, ComparisonOperator.DOUBLE_EQUALS):
        return _equals(actual, expected)
    elif op == ComparisonOperator.NOT_EQUALS:
        return not _equals(actual, expected)
    elif op in (ComparisonOperator.GREATER_THAN, ComparisonOperator.GREATER_THAN_OR_EQUAL,
                ComparisonOperator.LESS_THAN, ComparisonOperator.LESS_THAN_OR_EQUAL):
        return _ordered(actual, op, expected)
    elif op == ComparisonOperator.IN:
        return _in(actual, expected)
    elif op == ComparisonOperator.NOT_IN:
        return not _in(actual, expected)
    elif op == ComparisonOperator.CONTAINS:
        return _contains(actual, expected)
    elif op == ComparisonOperator.NOT_CONTAINS:
        return not _contains(actual, expected)
    elif op == ComparisonOperator.STARTS_WITH:
        return isinstance(actual, str) and expected is not None and actual.startswith(str(expected))
    elif op == ComparisonOperator.ENDS_WITH:
        return isinstance(actual, str) and expected is not None and actual.endswith(str(expected))
    elif op == ComparisonOperator.MATCHES:
        return _matches(actual, expected)
    elif op == ComparisonOperator.IS_EMPTY:
        return is_empty(actual)
    else:
        return not is_empty(actual)


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, Mapping)):
        return len(value) == 0
    return False


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    left, right = _normalize_pair(actual, expected)
    return left == right


def _ordered(actual: Any, op: ComparisonOperator, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    left, right = _normalize_pair(actual, expected)
    try:
        if op == ComparisonOperator.GREATER_THAN:
            return left > right
        if op == ComparisonOperator.GREATER_THAN_OR_EQUAL:
            return left >= right
        if op == ComparisonOperator.LESS_THAN:
            return left < right
        return left <= right
    except TypeError:
        return False


def _in(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple)):
        return False
    if isinstance(actual, (list, tuple)):
        return any(_equals(item, candidate) for item in actual for candidate in expected)
    return any(_equals(actual, candidate) for candidate in expected)


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, str):
        return expected is not None and str(expected) in actual
    if isinstance(actual, (list, tuple)):
        return any(_equals(item, expected) for item in actual)
    if isinstance(actual, Mapping):
        return expected in actual
    return False


def _matches(actual: Any, pattern: Any) -> bool:
    if actual is None or not isinstance(pattern, str):
        return False
    try:
        return re.search(pattern, str(actual)) is not None
    except re.error as e:
        raise ConditionEvaluationError(f"Invalid regular expression: {e}") from e


def _normalize_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    """Bring loosely typed operands onto a common footing."""
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None:
        return left_number, right_number

    if isinstance(left, datetime) or isinstance(right, datetime):
        try:
            return _as_datetime(left), _as_datetime(right)
        except (TypeError, ValueError):
            return left, right

    return left, right


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise TypeError(f"Cannot interpret {type(value).__name__} as a date")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce_value(value: Any, data_type: str) -> Any:
    """Coerce ``value`` to ``data_type``; ``None`` passes through unchanged.

    Raises ``ValueError``/``TypeError`` when the value cannot be coerced.
    """
    if value is None:
        return None

    kind = DataType(data_type)
    if kind == DataType.NUMBER:
        if isinstance(value, bool):
            raise TypeError("Booleans are not numbers")
        return float(value)
    if kind == DataType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in TRUTHY_STRINGS:
                return True
            if lowered in FALSY_STRINGS:
                return False
            raise ValueError(f"Not a boolean: {value}")
        if isinstance(value, (int, float)):
            return bool(value)
        raise TypeError(f"Cannot interpret {type(value).__name__} as a boolean")
    if kind == DataType.DATE:
        return _as_datetime(value)
    if kind == DataType.STRING:
        return value if isinstance(value, str) else str(value)
    return value
