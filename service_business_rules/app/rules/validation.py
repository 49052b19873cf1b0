"""
Whole-payload validation for business rules.
"""

from typing import Any, List, Mapping

from .actions import validate_actions_for_api
from .conditions import DEFAULT_LIMITS, ConditionLimits, validate_condition_expression_for_api
from .models import ValidationResult


def validate_rule_payload(payload: Mapping[str, Any], limits: ConditionLimits = DEFAULT_LIMITS) -> ValidationResult:
    """Validate the condition and both action lists of a rule payload."""
    errors: List[str] = []

    condition = validate_condition_expression_for_api(payload.get("condition_expression"), limits)
    if not condition.valid:
        errors.extend(f"Condition: {e}" for e in condition.errors)

    success = validate_actions_for_api(payload.get("success_actions"), "success_actions")
    if not success.valid:
        errors.extend(f"Success actions: {e}" for e in success.errors)

    failure = validate_actions_for_api(payload.get("failure_actions"), "failure_actions")
    if not failure.valid:
        errors.extend(f"Failure actions: {e}" for e in failure.errors)

    if errors:
        return ValidationResult.failed(errors)
    return ValidationResult.ok()
