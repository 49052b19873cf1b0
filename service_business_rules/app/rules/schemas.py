"""
Request schemas for the Business Rules Service.

Condition and action validators read their limits from the pydantic
validation context (``context={"limits": ConditionLimits(...)}``) so the
configured bounds apply; without a context the defaults are used.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic_core import PydanticCustomError

from .actions import validate_actions_for_api
from .conditions import DEFAULT_LIMITS, ConditionLimits, validate_condition_expression_for_api
from .models import ExecutionResult, RuleType, ensure_aware


def _limits(info: ValidationInfo) -> ConditionLimits:
    if info.context and isinstance(info.context.get("limits"), ConditionLimits):
        return info.context["limits"]
    return DEFAULT_LIMITS


def _check_condition(value: Any, info: ValidationInfo) -> Any:
    result = validate_condition_expression_for_api(value, _limits(info))
    if not result.valid:
        raise PydanticCustomError("invalid_condition", result.error)
    return value


def _check_actions(value: Any, info: ValidationInfo) -> Any:
    result = validate_actions_for_api(value, info.field_name)
    if not result.valid:
        raise PydanticCustomError("invalid_actions", result.error)
    return value


def _check_window(effective_from: Optional[datetime], effective_to: Optional[datetime]):
    if effective_from and effective_to and effective_from > effective_to:
        raise ValueError("effective_from must not be after effective_to")


class RuleFields(BaseModel):
    """Validators shared by create and update payloads."""

    model_config = ConfigDict(extra="ignore")

    @field_validator("condition_expression", check_fields=False)
    @classmethod
    def validate_condition(cls, value: Any, info: ValidationInfo) -> Any:
        return _check_condition(value, info)

    @field_validator("success_actions", "failure_actions", check_fields=False)
    @classmethod
    def validate_actions(cls, value: Any, info: ValidationInfo) -> Any:
        return _check_actions(value, info)

    @field_validator("effective_from", "effective_to", check_fields=False)
    @classmethod
    def validate_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(value)


class RuleCreate(RuleFields):
    """Rule creation payload."""
    rule_id: str = Field(..., min_length=1, max_length=50)
    rule_name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    rule_type: RuleType
    rule_category: Optional[str] = Field(None, max_length=50)
    entity_type: str = Field(..., min_length=1, max_length=50)
    event_type: Optional[str] = Field(None, max_length=50)
    condition_expression: Optional[Any] = None
    success_actions: Optional[Any] = None
    failure_actions: Optional[Any] = None
    enabled: bool = True
    priority: int = Field(100, ge=0, le=9999)
    version: int = Field(1, ge=1)
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_window(self) -> "RuleCreate":
        _check_window(self.effective_from, self.effective_to)
        return self


class RuleUpdate(RuleFields):
    """Partial rule update; only fields present in the payload are applied."""
    rule_id: Optional[str] = Field(None, min_length=1, max_length=50)
    rule_name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    rule_type: Optional[RuleType] = None
    rule_category: Optional[str] = Field(None, max_length=50)
    entity_type: Optional[str] = Field(None, min_length=1, max_length=50)
    event_type: Optional[str] = Field(None, max_length=50)
    condition_expression: Optional[Any] = None
    success_actions: Optional[Any] = None
    failure_actions: Optional[Any] = None
    enabled: Optional[bool] = None
    priority: Optional[int] = Field(None, ge=0, le=9999)
    version: Optional[int] = Field(None, ge=1)
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_window(self) -> "RuleUpdate":
        _check_window(self.effective_from, self.effective_to)
        return self

    def changes(self) -> Dict[str, Any]:
        """Fields explicitly sent by the caller, explicit nulls included."""
        data = self.model_dump(exclude_unset=True)
        for key in ("rule_id", "rule_name", "rule_type", "entity_type", "enabled", "priority", "version"):
            if key in data and data[key] is None:
                del data[key]
        return data


class RuleFilter(BaseModel):
    """Query parameters for listing rules."""
    id: Optional[str] = None
    rule_id: Optional[str] = None
    search: Optional[str] = None
    rule_type: Optional[RuleType] = None
    entity_type: Optional[str] = None
    event_type: Optional[str] = None
    enabled: Optional[bool] = None
    rule_category: Optional[str] = None
    sort_field: str = Field("priority", pattern="^(rule_id|rule_name|rule_type|entity_type|priority|created_at|updated_at)$")
    sort_dir: str = Field("desc", pattern="^(asc|desc)$")
    page: int = Field(1, ge=1)
    page_size: int = Field(50, ge=1, le=100)


class ValidateRuleRequest(BaseModel):
    """Payload for dry validation of a rule's condition and actions."""
    model_config = ConfigDict(extra="ignore")

    condition_expression: Optional[Any] = None
    success_actions: Optional[Any] = None
    failure_actions: Optional[Any] = None


class EngineContextRequest(BaseModel):
    """Runtime context for rule execution requests."""
    model_config = ConfigDict(extra="ignore")

    entity_type: str = Field(..., min_length=1, max_length=50)
    entity_id: Optional[str] = None
    event_type: Optional[str] = Field(None, max_length=50)
    data: Any = None
    user: Dict[str, Any] = Field(default_factory=dict)
    tenant: Dict[str, Any] = Field(default_factory=dict)
    organization: Dict[str, Any] = Field(default_factory=dict)
    rule_type: Optional[RuleType] = None
    dry_run: bool = False


class RuleSetCreate(BaseModel):
    set_id: str = Field(..., min_length=1, max_length=50)
    set_name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    enabled: bool = True


class RuleSetUpdate(BaseModel):
    set_id: Optional[str] = Field(None, min_length=1, max_length=50)
    set_name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    enabled: Optional[bool] = None


class RuleSetMemberCreate(BaseModel):
    rule_id: str = Field(..., min_length=1)
    sequence: int = Field(0, ge=0)
    enabled: bool = True


class RuleSetMemberUpdate(BaseModel):
    sequence: Optional[int] = Field(None, ge=0)
    enabled: Optional[bool] = None


class ExecutionLogFilter(BaseModel):
    """Query parameters for the execution history."""
    rule_id: Optional[str] = None
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    execution_result: Optional[ExecutionResult] = None
    executed_by: Optional[str] = None
    executed_from: Optional[datetime] = None
    executed_to: Optional[datetime] = None
    page: int = Field(1, ge=1)
    page_size: int = Field(50, ge=1, le=100)

    @field_validator("executed_from", "executed_to")
    @classmethod
    def validate_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(value)


def format_validation_errors(errors: List[Dict[str, Any]]) -> str:
    """Flatten pydantic errors into ``loc: message; loc: message``."""
    parts = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)
