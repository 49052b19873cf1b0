"""
Rule data models for the Business Rules Service.

Enumerations define the condition/action grammar; dataclasses hold the
engine's in-memory records and execution results. Request and response
schemas for the HTTP surface live in :mod:`.schemas`.
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return str(uuid.uuid4())


class RuleType(str, Enum):
    """What a rule is used for by the host application."""
    GUARD = "GUARD"
    VALIDATION = "VALIDATION"
    CALCULATION = "CALCULATION"
    ACTION = "ACTION"
    ASSIGNMENT = "ASSIGNMENT"


class ConditionType(str, Enum):
    """Node kinds of a condition expression tree."""
    EXPRESSION = "EXPRESSION"
    GROUP = "GROUP"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class ComparisonOperator(str, Enum):
    EQUALS = "="
    DOUBLE_EQUALS = "=="
    NOT_EQUALS = "!="
    GREATER_THAN = ">"
    GREATER_THAN_OR_EQUAL = ">="
    LESS_THAN = "<"
    LESS_THAN_OR_EQUAL = "<="
    IN = "IN"
    NOT_IN = "NOT_IN"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    STARTS_WITH = "STARTS_WITH"
    ENDS_WITH = "ENDS_WITH"
    MATCHES = "MATCHES"
    IS_EMPTY = "IS_EMPTY"
    IS_NOT_EMPTY = "IS_NOT_EMPTY"


class DataType(str, Enum):
    STRING = "STRING"
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    ARRAY = "ARRAY"
    OBJECT = "OBJECT"


class ActionTrigger(str, Enum):
    ON_SUCCESS = "ON_SUCCESS"
    ON_FAILURE = "ON_FAILURE"
    ALWAYS = "ALWAYS"


class ExecutionResult(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ERROR = "ERROR"


class ActionType(str, Enum):
    ALLOW_TRANSITION = "ALLOW_TRANSITION"
    BLOCK_TRANSITION = "BLOCK_TRANSITION"
    LOG = "LOG"
    SHOW_ERROR = "SHOW_ERROR"
    SHOW_WARNING = "SHOW_WARNING"
    SHOW_INFO = "SHOW_INFO"
    NOTIFY = "NOTIFY"
    SET_FIELD = "SET_FIELD"
    CALL_WEBHOOK = "CALL_WEBHOOK"
    EMIT_EVENT = "EMIT_EVENT"


class ActionStatus(str, Enum):
    EXECUTED = "EXECUTED"
    PLANNED = "PLANNED"
    ERROR = "ERROR"


@dataclass
class BusinessRule:
    """A stored condition expression plus the actions it drives."""
    id: str
    rule_id: str
    rule_name: str
    rule_type: RuleType
    entity_type: str
    tenant_id: str
    organization_id: str
    description: Optional[str] = None
    rule_category: Optional[str] = None
    event_type: Optional[str] = None
    condition_expression: Optional[Dict[str, Any]] = None
    success_actions: List[Dict[str, Any]] = field(default_factory=list)
    failure_actions: List[Dict[str, Any]] = field(default_factory=list)
    enabled: bool = True
    priority: int = 100
    version: int = 1
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def in_scope(self, tenant_id: str, organization_id: str) -> bool:
        return self.tenant_id == tenant_id and self.organization_id == organization_id

    def is_effective(self, at: datetime) -> bool:
        """Check the optional effective window; both bounds are inclusive."""
        at = ensure_aware(at)
        if self.effective_from and ensure_aware(self.effective_from) > at:
            return False
        if self.effective_to and ensure_aware(self.effective_to) < at:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "description": self.description,
            "rule_type": self.rule_type.value,
            "rule_category": self.rule_category,
            "entity_type": self.entity_type,
            "event_type": self.event_type,
            "condition_expression": copy.deepcopy(self.condition_expression),
            "success_actions": copy.deepcopy(self.success_actions),
            "failure_actions": copy.deepcopy(self.failure_actions),
            "enabled": self.enabled,
            "priority": self.priority,
            "version": self.version,
            "effective_from": _isoformat(self.effective_from),
            "effective_to": _isoformat(self.effective_to),
            "tenant_id": self.tenant_id,
            "organization_id": self.organization_id,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "deleted_at": _isoformat(self.deleted_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BusinessRule":
        return cls(
            id=data["id"],
            rule_id=data["rule_id"],
            rule_name=data["rule_name"],
            description=data.get("description"),
            rule_type=RuleType(data["rule_type"]),
            rule_category=data.get("rule_category"),
            entity_type=data["entity_type"],
            event_type=data.get("event_type"),
            condition_expression=data.get("condition_expression"),
            success_actions=list(data.get("success_actions") or []),
            failure_actions=list(data.get("failure_actions") or []),
            enabled=data.get("enabled", True),
            priority=data.get("priority", 100),
            version=data.get("version", 1),
            effective_from=_parse_datetime(data.get("effective_from")),
            effective_to=_parse_datetime(data.get("effective_to")),
            tenant_id=data["tenant_id"],
            organization_id=data["organization_id"],
            created_by=data.get("created_by"),
            updated_by=data.get("updated_by"),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=_parse_datetime(data.get("updated_at")) or utcnow(),
            deleted_at=_parse_datetime(data.get("deleted_at")),
        )


@dataclass
class RuleSetMember:
    """Membership of a rule in a rule set."""
    id: str
    rule_set_id: str
    rule_id: str
    tenant_id: str
    organization_id: str
    sequence: int = 0
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rule_set_id": self.rule_set_id,
            "rule_id": self.rule_id,
            "sequence": self.sequence,
            "enabled": self.enabled,
            "tenant_id": self.tenant_id,
            "organization_id": self.organization_id,
        }


@dataclass
class RuleSet:
    """A named, ordered group of rules executed together."""
    id: str
    set_id: str
    set_name: str
    tenant_id: str
    organization_id: str
    description: Optional[str] = None
    enabled: bool = True
    created_by: Optional[str] = None
    members: List[RuleSetMember] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def in_scope(self, tenant_id: str, organization_id: str) -> bool:
        return self.tenant_id == tenant_id and self.organization_id == organization_id

    def ordered_members(self) -> List[RuleSetMember]:
        """Enabled members in execution order."""
        return sorted(
            (m for m in self.members if m.enabled),
            key=lambda m: (m.sequence, m.id)
        )

    def snapshot(self) -> "RuleSet":
        """Independent copy, members included."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "set_id": self.set_id,
            "set_name": self.set_name,
            "description": self.description,
            "enabled": self.enabled,
            "tenant_id": self.tenant_id,
            "organization_id": self.organization_id,
            "created_by": self.created_by,
            "members": [m.to_dict() for m in sorted(self.members, key=lambda m: (m.sequence, m.id))],
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "deleted_at": _isoformat(self.deleted_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleSet":
        return cls(
            id=data["id"],
            set_id=data["set_id"],
            set_name=data["set_name"],
            description=data.get("description"),
            enabled=data.get("enabled", True),
            tenant_id=data["tenant_id"],
            organization_id=data["organization_id"],
            created_by=data.get("created_by"),
            members=[RuleSetMember(**m) for m in data.get("members") or []],
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=_parse_datetime(data.get("updated_at")) or utcnow(),
            deleted_at=_parse_datetime(data.get("deleted_at")),
        )


@dataclass
class RuleExecutionLog:
    """One rule executed against one entity."""
    rule_id: str
    entity_type: str
    execution_result: ExecutionResult
    execution_time_ms: int
    tenant_id: str
    organization_id: str
    entity_id: Optional[str] = None
    input_context: Optional[Dict[str, Any]] = None
    output_context: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    executed_by: Optional[str] = None
    executed_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass
class RuleEngineContext:
    """Runtime input to the engine: the entity being acted upon and who acts."""
    entity_type: str
    tenant_id: str
    organization_id: str
    data: Any = None
    entity_id: Optional[str] = None
    event_type: Optional[str] = None
    user: Dict[str, Any] = field(default_factory=dict)
    tenant: Dict[str, Any] = field(default_factory=dict)
    organization: Dict[str, Any] = field(default_factory=dict)
    executed_by: Optional[str] = None
    dry_run: bool = False


@dataclass
class ActionOutcome:
    action_type: str
    status: ActionStatus
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class RuleExecutionOutcome:
    id: str
    rule_id: str
    rule_name: str
    rule_type: RuleType
    condition_result: Optional[bool]
    result: ExecutionResult
    actions: List[ActionOutcome] = field(default_factory=list)
    error: Optional[str] = None
    execution_time_ms: float = 0.0


@dataclass
class RuleEngineResult:
    """Aggregate outcome of one engine run."""
    allowed: bool = True
    executed_rules: List[RuleExecutionOutcome] = field(default_factory=list)
    messages: List[Dict[str, Any]] = field(default_factory=list)
    field_updates: Dict[str, Any] = field(default_factory=dict)
    output_data: Any = None
    events: List[Dict[str, Any]] = field(default_factory=list)
    notifications: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    total_execution_time_ms: float = 0.0
    dry_run: bool = False


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def failed(cls, errors: List[str], prefix: Optional[str] = None) -> "ValidationResult":
        joined = "; ".join(errors)
        return cls(
            valid=False,
            error=f"{prefix}{joined}" if prefix else joined,
            errors=list(errors)
        )


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    return ensure_aware(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
