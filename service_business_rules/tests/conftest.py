"""
Fixtures for Business Rules Service tests.
"""

import uuid
from typing import Any, Dict

import pytest

from service_business_rules.app.rules.actions import ActionExecutor
from service_business_rules.app.rules.engine import RuleEngine
from service_business_rules.app.rules.models import BusinessRule, RuleEngineContext, RuleType
from shared.test_helpers import ORG_ID, TENANT_ID


@pytest.fixture
def make_rule():
    """Factory for in-memory rules."""

    def _make(**overrides) -> BusinessRule:
        data: Dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "rule_id": "RULE-001",
            "rule_name": "Test rule",
            "rule_type": RuleType.VALIDATION,
            "entity_type": "order",
            "tenant_id": TENANT_ID,
            "organization_id": ORG_ID,
        }
        data.update(overrides)
        return BusinessRule(**data)

    return _make


@pytest.fixture
def make_context():
    """Factory for engine contexts."""

    def _make(data: Any = None, **overrides) -> RuleEngineContext:
        fields: Dict[str, Any] = {
            "entity_type": "order",
            "tenant_id": TENANT_ID,
            "organization_id": ORG_ID,
            "data": data if data is not None else {},
        }
        fields.update(overrides)
        return RuleEngineContext(**fields)

    return _make


@pytest.fixture
def engine():
    """Engine with default actions and no webhook client."""
    return RuleEngine(action_executor=ActionExecutor())
