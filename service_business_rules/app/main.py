"""
Business Rules service: rule management and execution over HTTP.
"""

import dataclasses
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import Body, Depends, Header, Request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import AuthenticationError, NotFoundError, ServiceError, ValidationError
from shared.observability import ObservabilityManager

from .persistence.postgres import PostgreSQLPersistence
from .rules.actions import ActionExecutor
from .rules.conditions import ConditionLimits
from .rules.engine import RuleEngine
from .rules.execution_log import ExecutionLogStore
from .rules.models import (
    BusinessRule, RuleEngineContext, RuleSet, RuleSetMember, new_id, utcnow
)
from .rules.schemas import (
    EngineContextRequest, ExecutionLogFilter, RuleCreate, RuleFilter, RuleSetCreate,
    RuleSetMemberCreate, RuleSetMemberUpdate, RuleSetUpdate, RuleUpdate, format_validation_errors
)
from .rules.validation import validate_rule_payload
from .webhooks.client import WebhookClient

ModelT = TypeVar("ModelT", bound=BaseModel)

SERVICE_NAME = "business_rules"
SERVICE_PORT = 8020


@dataclass
class RequestScope:
    tenant_id: str
    organization_id: str
    user_id: Optional[str] = None


def _parse_scope_id(value: Optional[str], header: str) -> str:
    if not value:
        raise AuthenticationError(f"Missing {header} header")
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise AuthenticationError(f"Invalid {header} header")


class BusinessRulesService(BaseService):
    """Business rules service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config)

        self.observability = ObservabilityManager(SERVICE_NAME, self.metrics)
        self.limits = ConditionLimits.from_config(self.config)

        self.webhook_client = WebhookClient.from_config(self.config)
        self.rule_engine = RuleEngine(
            action_executor=ActionExecutor(webhook_client=self.webhook_client, metrics=self.metrics),
            execution_logs=ExecutionLogStore(self.config.execution_log_capacity),
            metrics=self.metrics,
            max_cache_entries=self.config.rule_cache_max_entries
        )
        self.persistence: Optional[PostgreSQLPersistence] = None
        if self.config.persistence_enabled:
            self.persistence = PostgreSQLPersistence(self.config.postgres_dsn)

        self._setup_business_rules_routes()

    # Helpers

    async def get_scope(self,
                        x_tenant_id: Optional[str] = Header(None),
                        x_organization_id: Optional[str] = Header(None),
                        x_user_id: Optional[str] = Header(None)) -> RequestScope:
        """Resolve the caller's tenant/organization scope from headers."""
        scope = RequestScope(
            tenant_id=_parse_scope_id(x_tenant_id, "X-Tenant-Id"),
            organization_id=_parse_scope_id(x_organization_id, "X-Organization-Id"),
            user_id=x_user_id or None
        )
        self.observability.bind_scope(scope.user_id, scope.tenant_id, scope.organization_id)
        return scope

    def _parse(self, model: Type[ModelT], payload: Any) -> ModelT:
        try:
            return model.model_validate(payload, context={"limits": self.limits})
        except PydanticValidationError as e:
            message = format_validation_errors(e.errors())
            raise ValidationError(f"Validation failed: {message}", {"errors": [err["msg"] for err in e.errors()]})

    def _rule_or_404(self, rule_uuid: str, scope: RequestScope) -> BusinessRule:
        rule = self.rule_engine.get_rule(rule_uuid, scope.tenant_id, scope.organization_id)
        if rule is None:
            raise NotFoundError("Rule not found", {"id": rule_uuid})
        return rule

    def _rule_set_or_404(self, set_uuid: str, scope: RequestScope) -> RuleSet:
        rule_set = self.rule_engine.get_rule_set(set_uuid, scope.tenant_id, scope.organization_id)
        if rule_set is None:
            raise NotFoundError("Rule set not found", {"id": set_uuid})
        return rule_set

    def _engine_context(self, request: EngineContextRequest, scope: RequestScope) -> RuleEngineContext:
        user = dict(request.user)
        if scope.user_id:
            user["id"] = scope.user_id
        return RuleEngineContext(
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            event_type=request.event_type,
            data=request.data,
            user=user,
            tenant={**request.tenant, "id": scope.tenant_id},
            organization={**request.organization, "id": scope.organization_id},
            tenant_id=scope.tenant_id,
            organization_id=scope.organization_id,
            executed_by=scope.user_id,
            dry_run=request.dry_run
        )

    async def _persist_rule(self, rule: BusinessRule) -> bool:
        if self.persistence is None:
            return True
        return await self.persistence.save_rule(rule)

    async def _persist_rule_set(self, rule_set: RuleSet, previous: Optional[RuleSet] = None):
        """Save a rule set; on failure put ``previous`` back, or drop a new set."""
        if self.persistence is None or await self.persistence.save_rule_set(rule_set):
            return

        if previous is None:
            self.rule_engine.remove_rule_set(rule_set.id, hard=True)
        else:
            self.rule_engine.restore_rule_set(previous)
        raise ServiceError("Failed to save rule set to database", {"id": rule_set.id})

    @staticmethod
    def _check_window(effective_from: Optional[datetime], effective_to: Optional[datetime]):
        if effective_from and effective_to and effective_from > effective_to:
            raise ValidationError("Validation failed: effective_from must not be after effective_to")

    def _setup_business_rules_routes(self):
        """Set up business-rules routes."""

        get_scope = self.get_scope

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Business Rules Service",
                "version": "1.0.0",
                "capabilities": ["rule_engine", "rule_sets", "execution_logs", "webhooks", "persistence"]
            }

        # Rules

        @self.app.get("/business-rules/rules")
        async def list_rules(request: Request, scope: RequestScope = Depends(get_scope)):
            """List rules in the caller's scope with filtering, sorting and paging."""
            filters = self._parse(RuleFilter, dict(request.query_params))
            rules = self.rule_engine.list_rules(scope.tenant_id, scope.organization_id)

            if filters.id:
                rules = [r for r in rules if r.id == filters.id]
            if filters.rule_id:
                needle = filters.rule_id.lower()
                rules = [r for r in rules if needle in r.rule_id.lower()]
            if filters.search:
                needle = filters.search.lower()
                rules = [r for r in rules if needle in r.rule_name.lower()]
            if filters.rule_type:
                rules = [r for r in rules if r.rule_type == filters.rule_type]
            if filters.entity_type:
                rules = [r for r in rules if r.entity_type == filters.entity_type]
            if filters.event_type:
                rules = [r for r in rules if r.event_type == filters.event_type]
            if filters.enabled is not None:
                rules = [r for r in rules if r.enabled == filters.enabled]
            if filters.rule_category:
                rules = [r for r in rules if r.rule_category == filters.rule_category]

            rules.sort(key=lambda r: r.rule_id)
            rules.sort(key=lambda r: _sort_value(r, filters.sort_field), reverse=filters.sort_dir == "desc")

            total = len(rules)
            start = (filters.page - 1) * filters.page_size
            return {
                "items": [r.to_dict() for r in rules[start:start + filters.page_size]],
                "total": total,
                "page": filters.page,
                "page_size": filters.page_size,
                "total_pages": max(1, math.ceil(total / filters.page_size))
            }

        @self.app.get("/business-rules/rules/{rule_uuid}")
        async def get_rule(rule_uuid: str, scope: RequestScope = Depends(get_scope)):
            return self._rule_or_404(rule_uuid, scope).to_dict()

        @self.app.post("/business-rules/rules", status_code=201)
        async def create_rule(payload: Dict[str, Any] = Body(...), scope: RequestScope = Depends(get_scope)):
            """Create a new rule."""
            request = self._parse(RuleCreate, payload)
            fields = request.model_dump()
            fields["success_actions"] = fields["success_actions"] or []
            fields["failure_actions"] = fields["failure_actions"] or []

            rule = BusinessRule(
                id=new_id(),
                tenant_id=scope.tenant_id,
                organization_id=scope.organization_id,
                created_by=scope.user_id,
                updated_by=scope.user_id,
                **fields
            )
            self.rule_engine.add_rule(rule)

            if not await self._persist_rule(rule):
                self.rule_engine.remove_rule(rule.id, hard=True)
                raise ServiceError("Failed to save rule to database", {"rule_id": rule.rule_id})

            self.observability.log_business_event("rule_created", rule_id=rule.rule_id, id=rule.id)
            return {"id": rule.id}

        @self.app.put("/business-rules/rules/{rule_uuid}")
        async def update_rule(rule_uuid: str, payload: Dict[str, Any] = Body(...),
                              scope: RequestScope = Depends(get_scope)):
            """Apply a partial update to a rule."""
            existing = self._rule_or_404(rule_uuid, scope)
            changes = self._parse(RuleUpdate, payload).changes()
            for key in ("success_actions", "failure_actions"):
                if key in changes and changes[key] is None:
                    changes[key] = []

            updated = dataclasses.replace(existing, updated_by=scope.user_id, updated_at=utcnow(), **changes)
            self._check_window(updated.effective_from, updated.effective_to)
            self.rule_engine.update_rule(updated)

            if not await self._persist_rule(updated):
                self.rule_engine.update_rule(existing)
                raise ServiceError("Failed to save rule to database", {"rule_id": existing.rule_id})

            self.observability.log_business_event("rule_updated", rule_id=updated.rule_id, id=updated.id)
            return {"ok": True}

        @self.app.delete("/business-rules/rules/{rule_uuid}")
        async def delete_rule(rule_uuid: str, scope: RequestScope = Depends(get_scope)):
            """Soft-delete a rule."""
            rule = self._rule_or_404(rule_uuid, scope)
            self.rule_engine.remove_rule(rule.id)

            if self.persistence is not None and not await self.persistence.delete_rule(rule.id):
                rule.deleted_at = None
                self.rule_engine.update_rule(rule)
                raise ServiceError("Failed to delete rule from database", {"rule_id": rule.rule_id})

            self.observability.log_business_event("rule_deleted", rule_id=rule.rule_id, id=rule.id)
            return {"ok": True}

        @self.app.post("/business-rules/validate")
        async def validate_rule(payload: Dict[str, Any] = Body(...), scope: RequestScope = Depends(get_scope)):
            """Validate a rule's condition and actions without storing it."""
            return dataclasses.asdict(validate_rule_payload(payload, self.limits))

        # Execution

        @self.app.post("/business-rules/execute")
        async def execute_rules(payload: Dict[str, Any] = Body(...), scope: RequestScope = Depends(get_scope)):
            """Run every applicable rule for an entity/event."""
            request = self._parse(EngineContextRequest, payload)
            context = self._engine_context(request, scope)
            result = await self.rule_engine.execute(context, request.rule_type)
            self._log_execution("rules_executed", context, result)
            return result

        @self.app.post("/business-rules/rules/{rule_uuid}/execute")
        async def execute_rule(rule_uuid: str, payload: Dict[str, Any] = Body(...),
                               scope: RequestScope = Depends(get_scope)):
            context = self._engine_context(self._parse(EngineContextRequest, payload), scope)
            result = await self.rule_engine.execute_rule(rule_uuid, context)
            self._log_execution("rule_executed", context, result)
            return result

        @self.app.post("/business-rules/execute/{rule_id}")
        async def execute_rule_by_rule_id(rule_id: str, payload: Dict[str, Any] = Body(...),
                                          scope: RequestScope = Depends(get_scope)):
            context = self._engine_context(self._parse(EngineContextRequest, payload), scope)
            result = await self.rule_engine.execute_rule_by_rule_id(rule_id, context)
            self._log_execution("rule_executed", context, result)
            return result

        # Rule sets

        @self.app.get("/business-rules/sets")
        async def list_rule_sets(scope: RequestScope = Depends(get_scope)):
            sets = self.rule_engine.list_rule_sets(scope.tenant_id, scope.organization_id)
            return {"items": [s.to_dict() for s in sets], "total": len(sets)}

        @self.app.post("/business-rules/sets", status_code=201)
        async def create_rule_set(payload: Dict[str, Any] = Body(...), scope: RequestScope = Depends(get_scope)):
            request = self._parse(RuleSetCreate, payload)
            rule_set = RuleSet(
                id=new_id(),
                tenant_id=scope.tenant_id,
                organization_id=scope.organization_id,
                created_by=scope.user_id,
                **request.model_dump()
            )
            self.rule_engine.add_rule_set(rule_set)
            await self._persist_rule_set(rule_set)
            self.observability.log_business_event("rule_set_created", set_id=rule_set.set_id, id=rule_set.id)
            return {"id": rule_set.id}

        @self.app.get("/business-rules/sets/{set_uuid}")
        async def get_rule_set(set_uuid: str, scope: RequestScope = Depends(get_scope)):
            return self._rule_set_or_404(set_uuid, scope).to_dict()

        @self.app.put("/business-rules/sets/{set_uuid}")
        async def update_rule_set(set_uuid: str, payload: Dict[str, Any] = Body(...),
                                  scope: RequestScope = Depends(get_scope)):
            existing = self._rule_set_or_404(set_uuid, scope)
            changes = {
                k: v for k, v in self._parse(RuleSetUpdate, payload).model_dump(exclude_unset=True).items()
                if v is not None or k == "description"
            }
            previous = existing.snapshot()
            updated = dataclasses.replace(existing, **changes)
            self.rule_engine.update_rule_set(updated)
            await self._persist_rule_set(updated, previous)
            return {"ok": True}

        @self.app.delete("/business-rules/sets/{set_uuid}")
        async def delete_rule_set(set_uuid: str, scope: RequestScope = Depends(get_scope)):
            rule_set = self._rule_set_or_404(set_uuid, scope)
            previous = rule_set.snapshot()
            self.rule_engine.remove_rule_set(rule_set.id)
            await self._persist_rule_set(rule_set, previous)
            return {"ok": True}

        @self.app.post("/business-rules/sets/{set_uuid}/members", status_code=201)
        async def add_rule_set_member(set_uuid: str, payload: Dict[str, Any] = Body(...),
                                      scope: RequestScope = Depends(get_scope)):
            rule_set = self._rule_set_or_404(set_uuid, scope)
            request = self._parse(RuleSetMemberCreate, payload)
            previous = rule_set.snapshot()
            member = RuleSetMember(
                id=new_id(),
                rule_set_id=rule_set.id,
                tenant_id=scope.tenant_id,
                organization_id=scope.organization_id,
                **request.model_dump()
            )
            self.rule_engine.add_member(rule_set, member)
            await self._persist_rule_set(rule_set, previous)
            return {"id": member.id}

        @self.app.put("/business-rules/sets/{set_uuid}/members/{member_id}")
        async def update_rule_set_member(set_uuid: str, member_id: str, payload: Dict[str, Any] = Body(...),
                                         scope: RequestScope = Depends(get_scope)):
            rule_set = self._rule_set_or_404(set_uuid, scope)
            member = next((m for m in rule_set.members if m.id == member_id), None)
            if member is None:
                raise NotFoundError("Rule set member not found", {"id": member_id})

            request = self._parse(RuleSetMemberUpdate, payload)
            previous = rule_set.snapshot()
            if request.sequence is not None:
                member.sequence = request.sequence
            if request.enabled is not None:
                member.enabled = request.enabled
            rule_set.updated_at = utcnow()
            await self._persist_rule_set(rule_set, previous)
            return {"ok": True}

        @self.app.delete("/business-rules/sets/{set_uuid}/members/{member_id}")
        async def remove_rule_set_member(set_uuid: str, member_id: str, scope: RequestScope = Depends(get_scope)):
            rule_set = self._rule_set_or_404(set_uuid, scope)
            previous = rule_set.snapshot()
            if not self.rule_engine.remove_member(rule_set, member_id):
                raise NotFoundError("Rule set member not found", {"id": member_id})
            await self._persist_rule_set(rule_set, previous)
            return {"ok": True}

        @self.app.post("/business-rules/sets/{set_uuid}/execute")
        async def execute_rule_set(set_uuid: str, payload: Dict[str, Any] = Body(...),
                                   scope: RequestScope = Depends(get_scope)):
            context = self._engine_context(self._parse(EngineContextRequest, payload), scope)
            result = await self.rule_engine.execute_rule_set(set_uuid, context)
            self._log_execution("rule_set_executed", context, result)
            return result

        # History and stats

        @self.app.get("/business-rules/logs")
        async def list_execution_logs(request: Request,
                                      scope: RequestScope = Depends(get_scope)):
            """Query execution history, newest first."""
            filters = self._parse(ExecutionLogFilter, dict(request.query_params))
            items, total = self.rule_engine.execution_logs.query(
                scope.tenant_id,
                scope.organization_id,
                rule_id=filters.rule_id,
                entity_id=filters.entity_id,
                entity_type=filters.entity_type,
                execution_result=filters.execution_result,
                executed_by=filters.executed_by,
                executed_from=filters.executed_from,
                executed_to=filters.executed_to,
                page=filters.page,
                page_size=filters.page_size
            )
            return {
                "items": [dataclasses.asdict(log) for log in items],
                "total": total,
                "page": filters.page,
                "page_size": filters.page_size,
                "total_pages": max(1, math.ceil(total / filters.page_size))
            }

        @self.app.get("/business-rules/stats")
        async def get_stats(scope: RequestScope = Depends(get_scope)):
            """Get business rules service statistics."""
            persistence_stats: Dict[str, Any] = {"enabled": self.persistence is not None}
            if self.persistence is not None:
                persistence_stats.update(await self.persistence.get_rule_stats())

            return {
                "engine": self.rule_engine.get_engine_stats(scope.tenant_id, scope.organization_id),
                "execution_logs": self.rule_engine.execution_logs.get_stats(),
                "webhooks": self.webhook_client.get_stats(),
                "persistence": persistence_stats,
                "timestamp": utcnow().isoformat()
            }

    def _log_execution(self, event_type: str, context: RuleEngineContext, result):
        self.observability.log_business_event(
            event_type,
            entity_type=context.entity_type,
            entity_id=context.entity_id,
            entity_event=context.event_type,
            rules=len(result.executed_rules),
            allowed=result.allowed,
            dry_run=context.dry_run
        )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check business rules service dependencies."""
        dependencies = {}

        if self.persistence is not None:
            try:
                dependencies["postgres"] = "ok" if await self.persistence.health_check() else "error"
            except Exception:
                dependencies["postgres"] = "error"

        return dependencies

    async def start(self):
        """Start business rules service components."""
        if self.persistence is None:
            self.logger.info("Business rules service started without persistence")
            return

        await self.persistence.start()

        rules = await self.persistence.load_all_rules()
        for rule in rules:
            self.rule_engine.add_rule(rule)
        rule_sets = await self.persistence.load_all_rule_sets()
        for rule_set in rule_sets:
            self.rule_engine.add_rule_set(rule_set)

        self.logger.info("Business rules service started", rules=len(rules), rule_sets=len(rule_sets))

    async def stop(self):
        """Stop business rules service components."""
        if self.persistence is not None:
            await self.persistence.stop()

        self.logger.info("Business rules service stopped")


def _sort_value(rule: BusinessRule, field: str) -> Any:
    value = getattr(rule, field)
    return value.value if hasattr(value, "value") else value


def create_app(config: Optional[ServiceConfig] = None):
    """Create business rules service application."""
    service = BusinessRulesService(config)
    return service.app


if __name__ == "__main__":
    service = BusinessRulesService()
    service.run()
