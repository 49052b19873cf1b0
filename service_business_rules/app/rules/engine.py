"""
Rule execution engine for the Business Rules Service.
"""

import copy
import time
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import trace_operation

from .actions import ActionContext, ActionExecutor
from .conditions import Resolver, evaluate_condition
from .execution_log import ExecutionLogStore
from .models import (
    ActionStatus, ActionTrigger, BusinessRule, ExecutionResult, RuleEngineContext,
    RuleEngineResult, RuleExecutionLog, RuleExecutionOutcome, RuleSet, RuleSetMember,
    RuleType, ensure_aware, utcnow
)
from .paths import get_value, root_segment

CONTEXT_ROOTS = ("user", "tenant", "organization", "entity")


class RuleEngine:
    """Holds rules in memory and runs them against entity data."""

    def __init__(self,
                 action_executor: Optional[ActionExecutor] = None,
                 execution_logs: Optional[ExecutionLogStore] = None,
                 metrics: Optional[MetricsCollector] = None,
                 max_cache_entries: int = 1024):
        self.logger = get_logger("business_rules.rule_engine")
        self.metrics = metrics
        self.actions = action_executor or ActionExecutor(metrics=metrics)
        self.execution_logs = execution_logs or ExecutionLogStore()
        self.rules: Dict[str, BusinessRule] = {}
        self.rule_sets: Dict[str, RuleSet] = {}
        self.rule_cache: Dict[Tuple, List[BusinessRule]] = {}
        self.max_cache_entries = max_cache_entries

    # Rules

    def add_rule(self, rule: BusinessRule) -> BusinessRule:
        """Add a rule; ``rule_id`` must be unique within its scope."""
        self._ensure_unique_rule_id(rule)
        self.rules[rule.id] = rule
        self._invalidate_cache()
        self.logger.info("Rule added", rule_id=rule.rule_id, id=rule.id, rule_type=rule.rule_type.value)
        return rule

    def update_rule(self, rule: BusinessRule) -> BusinessRule:
        if rule.id not in self.rules:
            raise NotFoundError("Rule not found", {"id": rule.id})
        self._ensure_unique_rule_id(rule)
        self.rules[rule.id] = rule
        self._invalidate_cache()
        self.logger.info("Rule updated", rule_id=rule.rule_id, id=rule.id)
        return rule

    def remove_rule(self, rule_uuid: str, hard: bool = False) -> bool:
        """Soft-delete a rule (or drop it entirely with ``hard``)."""
        rule = self.rules.get(rule_uuid)
        if rule is None:
            return False

        if hard:
            del self.rules[rule_uuid]
        else:
            rule.deleted_at = utcnow()
            rule.updated_at = rule.deleted_at
        self._invalidate_cache()
        self.logger.info("Rule removed", rule_id=rule.rule_id, id=rule_uuid, hard=hard)
        return True

    def get_rule(self, rule_uuid: str, tenant_id: str, organization_id: str) -> Optional[BusinessRule]:
        """Live rule by UUID within a scope."""
        rule = self.rules.get(rule_uuid)
        if rule is None or rule.is_deleted or not rule.in_scope(tenant_id, organization_id):
            return None
        return rule

    def get_rule_by_rule_id(self, rule_id: str, tenant_id: str, organization_id: str) -> Optional[BusinessRule]:
        for rule in self.list_rules(tenant_id, organization_id):
            if rule.rule_id == rule_id:
                return rule
        return None

    def list_rules(self, tenant_id: str, organization_id: str) -> List[BusinessRule]:
        return [
            rule for rule in self.rules.values()
            if not rule.is_deleted and rule.in_scope(tenant_id, organization_id)
        ]

    def _ensure_unique_rule_id(self, rule: BusinessRule):
        existing = self.get_rule_by_rule_id(rule.rule_id, rule.tenant_id, rule.organization_id)
        if existing is not None and existing.id != rule.id:
            raise ValidationError(
                f"Validation failed: Rule with rule_id '{rule.rule_id}' already exists",
                {"rule_id": rule.rule_id}
            )

    # Rule sets

    def add_rule_set(self, rule_set: RuleSet) -> RuleSet:
        self._ensure_unique_set_id(rule_set)
        self.rule_sets[rule_set.id] = rule_set
        self.logger.info("Rule set added", set_id=rule_set.set_id, id=rule_set.id)
        return rule_set

    def update_rule_set(self, rule_set: RuleSet) -> RuleSet:
        if rule_set.id not in self.rule_sets:
            raise NotFoundError("Rule set not found", {"id": rule_set.id})
        self._ensure_unique_set_id(rule_set)
        rule_set.updated_at = utcnow()
        self.rule_sets[rule_set.id] = rule_set
        self.logger.info("Rule set updated", set_id=rule_set.set_id, id=rule_set.id)
        return rule_set

    def remove_rule_set(self, set_uuid: str, hard: bool = False) -> bool:
        rule_set = self.rule_sets.get(set_uuid)
        if rule_set is None:
            return False

        if hard:
            del self.rule_sets[set_uuid]
        else:
            rule_set.deleted_at = utcnow()
        self.logger.info("Rule set removed", set_id=rule_set.set_id, id=set_uuid, hard=hard)
        return True

    def restore_rule_set(self, rule_set: RuleSet) -> RuleSet:
        """Put back a previously captured copy of a rule set as-is."""
        self.rule_sets[rule_set.id] = rule_set
        self.logger.info("Rule set restored", set_id=rule_set.set_id, id=rule_set.id)
        return rule_set

    def get_rule_set(self, set_uuid: str, tenant_id: str, organization_id: str) -> Optional[RuleSet]:
        rule_set = self.rule_sets.get(set_uuid)
        if rule_set is None or rule_set.is_deleted or not rule_set.in_scope(tenant_id, organization_id):
            return None
        return rule_set

    def list_rule_sets(self, tenant_id: str, organization_id: str) -> List[RuleSet]:
        return sorted(
            (s for s in self.rule_sets.values()
             if not s.is_deleted and s.in_scope(tenant_id, organization_id)),
            key=lambda s: s.set_id
        )

    def add_member(self, rule_set: RuleSet, member: RuleSetMember) -> RuleSetMember:
        """Attach a rule to a set; the rule must be live in the set's scope."""
        if self.get_rule(member.rule_id, rule_set.tenant_id, rule_set.organization_id) is None:
            raise NotFoundError("Rule not found", {"id": member.rule_id})
        if any(m.rule_id == member.rule_id for m in rule_set.members):
            raise ValidationError("Validation failed: Rule is already a member of this set", {"rule_id": member.rule_id})

        rule_set.members.append(member)
        rule_set.updated_at = utcnow()
        return member

    def remove_member(self, rule_set: RuleSet, member_id: str) -> bool:
        before = len(rule_set.members)
        rule_set.members = [m for m in rule_set.members if m.id != member_id]
        if len(rule_set.members) == before:
            return False
        rule_set.updated_at = utcnow()
        return True

    def _ensure_unique_set_id(self, rule_set: RuleSet):
        for existing in self.list_rule_sets(rule_set.tenant_id, rule_set.organization_id):
            if existing.set_id == rule_set.set_id and existing.id != rule_set.id:
                raise ValidationError(
                    f"Validation failed: Rule set with set_id '{rule_set.set_id}' already exists",
                    {"set_id": rule_set.set_id}
                )

    # Discovery

    def find_applicable_rules(self,
                              tenant_id: str,
                              organization_id: str,
                              entity_type: str,
                              event_type: Optional[str] = None,
                              rule_type: Optional[RuleType] = None,
                              at: Optional[datetime] = None) -> List[BusinessRule]:
        """Enabled rules matching the entity/event, in execution order."""
        key = (tenant_id, organization_id, entity_type, event_type, rule_type)
        candidates = self.rule_cache.get(key)

        if candidates is None:
            candidates = [
                rule for rule in self.list_rules(tenant_id, organization_id)
                if rule.enabled
                and rule.entity_type == entity_type
                and (rule.event_type is None or rule.event_type == event_type)
                and (rule_type is None or rule.rule_type == rule_type)
            ]
            candidates.sort(key=lambda r: r.rule_id)
            candidates.sort(key=lambda r: r.priority, reverse=True)
            if len(self.rule_cache) >= self.max_cache_entries:
                self.rule_cache.clear()
            self.rule_cache[key] = candidates

        at = ensure_aware(at) or utcnow()
        return [rule for rule in candidates if rule.is_effective(at)]

    def _invalidate_cache(self):
        """Invalidate rule cache."""
        self.rule_cache.clear()
        if self.metrics:
            self.metrics.set_gauge("loaded_rules", len([r for r in self.rules.values() if not r.is_deleted]))

    # Execution

    async def execute(self, context: RuleEngineContext, rule_type: Optional[RuleType] = None) -> RuleEngineResult:
        """Run every applicable rule against the context."""
        rules = self.find_applicable_rules(
            context.tenant_id,
            context.organization_id,
            context.entity_type,
            context.event_type,
            rule_type
        )
        return await self._execute_rules(rules, context)

    async def execute_rule(self, rule_uuid: str, context: RuleEngineContext) -> RuleEngineResult:
        rule = self.get_rule(rule_uuid, context.tenant_id, context.organization_id)
        if rule is None:
            raise NotFoundError("Rule not found", {"id": rule_uuid})
        self._ensure_runnable(rule)
        return await self._execute_rules([rule], context)

    async def execute_rule_by_rule_id(self, rule_id: str, context: RuleEngineContext) -> RuleEngineResult:
        rule = self.get_rule_by_rule_id(rule_id, context.tenant_id, context.organization_id)
        if rule is None:
            raise NotFoundError("Rule not found", {"rule_id": rule_id})
        self._ensure_runnable(rule)
        return await self._execute_rules([rule], context)

    async def execute_rule_set(self, set_uuid: str, context: RuleEngineContext) -> RuleEngineResult:
        """Run a set's enabled members in sequence order."""
        rule_set = self.get_rule_set(set_uuid, context.tenant_id, context.organization_id)
        if rule_set is None:
            raise NotFoundError("Rule set not found", {"id": set_uuid})
        if not rule_set.enabled:
            raise ValidationError("Validation failed: Rule set is disabled", {"id": set_uuid})

        now = utcnow()
        rules = []
        for member in rule_set.ordered_members():
            rule = self.get_rule(member.rule_id, context.tenant_id, context.organization_id)
            if rule is None or not rule.enabled or not rule.is_effective(now):
                self.logger.debug("Skipping rule set member", set_id=rule_set.set_id, rule_uuid=member.rule_id)
                continue
            rules.append(rule)

        return await self._execute_rules(rules, context)

    def _ensure_runnable(self, rule: BusinessRule):
        if not rule.enabled:
            raise ValidationError("Validation failed: Rule is disabled", {"rule_id": rule.rule_id})
        if not rule.is_effective(utcnow()):
            raise ValidationError("Validation failed: Rule is not effective at this time", {"rule_id": rule.rule_id})

    async def _execute_rules(self, rules: List[BusinessRule], context: RuleEngineContext) -> RuleEngineResult:
        start_time = time.time()
        result = RuleEngineResult(dry_run=context.dry_run)
        data = copy.deepcopy(context.data) if context.data is not None else {}

        for rule in rules:
            outcome = await self._execute_rule(rule, context, data, result)
            result.executed_rules.append(outcome)

        result.output_data = data
        result.total_execution_time_ms = round((time.time() - start_time) * 1000, 3)

        self.logger.info(
            "Rules executed",
            entity_type=context.entity_type,
            entity_id=context.entity_id,
            event_type=context.event_type,
            rule_count=len(rules),
            allowed=result.allowed,
            dry_run=context.dry_run,
            duration_ms=result.total_execution_time_ms
        )
        return result

    async def _execute_rule(self,
                            rule: BusinessRule,
                            context: RuleEngineContext,
                            data: Any,
                            result: RuleEngineResult) -> RuleExecutionOutcome:
        start_time = time.time()
        resolver = self._build_resolver(context, data)
        input_snapshot = None if context.dry_run else copy.deepcopy(data)
        outcome = RuleExecutionOutcome(
            id=rule.id,
            rule_id=rule.rule_id,
            rule_name=rule.rule_name,
            rule_type=rule.rule_type,
            condition_result=None,
            result=ExecutionResult.ERROR
        )

        with trace_operation(
            "business_rules.execute_rule",
            rule_id=rule.rule_id,
            rule_type=rule.rule_type.value,
            entity_type=context.entity_type,
            dry_run=context.dry_run
        ):
            try:
                matched = evaluate_condition(rule.condition_expression, resolver)
            except Exception as e:
                outcome.error = str(e)
                result.errors.append(f"{rule.rule_id}: {e}")
                self.logger.warning("Rule evaluation failed", rule_id=rule.rule_id, error=str(e))
            else:
                outcome.condition_result = matched
                outcome.result = ExecutionResult.SUCCESS if matched else ExecutionResult.FAILURE
                action_context = ActionContext(rule=rule, context=context, data=data, result=result, resolver=resolver)
                outcome.actions = await self.actions.execute_actions(self._select_actions(rule, matched), action_context)
                for action in outcome.actions:
                    if action.status == ActionStatus.ERROR:
                        result.errors.append(f"{rule.rule_id}: {action.action_type}: {action.error}")

        if rule.rule_type == RuleType.GUARD and outcome.result != ExecutionResult.SUCCESS:
            result.allowed = False
        elif rule.rule_type == RuleType.VALIDATION and outcome.result == ExecutionResult.ERROR:
            result.allowed = False

        duration = time.time() - start_time
        outcome.execution_time_ms = round(duration * 1000, 3)
        if self.metrics:
            self.metrics.record_rule_execution(rule.rule_type.value, outcome.result.value, duration)

        if not context.dry_run:
            self.execution_logs.record(RuleExecutionLog(
                rule_id=rule.id,
                entity_id=context.entity_id,
                entity_type=context.entity_type,
                execution_result=outcome.result,
                input_context={"data": input_snapshot, "event_type": context.event_type},
                output_context={
                    "condition_result": outcome.condition_result,
                    "actions": [{"type": a.action_type, "status": a.status.value} for a in outcome.actions],
                },
                error_message=outcome.error,
                execution_time_ms=int(duration * 1000),
                tenant_id=context.tenant_id,
                organization_id=context.organization_id,
                executed_by=context.executed_by
            ))

        return outcome

    @staticmethod
    def _select_actions(rule: BusinessRule, matched: bool) -> List[Dict[str, Any]]:
        """Own-branch actions plus the other branch's ALWAYS actions."""
        primary, other = (
            (rule.success_actions, rule.failure_actions) if matched
            else (rule.failure_actions, rule.success_actions)
        )
        return list(primary or []) + [
            action for action in other or []
            if action.get("trigger") == ActionTrigger.ALWAYS.value
        ]

    @staticmethod
    def _build_resolver(context: RuleEngineContext, data: Any) -> Resolver:
        roots = {
            "user": context.user,
            "tenant": context.tenant,
            "organization": context.organization,
            "entity": {"type": context.entity_type, "id": context.entity_id, "event": context.event_type},
        }

        def resolve(path: str) -> Any:
            root = root_segment(path)
            if root in CONTEXT_ROOTS and not (isinstance(data, Mapping) and root in data):
                return get_value(roots, path)
            return get_value(data, path)

        return resolve

    # Introspection

    def get_engine_stats(self, tenant_id: Optional[str] = None, organization_id: Optional[str] = None) -> Dict[str, Any]:
        """Get engine statistics, optionally narrowed to one scope."""
        if tenant_id and organization_id:
            live = self.list_rules(tenant_id, organization_id)
            rule_sets = self.list_rule_sets(tenant_id, organization_id)
        else:
            live = [r for r in self.rules.values() if not r.is_deleted]
            rule_sets = [s for s in self.rule_sets.values() if not s.is_deleted]
        return {
            "total_rules": len(live),
            "enabled_rules": len([r for r in live if r.enabled]),
            "rules_by_type": dict(Counter(r.rule_type.value for r in live)),
            "rule_sets": len(rule_sets),
            "cached_queries": len(self.rule_cache),
        }

    def clear_all_rules(self):
        """Clear all rules and rule sets from the engine."""
        self.rules.clear()
        self.rule_sets.clear()
        self._invalidate_cache()
        self.logger.info("All rules cleared")
