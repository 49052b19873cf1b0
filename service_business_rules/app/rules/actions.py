"""
Typed rule actions: configuration validation and dispatch.
"""

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from shared.errors import ActionExecutionError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .conditions import Resolver
from .models import (
    ActionOutcome, ActionStatus, ActionTrigger, ActionType, BusinessRule,
    RuleEngineContext, RuleEngineResult, ValidationResult
)
from .paths import is_valid_field_path, render_value, set_value

ACTION_TYPES = {t.value for t in ActionType}
ACTION_TRIGGERS = {t.value for t in ActionTrigger}
LOG_LEVELS = ("debug", "info", "warning", "error")
WEBHOOK_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")

REQUIRED_CONFIG: Dict[str, Tuple[str, ...]] = {
    ActionType.ALLOW_TRANSITION.value: (),
    ActionType.BLOCK_TRANSITION.value: (),
    ActionType.LOG.value: ("message",),
    ActionType.SHOW_ERROR.value: ("message",),
    ActionType.SHOW_WARNING.value: ("message",),
    ActionType.SHOW_INFO.value: ("message",),
    ActionType.NOTIFY.value: ("message", "recipients"),
    ActionType.SET_FIELD.value: ("field", "value"),
    ActionType.CALL_WEBHOOK.value: ("url",),
    ActionType.EMIT_EVENT.value: ("eventName",),
}

MESSAGE_LEVELS = {
    ActionType.SHOW_ERROR.value: "error",
    ActionType.SHOW_WARNING.value: "warning",
    ActionType.SHOW_INFO.value: "info",
}


def validate_actions(actions: List[Any]) -> ValidationResult:
    """Validate every action, reporting errors as ``actions[i]: ...``."""
    errors: List[str] = []
    for index, action in enumerate(actions):
        errors.extend(f"actions[{index}]: {message}" for message in _action_errors(action))

    if errors:
        return ValidationResult.failed(errors)
    return ValidationResult.ok()


def validate_actions_for_api(actions: Any, field_name: str = "actions") -> ValidationResult:
    if actions is None or (isinstance(actions, list) and not actions):
        return ValidationResult.ok()
    if not isinstance(actions, list):
        return ValidationResult.failed([f"{field_name} must be an array"])

    result = validate_actions(actions)
    if result.valid:
        return result
    return ValidationResult.failed(result.errors, prefix=f"Invalid {field_name}: ")


def _action_errors(action: Any) -> List[str]:
    if not isinstance(action, Mapping):
        return ["Action must be an object"]

    errors: List[str] = []
    action_type = action.get("type")
    config = action.get("config", {})
    trigger = action.get("trigger")

    if trigger is not None and trigger not in ACTION_TRIGGERS:
        errors.append(f"Invalid action trigger: {trigger}")

    if config is None:
        config = {}
    if not isinstance(config, Mapping):
        errors.append("config must be an object")
        config = None

    if not isinstance(action_type, str) or not action_type.strip():
        errors.append("Action type is required")
        return errors
    if action_type not in ACTION_TYPES:
        errors.append(f"Unknown action type: {action_type}")
        return errors
    if config is None:
        return errors

    for key in REQUIRED_CONFIG[action_type]:
        if not _has_config_value(config, key):
            errors.append(f"{action_type} action requires '{key}' in config")

    errors.extend(_type_specific_errors(action_type, config))
    return errors


def _has_config_value(config: Mapping, key: str) -> bool:
    if key not in config:
        return False
    if key == "value":
        return True
    value = config[key]
    if key == "recipients":
        return isinstance(value, list) and len(value) > 0
    if isinstance(value, str):
        return bool(value.strip())
    return value is not None


def _type_specific_errors(action_type: str, config: Mapping) -> List[str]:
    if action_type == ActionType.LOG.value:
        level = config.get("level")
        if level is not None and level not in LOG_LEVELS:
            return [f"Invalid log level: {level}"]

    elif action_type == ActionType.SET_FIELD.value:
        field = config.get("field")
        if isinstance(field, str) and field.strip() and not is_valid_field_path(field):
            return [f"Invalid field path: {field}"]

    elif action_type == ActionType.CALL_WEBHOOK.value:
        errors = []
        url = config.get("url")
        if isinstance(url, str) and url.strip():
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(f"Invalid webhook url: {url}")
        method = config.get("method")
        if method is not None and str(method).upper() not in WEBHOOK_METHODS:
            errors.append(f"Invalid webhook method: {method}")
        return errors

    return []


@dataclass
class ActionContext:
    """Everything a handler may read or update while a rule runs."""
    rule: BusinessRule
    context: RuleEngineContext
    data: Any
    result: RuleEngineResult
    resolver: Resolver

    @property
    def dry_run(self) -> bool:
        return self.context.dry_run


ActionHandler = Callable[[Dict[str, Any], ActionContext], Awaitable[Optional[Dict[str, Any]]]]


class ActionExecutor:
    """Dispatches actions to registered handlers."""

    def __init__(self, webhook_client=None, metrics: Optional[MetricsCollector] = None):
        self.logger = get_logger("business_rules.actions")
        self.webhook_client = webhook_client
        self.metrics = metrics
        self._handlers: Dict[str, Tuple[ActionHandler, bool]] = {}
        self._register_defaults()

    def _register_defaults(self):
        self.register(ActionType.ALLOW_TRANSITION, self._allow_transition)
        self.register(ActionType.BLOCK_TRANSITION, self._block_transition)
        self.register(ActionType.LOG, self._log, side_effect=True)
        for action_type, level in MESSAGE_LEVELS.items():
            self.register(action_type, self._show_message(level))
        self.register(ActionType.NOTIFY, self._notify, side_effect=True)
        self.register(ActionType.SET_FIELD, self._set_field)
        self.register(ActionType.CALL_WEBHOOK, self._call_webhook, side_effect=True)
        self.register(ActionType.EMIT_EVENT, self._emit_event, side_effect=True)

    def register(self, action_type, handler: ActionHandler, side_effect: bool = False):
        """Add or replace the handler for an action type.

        Side-effecting handlers are only planned, never invoked, during dry runs.
        """
        key = action_type.value if isinstance(action_type, ActionType) else str(action_type)
        self._handlers[key] = (handler, side_effect)

    def is_registered(self, action_type: str) -> bool:
        return action_type in self._handlers

    async def execute_actions(self, actions: List[Dict[str, Any]], ctx: ActionContext) -> List[ActionOutcome]:
        outcomes = []
        for action in actions:
            outcomes.append(await self.execute_action(action, ctx))
        return outcomes

    async def execute_action(self, action: Dict[str, Any], ctx: ActionContext) -> ActionOutcome:
        action_type = str(action.get("type"))
        entry = self._handlers.get(action_type)
        if entry is None:
            outcome = ActionOutcome(action_type, ActionStatus.ERROR, error=f"Unknown action type: {action_type}")
            self._record(outcome)
            return outcome

        handler, side_effect = entry
        start_time = time.time()
        try:
            config = render_value(dict(action.get("config") or {}), ctx.resolver)
            if ctx.dry_run and side_effect:
                outcome = ActionOutcome(action_type, ActionStatus.PLANNED, output={"config": config})
            else:
                output = await handler(config, ctx)
                outcome = ActionOutcome(action_type, ActionStatus.EXECUTED, output=output or {})
        except Exception as e:
            self.logger.warning(
                "Action failed",
                action_type=action_type,
                rule_id=ctx.rule.rule_id,
                error=str(e)
            )
            outcome = ActionOutcome(action_type, ActionStatus.ERROR, error=str(e))

        self.logger.debug(
            "Action processed",
            action_type=action_type,
            rule_id=ctx.rule.rule_id,
            status=outcome.status.value,
            duration_ms=round((time.time() - start_time) * 1000, 2)
        )
        self._record(outcome)
        return outcome

    def _record(self, outcome: ActionOutcome):
        if self.metrics:
            self.metrics.record_action_execution(outcome.action_type, outcome.status.value)

    async def _allow_transition(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        output = {"decision": "allow"}
        if config.get("message"):
            output["message"] = config["message"]
        return output

    async def _block_transition(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        message = config.get("message") or f"Blocked by rule {ctx.rule.rule_id}"
        ctx.result.allowed = False
        ctx.result.messages.append({"level": "error", "message": message, "rule_id": ctx.rule.rule_id})
        return {"decision": "block", "message": message}

    async def _log(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        level = config.get("level") or "info"
        if level not in LOG_LEVELS:
            level = "info"
        getattr(self.logger, level)(
            str(config["message"]),
            rule_id=ctx.rule.rule_id,
            entity_type=ctx.context.entity_type,
            entity_id=ctx.context.entity_id
        )
        return {"level": level, "message": config["message"]}

    def _show_message(self, level: str) -> ActionHandler:
        async def handler(config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
            message = {"level": level, "message": config["message"], "rule_id": ctx.rule.rule_id}
            ctx.result.messages.append(message)
            return message

        return handler

    async def _notify(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        notification = {
            "recipients": list(config["recipients"]),
            "message": config["message"],
            "rule_id": ctx.rule.rule_id,
        }
        if config.get("subject"):
            notification["subject"] = config["subject"]
        ctx.result.notifications.append(notification)
        return notification

    async def _set_field(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        field, value = config["field"], config.get("value")
        set_value(ctx.data, field, value)
        ctx.result.field_updates[field] = value
        return {"field": field, "value": value}

    async def _call_webhook(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        if self.webhook_client is None:
            raise ActionExecutionError(ActionType.CALL_WEBHOOK.value, "Webhook client not configured")

        payload = config.get("payload")
        if payload is None:
            payload = {
                "rule_id": ctx.rule.rule_id,
                "entity_type": ctx.context.entity_type,
                "entity_id": ctx.context.entity_id,
                "event_type": ctx.context.event_type,
                "data": ctx.data,
            }
        return await self.webhook_client.send(
            url=config["url"],
            method=str(config.get("method") or "POST").upper(),
            headers=config.get("headers"),
            payload=payload
        )

    async def _emit_event(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        event = {
            "event_name": config["eventName"],
            "payload": config.get("payload") or {},
            "entity_type": ctx.context.entity_type,
            "entity_id": ctx.context.entity_id,
            "rule_id": ctx.rule.rule_id,
        }
        ctx.result.events.append(event)
        return event
