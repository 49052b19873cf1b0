"""
Business Rules Service package.

This package stores business rules (a condition expression plus typed
actions) per tenant and organization, and executes them against entity
data when the host application asks. It provides:

- app.main: API surface for rule management, validation and execution.
- app.rules: Condition grammar, action dispatch, the engine and history.
- app.webhooks: Outbound HTTP client for CALL_WEBHOOK actions.
- app.persistence: PostgreSQL storage for rules and rule sets.

Guidelines:
- Validate condition trees against safety limits before storing them.
- Keep rule execution deterministic: priority first, then rule_id.
- Dry runs must never reach the outside world.
"""
