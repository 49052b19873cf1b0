"""
Observability facade for the Business Rules services.
Integrates logging, metrics, and tracing behind one object.
"""

from typing import Optional

from .logging import get_logger, set_scope_context
from .metrics import MetricsCollector
from .tracing import add_span_event


class ObservabilityManager:
    """Centralized observability manager for services."""

    def __init__(self, service_name: str, metrics: MetricsCollector):
        self.service_name = service_name
        self.metrics = metrics
        self.logger = get_logger(f"{service_name}.observability")

    def bind_scope(self,
                   user_id: Optional[str] = None,
                   tenant_id: Optional[str] = None,
                   organization_id: Optional[str] = None):
        """Bind the caller's scope to the logging context of this request."""
        set_scope_context(user_id, tenant_id, organization_id)
        add_span_event("scope_bound", tenant_id=tenant_id, organization_id=organization_id, user_id=user_id)

    def log_business_event(self, event_type: str, **kwargs):
        """Log business event with full context."""
        self.logger.info(
            "Business event",
            event_type=event_type,
            **kwargs
        )
        self.metrics.record_business_event(event_type)
        add_span_event("business_event", event_type=event_type, **kwargs)
