"""
Shared utilities for the Business Rules services.

This package aggregates common building blocks consumed by all services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace and tenancy correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- observability: Logging/metrics/tracing facade for request handlers
- errors: Canonical error types and responses
- retry: Retry decorator for outbound calls
- circuit_breaker: Resilient external call protection
- test_helpers: Factories for rules, contexts and request headers

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
