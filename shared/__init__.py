"""
Shared utilities for the risk index access layer.

This package aggregates common building blocks consumed by the risk service:

- config: Gateway configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- circuit_breaker: Failure isolation for the upstream index

Any cross-service logic should live here to avoid import cycles. Do not
import from service_* packages into shared/.
"""
