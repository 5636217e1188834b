"""
Shared utilities for the CDN gateway.

This package aggregates common building blocks consumed by services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Error taxonomy and response envelope
- base_service: FastAPI service skeleton

Do not import from service_* packages into shared/.
"""
