"""
Shared logging configuration for the CDN gateway.

Log lines are structlog events rendered as JSON (or as readable console
output in development). Request-scoped identifiers live in context variables
and are merged into every event emitted while the request is in flight.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Context variables for correlation IDs
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
client_id_var: ContextVar[Optional[str]] = ContextVar("client_id", default=None)
pipeline_var: ContextVar[Optional[str]] = ContextVar("pipeline", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "client_id": client_id_var,
    "pipeline": pipeline_var,
}

REDACTED_FIELDS = frozenset({"api_key", "apikey", "x-api-key", "authorization", "secret_access_key"})


def configure_logging(service_name: str, log_level: str = "info", json_logs: bool = True) -> None:
    """Configure structured logging for a service."""
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_correlation_context,
            redact_secrets,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
    # uvicorn writes its own access log; ours carries the request id
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger(service_name).setLevel(getattr(logging, log_level.upper(), logging.INFO))


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Derive the service from "<service>.<component>" logger names."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict.setdefault("service", logger_name.split(".")[0])
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Merge request-scoped identifiers into the event."""
    for field, var in _CONTEXT_VARS.items():
        value = var.get()
        if value:
            event_dict.setdefault(field, value)
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credentials; only a short prefix survives for correlation."""
    for field, value in event_dict.items():
        if field.lower() in REDACTED_FIELDS and isinstance(value, str) and value:
            event_dict[field] = f"{value[:4]}..." if len(value) > 8 else "***"
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context, generating one when absent."""
    if not request_id:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_client_context(client_id: Optional[str] = None):
    """Set the caller identity in logging context."""
    if client_id:
        client_id_var.set(client_id)


def set_pipeline_context(pipeline: Optional[str] = None):
    pipeline_var.set(pipeline)


def clear_context():
    """Clear all context variables."""
    for var in _CONTEXT_VARS.values():
        var.set(None)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
