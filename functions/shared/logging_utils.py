"""
Structured logging utilities for CloudWatch Logs Insights.

Every line carries the API Gateway request id and, once the webhook body
has been verified, the Stripe event id, so one delivery can be traced
across the router, the upsert handlers and any Stripe API calls.
"""

import json
import logging
import os
from contextvars import ContextVar
from typing import Optional
import uuid

# Context variables for request correlation
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
stripe_event_id_var: ContextVar[str] = ContextVar("stripe_event_id", default="")

_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message", "asctime",
))


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(""),
            "function_name": os.environ.get("AWS_LAMBDA_FUNCTION_NAME", ""),
        }

        stripe_event_id = stripe_event_id_var.get("")
        if stripe_event_id:
            log_entry["stripe_event_id"] = stripe_event_id

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_structured_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Configure structured JSON logging for Lambda.

    Call this at the start of your handler.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(handler)

    return root_logger


def set_request_id(event: dict) -> str:
    """
    Extract or generate request ID and set in context.

    Also clears any Stripe event id left over from a previous invocation
    of a warm Lambda container.

    Args:
        event: Lambda event

    Returns:
        Request ID string
    """
    request_id = (event.get("requestContext") or {}).get("requestId")

    if not request_id:
        headers = event.get("headers") or {}
        request_id = headers.get("x-request-id") or headers.get("X-Request-Id")

    if not request_id:
        request_id = str(uuid.uuid4())

    request_id_var.set(request_id)
    stripe_event_id_var.set("")
    return request_id


def set_stripe_event_id(event_id: str) -> None:
    """Attach the verified Stripe event id to subsequent log lines."""
    stripe_event_id_var.set(event_id or "")


def log_webhook_result(
    logger: logging.Logger,
    event_type: str,
    status_code: int,
    latency_ms: float,
) -> None:
    """Log the outcome of one webhook delivery with standard fields."""
    level = logging.INFO if status_code < 500 else logging.ERROR
    logger.log(
        level,
        f"Stripe webhook {event_type or 'unknown'} -> {status_code}",
        extra={
            "event_type": event_type or "unknown",
            "status_code": status_code,
            "latency_ms": latency_ms,
        },
    )


def log_external_call(
    logger: logging.Logger,
    service: str,
    operation: str,
    success: bool,
    latency_ms: float,
    error: Optional[str] = None,
) -> None:
    """Log external service call."""
    level = logging.INFO if success else logging.WARNING
    logger.log(
        level,
        f"External call to {service}: {operation} -> {'success' if success else 'failed'}",
        extra={
            "service": service,
            "operation": operation,
            "success": success,
            "latency_ms": latency_ms,
            "error": error,
        }
    )
