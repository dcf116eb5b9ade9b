"""
Structured logging configuration for Storage Health Core.

Configures structlog for the API process and its background workers. Log
entries carry the request or operation context (request_id, user_id,
provider, task_id) that is active in the current task, and token material
is masked before rendering.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog
from structlog.types import EventDict, Processor

# Request or background-operation scoped fields
request_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar(
    "request_context", default=None
)

SENSITIVE_KEYS = (
    "password",
    "secret",
    "authorization",
    "access_token",
    "refresh_token",
    "fernet_key",
)

# Matched only as the whole key
SENSITIVE_EXACT_KEYS = ("code", "state")


def add_request_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Merge the active request/operation context into the entry."""
    ctx = request_context.get()
    if ctx:
        for key, value in ctx.items():
            event_dict.setdefault(key, value)
    return event_dict


class EnvironmentProcessor:
    """Stamp every entry with the deployment environment and version."""

    def __init__(self, app_env: str, app_version: str):
        self.app_env = app_env
        self.app_version = app_version

    def __call__(
        self, logger: Any, method_name: str, event_dict: EventDict
    ) -> EventDict:
        event_dict["env"] = self.app_env
        event_dict["version"] = self.app_version
        return event_dict


def filter_sensitive_data(
    logger: Any, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Mask token material in log entries.

    Keys are matched exactly or by suffix so that fields such as
    ``token_refresh_failures`` or ``error_code`` stay readable.
    """
    for key in list(event_dict.keys()):
        key_lower = key.lower()
        if key_lower not in SENSITIVE_EXACT_KEYS and not any(
            key_lower == sensitive or key_lower.endswith(f"_{sensitive}")
            for sensitive in SENSITIVE_KEYS
        ):
            continue

        value = event_dict[key]
        if isinstance(value, str) and len(value) > 8:
            event_dict[key] = f"{value[:4]}...{value[-4:]}"
        elif value is not None:
            event_dict[key] = "***REDACTED***"

    return event_dict


def configure_logging(
    log_level: str = "INFO",
    app_env: str = "development",
    app_version: str = "0.1.0",
    json_format: Optional[bool] = None,
) -> None:
    """
    Configure structured logging for the application.

    Staging and production render JSON for log aggregation; other
    environments get the colored console renderer unless json_format says
    otherwise.
    """
    if json_format is None:
        json_format = app_env in ["staging", "production"]

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            ]
        ),
        add_request_context,
        EnvironmentProcessor(app_env, app_version),
        filter_sensitive_data,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_context(**kwargs: Any) -> None:
    """
    Add fields to the context included in every log entry.

    Example:
        set_request_context(request_id="req_123", method="GET", path="/healthz")
    """
    ctx = dict(request_context.get() or {})
    ctx.update(kwargs)
    request_context.set(ctx)


def clear_request_context() -> None:
    request_context.set(None)


@contextmanager
def operation_context(**kwargs: Any) -> Iterator[None]:
    """
    Scope log context to one background operation.

    Used by queue workers and the health monitor, which run outside any
    HTTP request:

        with operation_context(task_id=str(task.id), provider=task.provider):
            await orchestrator.process(db, task.id)
    """
    ctx = dict(request_context.get() or {})
    ctx.update(kwargs)
    token = request_context.set(ctx)
    try:
        yield
    finally:
        request_context.reset(token)
