"""Structured logging for store RAG components.

Log lines go through ``structlog`` and carry the service name plus whatever
store context a component binds (``store_id``, ``operation``, ``job_id``).
Platform credentials travel through the same call sites as that context, so
a redaction processor masks them before any renderer sees the event.

Typical usage
- Call ``configure_logging(service_name, log_level, log_format)`` at startup
- Use ``structlog.get_logger(component)`` for module loggers
- Use ``ServiceLogger(component, store_id=...)`` where a procedure logs many
  lines about one store
"""

import logging
import sys
from typing import Any, Dict

import structlog
from structlog.stdlib import LoggerFactory, add_logger_name

SECRET_KEYS = frozenset({"access_token", "refresh_token", "api_key", "authorization", "password"})
REDACTED = "***"


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential fields, including ones nested one level in a dict."""
    for key, value in list(event_dict.items()):
        if key.lower() in SECRET_KEYS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: (REDACTED if k.lower() in SECRET_KEYS and v else v) for k, v in value.items()
            }
    return event_dict


def configure_logging(service_name: str, log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog and the stdlib root logger for one process.

    ``log_format`` is ``json`` for deployed services and ``console`` for the
    CLI and local runs.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_logger_name,
        redact_secrets,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name)


class ServiceLogger:
    """Component logger that repeats bound store context on every line."""

    def __init__(self, component: str, **context: Any):
        self.component = component
        self.context = context
        self._logger = structlog.get_logger(component)

    def bind(self, **kwargs: Any) -> "ServiceLogger":
        return ServiceLogger(self.component, **{**self.context, **kwargs})

    def _emit(self, level: str, message: str, **kwargs: Any) -> None:
        getattr(self._logger, level)(message, **{**self.context, **kwargs})

    def debug(self, message: str, **kwargs: Any) -> None:
        self._emit("debug", message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._emit("info", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._emit("warning", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._emit("error", message, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        self._emit("exception", message, **kwargs)


def log_performance(operation: str, duration_ms: float, **kwargs: Any) -> None:
    """Emit one timing line for a store-level unit of work (index pass, query)."""
    structlog.get_logger("performance").info(
        "Operation timing",
        operation=operation,
        duration_ms=round(duration_ms, 2),
        **kwargs,
    )
