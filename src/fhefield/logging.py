"""
Structured logging for fhefield.

Provides consistent logging across the engine, circuit executor and
orchestration service with:
- Structured JSON output for production
- Human-readable output for development
- Request ID correlation
- Redaction of key material and plaintext fields

Usage:
    from fhefield.logging import get_logger, configure_logging

    configure_logging(level="INFO", json_format=True)

    logger = get_logger(__name__)
    logger.info("Encrypted field", extra={"field_name": "salary", "scheme": "tfhe"})
"""

import contextvars
import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, Optional

ROOT_LOGGER_NAME = "fhefield"

# Per-task correlation fields; each asyncio task sees its own copy
_current_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("fhefield_log_context", default={})

# Field names whose values never reach a log sink
SENSITIVE_PATTERNS = frozenset(
    {
        "private_key",
        "privatekey",
        "secret",
        "evaluation_key",
        "eval_key",
        "master_key",
        "plaintext",
        "token",
        "password",
        "credential",
    }
)

_RESERVED_RECORD_FIELDS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    }
)


def _is_sensitive_key(key: str) -> bool:
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in SENSITIVE_PATTERNS)


def _filter_sensitive(data: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively redact sensitive values from a dictionary."""
    filtered = {}
    for key, value in data.items():
        if _is_sensitive_key(key):
            filtered[key] = "[REDACTED]"
        elif isinstance(value, dict):
            filtered[key] = _filter_sensitive(value)
        elif isinstance(value, list):
            filtered[key] = [_filter_sensitive(item) if isinstance(item, dict) else item for item in value]
        else:
            filtered[key] = value
    return filtered


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.pathname:
            log_data["location"] = {
                "file": os.path.basename(record.pathname),
                "line": record.lineno,
                "function": record.funcName,
            }

        extra_fields: Dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_FIELDS:
                continue
            if _is_sensitive_key(key):
                extra_fields[key] = "[REDACTED]"
            elif isinstance(value, dict):
                extra_fields[key] = _filter_sensitive(value)
            else:
                extra_fields[key] = value

        context = LogContext.get_current()
        for key, value in context.items():
            extra_fields.setdefault(key, value)

        if extra_fields:
            log_data["extra"] = extra_fields

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class DevelopmentFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.RESET if color else ""

        timestamp = datetime.utcnow().strftime("%H:%M:%S.%f")[:-3]
        level = f"{color}{record.levelname:8}{reset}"
        name = record.name.split(".")[-1][:15].ljust(15)
        message = record.getMessage()

        request_id = getattr(record, "request_id", None) or LogContext.get_current().get("request_id")
        if request_id:
            message = f"[{str(request_id)[:8]}] {message}"

        formatted = f"{timestamp} {level} {name} {message}"

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


def configure_logging(
    level: str = "INFO",
    json_format: Optional[bool] = None,
    stream: Any = None,
) -> None:
    """
    Configure logging for fhefield components.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON output. Default: True in production, False otherwise
        stream: Output stream. Default: sys.stderr
    """
    if json_format is None:
        json_format = os.environ.get("FHE_ENVIRONMENT", "development") == "production"

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredFormatter() if json_format else DevelopmentFormatter())
    root_logger.addHandler(handler)
    root_logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the fhefield namespace."""
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


class LogContext:
    """
    Context manager for adding correlation IDs to logs.

    Usage:
        with LogContext(request_id="abc123", user_id="u-1"):
            logger.info("Executing circuit")
    """

    def __init__(self, **kwargs: Any):
        self.context = kwargs
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "LogContext":
        merged = {**_current_context.get(), **self.context}
        self._token = _current_context.set(merged)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _current_context.reset(self._token)
            self._token = None

    @classmethod
    def get_current(cls) -> Dict[str, Any]:
        """Get the current logging context."""
        return dict(_current_context.get())


__all__ = [
    "configure_logging",
    "get_logger",
    "LogContext",
    "StructuredFormatter",
    "DevelopmentFormatter",
]
