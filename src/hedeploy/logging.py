"""
hedeploy Structured Logging Configuration.

All hedeploy loggers hang off the "hedeploy" logger, which owns a single
handler. Output is JSON in production and one line per record otherwise;
both are chosen from HEDeploySettings (HEDEPLOY_LOG_LEVEL,
HEDEPLOY_ENVIRONMENT) unless overridden.

Key material never reaches a sink: record fields whose names look like
secrets, seeds or plaintexts are replaced before formatting. Modules log
parameter sets by truncated params_id and keys by fingerprint.

Usage:
    from hedeploy.logging import get_logger, LogContext

    logger = get_logger(__name__)
    with LogContext(function="inc"):
        logger.info("Invoking")
"""

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .utils.config import get_settings

REDACTED = "[REDACTED]"

# Field-name fragments whose values must never reach a log sink
SENSITIVE_FIELDS = ("secret", "seed", "master_key", "key_material", "lwe_key", "glwe_key", "plaintext")

_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("hedeploy_log_context", default={})


def _is_sensitive(name: str) -> bool:
    name = name.lower()
    return any(fragment in name for fragment in SENSITIVE_FIELDS)


def _redact(fields: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for name, value in fields.items():
        if _is_sensitive(name):
            out[name] = REDACTED
        elif isinstance(value, dict):
            out[name] = _redact(value)
        else:
            out[name] = value
    return out


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Caller-supplied extras and LogContext fields, redacted."""
    fields = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
    return _redact(fields)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        fields = _record_fields(record)
        if fields:
            data["context"] = fields
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class DevelopmentFormatter(logging.Formatter):
    """Single-line terminal output with context fields appended."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        line = f"{timestamp} {record.levelname:8} {record.name}: {record.getMessage()}"
        fields = _record_fields(record)
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextFilter(logging.Filter):
    """Copies the active LogContext fields onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def configure_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    stream: Any = None,
) -> None:
    """
    Install the hedeploy handler.

    Args:
        level: Log level name. Default: HEDEPLOY_LOG_LEVEL
        json_format: JSON output. Default: True when HEDEPLOY_ENVIRONMENT is production
        stream: Output stream. Default: sys.stderr
    """
    if level is None or json_format is None:
        settings = get_settings()
        level = level or settings.LOG_LEVEL
        if json_format is None:
            json_format = settings.is_production()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.addFilter(ContextFilter())
    handler.setFormatter(StructuredFormatter() if json_format else DevelopmentFormatter())

    root = logging.getLogger("hedeploy")
    root.setLevel(level.upper())
    root.handlers.clear()
    root.addHandler(handler)
    root.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Logger under the hedeploy namespace."""
    if not name.startswith("hedeploy"):
        name = f"hedeploy.{name}"
    return logging.getLogger(name)


class LogContext:
    """
    Adds fields to every record logged inside the block.

    Nested contexts replace the outer fields for their duration. The context
    is per thread and per task, so concurrent invocations do not mix.
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "LogContext":
        self._token = _context.set(dict(self.fields))
        return self

    def __exit__(self, *args: Any) -> None:
        _context.reset(self._token)

    @staticmethod
    def get_current() -> Dict[str, Any]:
        return dict(_context.get())


# Default configuration on import; callers may reconfigure at startup
if not logging.getLogger("hedeploy").handlers:
    configure_logging()


__all__ = [
    "configure_logging",
    "get_logger",
    "LogContext",
    "ContextFilter",
    "StructuredFormatter",
    "DevelopmentFormatter",
]
