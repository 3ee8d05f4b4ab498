"""
Self-Healing Engine - Structured Logging
========================================

One JSON object per line, tagged with the job or request being handled.
The job runner sets the correlation ID to the job ID and the organization
ID to the job's organization; the HTTP middleware sets the correlation ID
from ``X-Correlation-ID``. Audit entries read the same correlation ID, so
a log line and the audit entries written alongside it share a key.

Usage:
    from healing_shared.utils.logging import get_logger, setup_logging

    setup_logging(service_name="self-healing-engine", log_level="INFO")
    logger = get_logger(__name__)

    logger.info("Execution gated", extra={"execution_id": "abc123"})
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Optional
from contextvars import ContextVar

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
organization_id_var: ContextVar[Optional[str]] = ContextVar("organization_id", default=None)

# Attributes every LogRecord has; anything else on a record came from ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _context_fields() -> dict[str, str]:
    fields = {}
    correlation_id = correlation_id_var.get()
    if correlation_id:
        fields["correlation_id"] = correlation_id
    organization_id = organization_id_var.get()
    if organization_id:
        fields["organization_id"] = organization_id
    return fields


class StructuredFormatter(logging.Formatter):
    """Renders a record as JSON: fixed keys, context IDs, then ``extra`` fields."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
            **_context_fields(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )
        return json.dumps(entry, default=str)


class ContextualLogger(logging.LoggerAdapter):
    """Adds the current correlation ID to ``extra`` unless the caller set one."""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = dict(kwargs.get("extra") or {})
        correlation_id = correlation_id_var.get()
        if correlation_id:
            extra.setdefault("correlation_id", correlation_id)
        kwargs["extra"] = extra
        return msg, kwargs


_loggers: dict[str, ContextualLogger] = {}


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_output: bool = True
) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        service_name: Stamped on every line
        log_level: Root level name, e.g. "INFO"
        json_output: JSON lines if True, else a plain pipe-separated format
    """
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter(
            f"%(asctime)s | {service_name} | %(levelname)s | %(name)s | %(message)s"
        ))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> ContextualLogger:
    """Contextual logger for a module, created once per name."""
    if name not in _loggers:
        _loggers[name] = ContextualLogger(logging.getLogger(name), {})
    return _loggers[name]


def set_correlation_id(correlation_id: Optional[str]) -> None:
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_organization_id(organization_id: Optional[str]) -> None:
    """Tag subsequent log lines in this context with an organization."""
    organization_id_var.set(organization_id)
