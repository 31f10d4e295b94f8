from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (a fresh UUID when absent) to the current request."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


_PII_KEYS = {"password", "secret", "token", "authorization", "sig"}


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials and capability tokens from log entries."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(marker in key.lower() for marker in _PII_KEYS):
            # first and last two characters survive
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """JSON lines in production, a coloured console renderer in development."""
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


def log_fanout_report(report: Any, logger: Optional[Any] = None) -> None:
    """Log the outcome of a status fan-out as a single summary event."""
    log = logger or get_logger("fanout")
    log.info(
        "fanout_report",
        attempted=report.attempted,
        delivered=len(report.delivered),
        skipped=len(report.skipped),
        failed=len(report.failed),
        timed_out=len(report.timed_out),
    )


_SECRET_PATTERNS = [
    # signature of a capability token
    re.compile(r"(?i)\bsig=[^\s&]+"),
    re.compile(r"(?i)(password|secret|token)\s*[:=]\s*[^\s]+"),
    # state files under SHARED_FS_ROOT
    re.compile(r"(?i)/(?:srv|tmp|var)/[^\s]+"),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Mask token signatures, secrets and state-file paths before logging ``error``."""
    if not error:
        return "unknown error"
    for pattern in _SECRET_PATTERNS:
        error = pattern.sub(replacement, error)
    return error if len(error) <= 500 else error[:497] + "..."
