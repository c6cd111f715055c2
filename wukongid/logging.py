from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_PII_KEY_FRAGMENTS = (
    "password",
    "secret",
    "token",
    "authorization",
    "email",
    "credential",
    "cookie",
    "backup_code",
)
# Matched whole so that keys like ``error_code`` stay readable
_PII_EXACT_KEYS = frozenset({"code", "presented_code", "state", "sid"})
# Subject ids of email-provider accounts embed the address
_EMAIL_SUBJECT_PREFIX = "email:"


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 4:
        return value
    # Keep first/last 2 chars for debugging
    return value[:2] + "***" + value[-2:]


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and personal data before they reach the log sink."""
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if isinstance(value, str) and value.startswith(_EMAIL_SUBJECT_PREFIX):
            event_dict[key] = _EMAIL_SUBJECT_PREFIX + _mask(value[len(_EMAIL_SUBJECT_PREFIX):])
            continue
        lower_key = key.lower()
        sensitive = lower_key in _PII_EXACT_KEYS or any(
            fragment in lower_key for fragment in _PII_KEY_FRAGMENTS
        )
        if not sensitive:
            continue
        if isinstance(value, str):
            event_dict[key] = _mask(value)
    return event_dict


_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    console: Optional[bool] = None,
) -> None:
    """(Re)configure structlog for the process.

    Unset arguments come from ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. Console rendering wins over JSON when both apply.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")
    if console is None:
        console = _env_flag("LOG_DEV_MODE", "false")

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if console or not json_output:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
