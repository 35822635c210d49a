from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation ID for the request currently being handled
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


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
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Credentials never reach a log line, not even partially.
_SECRET_KEYS = ("password", "secret", "authorization")

# Bearer values for a session: logged as a short fingerprint so entries for one
# session still line up without the value being replayable.
_SESSION_KEYS = ("session_id", "group", "token", "cookie")

REDACTED = "[redacted]"


def _fingerprint(value: str) -> str:
    return "fp:" + hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return value[:1] + "***"
    return f"{local[:1]}***@{domain}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that strips credentials, session bearer values and emails.

    Keys are matched by substring, so ``session_cookie`` and ``access_token``
    are fingerprinted and ``new_password`` is dropped.
    """
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        lower_key = key.lower()
        value = event_dict[key]
        if any(part in lower_key for part in _SECRET_KEYS):
            event_dict[key] = REDACTED
        elif not isinstance(value, str) or not value:
            continue
        elif lower_key == "sid" or any(part in lower_key for part in _SESSION_KEYS):
            event_dict[key] = _fingerprint(value)
        elif "email" in lower_key:
            event_dict[key] = _mask_email(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
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


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


# Initialize logging on module import
_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger; entries carry the request correlation ID."""
    return structlog.get_logger(name)
