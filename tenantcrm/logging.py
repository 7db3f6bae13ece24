from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# One per HTTP request or notification socket
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set (or generate) the correlation ID and drop principal fields of a previous request."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    structlog.contextvars.unbind_contextvars("account_id", "tenant_id")
    return cid


def bind_principal(account_id: str, tenant_id: str) -> None:
    """Attach the authenticated account to every later log line in this context."""
    structlog.contextvars.bind_contextvars(account_id=account_id, tenant_id=tenant_id)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Field names are matched by substring, so "qr_payload" and "token_id" are caught too.
_SECRET_FIELDS = ("password", "secret", "token", "authorization", "code", "otpauth", "qr")
_CONTACT_FIELDS = ("email",)
_KEEP_FIELDS = {"event", "error_code", "status_code"}


def _mask(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    return "***"


def _mask_email(value: Any) -> Any:
    if not isinstance(value, str) or "@" not in value:
        return _mask(value)
    local, _, domain = value.partition("@")
    return f"{local[:1]}***@{domain}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, one-time codes and two-factor material; shorten emails."""
    for key in list(event_dict.keys()):
        if key in _KEEP_FIELDS:
            continue
        lower_key = key.lower()
        if any(field in lower_key for field in _SECRET_FIELDS):
            event_dict[key] = _mask(event_dict[key])
        elif any(field in lower_key for field in _CONTACT_FIELDS):
            event_dict[key] = _mask_email(event_dict[key])
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog; unset arguments come from LOG_LEVEL, LOG_JSON and LOG_DEV_MODE."""
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", False)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_SENSITIVE_ERROR_PATTERNS = [
    r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}",
    r"(?i)duplicate key value violates [^\s]+",
    r"(?i)connection\s+.*\s+(failed|refused|timeout)",
    r"(?i)(?:postgres(?:ql)?|redis)://[^\s]+",
    r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
    r"(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+",
    r"(?i)otpauth://[^\s]+",
    r"(?i)traceback\s*\(most recent call last\)",
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]

_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip connection strings, SQL, paths and key material from an error message.

    Used for log fields that carry exception text; client-facing messages
    never contain exception text at all.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result
