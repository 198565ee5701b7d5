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
    """Start a request context: reset bound fields and set (or mint) the correlation id."""
    structlog.contextvars.clear_contextvars()
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_user(user_id: int) -> None:
    """Attach the authenticated user id to every log line for the rest of the request."""
    structlog.contextvars.bind_contextvars(user_id=user_id)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def mask_token(value: str) -> str:
    # Enough of the signature tail to correlate with a session marker
    return f"***{value[-4:]}" if len(value) > 8 else "***"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop secrets outright and mask identifiers that operators still need to correlate."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if any(part in lower_key for part in ("password", "hash", "secret")):
            event_dict[key] = "[REDACTED]"
        elif not isinstance(value, str):
            continue
        elif "email" in lower_key:
            event_dict[key] = mask_email(value)
        elif "token" in lower_key or "authorization" in lower_key:
            event_dict[key] = mask_token(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
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
        renderers = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_LEAKY_ERROR_PATTERNS = [
    # psycopg statement echoes and constraint details
    re.compile(r"(?i)\b(select|insert into|update|delete from)\b.{0,80}"),
    re.compile(r"(?i)DETAIL:\s+Key \(.*?\)=\(.*?\)"),
    re.compile(r'(?i)relation "[^"]+"'),
    re.compile(r"(?i)postgres(?:ql)?://\S+"),
    re.compile(r"(?i)redis://\S+"),
    re.compile(r"\$argon2(?:id|i|d)\$\S+"),
    re.compile(r"(?i)(password|secret|token)\s*[:=]\s*\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub SQL, connection URLs, hashes and credentials from a client-facing message."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _LEAKY_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > 500:
        result = result[:497] + "..."
    return result
