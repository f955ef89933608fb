from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, bound by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current request context."""
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


def token_fingerprint(value: str) -> str:
    """Short SHA-256 prefix of a credential, safe to log and to grep for."""
    return "sha256:" + hashlib.sha256(value.encode()).hexdigest()[:12]


def mask_email(value: str) -> str:
    local, at, domain = value.partition("@")
    if not at:
        return "[redacted]"
    return f"{local[:1]}***@{domain}"


def _mask_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Keep passwords, bearer credentials and email addresses out of log sinks.

    Passwords and secrets are dropped outright. Tokens become a digest prefix so
    two lines about the same token can still be matched. Emails keep their
    domain.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or not value:
            continue
        lower_key = key.lower()
        if "password" in lower_key or "secret" in lower_key:
            event_dict[key] = "[redacted]"
        elif "token" in lower_key or "authorization" in lower_key:
            event_dict[key] = token_fingerprint(value)
        elif "email" in lower_key:
            event_dict[key] = mask_email(value)
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Install the structlog pipeline: JSON lines in production, console otherwise."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _mask_credentials,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Applied in order
_ERROR_SCRUBBERS = [
    (re.compile(r"(?i)\bbearer\s+\S+"), "Bearer [redacted]"),
    (re.compile(r"\beyJ[\w-]*\.[\w-]*\.[\w-]*"), "[token]"),
    (re.compile(r"(?i)\b([a-z][a-z0-9+.-]*://)[^\s/@:]*:[^\s/@]*@"), r"\1[credentials]@"),
    (re.compile(r"(?i)(password|secret|token|credential)\s*[:=]\s*\S+"), r"\1=[redacted]"),
    (re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+"), "[email]"),
    (
        re.compile(r"(?i)\b(select\s.+?\sfrom|insert\s+into|update\s+\w+\s+set|delete\s+from)\b.*"),
        "[query]",
    ),
]

_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str) -> str:
    """Scrub credentials, addresses and SQL out of an error before a client sees it."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern, replacement in _ERROR_SCRUBBERS:
        result = pattern.sub(replacement, result)

    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result
