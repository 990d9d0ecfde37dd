from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, echoed in X-Request-ID and in every envelope
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def hash_email(email: Optional[str]) -> str:
    """Stable, non-reversible email fingerprint for correlating log lines."""
    if not email:
        return ""
    digest = hashlib.sha256(email.strip().lower().encode()).hexdigest()
    return digest[:16]


def mask_email(email: Optional[str]) -> str:
    """Human-readable masked email (``jo***@example.com``) for notifications."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _stamp_request(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Field-name fragments whose values never reach the log sink unmasked.
# email_hash is already anonymised and token_purpose is a label, not a secret.
_CREDENTIAL_FRAGMENTS = ("password", "secret", "token", "authorization", "email", "cookie")
_ALWAYS_PLAIN = frozenset({"email_hash", "token_purpose"})


def _mask_value(value: str) -> str:
    return value[:2] + "***" + value[-2:]


def _redact_pii(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        name = key.lower()
        if name in _ALWAYS_PLAIN or not isinstance(value, str) or len(value) <= 4:
            continue
        if any(fragment in name for fragment in _CREDENTIAL_FRAGMENTS):
            event_dict[key] = _mask_value(value)
    return event_dict


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    console: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline used by every showauth logger.

    Unset arguments fall back to ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. Console rendering wins when either ``console`` is set
    or JSON output is switched off.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if console is None:
        console = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_request,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if console or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Applied in order; earlier patterns consume text later ones would also match.
_LEAK_PATTERNS = [
    re.compile(p)
    for p in (
        r"\$argon2(?:id|i|d)\$[^\s]+",
        r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+",
        r"\b[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\b",
        r"(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+",
        r"(?i)(select|insert|update|delete)\s+.{0,50}",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]", limit: int = 500) -> str:
    """Strip hashes, tokens, queries and paths from an internal error string.

    Used where an internal failure has to be surfaced to a caller; the raw
    text is logged separately under the request's correlation id.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    for pattern in _LEAK_PATTERNS:
        error = pattern.sub(replacement, error)
    if len(error) > limit:
        error = error[: limit - 3] + "..."
    return error
