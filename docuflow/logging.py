"""Structured logging for DocuFlow.

Modules log through ``get_logger(__name__)`` with a snake_case event name
and keyword fields. Before rendering, every event is tagged with the
request's correlation id and scrubbed: credential fields are masked,
addresses are shortened and anything shaped like a raw token is replaced.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

_request_id: ContextVar[Optional[str]] = ContextVar("docuflow_request_id", default=None)

# raw tokens are 64+ hex characters; digests are never logged either
_RAW_TOKEN = re.compile(r"\b[0-9a-f]{64,}\b")
_EMAIL = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")

_MASKED_KEYS = frozenset(
    {"password", "new_password", "token", "raw_token", "secret", "authorization", "link"}
)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id, generating one if the client sent none."""
    value = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    _request_id.set(value)
    return value


def mask_email(email: str) -> str:
    local, sep, domain = email.partition("@")
    if not sep:
        return "redacted"
    return f"{local[:2]}***@{domain}"


def _tag_request(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    request_id = _request_id.get()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


def _scrub(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lowered = key.lower()
        if lowered in _MASKED_KEYS or lowered.endswith(("_password", "_secret", "_token")):
            event_dict[key] = "***"
        elif lowered == "to" or lowered.endswith("email"):
            event_dict[key] = mask_email(value)
        else:
            value = _RAW_TOKEN.sub("[token]", value)
            event_dict[key] = _EMAIL.sub(lambda m: mask_email(m.group()), value)
    return event_dict


def configure_logging(level: Optional[str] = None, *, json_output: Optional[bool] = None) -> None:
    """Install the structlog pipeline.

    Reads ``LOG_LEVEL`` and ``LOG_JSON`` when arguments are omitted. JSON
    lines are the default; ``LOG_JSON=false`` switches to the console
    renderer for local work.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _tag_request,
        _scrub,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

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


_CLIENT_UNSAFE = (
    (_EMAIL, "[email]"),
    (_RAW_TOKEN, "[token]"),
    (re.compile(r"(?i)\b(?:postgres(?:ql)?|redis|smtps?)://\S+"), "[dsn]"),
    (re.compile(r"(?:/[\w.-]+){2,}"), "[path]"),
    (re.compile(r"(?i)\b(password|secret|credential)\s*[:=]\s*\S+"), r"\1=[redacted]"),
)

MAX_CLIENT_ERROR_LENGTH = 300


def sanitize_error_message(error: str) -> str:
    """Make an internal error string safe to hand back to an API client.

    SMTP relays echo recipients and hosts back in their replies, so
    addresses, DSNs, paths and token-shaped strings are stripped and the
    result is capped in length.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern, replacement in _CLIENT_UNSAFE:
        result = pattern.sub(replacement, result)
    if len(result) > MAX_CLIENT_ERROR_LENGTH:
        result = result[: MAX_CLIENT_ERROR_LENGTH - 3] + "..."
    return result
