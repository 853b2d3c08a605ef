from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("gatekeeper_request_id", default=None)


def set_correlation_id(request_id: Optional[str] = None) -> str:
    """Bind the inbound ``X-Request-ID`` (or a new uuid) to the current context."""
    value = (request_id or "").strip()[:128] or str(uuid.uuid4())
    _request_id.set(value)
    return value


def current_request_id() -> Optional[str]:
    return _request_id.get()


def hash_identity(value: Optional[str]) -> Optional[str]:
    """Stable digest of an email or phone number for log correlation."""
    if not value:
        return None
    return hashlib.sha256(value.strip().lower().encode()).hexdigest()


# Substrings that mark a field as a credential or contact detail
_SENSITIVE_FIELD_PARTS = (
    "password",
    "secret",
    "token",
    "authorization",
    "cookie",
    "email",
    "phone",
    "code",
    "fingerprint",
)
_SAFE_FIELDS = frozenset(
    {"email_hash", "error_code", "status_code", "code_type", "code_length", "recipient_hash"}
)


def _is_sensitive(field: str) -> bool:
    lowered = field.lower()
    if lowered in _SAFE_FIELDS:
        return False
    return any(part in lowered for part in _SENSITIVE_FIELD_PARTS)


def _mask(field: str, value: Any) -> Any:
    if not isinstance(value, str):
        return value
    if "email" in field.lower() and "@" in value:
        return f"sha256:{hash_identity(value)[:16]}"
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            k: _mask(k, v) if _is_sensitive(str(k)) else _redact(v) for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(item) for item in value)
    return value


def redact_event(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential and contact fields, including inside nested dicts."""
    for key in list(event_dict):
        if key == "event":
            continue
        if _is_sensitive(key):
            event_dict[key] = _mask(key, event_dict[key])
        else:
            event_dict[key] = _redact(event_dict[key])
    return event_dict


def _bind_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_request_id,
        redact_event,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must never reach a client: DSNs, SQL, paths, inline secrets
_LEAKY_FRAGMENTS = [
    re.compile(r"(?i)\b(postgres(?:ql)?|redis|rediss)://\S+"),
    re.compile(r"(?i)\b(select|insert|update|delete)\b.{0,80}"),
    re.compile(r"(?i)\b(psycopg|pg_|relation \"|constraint \")\S*"),
    re.compile(r"(?:/[\w.\-]+){2,}"),
    re.compile(r"(?i)[a-z]:\\\S+"),
    re.compile(r"(?i)(password|secret|token|api[_-]?key)\s*[:=]\s*\S+"),
    re.compile(r"(?i)traceback \(most recent call last\).*", re.DOTALL),
]
_MAX_CLIENT_MESSAGE = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub an internal error message before it is placed in a response."""
    if not isinstance(error, str) or not error.strip():
        return "An error occurred"
    cleaned = error
    for pattern in _LEAKY_FRAGMENTS:
        cleaned = pattern.sub(replacement, cleaned)
    if len(cleaned) > _MAX_CLIENT_MESSAGE:
        cleaned = cleaned[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return cleaned
