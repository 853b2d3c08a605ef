from __future__ import annotations

from typing import Optional

# Machine-readable codes clients branch on
INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
INVALID_SESSION = "INVALID_SESSION"
SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
INVALID_VERIFICATION_CODE = "INVALID_VERIFICATION_CODE"
PASSWORD_POLICY_VIOLATION = "PASSWORD_POLICY_VIOLATION"
PASSWORD_REUSED = "PASSWORD_REUSED"
INCORRECT_CURRENT_PASSWORD = "INCORRECT_CURRENT_PASSWORD"
LOGIN_RATE_LIMIT_EXCEEDED = "LOGIN_RATE_LIMIT_EXCEEDED"
SUSPICIOUS_ACTIVITY_DETECTED = "SUSPICIOUS_ACTIVITY_DETECTED"
EMPLOYEE_LOGIN_RATE_LIMIT_EXCEEDED = "EMPLOYEE_LOGIN_RATE_LIMIT_EXCEEDED"
IP_SIGNUP_LIMIT_EXCEEDED = "IP_SIGNUP_LIMIT_EXCEEDED"
GLOBAL_SIGNUP_LIMIT_EXCEEDED = "GLOBAL_SIGNUP_LIMIT_EXCEEDED"
SMS_QUOTA_EXCEEDED = "SMS_QUOTA_EXCEEDED"
MFA_RESEND_LIMIT_EXCEEDED = "MFA_RESEND_LIMIT_EXCEEDED"
VERIFICATION_ATTEMPTS_EXCEEDED = "VERIFICATION_ATTEMPTS_EXCEEDED"
INSUFFICIENT_ACCESS_LEVEL = "INSUFFICIENT_ACCESS_LEVEL"
LAST_RECORD_PROTECTION = "LAST_RECORD_PROTECTION"
CHALLENGE_UNAVAILABLE = "CHALLENGE_UNAVAILABLE"
DELIVERY_FAILED = "DELIVERY_FAILED"

ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "forbidden",
        "not_found",
        "conflict",
        "rate_limited",
        "server_error",
        "service_unavailable",
        INVALID_CREDENTIALS,
        INVALID_SESSION,
        SESSION_NOT_FOUND,
        INVALID_VERIFICATION_CODE,
        PASSWORD_POLICY_VIOLATION,
        PASSWORD_REUSED,
        INCORRECT_CURRENT_PASSWORD,
        LOGIN_RATE_LIMIT_EXCEEDED,
        SUSPICIOUS_ACTIVITY_DETECTED,
        EMPLOYEE_LOGIN_RATE_LIMIT_EXCEEDED,
        IP_SIGNUP_LIMIT_EXCEEDED,
        GLOBAL_SIGNUP_LIMIT_EXCEEDED,
        SMS_QUOTA_EXCEEDED,
        MFA_RESEND_LIMIT_EXCEEDED,
        VERIFICATION_ATTEMPTS_EXCEEDED,
        INSUFFICIENT_ACCESS_LEVEL,
        LAST_RECORD_PROTECTION,
        CHALLENGE_UNAVAILABLE,
        DELIVERY_FAILED,
    }
)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a default ``error_code``;
    call sites pass a more specific machine code when clients need to branch
    on it (e.g. ``EMPLOYEE_LOGIN_RATE_LIMIT_EXCEEDED`` instead of
    ``rate_limited``).
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthorizationError(ServiceError):
    """Permission denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitError(ServiceError):
    """Rate limit exceeded (429). ``retry_after`` is in whole seconds."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        merged = dict(detail or {})
        if retry_after is not None:
            merged.setdefault("retryAfter", retry_after)
        super().__init__(message, detail=merged, error_code=error_code)
        self.retry_after = retry_after


class InternalError(ServiceError):
    status_code = 500
    error_code = "server_error"


class ChallengeUnavailableError(ServiceError):
    """MFA challenge could not be stored; the client should retry (503)."""
    status_code = 503
    error_code = CHALLENGE_UNAVAILABLE


class DeliveryError(ServiceError):
    """No channel accepted the outbound message (502)."""
    status_code = 502
    error_code = DELIVERY_FAILED


__all__ = [
    "ERROR_CODES",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitError",
    "InternalError",
    "ChallengeUnavailableError",
    "DeliveryError",
]
