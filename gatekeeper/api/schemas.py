from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from gatekeeper.service.errors import ERROR_CODES

MAX_PASSWORD_INPUT = 1024

PrincipalKindField = Literal["employee", "client"]
ChannelField = Literal["email", "sms", "both"]


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of the stable machine codes."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"Invalid error code '{value}'")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_CODE_PATTERN = re.compile(r"^[0-9]{4,10}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_code(value: str) -> str:
    value = (value or "").strip()
    if not _CODE_PATTERN.match(value):
        raise ValueError("verification code must be numeric")
    return value


class _Request(BaseModel):
    """Request bodies accept camelCase keys and snake_case field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _EmailRequest(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(_EmailRequest):
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    device_fingerprint: Optional[str] = Field(default=None, max_length=256)
    mfa_channel: ChannelField = "email"


class MfaVerifyRequest(_EmailRequest):
    code: str = Field(..., max_length=10)
    remember_device: bool = False
    device_fingerprint: Optional[str] = Field(default=None, max_length=256)
    device_name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("code")
    @classmethod
    def _validate_mfa_code(cls, value: str) -> str:
        return _validate_code(value)


class MfaResendRequest(_EmailRequest):
    kind: PrincipalKindField = "client"
    mfa_channel: ChannelField = "email"


class SignupRequest(_EmailRequest):
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    business_id: Optional[str] = Field(default=None, max_length=128)


class EmailVerificationRequest(_EmailRequest):
    code: str = Field(..., max_length=10)

    @field_validator("code")
    @classmethod
    def _validate_verification_code(cls, value: str) -> str:
        return _validate_code(value)


class VerificationResendRequest(_EmailRequest):
    pass


class PasswordForgotRequest(_EmailRequest):
    kind: PrincipalKindField = "client"


class PasswordResetConfirm(_EmailRequest):
    code: str = Field(..., max_length=10)
    new_password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    kind: PrincipalKindField = "client"

    @field_validator("code")
    @classmethod
    def _validate_reset_code(cls, value: str) -> str:
        return _validate_code(value)


class PasswordChangeRequest(_Request):
    current_password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    new_password: str = Field(..., max_length=MAX_PASSWORD_INPUT)


class PasswordValidateRequest(_Request):
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    kind: PrincipalKindField = "client"
    email: Optional[str] = Field(default=None, max_length=254)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class PasswordPolicyUpdateRequest(_Request):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    min_length: Optional[int] = Field(default=None, ge=1, le=1024)
    max_length: Optional[int] = Field(default=None, ge=1, le=1024)
    require_uppercase: Optional[bool] = None
    require_lowercase: Optional[bool] = None
    require_numbers: Optional[bool] = None
    require_special: Optional[bool] = None
    special_chars: Optional[str] = Field(default=None, min_length=1, max_length=128)
    prevent_common_passwords: Optional[bool] = None
    prevent_identity_in_password: Optional[bool] = None
    history_enabled: Optional[bool] = None
    history_count: Optional[int] = Field(default=None, ge=0, le=100)
    expiration_enabled: Optional[bool] = None
    expiration_days: Optional[int] = Field(default=None, ge=1, le=3650)

    def changes(self) -> dict[str, Any]:
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}


class EndAllSessionsRequest(_Request):
    principal_id: str = Field(..., max_length=128)


class PermissionCacheInvalidateRequest(_Request):
    principal_id: Optional[str] = Field(default=None, max_length=128)


class LastRecordCheckRequest(_Request):
    resource_type: str = Field(..., max_length=64)
    scope_id: str = Field(..., max_length=128)


class _Response(BaseModel):
    """Response payloads serialize with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class SessionResponse(_Response):
    session_id: str
    principal_id: str
    kind: str
    expires_at: datetime
    last_activity: datetime
    token: Optional[str] = None


class LoginResponse(_Response):
    principal_id: str
    kind: str
    requires_mfa: bool = False
    trusted_device: bool = False
    password_expired: bool = False
    session: Optional[SessionResponse] = None
