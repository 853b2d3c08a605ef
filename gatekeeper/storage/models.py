from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class PrincipalKind(str, Enum):
    EMPLOYEE = "employee"
    CLIENT = "client"


class CodeType(str, Enum):
    LOGIN = "login"
    RESET = "reset"
    PHONE_VERIFICATION = "phone_verification"
    EMAIL_VERIFICATION = "email_verification"


@dataclass
class Principal:
    """An employee or client account.

    Employees may hold several roles; clients hold exactly one.
    """

    id: str
    kind: PrincipalKind
    email: str
    email_verified: bool = False
    status: str = "active"
    roles: List[str] = field(default_factory=list)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    phone: Optional[str] = None
    business_id: Optional[str] = None
    mfa_enabled: bool = False
    mfa_email: Optional[str] = None
    password_changed_at: Optional[datetime] = None
    password_expires_at: Optional[datetime] = None
    force_password_change: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminated(self) -> bool:
        return self.status in {"terminated", "inactive"}

    @property
    def display_name(self) -> Optional[str]:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None

    def identity_hints(self) -> Dict[str, Optional[str]]:
        return {
            "name": self.display_name,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "username": self.username,
        }


# Fields callers may change through update_principal; everything else is fixed
PRINCIPAL_UPDATABLE_FIELDS = frozenset(
    {
        "email_verified",
        "status",
        "first_name",
        "last_name",
        "username",
        "phone",
        "business_id",
        "mfa_enabled",
        "mfa_email",
        "password_changed_at",
        "password_expires_at",
        "force_password_change",
    }
)


@dataclass
class Session:
    id: str
    principal_id: str
    principal_kind: PrincipalKind
    email: str
    token: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    is_active: bool = True
    ended_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        principal_id: str,
        principal_kind: PrincipalKind,
        email: str,
        ttl_minutes: int,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=new_id(),
            principal_id=principal_id,
            principal_kind=PrincipalKind(principal_kind),
            email=email,
            # 64 random bytes, hex encoded
            token=secrets.token_hex(64),
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_live(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now


@dataclass
class MfaChallenge:
    id: str
    principal_id: Optional[str]
    email: str
    code: str
    code_type: CodeType
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None
    delivery_phone: Optional[str] = None

    @property
    def is_used(self) -> bool:
        return self.used_at is not None


@dataclass
class TrustedDevice:
    id: str
    principal_id: str
    principal_kind: PrincipalKind
    fingerprint: str
    trusted_at: datetime
    expires_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    device_name: Optional[str] = None
    revoked_at: Optional[datetime] = None


@dataclass
class Role:
    id: str
    name: str
    level: int = 0
    description: Optional[str] = None
    is_active: bool = True


@dataclass
class Permission:
    id: str
    permission_key: str
    description: Optional[str] = None
    is_active: bool = True


@dataclass
class RolePermissionGrant:
    role_id: str
    permission_id: str
    is_granted: bool = True


@dataclass
class PermissionAuditEntry:
    principal_id: str
    permission_key: str
    result: str
    role_used: Optional[str] = None
    details: Dict = field(default_factory=dict)
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


DEFAULT_SPECIAL_CHARS = "!@#$%^&*()_+-=[]{}|;:,.<>?"


@dataclass
class PasswordPolicy:
    principal_kind: PrincipalKind
    min_length: int = 8
    max_length: int = 128
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special: bool = True
    special_chars: str = DEFAULT_SPECIAL_CHARS
    prevent_common_passwords: bool = True
    prevent_identity_in_password: bool = True
    history_enabled: bool = True
    history_count: int = 5
    expiration_enabled: bool = True
    expiration_days: int = 90
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    @classmethod
    def default(cls, kind: PrincipalKind) -> "PasswordPolicy":
        return cls(principal_kind=PrincipalKind(kind), id="default")


@dataclass
class PasswordHistoryEntry:
    principal_id: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SecurityLogEntry:
    """Durable abuse-detection event (failed logins, signup attempts...)."""

    event_type: str
    ip_address: Optional[str] = None
    email: Optional[str] = None
    principal_id: Optional[str] = None
    details: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


class ResourceType(str, Enum):
    SERVICE_LOCATIONS = "service_locations"
    USERS = "users"


@dataclass
class ScopedRecord:
    """Minimal projection of a business-scoped row used for last-record checks."""

    id: str
    resource_type: ResourceType
    scope_id: str
    is_active: bool = True
    deleted_at: Optional[datetime] = None
    is_headquarters: bool = False
