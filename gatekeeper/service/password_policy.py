from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatekeeper.logging import get_logger
from gatekeeper.service.errors import NotFoundError, ValidationError
from gatekeeper.storage.models import (
    PasswordHistoryEntry,
    PasswordPolicy,
    Principal,
    PrincipalKind,
)

logger = get_logger(__name__)

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "123456",
        "123456789",
        "12345678",
        "12345",
        "1234567",
        "password123",
        "admin",
        "qwerty",
        "abc123",
        "password1",
        "welcome",
        "login",
        "monkey",
        "dragon",
        "pass",
        "master",
        "123123",
        "letmein",
        "baseball",
        "shadow",
        "football",
        "superman",
        "michael",
        "ninja",
        "mustang",
        "access",
        "batman",
        "trustno1",
        "thomas",
        "robert",
    }
)

IDENTITY_FIELDS = ("name", "email", "first_name", "last_name", "username")
MIN_IDENTITY_OVERLAP = 3

# Policy fields an administrator may change
EDITABLE_POLICY_FIELDS = frozenset(
    f.name
    for f in fields(PasswordPolicy)
    if f.name not in {"principal_kind", "is_active", "created_at", "id"}
)


class PasswordPolicyStore(Protocol):
    def get_active_password_policy(
        self, kind: PrincipalKind
    ) -> Optional[PasswordPolicy]: ...

    def set_active_password_policy(self, policy: PasswordPolicy) -> PasswordPolicy: ...

    def add_password_history(
        self, principal_id: str, password_hash: str, *, keep: int
    ) -> None: ...

    def list_password_history(
        self, principal_id: str, limit: int
    ) -> List[PasswordHistoryEntry]: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def update_principal(self, principal_id: str, **changes: Any) -> Optional[Principal]: ...


@dataclass
class PasswordValidationResult:
    is_valid: bool
    feedback: List[str] = field(default_factory=list)
    strength: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"isValid": self.is_valid, "feedback": self.feedback, "strength": self.strength}


@dataclass
class ExpirationInfo:
    changed_at: Optional[datetime]
    expires_at: Optional[datetime]
    days_until_expiration: Optional[int]
    is_expired: bool
    force_change: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passwordChangedAt": self.changed_at.isoformat() if self.changed_at else None,
            "passwordExpiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "daysUntilExpiration": self.days_until_expiration,
            "isExpired": self.is_expired,
            "forcePasswordChange": self.force_change,
        }


class PasswordPolicyEngine:
    """Complexity rules, rotation history and expiration for principal passwords.

    The engine also owns the argon2id hasher so every component hashes and
    verifies with the same parameters.
    """

    def __init__(self, store: PasswordPolicyStore, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self.hasher = hasher or PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def get_policy(self, kind: PrincipalKind) -> PasswordPolicy:
        """Return the active policy, falling back to the built-in default."""

        kind = PrincipalKind(kind)
        try:
            policy = self.store.get_active_password_policy(kind)
        except Exception as exc:
            self.logger.warning("password_policy_lookup_failed", kind=kind.value, error=str(exc))
            policy = None
        return policy or PasswordPolicy.default(kind)

    @staticmethod
    def policy_to_dict(policy: PasswordPolicy) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            name: getattr(policy, name) for name in sorted(EDITABLE_POLICY_FIELDS)
        }
        data["kind"] = policy.principal_kind.value
        data["id"] = policy.id
        data["createdAt"] = policy.created_at.isoformat()
        return data

    def update_policy(self, kind: PrincipalKind, changes: Mapping[str, Any]) -> PasswordPolicy:
        unknown = set(changes) - EDITABLE_POLICY_FIELDS
        if unknown:
            raise ValidationError(
                "unknown password policy fields", detail={"fields": sorted(unknown)}
            )
        current = self.get_policy(kind)
        candidate = replace(current, **dict(changes))
        if candidate.min_length < 1 or candidate.max_length < candidate.min_length:
            raise ValidationError(
                "min_length must be at least 1 and not exceed max_length",
                detail={"min_length": candidate.min_length, "max_length": candidate.max_length},
            )
        if candidate.history_count < 0 or candidate.expiration_days < 1:
            raise ValidationError(
                "history_count must be >= 0 and expiration_days >= 1",
                detail={
                    "history_count": candidate.history_count,
                    "expiration_days": candidate.expiration_days,
                },
            )
        stored = self.store.set_active_password_policy(candidate)
        self.logger.info(
            "password_policy_updated", kind=stored.principal_kind.value, fields=sorted(changes)
        )
        return stored

    def validate(
        self,
        password: str,
        identity_hints: Optional[Mapping[str, Optional[str]]] = None,
        *,
        kind: PrincipalKind = PrincipalKind.EMPLOYEE,
        policy: Optional[PasswordPolicy] = None,
    ) -> PasswordValidationResult:
        """Check ``password`` against every rule and report each violation."""

        policy = policy or self.get_policy(kind)
        feedback: List[str] = []
        score = 0

        if len(password) < policy.min_length:
            feedback.append(f"Password must be at least {policy.min_length} characters long")
        else:
            score += 20
        if policy.max_length and len(password) > policy.max_length:
            feedback.append(f"Password must not exceed {policy.max_length} characters")

        if policy.require_uppercase:
            if re.search(r"[A-Z]", password):
                score += 15
            else:
                feedback.append("Password must contain at least one uppercase letter")
        if policy.require_lowercase:
            if re.search(r"[a-z]", password):
                score += 15
            else:
                feedback.append("Password must contain at least one lowercase letter")
        if policy.require_numbers:
            if re.search(r"[0-9]", password):
                score += 15
            else:
                feedback.append("Password must contain at least one number")
        if policy.require_special:
            specials = policy.special_chars or ""
            if any(ch in specials for ch in password):
                score += 15
            else:
                feedback.append(
                    f"Password must contain at least one special character ({specials})"
                )

        if policy.prevent_common_passwords:
            if password.lower() in COMMON_PASSWORDS:
                feedback.append("Password is too common. Please choose a more unique password")
            else:
                score += 10

        if policy.prevent_identity_in_password and identity_hints:
            lowered = password.lower()
            leaked = False
            for name in IDENTITY_FIELDS:
                value = identity_hints.get(name)
                if not value:
                    continue
                value = value.lower()
                if len(value) >= MIN_IDENTITY_OVERLAP and value in lowered:
                    leaked = True
                    break
            if leaked:
                feedback.append("Password must not contain personal information")
            else:
                score += 10

        score += min((len(password) - policy.min_length) * 2, 10)
        return PasswordValidationResult(
            is_valid=not feedback,
            feedback=feedback,
            strength=max(0, min(score, 100)),
        )

    def hash(self, password: str) -> str:
        return self.hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self.hasher.verify(password_hash, password)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    def record_used(self, principal_id: str, password_hash: str, kind: PrincipalKind) -> None:
        policy = self.get_policy(kind)
        if not policy.history_enabled:
            return
        self.store.add_password_history(
            principal_id, password_hash, keep=policy.history_count
        )

    def was_used_recently(self, principal_id: str, password: str, kind: PrincipalKind) -> bool:
        """True when ``password`` matches one of the last ``history_count`` hashes.

        Errors read as "not reused" so a broken history table cannot lock
        users out of changing their password.
        """

        policy = self.get_policy(kind)
        if not policy.history_enabled or policy.history_count <= 0:
            return False
        try:
            entries = self.store.list_password_history(principal_id, policy.history_count)
        except Exception as exc:
            self.logger.warning(
                "password_history_check_failed", principal_id=principal_id, error=str(exc)
            )
            return False
        return any(self.verify(entry.password_hash, password) for entry in entries)

    def expiration_info(self, principal_id: str) -> ExpirationInfo:
        principal = self.store.get_principal(principal_id)
        if not principal:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        policy = self.get_policy(principal.kind)
        changed_at = principal.password_changed_at
        expires_at = principal.password_expires_at
        if (
            expires_at is None
            and policy.expiration_enabled
            and policy.expiration_days
            and changed_at is not None
        ):
            expires_at = changed_at + timedelta(days=policy.expiration_days)

        days_left: Optional[int] = None
        is_expired = False
        if expires_at is not None:
            remaining = (expires_at - self._now()).total_seconds()
            days_left = math.ceil(remaining / 86400)
            is_expired = days_left <= 0
        return ExpirationInfo(
            changed_at=changed_at,
            expires_at=expires_at,
            days_until_expiration=days_left,
            is_expired=is_expired,
            force_change=principal.force_password_change,
        )

    def mark_changed(self, principal_id: str, kind: PrincipalKind) -> None:
        policy = self.get_policy(kind)
        now = self._now()
        expires_at = None
        if policy.expiration_enabled and policy.expiration_days:
            expires_at = now + timedelta(days=policy.expiration_days)
        self.store.update_principal(
            principal_id,
            password_changed_at=now,
            password_expires_at=expires_at,
            force_password_change=False,
        )
