from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from gatekeeper.logging import get_logger, hash_identity
from gatekeeper.service.password_policy import PasswordPolicyEngine
from gatekeeper.storage.models import Principal, PrincipalKind

logger = get_logger(__name__)

GENERIC_AUTH_FAILURE = "Invalid email or password"
_NIL_ID = "00000000-0000-0000-0000-000000000000"


class CredentialStore(Protocol):
    def get_principal_by_email(
        self, kind: PrincipalKind, email: str
    ) -> Optional[Principal]: ...

    def get_password_hash(self, principal_id: str) -> Optional[str]: ...


@dataclass
class AuthResult:
    principal: Optional[Principal]
    failure_reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.principal is not None


class CredentialVerifier:
    """Password check whose failure paths all cost one argon2 verification.

    Missing, terminated and unverified accounts are compared against a
    reference hash so callers cannot tell them apart from a wrong password
    by timing or by response. The specific reason is only returned for
    logging.
    """

    def __init__(self, store: CredentialStore, passwords: PasswordPolicyEngine) -> None:
        self.store = store
        self.passwords = passwords
        self.logger = logger
        self._reference_hash = passwords.hash("gatekeeper-reference-password")

    def _dummy_verify(self, password: str) -> None:
        self.passwords.verify(self._reference_hash, password)

    def authenticate(self, kind: PrincipalKind, email: str, password: str) -> AuthResult:
        email = (email or "").strip().lower()
        principal = self.store.get_principal_by_email(kind, email) if email else None
        reason: Optional[str] = None
        # Every path runs the same hash lookup, including missing accounts
        stored_hash = self.store.get_password_hash(principal.id if principal else _NIL_ID)
        if principal is None:
            reason = "account_not_found"
        elif principal.is_terminated:
            reason = "account_inactive"
        elif not principal.email_verified:
            reason = "email_unverified"
        elif not stored_hash:
            reason = "password_not_set"

        if reason is not None:
            self._dummy_verify(password)
            self.logger.info(
                "credential_check_failed",
                kind=PrincipalKind(kind).value,
                reason=reason,
                email_hash=hash_identity(email),
            )
            return AuthResult(principal=None, failure_reason=reason)

        if not self.passwords.verify(stored_hash, password):
            self.logger.info(
                "credential_check_failed",
                kind=PrincipalKind(kind).value,
                reason="password_mismatch",
                email_hash=hash_identity(email),
            )
            return AuthResult(principal=None, failure_reason="password_mismatch")
        return AuthResult(principal=principal)

    def verify_current_password(self, principal_id: str, password: str) -> bool:
        stored_hash = self.store.get_password_hash(principal_id)
        if not stored_hash:
            self._dummy_verify(password)
            return False
        return self.passwords.verify(stored_hash, password)
