from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger, hash_identity
from gatekeeper.service import events as event_types
from gatekeeper.service.abuse import AbuseDetector
from gatekeeper.service.credentials import GENERIC_AUTH_FAILURE, CredentialVerifier
from gatekeeper.service.delivery import EMAIL
from gatekeeper.service.errors import (
    INCORRECT_CURRENT_PASSWORD,
    INVALID_CREDENTIALS,
    INVALID_SESSION,
    INVALID_VERIFICATION_CODE,
    PASSWORD_POLICY_VIOLATION,
    PASSWORD_REUSED,
    SESSION_NOT_FOUND,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from gatekeeper.service.events import EventBroadcaster
from gatekeeper.service.mfa import CODE_INVALID, MfaChallengeManager
from gatekeeper.service.password_policy import (
    ExpirationInfo,
    PasswordPolicyEngine,
    PasswordValidationResult,
)
from gatekeeper.service.sessions import SessionManager
from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.models import (
    CodeType,
    MfaChallenge,
    PasswordPolicy,
    Principal,
    PrincipalKind,
    Session,
)

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = (
    "If an account with that email exists, you will receive a password reset code."
)
RESEND_MESSAGE = "If verification is pending for that email, a new code has been sent."
VERIFICATION_RESEND_MESSAGE = (
    "If that email has an unverified account, a new verification code has been sent."
)


class PrincipalStore(Protocol):
    def create_principal(self, kind: PrincipalKind, email: str, **kwargs: Any) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(
        self, kind: PrincipalKind, email: str
    ) -> Optional[Principal]: ...

    def update_principal(self, principal_id: str, **changes: Any) -> Optional[Principal]: ...

    def save_password(self, principal_id: str, password_hash: str) -> None: ...

    def get_system_settings(self) -> Dict[str, Any]: ...


@dataclass
class ClientContext:
    ip_address: str = "unknown"
    user_agent: Optional[str] = None
    fingerprint: Optional[str] = None


@dataclass
class LoginOutcome:
    principal: Principal
    session: Optional[Session] = None
    requires_mfa: bool = False
    trusted_device: bool = False
    password_expired: bool = False


def _policy_violation(result: PasswordValidationResult) -> ValidationError:
    return ValidationError(
        "Password does not meet complexity requirements",
        error_code=PASSWORD_POLICY_VIOLATION,
        detail={"feedback": result.feedback, "strength": result.strength},
    )


class LoginOrchestrator:
    """Composes limits, credentials, MFA and sessions into the boundary flows."""

    def __init__(
        self,
        store: PrincipalStore,
        settings: Settings,
        *,
        passwords: PasswordPolicyEngine,
        abuse: AbuseDetector,
        credentials: CredentialVerifier,
        mfa: MfaChallengeManager,
        sessions: SessionManager,
        events: EventBroadcaster,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords
        self.abuse = abuse
        self.credentials = credentials
        self.mfa = mfa
        self.sessions = sessions
        self.events = events
        self.logger = logger

    def _mfa_required(self, principal: Principal) -> bool:
        if principal.kind == PrincipalKind.CLIENT:
            return principal.mfa_enabled
        required = self.settings.mfa_required_for_employees
        try:
            value = self.store.get_system_settings().get("mfa_required_for_employees")
        except Exception as exc:
            self.logger.warning("mfa_setting_lookup_failed", error=str(exc))
            value = None
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return required if value is None else bool(value)

    def _password_expired(self, principal: Principal) -> bool:
        try:
            info = self.passwords.expiration_info(principal.id)
        except Exception as exc:
            self.logger.warning("password_expiration_lookup_failed", error=str(exc))
            return False
        return info.is_expired or info.force_change

    async def _start_session(self, principal: Principal, client: ClientContext) -> Session:
        session = await self.sessions.create(
            principal.id,
            principal.kind,
            principal.email,
            user_agent=client.user_agent,
            ip_address=client.ip_address,
        )
        self.events.emit(
            event_types.LOGIN,
            {"principal_id": principal.id, "kind": principal.kind.value, "session_id": session.id},
        )
        return session

    async def _send_login_challenge(self, principal: Principal, channels: str) -> None:
        challenge = await self.mfa.issue(
            principal.id, principal.email, CodeType.LOGIN, delivery_phone=principal.phone
        )
        await self.mfa.deliver(challenge, channels, email_to=principal.mfa_email)

    async def _consume_code(
        self, email: str, code: str, code_type: CodeType, ip_address: Optional[str]
    ) -> MfaChallenge:
        (await self.abuse.check_code_attempts(email, ip_address)).raise_if_blocked()
        result = await self.mfa.verify(email, code, code_type=code_type)
        if not result.ok:
            await self.abuse.record_code_failure(email, ip_address)
            raise ValidationError(CODE_INVALID, error_code=INVALID_VERIFICATION_CODE)
        await self.abuse.clear_code_failures(email)
        return result.challenge

    async def _finish_login(
        self, principal: Principal, client: ClientContext, channels: str
    ) -> LoginOutcome:
        if self._mfa_required(principal):
            if self.mfa.check_trusted_device(principal.id, principal.kind, client.fingerprint):
                self.logger.info("mfa_skipped_trusted_device", principal_id=principal.id)
                session = await self._start_session(principal, client)
                return LoginOutcome(
                    principal=principal,
                    session=session,
                    trusted_device=True,
                    password_expired=self._password_expired(principal),
                )
            await self._send_login_challenge(principal, channels)
            self.logger.info("mfa_challenge_sent", principal_id=principal.id)
            return LoginOutcome(principal=principal, requires_mfa=True)

        session = await self._start_session(principal, client)
        return LoginOutcome(
            principal=principal,
            session=session,
            password_expired=self._password_expired(principal),
        )

    async def login(
        self,
        email: str,
        password: str,
        client: ClientContext,
        *,
        channels: str = EMAIL,
    ) -> LoginOutcome:
        """Client login behind the per-IP failed-attempt limiter."""

        (await self.abuse.check_login(client.ip_address)).raise_if_blocked()
        result = self.credentials.authenticate(PrincipalKind.CLIENT, email, password)
        if not result.ok:
            await self.abuse.record_login_failure(client.ip_address)
            raise AuthenticationError(GENERIC_AUTH_FAILURE, error_code=INVALID_CREDENTIALS)
        await self.abuse.clear_login_failures(client.ip_address)
        return await self._finish_login(result.principal, client, channels)

    async def employee_login(
        self,
        email: str,
        password: str,
        client: ClientContext,
        *,
        channels: str = EMAIL,
    ) -> LoginOutcome:
        """Employee login behind the stricter per-(IP, email) limiter."""

        decision = await self.abuse.check_employee_login(
            client.ip_address, email, user_agent=client.user_agent
        )
        decision.raise_if_blocked()
        result = self.credentials.authenticate(PrincipalKind.EMPLOYEE, email, password)
        if not result.ok:
            await self.abuse.record_employee_failure(
                client.ip_address, email, result.failure_reason or "unknown"
            )
            raise AuthenticationError(GENERIC_AUTH_FAILURE, error_code=INVALID_CREDENTIALS)
        await self.abuse.clear_employee_attempts(client.ip_address, email)
        return await self._finish_login(result.principal, client, channels)

    async def verify_mfa(
        self,
        email: str,
        code: str,
        client: ClientContext,
        *,
        remember_device: bool = False,
        device_name: Optional[str] = None,
    ) -> LoginOutcome:
        challenge = await self._consume_code(email, code, CodeType.LOGIN, client.ip_address)
        principal = self.store.get_principal(challenge.principal_id) if challenge.principal_id else None
        if principal is None or principal.is_terminated:
            raise AuthenticationError(GENERIC_AUTH_FAILURE, error_code=INVALID_CREDENTIALS)
        if remember_device and client.fingerprint:
            try:
                self.mfa.trust_device(
                    principal.id, principal.kind, client.fingerprint, device_name=device_name
                )
            except Exception as exc:
                self.logger.warning("trusted_device_register_failed", error=str(exc))
        session = await self._start_session(principal, client)
        return LoginOutcome(
            principal=principal,
            session=session,
            password_expired=self._password_expired(principal),
        )

    async def resend_mfa(self, email: str, kind: PrincipalKind, *, channels: str = EMAIL) -> str:
        """Re-issue a login code; the reply is identical whether or not the account exists."""

        (await self.abuse.check_mfa_resend(email)).raise_if_blocked()
        principal = self.store.get_principal_by_email(kind, email)
        if principal is None or principal.is_terminated or not self._mfa_required(principal):
            self.logger.info("mfa_resend_ignored", email_hash=hash_identity(email))
            return RESEND_MESSAGE
        await self._send_login_challenge(principal, channels)
        return RESEND_MESSAGE

    async def logout(self, token: Optional[str]) -> None:
        session = self.store_session(token)
        if not await self.sessions.end(token):
            raise NotFoundError("Session not found or already ended", error_code=SESSION_NOT_FOUND)
        if session is not None:
            self.events.emit(
                event_types.LOGOUT,
                {"principal_id": session.principal_id, "session_id": session.id},
            )

    def store_session(self, token: Optional[str]) -> Optional[Session]:
        if not token:
            return None
        return self.sessions.store.get_session_by_token(token)

    async def validate_session(self, token: Optional[str]) -> Session:
        session = await self.sessions.validate(token)
        if session is None:
            raise AuthenticationError("Invalid or expired session", error_code=INVALID_SESSION)
        return session

    async def heartbeat(self, token: Optional[str]) -> Session:
        session = await self.sessions.extend(token)
        if session is None:
            raise AuthenticationError("Invalid or expired session", error_code=INVALID_SESSION)
        return session

    async def authenticate_session(self, token: Optional[str]) -> tuple[Session, Principal]:
        session = await self.validate_session(token)
        principal = self.store.get_principal(session.principal_id)
        if principal is None or principal.is_terminated:
            await self.sessions.end(token)
            raise AuthenticationError("Invalid or expired session", error_code=INVALID_SESSION)
        return session, principal

    async def regenerate_session(self, token: Optional[str], client: ClientContext) -> Session:
        session, principal = await self.authenticate_session(token)
        return await self.sessions.regenerate(
            session.token,
            principal.id,
            principal.kind,
            principal.email,
            user_agent=client.user_agent,
            ip_address=client.ip_address,
        )

    async def forgot_password(self, email: str, kind: PrincipalKind) -> str:
        principal = self.store.get_principal_by_email(kind, email)
        if principal is None or principal.is_terminated:
            self.logger.info("password_reset_unknown_account", email_hash=hash_identity(email))
            return FORGOT_PASSWORD_MESSAGE
        try:
            challenge = await self.mfa.issue(principal.id, principal.email, CodeType.RESET)
            await self.mfa.deliver(challenge, EMAIL)
            self.logger.info("password_reset_requested", principal_id=principal.id)
        except ServiceError as exc:
            self.logger.error(
                "password_reset_delivery_failed", principal_id=principal.id, error=exc.message
            )
        return FORGOT_PASSWORD_MESSAGE

    def _apply_new_password(self, principal: Principal, new_password: str) -> None:
        password_hash = self.passwords.hash(new_password)
        self.store.save_password(principal.id, password_hash)
        self.passwords.record_used(principal.id, password_hash, principal.kind)
        self.passwords.mark_changed(principal.id, principal.kind)

    async def reset_password(
        self,
        email: str,
        code: str,
        new_password: str,
        kind: PrincipalKind,
        *,
        ip_address: Optional[str] = None,
    ) -> None:
        principal = self.store.get_principal_by_email(kind, email)
        hints = principal.identity_hints() if principal else {"email": email}
        validation = self.passwords.validate(new_password, hints, kind=kind)
        if not validation.is_valid:
            raise _policy_violation(validation)

        challenge = await self._consume_code(email, code, CodeType.RESET, ip_address)
        target = (
            self.store.get_principal(challenge.principal_id) if challenge.principal_id else None
        )
        if target is None or target.is_terminated:
            raise ValidationError(CODE_INVALID, error_code=INVALID_VERIFICATION_CODE)

        self._apply_new_password(target, new_password)
        ended = await self.sessions.end_all(target.id)
        self.logger.info("password_reset_completed", principal_id=target.id, sessions_ended=ended)
        self.events.emit(
            event_types.PASSWORD_CHANGED, {"principal_id": target.id, "via": "reset"}
        )

    async def change_password(
        self,
        principal: Principal,
        current_password: str,
        new_password: str,
        *,
        current_token: Optional[str] = None,
    ) -> int:
        if not self.credentials.verify_current_password(principal.id, current_password):
            raise ValidationError(
                "Current password is incorrect", error_code=INCORRECT_CURRENT_PASSWORD
            )
        validation = self.passwords.validate(
            new_password, principal.identity_hints(), kind=principal.kind
        )
        if not validation.is_valid:
            raise _policy_violation(validation)
        if self.passwords.was_used_recently(principal.id, new_password, principal.kind):
            count = self.passwords.get_policy(principal.kind).history_count
            raise ValidationError(
                "Password was used recently. Please choose a password you haven't "
                f"used in the last {count} passwords.",
                error_code=PASSWORD_REUSED,
            )

        self._apply_new_password(principal, new_password)
        ended = await self.sessions.end_all(principal.id, except_token=current_token)
        self.logger.info("password_changed", principal_id=principal.id, sessions_ended=ended)
        self.events.emit(
            event_types.PASSWORD_CHANGED, {"principal_id": principal.id, "via": "change"}
        )
        return ended

    async def signup(
        self,
        email: str,
        password: str,
        client: ClientContext,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        business_id: Optional[str] = None,
    ) -> Principal:
        decision = await self.abuse.check_signup(client.ip_address)
        await self.abuse.record_signup_attempt(
            client.ip_address, email, outcome="allowed" if decision.allowed else "blocked"
        )
        decision.raise_if_blocked()

        hints = {
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "name": " ".join(p for p in (first_name, last_name) if p) or None,
        }
        validation = self.passwords.validate(password, hints, kind=PrincipalKind.CLIENT)
        if not validation.is_valid:
            raise _policy_violation(validation)

        try:
            principal = self.store.create_principal(
                PrincipalKind.CLIENT,
                email,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                business_id=business_id,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "An account with this email already exists", detail=exc.detail
            ) from exc
        self._apply_new_password(principal, password)

        challenge = await self.mfa.issue(principal.id, principal.email, CodeType.EMAIL_VERIFICATION)
        await self.mfa.deliver(challenge, EMAIL)
        self.logger.info("client_signed_up", principal_id=principal.id)
        return principal

    async def resend_verification(self, email: str) -> str:
        """Issue a fresh email-verification code for an unverified client.

        The reply is the same for unknown, verified and pending accounts, and
        requests share the per-email resend window with MFA resends.
        """

        (await self.abuse.check_mfa_resend(email)).raise_if_blocked()
        principal = self.store.get_principal_by_email(PrincipalKind.CLIENT, email)
        if principal is None or principal.is_terminated or principal.email_verified:
            self.logger.info("verification_resend_ignored", email_hash=hash_identity(email))
            return VERIFICATION_RESEND_MESSAGE
        try:
            challenge = await self.mfa.issue(
                principal.id, principal.email, CodeType.EMAIL_VERIFICATION
            )
            await self.mfa.deliver(challenge, EMAIL)
            self.logger.info("verification_code_resent", principal_id=principal.id)
        except ServiceError as exc:
            self.logger.error(
                "verification_resend_failed", principal_id=principal.id, error=exc.message
            )
        return VERIFICATION_RESEND_MESSAGE

    async def verify_email(
        self, email: str, code: str, *, ip_address: Optional[str] = None
    ) -> Principal:
        challenge = await self._consume_code(
            email, code, CodeType.EMAIL_VERIFICATION, ip_address
        )
        principal = (
            self.store.update_principal(challenge.principal_id, email_verified=True)
            if challenge.principal_id
            else None
        )
        if principal is None:
            raise ValidationError(CODE_INVALID, error_code=INVALID_VERIFICATION_CODE)
        self.logger.info("email_verified", principal_id=principal.id)
        return principal

    def password_expiration(self, principal_id: str) -> ExpirationInfo:
        return self.passwords.expiration_info(principal_id)

    def update_password_policy(
        self, actor_id: str, kind: PrincipalKind, changes: Mapping[str, Any]
    ) -> PasswordPolicy:
        policy = self.passwords.update_policy(kind, changes)
        self.events.emit(
            event_types.PASSWORD_POLICY_CHANGED,
            {"kind": policy.principal_kind.value, "actor_id": actor_id, "policy_id": policy.id},
        )
        return policy

    async def end_all_sessions(self, actor_id: str, target_id: str) -> int:
        count = await self.sessions.end_all(target_id)
        self.logger.info("sessions_force_ended", actor_id=actor_id, target_id=target_id, count=count)
        return count
