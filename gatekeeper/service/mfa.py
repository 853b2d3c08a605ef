from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger, hash_identity
from gatekeeper.service.abuse import AbuseDetector
from gatekeeper.service.delivery import EMAIL, SMS, DeliveryResult, DeliveryService, render_code_message
from gatekeeper.service.errors import ChallengeUnavailableError, DeliveryError, ValidationError
from gatekeeper.storage.models import (
    CodeType,
    MfaChallenge,
    PrincipalKind,
    TrustedDevice,
    new_id,
)

logger = get_logger(__name__)

CODE_INVALID = "Invalid verification code"


class ChallengeStore(Protocol):
    def upsert_challenge(self, challenge: MfaChallenge) -> MfaChallenge: ...

    def consume_challenge(
        self, email: str, code: str, now: datetime, *, code_type: Optional[CodeType] = None
    ) -> Optional[MfaChallenge]: ...

    def find_challenge(
        self, email: str, code: str, *, code_type: Optional[CodeType] = None
    ) -> Optional[MfaChallenge]: ...

    def upsert_trusted_device(self, device: TrustedDevice) -> TrustedDevice: ...

    def find_trusted_device(
        self,
        principal_id: str,
        principal_kind: PrincipalKind,
        fingerprint: str,
        now: datetime,
    ) -> Optional[TrustedDevice]: ...

    def list_trusted_devices(self, principal_id: str) -> List[TrustedDevice]: ...

    def revoke_trusted_device(
        self, principal_id: str, device_id: str, now: datetime
    ) -> bool: ...


@dataclass
class VerifyResult:
    ok: bool
    error: Optional[str] = None
    challenge: Optional[MfaChallenge] = None
    # Internal only: "unknown", "used" or "expired"
    reason: Optional[str] = None


class MfaChallengeManager:
    """Issues, delivers and consumes one-time numeric codes.

    Storing a code replaces any unused code of the same type for the same
    email, and consumption is a single atomic store operation, so a code can
    succeed at most once.
    """

    def __init__(
        self,
        store: ChallengeStore,
        abuse: AbuseDetector,
        delivery: DeliveryService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.abuse = abuse
        self.delivery = delivery
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def generate_code(self) -> str:
        length = self.settings.mfa_code_length
        low = 10 ** (length - 1)
        return str(low + secrets.randbelow(9 * low))

    def ttl_minutes(self, code_type: CodeType) -> int:
        code_type = CodeType(code_type)
        if code_type == CodeType.LOGIN:
            return self.settings.mfa_login_ttl_minutes
        if code_type == CodeType.RESET:
            return self.settings.mfa_reset_ttl_minutes
        return self.settings.mfa_phone_verification_ttl_minutes

    async def issue(
        self,
        principal_id: Optional[str],
        email: str,
        code_type: CodeType,
        *,
        delivery_phone: Optional[str] = None,
    ) -> MfaChallenge:
        now = self._now()
        challenge = MfaChallenge(
            id=new_id(),
            principal_id=principal_id,
            email=email.strip().lower(),
            code=self.generate_code(),
            code_type=CodeType(code_type),
            created_at=now,
            expires_at=now + timedelta(minutes=self.ttl_minutes(code_type)),
            delivery_phone=delivery_phone,
        )
        try:
            return self.store.upsert_challenge(challenge)
        except Exception as exc:
            self.logger.error(
                "mfa_challenge_store_failed",
                code_type=challenge.code_type.value,
                email_hash=hash_identity(email),
                error=str(exc),
            )
            raise ChallengeUnavailableError(
                "Verification is temporarily unavailable. Please try again."
            ) from exc

    async def deliver(
        self,
        challenge: MfaChallenge,
        channels: str = EMAIL,
        *,
        email_to: Optional[str] = None,
    ) -> List[DeliveryResult]:
        """Send ``challenge`` over ``email``, ``sms`` or ``both``.

        An exhausted SMS quota refuses the SMS leg without touching the
        stored code. Raises ``DeliveryError`` when nothing was sent.
        """

        wanted = [EMAIL, SMS] if channels == "both" else [channels]
        if any(channel not in (EMAIL, SMS) for channel in wanted):
            raise ValidationError("channels must be email, sms or both", detail={"channels": channels})
        subject, text = render_code_message(
            challenge.code, challenge.code_type, self.ttl_minutes(challenge.code_type)
        )
        results: List[DeliveryResult] = []
        for channel in wanted:
            if channel == SMS:
                phone = challenge.delivery_phone
                if not phone:
                    if channels == SMS:
                        raise ValidationError("no phone number on file for SMS delivery")
                    continue
                decision = await self.abuse.check_sms_quota(phone)
                if not decision.allowed:
                    if channels == SMS:
                        decision.raise_if_blocked()
                    self.logger.warning("mfa_sms_quota_skipped", code_type=challenge.code_type.value)
                    continue
                result = await self.delivery.send(SMS, phone, text)
                if result.sent:
                    await self.abuse.record_sms(phone)
            else:
                result = await self.delivery.send(
                    EMAIL, email_to or challenge.email, text, subject=subject
                )
            results.append(result)

        if not any(r.sent for r in results):
            self.logger.error(
                "mfa_delivery_failed",
                code_type=challenge.code_type.value,
                channels=channels,
                email_hash=hash_identity(challenge.email),
            )
            raise DeliveryError("Failed to send verification code. Please try again.")
        return results

    async def verify(
        self, email: str, code: str, *, code_type: Optional[CodeType] = None
    ) -> VerifyResult:
        email = (email or "").strip().lower()
        code = (code or "").strip()
        if not email or not code:
            return VerifyResult(ok=False, error=CODE_INVALID, reason="unknown")
        now = self._now()
        try:
            consumed = self.store.consume_challenge(email, code, now, code_type=code_type)
            if consumed:
                self.logger.info(
                    "mfa_code_verified",
                    code_type=consumed.code_type.value,
                    email_hash=hash_identity(email),
                )
                return VerifyResult(ok=True, challenge=consumed)
            existing = self.store.find_challenge(email, code, code_type=code_type)
        except Exception as exc:
            self.logger.error("mfa_challenge_lookup_failed", error=str(exc))
            raise ChallengeUnavailableError(
                "Verification is temporarily unavailable. Please try again."
            ) from exc

        if existing is None:
            reason = "unknown"
        elif existing.is_used:
            reason = "used"
        else:
            reason = "expired"
        self.logger.info("mfa_code_rejected", reason=reason, email_hash=hash_identity(email))
        return VerifyResult(ok=False, error=CODE_INVALID, reason=reason)

    def check_trusted_device(
        self, principal_id: str, kind: PrincipalKind, fingerprint: Optional[str]
    ) -> bool:
        if not fingerprint:
            return False
        try:
            device = self.store.find_trusted_device(
                principal_id, PrincipalKind(kind), fingerprint, self._now()
            )
        except Exception as exc:
            self.logger.warning("trusted_device_lookup_failed", error=str(exc))
            return False
        return device is not None

    def trust_device(
        self,
        principal_id: str,
        kind: PrincipalKind,
        fingerprint: str,
        *,
        device_name: Optional[str] = None,
    ) -> TrustedDevice:
        now = self._now()
        device = TrustedDevice(
            id=new_id(),
            principal_id=principal_id,
            principal_kind=PrincipalKind(kind),
            fingerprint=fingerprint,
            trusted_at=now,
            expires_at=now + timedelta(days=self.settings.trusted_device_days),
            device_name=device_name,
        )
        stored = self.store.upsert_trusted_device(device)
        self.logger.info("trusted_device_registered", principal_id=principal_id)
        return stored

    def list_devices(self, principal_id: str) -> List[TrustedDevice]:
        return self.store.list_trusted_devices(principal_id)

    def revoke_device(self, principal_id: str, device_id: str) -> bool:
        revoked = self.store.revoke_trusted_device(principal_id, device_id, self._now())
        if revoked:
            self.logger.info("trusted_device_revoked", principal_id=principal_id, device_id=device_id)
        return revoked
