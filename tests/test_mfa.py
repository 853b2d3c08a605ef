from datetime import timedelta

import pytest

from gatekeeper.service.abuse import AbuseDetector
from gatekeeper.service.delivery import DeliveryResult
from gatekeeper.service.errors import (
    SMS_QUOTA_EXCEEDED,
    ChallengeUnavailableError,
    DeliveryError,
    RateLimitError,
    ValidationError,
)
from gatekeeper.service.mfa import (
    CODE_INVALID,
    MfaChallengeManager,
)
from gatekeeper.storage.models import CodeType, PrincipalKind


class RecordingDelivery:
    def __init__(self, sent=True):
        self.sent = sent
        self.calls = []

    async def send(self, channel, recipient, message, *, subject=None):
        self.calls.append((channel, recipient, message, subject))
        return DeliveryResult(sent=self.sent, channel=channel)


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def abuse(store, counters, settings, clock):
    return AbuseDetector(store, counters, settings, clock=clock)


@pytest.fixture
def mfa(store, abuse, delivery, settings):
    return MfaChallengeManager(store, abuse, delivery, settings)


def test_generated_codes_have_configured_length(mfa):
    codes = {mfa.generate_code() for _ in range(50)}
    assert all(len(code) == 6 and code.isdigit() and code[0] != "0" for code in codes)


def test_ttl_per_code_type(mfa):
    assert mfa.ttl_minutes(CodeType.LOGIN) == 5
    assert mfa.ttl_minutes(CodeType.RESET) == 15
    assert mfa.ttl_minutes(CodeType.PHONE_VERIFICATION) == 10
    assert mfa.ttl_minutes(CodeType.EMAIL_VERIFICATION) == 10


async def test_issue_replaces_unused_code(mfa, store):
    first = await mfa.issue("p1", "User@Example.com", CodeType.LOGIN)
    second = await mfa.issue("p1", "user@example.com", CodeType.LOGIN)
    assert first.email == "user@example.com"
    assert list(store.challenges) == [second.id]


async def test_issue_keeps_codes_of_other_types(mfa, store):
    await mfa.issue("p1", "user@example.com", CodeType.LOGIN)
    await mfa.issue("p1", "user@example.com", CodeType.RESET)
    assert len(store.challenges) == 2


async def test_verify_consumes_once(mfa):
    challenge = await mfa.issue("p1", "user@example.com", CodeType.LOGIN)
    result = await mfa.verify("USER@example.com", challenge.code)
    assert result.ok
    assert result.challenge.principal_id == "p1"

    again = await mfa.verify("user@example.com", challenge.code)
    assert not again.ok
    assert again.error == CODE_INVALID
    assert again.reason == "used"


async def test_rejections_share_one_message(mfa, store):
    challenge = await mfa.issue("p1", "user@example.com", CodeType.LOGIN)
    store.challenges[challenge.id].expires_at = challenge.created_at - timedelta(seconds=1)

    expired = await mfa.verify("user@example.com", challenge.code)
    unknown = await mfa.verify("user@example.com", "000000")
    assert expired.error == unknown.error == CODE_INVALID
    assert (expired.reason, unknown.reason) == ("expired", "unknown")
    assert (await mfa.verify("", "")).error == CODE_INVALID


async def test_verify_respects_code_type(mfa):
    challenge = await mfa.issue("p1", "user@example.com", CodeType.RESET)
    wrong_type = await mfa.verify("user@example.com", challenge.code, code_type=CodeType.LOGIN)
    assert not wrong_type.ok
    assert (await mfa.verify("user@example.com", challenge.code, code_type=CodeType.RESET)).ok


async def test_store_failure_maps_to_unavailable(mfa, store, monkeypatch):
    def boom(challenge):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(store, "upsert_challenge", boom)
    with pytest.raises(ChallengeUnavailableError):
        await mfa.issue("p1", "user@example.com", CodeType.LOGIN)


async def test_deliver_email_uses_override_address(mfa, delivery):
    challenge = await mfa.issue("p1", "user@example.com", CodeType.LOGIN)
    results = await mfa.deliver(challenge, "email", email_to="mfa@example.com")

    assert [r.channel for r in results] == ["email"]
    channel, recipient, message, subject = delivery.calls[0]
    assert recipient == "mfa@example.com"
    assert challenge.code in message
    assert subject == "Your sign-in verification code"


async def test_deliver_both_channels_records_sms(mfa, delivery, abuse):
    challenge = await mfa.issue(
        "p1", "user@example.com", CodeType.LOGIN, delivery_phone="+15550001111"
    )
    results = await mfa.deliver(challenge, "both")
    assert [r.channel for r in results] == ["email", "sms"]
    assert len(await abuse.counters.window("sms:hour:+15550001111", 3600)) == 1


async def test_deliver_sms_without_phone_rejected(mfa):
    challenge = await mfa.issue("p1", "user@example.com", CodeType.LOGIN)
    with pytest.raises(ValidationError):
        await mfa.deliver(challenge, "sms")
    with pytest.raises(ValidationError):
        await mfa.deliver(challenge, "pigeon")


async def test_sms_quota_skips_sms_leg_of_both(mfa, delivery, abuse):
    phone = "+15550002222"
    for _ in range(5):
        await abuse.record_sms(phone)
    challenge = await mfa.issue("p1", "user@example.com", CodeType.LOGIN, delivery_phone=phone)

    results = await mfa.deliver(challenge, "both")
    assert [r.channel for r in results] == ["email"]

    with pytest.raises(RateLimitError) as excinfo:
        await mfa.deliver(challenge, "sms")
    assert excinfo.value.error_code == SMS_QUOTA_EXCEEDED


async def test_nothing_sent_raises(store, abuse, settings):
    manager = MfaChallengeManager(store, abuse, RecordingDelivery(sent=False), settings)
    challenge = await manager.issue("p1", "user@example.com", CodeType.RESET)
    with pytest.raises(DeliveryError):
        await manager.deliver(challenge, "email")


def test_trusted_device_lifecycle(mfa):
    assert not mfa.check_trusted_device("p1", PrincipalKind.CLIENT, None)
    device = mfa.trust_device("p1", PrincipalKind.CLIENT, "fp-1", device_name="Laptop")
    again = mfa.trust_device("p1", PrincipalKind.CLIENT, "fp-1")

    assert again.id == device.id
    assert again.device_name == "Laptop"
    assert mfa.check_trusted_device("p1", PrincipalKind.CLIENT, "fp-1")
    assert not mfa.check_trusted_device("p1", PrincipalKind.EMPLOYEE, "fp-1")
    assert [d.id for d in mfa.list_devices("p1")] == [device.id]

    assert not mfa.revoke_device("p2", device.id)
    assert mfa.revoke_device("p1", device.id)
    assert not mfa.check_trusted_device("p1", PrincipalKind.CLIENT, "fp-1")
    assert mfa.list_devices("p1") == []


def test_expired_trusted_device_ignored(mfa, store):
    device = mfa.trust_device("p1", PrincipalKind.CLIENT, "fp-2")
    store.trusted_devices[device.id].expires_at = device.trusted_at - timedelta(days=1)
    assert not mfa.check_trusted_device("p1", PrincipalKind.CLIENT, "fp-2")
