import pytest

from gatekeeper.service.abuse import (
    FAILED_EMPLOYEE_LOGIN,
    SIGNUP_ATTEMPT,
    SUSPICIOUS_PATTERN,
    AbuseDetector,
)
from gatekeeper.service.errors import (
    EMPLOYEE_LOGIN_RATE_LIMIT_EXCEEDED,
    GLOBAL_SIGNUP_LIMIT_EXCEEDED,
    IP_SIGNUP_LIMIT_EXCEEDED,
    LOGIN_RATE_LIMIT_EXCEEDED,
    MFA_RESEND_LIMIT_EXCEEDED,
    SMS_QUOTA_EXCEEDED,
    SUSPICIOUS_ACTIVITY_DETECTED,
    VERIFICATION_ATTEMPTS_EXCEEDED,
    RateLimitError,
)


@pytest.fixture
def abuse(store, counters, settings, clock):
    return AbuseDetector(store, counters, settings, clock=clock)


class BrokenCounters:
    def __getattr__(self, name):
        async def _fail(*args, **kwargs):
            raise ConnectionError("counter backend down")

        return _fail


async def test_login_blocks_after_max_failures_per_ip(abuse, clock):
    for _ in range(5):
        assert (await abuse.check_login("1.1.1.1")).allowed
        await abuse.record_login_failure("1.1.1.1")

    decision = await abuse.check_login("1.1.1.1")
    assert not decision.allowed
    assert decision.error_code == LOGIN_RATE_LIMIT_EXCEEDED
    assert decision.retry_after == 15 * 60
    assert (await abuse.check_login("2.2.2.2")).allowed

    clock.advance(15 * 60 + 1)
    assert (await abuse.check_login("1.1.1.1")).allowed


async def test_login_failures_cleared_on_success(abuse):
    for _ in range(5):
        await abuse.record_login_failure("1.1.1.1")
    await abuse.clear_login_failures("1.1.1.1")
    assert (await abuse.check_login("1.1.1.1")).allowed


async def test_code_attempts_block_per_email_until_window_passes(abuse, clock):
    for _ in range(5):
        assert (await abuse.check_code_attempts("ann@example.com", "1.1.1.1")).allowed
        await abuse.record_code_failure("ann@example.com", "1.1.1.1")

    decision = await abuse.check_code_attempts("Ann@Example.com", "9.9.9.9")
    assert not decision.allowed
    assert decision.error_code == VERIFICATION_ATTEMPTS_EXCEEDED
    assert decision.retry_after == 15 * 60

    clock.advance(15 * 60 + 1)
    assert (await abuse.check_code_attempts("ann@example.com", "1.1.1.1")).allowed


async def test_code_attempts_block_per_ip_across_emails(abuse):
    for n in range(5):
        await abuse.record_code_failure(f"user{n}@example.com", "1.1.1.1")
    assert not (await abuse.check_code_attempts("fresh@example.com", "1.1.1.1")).allowed
    assert (await abuse.check_code_attempts("fresh@example.com", "2.2.2.2")).allowed


async def test_code_success_clears_email_window_only(abuse):
    for _ in range(5):
        await abuse.record_code_failure("ann@example.com", "1.1.1.1")
    await abuse.clear_code_failures("ann@example.com")
    assert (await abuse.check_code_attempts("ann@example.com", None)).allowed
    assert not (await abuse.check_code_attempts("ann@example.com", "1.1.1.1")).allowed


async def test_raise_if_blocked_carries_retry_after(abuse):
    for _ in range(5):
        await abuse.record_login_failure("1.1.1.1")
    decision = await abuse.check_login("1.1.1.1")
    with pytest.raises(RateLimitError) as excinfo:
        decision.raise_if_blocked()
    assert excinfo.value.error_code == LOGIN_RATE_LIMIT_EXCEEDED
    assert excinfo.value.retry_after == decision.retry_after
    assert excinfo.value.detail["limit"] == 5


async def test_employee_login_fourth_attempt_blocked(abuse, store):
    for _ in range(3):
        assert (await abuse.check_employee_login("9.9.9.9", "Ops@Example.com")).allowed

    decision = await abuse.check_employee_login("9.9.9.9", "ops@example.com")
    assert not decision.allowed
    assert decision.error_code == EMPLOYEE_LOGIN_RATE_LIMIT_EXCEEDED
    assert decision.current == 3
    assert store.security_log[-1].event_type == "employee_login_rate_limit_exceeded"

    # a different email from the same IP has its own window
    assert (await abuse.check_employee_login("9.9.9.9", "tech@example.com")).allowed


async def test_employee_attempts_cleared(abuse):
    for _ in range(3):
        await abuse.check_employee_login("9.9.9.9", "ops@example.com")
    await abuse.clear_employee_attempts("9.9.9.9", "ops@example.com")
    assert (await abuse.check_employee_login("9.9.9.9", "ops@example.com")).allowed


async def test_many_identities_from_one_ip_is_suspicious(abuse, store):
    for i in range(5):
        await abuse.check_employee_login("6.6.6.6", f"user{i}@example.com")

    decision = await abuse.check_employee_login("6.6.6.6", "user5@example.com")
    assert not decision.allowed
    assert decision.error_code == SUSPICIOUS_ACTIVITY_DETECTED
    assert any(e.event_type == SUSPICIOUS_PATTERN for e in store.security_log)


async def test_failure_history_triggers_suspicion(abuse):
    for _ in range(16):
        await abuse.record_employee_failure("7.7.7.7", "ops@example.com", "wrong_password")
    assert await abuse.detect_suspicious("7.7.7.7", "ops@example.com")
    assert not await abuse.detect_suspicious("8.8.8.8", "ops@example.com")


async def test_limiter_fails_open(store, settings, clock):
    detector = AbuseDetector(store, BrokenCounters(), settings, clock=clock)
    assert (await detector.check_login("1.1.1.1")).allowed
    assert (await detector.check_employee_login("1.1.1.1", "a@example.com")).allowed
    assert (await detector.check_mfa_resend("a@example.com")).allowed
    assert (await detector.check_sms_quota("+15550001111")).allowed
    assert (await detector.check_signup("1.1.1.1")).allowed
    assert (await detector.check_code_attempts("a@example.com", "1.1.1.1")).allowed
    await detector.record_code_failure("a@example.com", "1.1.1.1")


async def test_signup_ip_limit_counts_attempts_today(abuse):
    for _ in range(3):
        assert (await abuse.check_signup("3.3.3.3")).allowed
        await abuse.record_signup_attempt("3.3.3.3", "x@example.com", outcome="allowed")

    decision = await abuse.check_signup("3.3.3.3")
    assert not decision.allowed
    assert decision.error_code == IP_SIGNUP_LIMIT_EXCEEDED
    assert 0 < decision.retry_after <= 86400


async def test_signup_global_limit_from_system_settings(abuse, store):
    store.set_system_setting("signup_global_daily_limit", 2)
    assert (await abuse.check_signup("1.0.0.1")).allowed
    assert (await abuse.check_signup("1.0.0.2")).allowed

    decision = await abuse.check_signup("1.0.0.3")
    assert not decision.allowed
    assert decision.error_code == GLOBAL_SIGNUP_LIMIT_EXCEEDED
    assert decision.current == 2


async def test_signup_blocked_by_ip_does_not_advance_global(abuse, store, counters):
    for _ in range(3):
        await abuse.record_signup_attempt("3.3.3.3", None, outcome="allowed")
    await abuse.check_signup("3.3.3.3")
    day = abuse._now().date().isoformat()
    assert await counters.get_int(f"signup:global:{day}") == 0
    assert store.count_security_events(SIGNUP_ATTEMPT, since=abuse._day_bounds()[0]) == 3


async def test_sms_hourly_quota(abuse):
    for _ in range(5):
        assert (await abuse.check_sms_quota("+15550001111")).allowed
        await abuse.record_sms("+15550001111")
    decision = await abuse.check_sms_quota("+15550001111")
    assert decision.error_code == SMS_QUOTA_EXCEEDED


async def test_mfa_resend_limited_per_email(abuse, clock):
    for _ in range(3):
        assert (await abuse.check_mfa_resend("a@example.com")).allowed
    decision = await abuse.check_mfa_resend("A@example.com")
    assert decision.error_code == MFA_RESEND_LIMIT_EXCEEDED

    clock.advance(15 * 60 + 1)
    assert (await abuse.check_mfa_resend("a@example.com")).allowed


async def test_security_summary_groups_by_type(abuse):
    await abuse.record_employee_failure("1.1.1.1", "a@example.com", "wrong_password")
    await abuse.record_employee_failure("1.1.1.1", "b@example.com", "unknown_email")
    await abuse.record_signup_attempt("1.1.1.1", "c@example.com", outcome="allowed")

    summary = abuse.security_summary(hours=1)
    assert summary["events"] == {FAILED_EMPLOYEE_LOGIN: 2, SIGNUP_ATTEMPT: 1}
