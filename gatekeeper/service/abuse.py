from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger, hash_identity
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
from gatekeeper.storage.counters import CounterStore
from gatekeeper.storage.models import SecurityLogEntry

logger = get_logger(__name__)

FAILED_EMPLOYEE_LOGIN = "failed_employee_login"
SIGNUP_ATTEMPT = "signup_attempt"
SUSPICIOUS_PATTERN = "suspicious_employee_login_pattern"
EMPLOYEE_RATE_LIMITED = "employee_login_rate_limit_exceeded"


class SecurityLogStore(Protocol):
    def append_security_event(self, entry: SecurityLogEntry) -> None: ...

    def count_security_events(
        self,
        event_type: str,
        *,
        since: datetime,
        ip_address: Optional[str] = None,
    ) -> int: ...

    def security_event_summary(self, since: datetime) -> Dict[str, int]: ...

    def get_system_settings(self) -> Dict[str, Any]: ...


@dataclass
class RateDecision:
    allowed: bool
    error_code: Optional[str] = None
    message: Optional[str] = None
    retry_after: Optional[int] = None
    limit: Optional[int] = None
    current: Optional[int] = None

    @classmethod
    def allow(cls) -> "RateDecision":
        return cls(allowed=True)

    def raise_if_blocked(self) -> None:
        if self.allowed:
            return
        detail: Dict[str, Any] = {}
        if self.limit is not None:
            detail["limit"] = self.limit
        if self.current is not None:
            detail["current"] = self.current
        raise RateLimitError(
            self.message or "rate limit exceeded",
            retry_after=self.retry_after,
            detail=detail,
            error_code=self.error_code,
        )


class AbuseDetector:
    """Sliding-window brute-force limits, suspicious-pattern heuristics and signup quotas.

    Every check fails open: an error while evaluating a limit lets the
    request through and is only logged.
    """

    def __init__(
        self,
        store: SecurityLogStore,
        counters: CounterStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.counters = counters
        self.settings = settings
        self._clock = clock
        self.logger = logger
        self._signup_limits: Optional[tuple[int, int]] = None
        self._signup_limits_loaded_at = 0.0

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _retry_after(self, stamps: List[float], window_seconds: int) -> int:
        earliest = min(stamps)
        return max(1, math.ceil(earliest + window_seconds - self._clock()))

    def _log_event(
        self,
        event_type: str,
        ip_address: Optional[str],
        email: Optional[str] = None,
        **details: Any,
    ) -> None:
        try:
            self.store.append_security_event(
                SecurityLogEntry(
                    event_type=event_type,
                    ip_address=ip_address,
                    email=email,
                    details=details,
                    created_at=self._now(),
                )
            )
        except Exception as exc:
            self.logger.error("security_event_write_failed", event_type=event_type, error=str(exc))

    # generic login
    async def check_login(self, ip_address: str) -> RateDecision:
        window_seconds = self.settings.login_window_minutes * 60
        try:
            stamps = await self.counters.window(f"login:fail:{ip_address}", window_seconds)
        except Exception as exc:
            self.logger.warning("login_rate_check_failed", error=str(exc))
            return RateDecision.allow()
        if len(stamps) >= self.settings.login_max_failures_per_ip:
            self.logger.warning("login_rate_limited", ip=ip_address, failures=len(stamps))
            return RateDecision(
                allowed=False,
                error_code=LOGIN_RATE_LIMIT_EXCEEDED,
                message="Too many failed login attempts. Please try again later.",
                retry_after=self._retry_after(stamps, window_seconds),
                limit=self.settings.login_max_failures_per_ip,
                current=len(stamps),
            )
        return RateDecision.allow()

    async def record_login_failure(self, ip_address: str) -> None:
        try:
            await self.counters.hit(
                f"login:fail:{ip_address}", self.settings.login_window_minutes * 60
            )
        except Exception as exc:
            self.logger.warning("login_failure_record_failed", error=str(exc))

    async def clear_login_failures(self, ip_address: str) -> None:
        try:
            await self.counters.clear(f"login:fail:{ip_address}")
        except Exception as exc:
            self.logger.warning("login_failure_clear_failed", error=str(exc))

    # employee login
    async def detect_suspicious(self, ip_address: str, email: Optional[str]) -> bool:
        """Return True when the IP shows a credential-stuffing pattern."""

        window_seconds = self.settings.suspicious_window_minutes * 60
        try:
            rapid = await self.counters.hit(f"suspicious:rapid:{ip_address}", window_seconds)
            if len(rapid) > self.settings.suspicious_max_requests:
                return True
            if email:
                distinct = await self.counters.add_member(
                    f"suspicious:emails:{ip_address}", email.strip().lower(), window_seconds
                )
                if distinct > self.settings.suspicious_max_identities:
                    return True
            failures = self.store.count_security_events(
                FAILED_EMPLOYEE_LOGIN,
                since=self._now() - timedelta(hours=1),
                ip_address=ip_address,
            )
            return failures > self.settings.suspicious_failure_threshold
        except Exception as exc:
            self.logger.warning("suspicious_pattern_check_failed", error=str(exc))
            return False

    async def check_employee_login(
        self, ip_address: str, email: Optional[str], *, user_agent: Optional[str] = None
    ) -> RateDecision:
        try:
            if await self.detect_suspicious(ip_address, email):
                self.logger.warning(
                    "suspicious_employee_login", ip=ip_address, email_hash=hash_identity(email)
                )
                self._log_event(SUSPICIOUS_PATTERN, ip_address, email, user_agent=user_agent)
                return RateDecision(
                    allowed=False,
                    error_code=SUSPICIOUS_ACTIVITY_DETECTED,
                    message="Access temporarily restricted due to suspicious activity.",
                )

            window_seconds = self.settings.login_window_minutes * 60
            key = self._employee_key(ip_address, email)
            stamps = await self.counters.window(key, window_seconds)
            limit = self.settings.employee_login_max_attempts
            if len(stamps) >= limit:
                self._log_event(
                    EMPLOYEE_RATE_LIMITED,
                    ip_address,
                    email,
                    attempts=len(stamps),
                    max_attempts=limit,
                    user_agent=user_agent,
                )
                return RateDecision(
                    allowed=False,
                    error_code=EMPLOYEE_LOGIN_RATE_LIMIT_EXCEEDED,
                    message="Too many employee login attempts. Please try again later.",
                    retry_after=self._retry_after(stamps, window_seconds),
                    limit=limit,
                    current=len(stamps),
                )
            await self.counters.hit(key, window_seconds)
        except Exception as exc:
            self.logger.error("employee_login_limiter_failed", error=str(exc))
        return RateDecision.allow()

    @staticmethod
    def _employee_key(ip_address: str, email: Optional[str]) -> str:
        return f"employee:{ip_address}:{(email or 'unknown').strip().lower()}"

    async def clear_employee_attempts(self, ip_address: str, email: str) -> None:
        try:
            await self.counters.clear(self._employee_key(ip_address, email))
        except Exception as exc:
            self.logger.warning("employee_attempt_clear_failed", error=str(exc))

    async def record_employee_failure(
        self, ip_address: str, email: Optional[str], reason: str
    ) -> None:
        self._log_event(FAILED_EMPLOYEE_LOGIN, ip_address, email, reason=reason)

    # signup
    def _load_signup_limits(self) -> tuple[int, int]:
        refresh_seconds = self.settings.signup_settings_refresh_minutes * 60
        now = self._clock()
        if self._signup_limits is not None and now - self._signup_limits_loaded_at < refresh_seconds:
            return self._signup_limits
        ip_limit = self.settings.signup_ip_daily_limit
        global_limit = self.settings.signup_global_daily_limit
        try:
            sys_settings = self.store.get_system_settings()
            ip_limit = int(sys_settings.get("signup_ip_daily_limit") or ip_limit)
            global_limit = int(sys_settings.get("signup_global_daily_limit") or global_limit)
            self._signup_limits_loaded_at = now
            self.logger.info("signup_limits_refreshed", ip_limit=ip_limit, global_limit=global_limit)
        except Exception as exc:
            self.logger.warning("signup_limits_refresh_failed", error=str(exc))
        self._signup_limits = (ip_limit, global_limit)
        return self._signup_limits

    def _day_bounds(self) -> tuple[datetime, int]:
        now = self._now()
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        until_midnight = math.ceil((start + timedelta(days=1) - now).total_seconds())
        return start, max(1, until_midnight)

    async def check_signup(self, ip_address: str) -> RateDecision:
        """Per-IP then global daily quota; the global count advances only on pass."""

        try:
            ip_limit, global_limit = self._load_signup_limits()
            day_start, until_midnight = self._day_bounds()
            ip_attempts = self.store.count_security_events(
                SIGNUP_ATTEMPT, since=day_start, ip_address=ip_address
            )
            if ip_attempts >= ip_limit:
                self.logger.warning("signup_ip_limit_exceeded", ip=ip_address, attempts=ip_attempts)
                return RateDecision(
                    allowed=False,
                    error_code=IP_SIGNUP_LIMIT_EXCEEDED,
                    message="Too many signup attempts from this IP address. Please try again tomorrow.",
                    retry_after=until_midnight,
                    limit=ip_limit,
                    current=ip_attempts,
                )
            global_key = f"signup:global:{day_start.date().isoformat()}"
            current = await self.counters.get_int(global_key)
            if current >= global_limit:
                self.logger.warning("signup_global_limit_exceeded", current=current)
                return RateDecision(
                    allowed=False,
                    error_code=GLOBAL_SIGNUP_LIMIT_EXCEEDED,
                    message="Maximum daily signups reached. Please try again tomorrow.",
                    retry_after=until_midnight,
                    limit=global_limit,
                    current=current,
                )
            await self.counters.incr(global_key, until_midnight + 3600)
        except Exception as exc:
            self.logger.error("signup_limiter_failed", error=str(exc))
        return RateDecision.allow()

    async def record_signup_attempt(
        self, ip_address: str, email: Optional[str], *, outcome: str
    ) -> None:
        self._log_event(SIGNUP_ATTEMPT, ip_address, email, outcome=outcome)

    # sms and resend quotas
    async def check_sms_quota(self, phone: str) -> RateDecision:
        try:
            hourly = await self.counters.window(f"sms:hour:{phone}", 3600)
            if len(hourly) >= self.settings.sms_max_per_hour:
                return RateDecision(
                    allowed=False,
                    error_code=SMS_QUOTA_EXCEEDED,
                    message="SMS limit reached for this phone number. Please try again later.",
                    retry_after=self._retry_after(hourly, 3600),
                    limit=self.settings.sms_max_per_hour,
                    current=len(hourly),
                )
            daily = await self.counters.window(f"sms:day:{phone}", 86400)
            if len(daily) >= self.settings.sms_max_per_day:
                return RateDecision(
                    allowed=False,
                    error_code=SMS_QUOTA_EXCEEDED,
                    message="Daily SMS limit reached for this phone number.",
                    retry_after=self._retry_after(daily, 86400),
                    limit=self.settings.sms_max_per_day,
                    current=len(daily),
                )
        except Exception as exc:
            self.logger.warning("sms_quota_check_failed", error=str(exc))
        return RateDecision.allow()

    async def record_sms(self, phone: str) -> None:
        try:
            await self.counters.hit(f"sms:hour:{phone}", 3600)
            await self.counters.hit(f"sms:day:{phone}", 86400)
        except Exception as exc:
            self.logger.warning("sms_quota_record_failed", error=str(exc))

    async def check_mfa_resend(self, email: str) -> RateDecision:
        window_seconds = self.settings.mfa_resend_window_minutes * 60
        key = f"mfa:resend:{email.strip().lower()}"
        try:
            stamps = await self.counters.window(key, window_seconds)
            if len(stamps) >= self.settings.mfa_resend_max:
                return RateDecision(
                    allowed=False,
                    error_code=MFA_RESEND_LIMIT_EXCEEDED,
                    message="Too many verification code requests. Please try again later.",
                    retry_after=self._retry_after(stamps, window_seconds),
                    limit=self.settings.mfa_resend_max,
                    current=len(stamps),
                )
            await self.counters.hit(key, window_seconds)
        except Exception as exc:
            self.logger.warning("mfa_resend_check_failed", error=str(exc))
        return RateDecision.allow()

    # one-time code guessing
    @staticmethod
    def _code_keys(email: str, ip_address: Optional[str]) -> List[str]:
        keys = [f"code:fail:email:{(email or '').strip().lower()}"]
        if ip_address:
            keys.append(f"code:fail:ip:{ip_address}")
        return keys

    async def check_code_attempts(self, email: str, ip_address: Optional[str]) -> RateDecision:
        """Block code verification once an email or IP has too many wrong codes in the window.

        Failures are counted per email, so spreading guesses over many IPs
        does not help, and per IP, so spreading them over many emails does not
        either.
        """
        window_seconds = self.settings.code_failure_window_minutes * 60
        limit = self.settings.code_max_failures
        try:
            for key in self._code_keys(email, ip_address):
                stamps = await self.counters.window(key, window_seconds)
                if len(stamps) >= limit:
                    self.logger.warning(
                        "code_attempts_exceeded",
                        ip=ip_address,
                        email_hash=hash_identity(email),
                        failures=len(stamps),
                    )
                    return RateDecision(
                        allowed=False,
                        error_code=VERIFICATION_ATTEMPTS_EXCEEDED,
                        message="Too many incorrect verification codes. Please try again later.",
                        retry_after=self._retry_after(stamps, window_seconds),
                        limit=limit,
                        current=len(stamps),
                    )
        except Exception as exc:
            self.logger.warning("code_attempt_check_failed", error=str(exc))
        return RateDecision.allow()

    async def record_code_failure(self, email: str, ip_address: Optional[str]) -> None:
        window_seconds = self.settings.code_failure_window_minutes * 60
        try:
            for key in self._code_keys(email, ip_address):
                await self.counters.hit(key, window_seconds)
        except Exception as exc:
            self.logger.warning("code_failure_record_failed", error=str(exc))

    async def clear_code_failures(self, email: str) -> None:
        # Only the email window; the IP window keeps counting other identities
        try:
            await self.counters.clear(self._code_keys(email, None)[0])
        except Exception as exc:
            self.logger.warning("code_failure_clear_failed", error=str(exc))

    def security_summary(self, hours: int = 24) -> Dict[str, Any]:
        since = self._now() - timedelta(hours=hours)
        return {
            "since": since.isoformat(),
            "events": self.store.security_event_summary(since),
        }
