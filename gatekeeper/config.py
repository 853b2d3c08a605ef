from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatekeeper.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gatekeeper", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/gatekeeper", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors and runtime reset support.",
    )
    environment: str = env_field("development", "ENVIRONMENT")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Sessions
    max_sessions: int = env_field(
        5, "MAX_SESSIONS", description="Concurrent active sessions per principal"
    )
    session_ttl_minutes: int = env_field(
        480,
        "SESSION_TTL_MINUTES",
        description="Sliding session lifetime (overridable via system settings)",
    )
    session_sweep_interval_minutes: int = env_field(5, "SESSION_SWEEP_INTERVAL_MINUTES")
    session_sweep_retries: int = env_field(2, "SESSION_SWEEP_RETRIES")
    session_sweep_retry_delay_seconds: float = env_field(
        5.0, "SESSION_SWEEP_RETRY_DELAY_SECONDS"
    )
    recent_activity_minutes: int = env_field(5, "RECENT_ACTIVITY_MINUTES")
    session_cookie_name: str = env_field("session_token", "SESSION_COOKIE_NAME")

    # Abuse detection
    login_window_minutes: int = env_field(15, "LOGIN_WINDOW_MINUTES")
    login_max_failures_per_ip: int = env_field(5, "LOGIN_MAX_FAILURES_PER_IP")
    employee_login_max_attempts: int = env_field(3, "EMPLOYEE_LOGIN_MAX_ATTEMPTS")
    suspicious_window_minutes: int = env_field(5, "SUSPICIOUS_WINDOW_MINUTES")
    suspicious_max_requests: int = env_field(10, "SUSPICIOUS_MAX_REQUESTS")
    suspicious_max_identities: int = env_field(5, "SUSPICIOUS_MAX_IDENTITIES")
    suspicious_failure_threshold: int = env_field(15, "SUSPICIOUS_FAILURE_THRESHOLD")
    signup_ip_daily_limit: int = env_field(
        3, "SIGNUP_IP_DAILY_LIMIT", description="Fallback when not in system settings"
    )
    signup_global_daily_limit: int = env_field(
        20, "SIGNUP_GLOBAL_DAILY_LIMIT", description="Fallback when not in system settings"
    )
    signup_settings_refresh_minutes: int = env_field(60, "SIGNUP_SETTINGS_REFRESH_MINUTES")
    counter_sweep_interval_seconds: int = env_field(300, "COUNTER_SWEEP_INTERVAL_SECONDS")

    # MFA
    mfa_code_length: int = env_field(6, "MFA_CODE_LENGTH")
    mfa_login_ttl_minutes: int = env_field(5, "MFA_LOGIN_TTL_MINUTES")
    mfa_reset_ttl_minutes: int = env_field(15, "MFA_RESET_TTL_MINUTES")
    mfa_phone_verification_ttl_minutes: int = env_field(
        10, "MFA_PHONE_VERIFICATION_TTL_MINUTES"
    )
    mfa_resend_max: int = env_field(3, "MFA_RESEND_MAX")
    mfa_resend_window_minutes: int = env_field(15, "MFA_RESEND_WINDOW_MINUTES")
    code_max_failures: int = env_field(5, "CODE_MAX_FAILURES")
    code_failure_window_minutes: int = env_field(15, "CODE_FAILURE_WINDOW_MINUTES")
    mfa_required_for_employees: bool = env_field(
        True,
        "MFA_REQUIRED_FOR_EMPLOYEES",
        description="Fallback when not in system settings",
    )
    sms_max_per_hour: int = env_field(5, "SMS_MAX_PER_HOUR")
    sms_max_per_day: int = env_field(20, "SMS_MAX_PER_DAY")
    trusted_device_days: int = env_field(30, "TRUSTED_DEVICE_DAYS")

    # Permissions
    permission_cache_ttl_seconds: int = env_field(300, "PERMISSION_CACHE_TTL_SECONDS")
    override_role: str = env_field("executive", "OVERRIDE_ROLE")

    # Delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatekeeper", "EMAIL_FROM_NAME")
    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_gateway_token: str | None = env_field(None, "SMS_GATEWAY_TOKEN")
    sms_from_number: str | None = env_field(None, "SMS_FROM_NUMBER")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return (value or "development").strip().lower()

    @field_validator("max_sessions", "mfa_code_length", "code_max_failures")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
