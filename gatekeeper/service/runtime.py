from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from gatekeeper.config import get_settings, reset_settings_cache
from gatekeeper.logging import get_logger
from gatekeeper.service.abuse import AbuseDetector
from gatekeeper.service.credentials import CredentialVerifier
from gatekeeper.service.delivery import DeliveryService
from gatekeeper.service.events import EventBroadcaster, log_event
from gatekeeper.service.login import LoginOrchestrator
from gatekeeper.service.mfa import MfaChallengeManager
from gatekeeper.service.password_policy import PasswordPolicyEngine
from gatekeeper.service.permissions import PermissionArbiter
from gatekeeper.service.sessions import SessionManager
from gatekeeper.storage.counters import MemoryCounterStore
from gatekeeper.storage.memory import MemoryStore
from gatekeeper.storage.postgres import PostgresStore
from gatekeeper.storage.redis_cache import RedisCounterStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in ``url`` with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        user = parsed.username or ""
        netloc = f"{user}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.counters = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                counters = RedisCounterStore(self.settings.redis_url)
                counters.verify_connection()
                self.counters = counters
            except Exception as exc:
                redis_error = exc

        self.redis_enabled = self.counters is not None
        if self.counters is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and the permission cache; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limit counters "
                    "and the permission cache are per-process only."
                ),
                mode=fallback_mode,
            )
            self.counters = MemoryCounterStore(
                sweep_interval_seconds=self.settings.counter_sweep_interval_seconds
            )

        self.events = EventBroadcaster()
        self.events.subscribe("*", log_event)
        self.delivery = DeliveryService.from_settings(self.settings)
        self.passwords = PasswordPolicyEngine(self.store)
        self.credentials = CredentialVerifier(self.store, self.passwords)
        self.abuse = AbuseDetector(self.store, self.counters, self.settings)
        self.mfa = MfaChallengeManager(self.store, self.abuse, self.delivery, self.settings)
        self.sessions = SessionManager(self.store, self.settings, events=self.events)
        self.permissions = PermissionArbiter(self.store, self.counters, self.settings)
        self.auth = LoginOrchestrator(
            self.store,
            self.settings,
            passwords=self.passwords,
            abuse=self.abuse,
            credentials=self.credentials,
            mfa=self.mfa,
            sessions=self.sessions,
            events=self.events,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.redis_enabled,
            email_configured=self.delivery.email.is_configured,
            sms_configured=self.delivery.sms.is_configured,
            max_sessions=self.settings.max_sessions,
        )

    async def startup(self) -> None:
        await self.counters.init()

    async def shutdown(self) -> None:
        await self.events.drain()
        await self.counters.teardown()
        if isinstance(self.counters, RedisCounterStore):
            await self.counters.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.counters, RedisCounterStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.counters.close())
            except RuntimeError:
                asyncio.run(runtime.counters.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
