from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

from psycopg import OperationalError

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger, hash_identity
from gatekeeper.service import events as event_types
from gatekeeper.service.events import EventBroadcaster
from gatekeeper.storage.errors import StorageUnavailable
from gatekeeper.storage.models import PrincipalKind, Session

logger = get_logger(__name__)

_RETRYABLE_SWEEP_ERRORS = (TimeoutError, ConnectionError, StorageUnavailable, OperationalError)
_RETRYABLE_MESSAGES = ("timeout", "connection terminated", "connection closed")


class SessionStore(Protocol):
    def insert_session(self, session: Session, *, max_active: int) -> List[Session]: ...

    def get_session_by_token(self, token: str) -> Optional[Session]: ...

    def touch_session(
        self, token: str, now: datetime, expires_at: datetime
    ) -> Optional[Session]: ...

    def end_session(self, token: str, now: datetime) -> Optional[Session]: ...

    def end_principal_sessions(
        self, principal_id: str, now: datetime, *, except_token: Optional[str] = None
    ) -> int: ...

    def expire_stale_sessions(self, now: datetime) -> int: ...

    def list_live_sessions(
        self, now: datetime, principal_ids: Optional[Sequence[str]] = None
    ) -> List[Session]: ...

    def session_stats(self, now: datetime, recent_since: datetime) -> Dict[str, int]: ...

    def get_system_settings(self) -> Dict[str, Any]: ...


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, _RETRYABLE_SWEEP_ERRORS):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _RETRYABLE_MESSAGES)


class SessionManager:
    """Opaque-token sessions with a per-principal cap and sliding expiry.

    Expired rows are swept opportunistically from ``validate`` at most once
    per sweep interval; there is no scheduler.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        events: Optional[EventBroadcaster] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.events = events
        self.logger = logger
        self._last_sweep = datetime.now(timezone.utc)
        self._sweep_lock = asyncio.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def ttl_minutes(self) -> int:
        try:
            value = self.store.get_system_settings().get("session_timeout_minutes")
        except Exception as exc:
            self.logger.warning("session_ttl_lookup_failed", error=str(exc))
            value = None
        try:
            ttl = int(value) if value is not None else self.settings.session_ttl_minutes
        except (TypeError, ValueError):
            ttl = self.settings.session_ttl_minutes
        return ttl if ttl > 0 else self.settings.session_ttl_minutes

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.events is not None:
            self.events.emit(event_type, payload)

    async def create(
        self,
        principal_id: str,
        kind: PrincipalKind,
        email: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            principal_id,
            kind,
            email,
            self.ttl_minutes(),
            user_agent=user_agent,
            ip_address=ip_address,
        )
        evicted = self.store.insert_session(session, max_active=self.settings.max_sessions)
        for old in evicted:
            self.logger.info(
                "session_evicted_for_cap",
                principal_id=principal_id,
                session_id=old.id,
                max_sessions=self.settings.max_sessions,
            )
            self._emit(
                event_types.SESSION_ENDED,
                {"principal_id": principal_id, "session_id": old.id, "reason": "session_cap"},
            )
        self.logger.info(
            "session_created",
            principal_id=principal_id,
            session_id=session.id,
            email_hash=hash_identity(email),
        )
        return session

    async def validate(self, token: Optional[str]) -> Optional[Session]:
        """Return the live session for ``token`` with its expiry pushed forward."""

        if not token:
            return None
        now = self._now()
        session = self.store.touch_session(
            token, now, now + timedelta(minutes=self.ttl_minutes())
        )
        await self.maybe_sweep()
        return session

    async def extend(self, token: Optional[str]) -> Optional[Session]:
        return await self.validate(token)

    async def end(self, token: Optional[str]) -> bool:
        if not token:
            return False
        ended = self.store.end_session(token, self._now())
        if ended is None:
            return False
        self.logger.info("session_ended", principal_id=ended.principal_id, session_id=ended.id)
        self._emit(
            event_types.SESSION_ENDED,
            {"principal_id": ended.principal_id, "session_id": ended.id, "reason": "logout"},
        )
        return True

    async def end_all(self, principal_id: str, *, except_token: Optional[str] = None) -> int:
        count = self.store.end_principal_sessions(
            principal_id, self._now(), except_token=except_token
        )
        self.logger.info("sessions_ended_for_principal", principal_id=principal_id, count=count)
        if count:
            self._emit(
                event_types.SESSIONS_REVOKED, {"principal_id": principal_id, "count": count}
            )
        return count

    async def regenerate(
        self,
        old_token: str,
        principal_id: str,
        kind: PrincipalKind,
        email: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        await self.end(old_token)
        return await self.create(
            principal_id, kind, email, user_agent=user_agent, ip_address=ip_address
        )

    async def active_sessions_for(self, principal_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Login status per principal id; unknown ids read as logged out."""

        ids = [pid for pid in dict.fromkeys(principal_ids) if pid]
        if not ids:
            return {}
        now = self._now()
        recent_since = now - timedelta(minutes=self.settings.recent_activity_minutes)
        status: Dict[str, Dict[str, Any]] = {
            pid: {
                "isLoggedIn": False,
                "activeSessions": 0,
                "lastActivity": None,
                "isRecentlyActive": False,
            }
            for pid in ids
        }
        try:
            sessions = self.store.list_live_sessions(now, ids)
        except Exception as exc:
            self.logger.error("login_status_lookup_failed", error=str(exc))
            return status
        latest: Dict[str, datetime] = {}
        for session in sessions:
            entry = status[session.principal_id]
            entry["isLoggedIn"] = True
            entry["activeSessions"] += 1
            seen = latest.get(session.principal_id)
            if seen is None or session.last_activity > seen:
                latest[session.principal_id] = session.last_activity
        for pid, last in latest.items():
            status[pid]["lastActivity"] = last.isoformat()
            status[pid]["isRecentlyActive"] = last > recent_since
        return status

    async def stats(self) -> Dict[str, int]:
        now = self._now()
        recent_since = now - timedelta(minutes=self.settings.recent_activity_minutes)
        try:
            return self.store.session_stats(now, recent_since)
        except Exception as exc:
            self.logger.error("session_stats_failed", error=str(exc))
            return {
                "active_sessions": 0,
                "recently_active": 0,
                "expired_sessions": 0,
                "ended_sessions": 0,
                "unique_active_users": 0,
            }

    async def sweep_expired(self) -> int:
        """Mark expired sessions inactive, retrying transient storage errors."""

        attempts = self.settings.session_sweep_retries + 1
        for attempt in range(attempts):
            try:
                swept = self.store.expire_stale_sessions(self._now())
            except Exception as exc:
                retryable = _is_retryable(exc)
                self.logger.warning(
                    "session_sweep_failed",
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    retryable=retryable,
                    error=str(exc),
                )
                if not retryable or attempt + 1 >= attempts:
                    return 0
                await asyncio.sleep(self.settings.session_sweep_retry_delay_seconds)
                continue
            if swept:
                self.logger.info("session_sweep_completed", swept=swept)
            return swept
        return 0

    async def maybe_sweep(self) -> int:
        now = self._now()
        interval = timedelta(minutes=self.settings.session_sweep_interval_minutes)
        if now - self._last_sweep < interval or self._sweep_lock.locked():
            return 0
        async with self._sweep_lock:
            self._last_sweep = now
            return await self.sweep_expired()
