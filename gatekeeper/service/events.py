from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Set, Union

from gatekeeper.logging import get_logger

logger = get_logger(__name__)

LOGIN = "login"
LOGOUT = "logout"
SESSION_ENDED = "session_ended"
PASSWORD_CHANGED = "password_changed"
PASSWORD_POLICY_CHANGED = "password_policy_changed"
SESSIONS_REVOKED = "sessions_revoked"

EVENT_TYPES = frozenset(
    {LOGIN, LOGOUT, SESSION_ENDED, PASSWORD_CHANGED, PASSWORD_POLICY_CHANGED, SESSIONS_REVOKED}
)

Subscriber = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]


class EventBroadcaster:
    """Fire-and-forget fan-out of auth events to in-process subscribers.

    ``emit`` never raises and never waits: each subscriber runs in its own
    task, and failures are only logged.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: str, callback: Subscriber) -> None:
        """Register ``callback``; ``"*"`` receives every event."""
        self._subscribers.setdefault(event_type, []).append(callback)

    def unsubscribe(self, event_type: str, callback: Subscriber) -> None:
        callbacks = self._subscribers.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    async def _deliver(self, callback: Subscriber, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            result = callback(event_type, payload)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning(
                "event_subscriber_failed",
                event_type=event_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        callbacks = list(self._subscribers.get(event_type, [])) + list(
            self._subscribers.get("*", [])
        )
        if not callbacks:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("event_dropped_no_loop", event_type=event_type)
            return
        for callback in callbacks:
            task = loop.create_task(self._deliver(callback, event_type, dict(payload)))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used on shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def log_event(event_type: str, payload: Dict[str, Any]) -> None:
    """Audit subscriber: one structured log line per auth event."""
    logger.info("auth_event", event_type=event_type, **payload)
