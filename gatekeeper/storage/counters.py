from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from gatekeeper.logging import get_logger

logger = get_logger(__name__)


class CounterStore(Protocol):
    """Ephemeral counters and decision cache shared by abuse detection and permissions.

    Nothing kept here is durable; losing it on restart only resets windows.
    """

    async def init(self) -> None: ...

    async def teardown(self) -> None: ...

    async def hit(self, key: str, window_seconds: int) -> List[float]: ...

    async def window(self, key: str, window_seconds: int) -> List[float]: ...

    async def clear(self, key: str) -> None: ...

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> int: ...

    async def incr(self, key: str, ttl_seconds: int) -> int: ...

    async def get_int(self, key: str) -> int: ...

    async def cache_get(self, key: str) -> Optional[Any]: ...

    async def cache_set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def cache_delete(self, key: str) -> None: ...

    async def cache_clear(self, prefix: str = "") -> int: ...

    async def sweep(self) -> int: ...


class MemoryCounterStore:
    """Single-process counter store guarded by one lock.

    Expiry is lazy on read; ``init()`` also starts a background task that
    sweeps dead keys every ``sweep_interval_seconds`` so idle keys do not
    accumulate.
    """

    def __init__(
        self,
        *,
        sweep_interval_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Tuple[List[float], int]] = {}
        self._members: Dict[str, Tuple[Dict[str, float], int]] = {}
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._cache: Dict[str, Tuple[Any, float]] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def verify_connection(self) -> None:
        return None

    async def init(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def teardown(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        await self.teardown()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                removed = await self.sweep()
            except Exception as exc:
                logger.warning("counter_sweep_failed", error=str(exc))
                continue
            if removed:
                logger.debug("counter_sweep_completed", removed=removed)

    @staticmethod
    def _prune(stamps: List[float], cutoff: float) -> List[float]:
        return [ts for ts in stamps if ts > cutoff]

    async def hit(self, key: str, window_seconds: int) -> List[float]:
        now = self._clock()
        with self._lock:
            stamps, _ = self._windows.get(key, ([], window_seconds))
            stamps = self._prune(stamps, now - window_seconds)
            stamps.append(now)
            self._windows[key] = (stamps, window_seconds)
            return list(stamps)

    async def window(self, key: str, window_seconds: int) -> List[float]:
        now = self._clock()
        with self._lock:
            entry = self._windows.get(key)
            if not entry:
                return []
            stamps = self._prune(entry[0], now - window_seconds)
            if stamps:
                self._windows[key] = (stamps, window_seconds)
            else:
                self._windows.pop(key, None)
            return list(stamps)

    async def clear(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)
            self._members.pop(key, None)
            self._counters.pop(key, None)

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            members, _ = self._members.get(key, ({}, ttl_seconds))
            members = {m: ts for m, ts in members.items() if ts > now - ttl_seconds}
            members[member] = now
            self._members[key] = (members, ttl_seconds)
            return len(members)

    async def incr(self, key: str, ttl_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            value, expires = self._counters.get(key, (0, now + ttl_seconds))
            if expires <= now:
                value, expires = 0, now + ttl_seconds
            value += 1
            self._counters[key] = (value, expires)
            return value

    async def get_int(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._counters.get(key)
            if not entry or entry[1] <= now:
                return 0
            return entry[0]

    async def cache_get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._cache.get(key)
            if not entry:
                return None
            value, expires = entry
            if expires <= now:
                self._cache.pop(key, None)
                return None
            return value

    async def cache_set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._cache[key] = (value, self._clock() + ttl_seconds)

    async def cache_delete(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    async def cache_clear(self, prefix: str = "") -> int:
        with self._lock:
            doomed = [k for k in self._cache if k.startswith(prefix)]
            for key in doomed:
                del self._cache[key]
            return len(doomed)

    async def sweep(self) -> int:
        now = self._clock()
        removed = 0
        with self._lock:
            for key, (stamps, window_seconds) in list(self._windows.items()):
                if not self._prune(stamps, now - window_seconds):
                    del self._windows[key]
                    removed += 1
            for key, (members, ttl) in list(self._members.items()):
                if all(ts <= now - ttl for ts in members.values()):
                    del self._members[key]
                    removed += 1
            for key, (_, expires) in list(self._counters.items()):
                if expires <= now:
                    del self._counters[key]
                    removed += 1
            for key, (_, expires) in list(self._cache.items()):
                if expires <= now:
                    del self._cache[key]
                    removed += 1
        return removed
