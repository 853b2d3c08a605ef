from __future__ import annotations

import hashlib
import json
import time
import uuid
from typing import Any, List, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCounterStore:
    """Counter store shared across instances through Redis.

    Sliding windows are sorted sets scored by epoch seconds, distinct-member
    windows are sorted sets scored by last sighting, and the decision cache
    holds JSON strings with a TTL.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _counter_key(kind: str, key: str) -> str:
        """Hash the logical key so user-supplied parts cannot collide on delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"gk:{kind}:{digest}"

    @staticmethod
    def _cache_key(key: str) -> str:
        return f"gk:cache:{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def init(self) -> None:
        # Redis expires keys itself; no sweep task needed
        return None

    async def teardown(self) -> None:
        return None

    async def close(self) -> None:
        await self.client.aclose()

    async def hit(self, key: str, window_seconds: int) -> List[float]:
        now = time.time()
        rkey = self._counter_key("win", key)
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(rkey, 0, now - window_seconds)
        pipe.zadd(rkey, {f"{now}:{uuid.uuid4().hex}": now})
        pipe.zrange(rkey, 0, -1, withscores=True)
        pipe.expire(rkey, max(1, int(window_seconds)))
        results = await pipe.execute()
        return [float(score) for _, score in results[2]]

    async def window(self, key: str, window_seconds: int) -> List[float]:
        now = time.time()
        rkey = self._counter_key("win", key)
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(rkey, 0, now - window_seconds)
        pipe.zrange(rkey, 0, -1, withscores=True)
        results = await pipe.execute()
        return [float(score) for _, score in results[1]]

    async def clear(self, key: str) -> None:
        await self.client.delete(
            self._counter_key("win", key),
            self._counter_key("set", key),
            self._counter_key("int", key),
        )

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> int:
        now = time.time()
        rkey = self._counter_key("set", key)
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(rkey, 0, now - ttl_seconds)
        pipe.zadd(rkey, {member: now})
        pipe.zcard(rkey)
        pipe.expire(rkey, max(1, int(ttl_seconds)))
        results = await pipe.execute()
        return int(results[2])

    async def incr(self, key: str, ttl_seconds: int) -> int:
        rkey = self._counter_key("int", key)
        pipe = self.client.pipeline()
        pipe.incr(rkey)
        pipe.expire(rkey, max(1, int(ttl_seconds)), nx=True)
        results = await pipe.execute()
        return int(results[0])

    async def get_int(self, key: str) -> int:
        raw = await self.client.get(self._counter_key("int", key))
        return int(raw) if raw is not None else 0

    async def cache_get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(self._cache_key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None

    async def cache_set(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.client.set(
            self._cache_key(key), json.dumps(value), ex=max(1, int(ttl_seconds))
        )

    async def cache_delete(self, key: str) -> None:
        await self.client.delete(self._cache_key(key))

    async def cache_clear(self, prefix: str = "") -> int:
        removed = 0
        async for rkey in self.client.scan_iter(match=f"{self._cache_key(prefix)}*"):
            removed += await self.client.delete(rkey)
        return removed

    async def sweep(self) -> int:
        return 0
