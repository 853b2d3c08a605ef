import hashlib
import json

from gatekeeper.storage.redis_cache import RedisCounterStore


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.calls = []

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return record

    async def execute(self):
        self.client.pipelines.append(self.calls)
        return self.client.pipeline_results.pop(0)


class FakeRedis:
    def __init__(self, pipeline_results=None):
        self.pipeline_results = list(pipeline_results or [])
        self.pipelines = []
        self.values = {}
        self.set_calls = []
        self.deleted = []

    def pipeline(self):
        return FakePipeline(self)

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.set_calls.append((key, value, ex))
        self.values[key] = value

    async def delete(self, *keys):
        self.deleted.extend(keys)
        return sum(1 for key in keys if self.values.pop(key, None) is not None)

    async def scan_iter(self, match):
        prefix = match.rstrip("*")
        for key in list(self.values):
            if key.startswith(prefix):
                yield key


def _store(client):
    store = RedisCounterStore.__new__(RedisCounterStore)
    store.redis_url = "redis://unused"
    store.client = client
    return store


def test_counter_keys_are_hashed():
    digest = hashlib.sha256(b"login:1.2.3.4").hexdigest()
    assert RedisCounterStore._counter_key("win", "login:1.2.3.4") == f"gk:win:{digest}"


async def test_hit_returns_window_scores():
    client = FakeRedis([[0, 1, [("a", 10.0), ("b", 11.5)], True]])
    store = _store(client)
    assert await store.hit("login:ip", 900) == [10.0, 11.5]
    names = [name for name, _, _ in client.pipelines[0]]
    assert names == ["zremrangebyscore", "zadd", "zrange", "expire"]


async def test_add_member_counts_distinct():
    client = FakeRedis([[0, 1, 3, True]])
    store = _store(client)
    assert await store.add_member("emails:ip", "a@example.com", 300) == 3


async def test_incr_sets_expiry_only_once():
    client = FakeRedis([[4, False]])
    store = _store(client)
    assert await store.incr("sms:hour", 3600) == 4
    name, args, kwargs = client.pipelines[0][1]
    assert name == "expire"
    assert args[1] == 3600
    assert kwargs == {"nx": True}


async def test_cache_round_trip_and_corrupt_values():
    client = FakeRedis()
    store = _store(client)
    await store.cache_set("perm:p1:x", {"granted": True}, 300)
    assert client.set_calls[0][2] == 300
    assert await store.cache_get("perm:p1:x") == {"granted": True}
    client.values["gk:cache:perm:p1:y"] = "{not json"
    assert await store.cache_get("perm:p1:y") is None


async def test_cache_clear_by_prefix():
    client = FakeRedis()
    client.values = {
        "gk:cache:perm:p1:a": json.dumps(True),
        "gk:cache:perm:p1:b": json.dumps(False),
        "gk:cache:perm:p2:a": json.dumps(True),
    }
    store = _store(client)
    assert await store.cache_clear("perm:p1:") == 2
    assert list(client.values) == ["gk:cache:perm:p2:a"]


async def test_get_int_defaults_to_zero():
    store = _store(FakeRedis())
    assert await store.get_int("missing") == 0
