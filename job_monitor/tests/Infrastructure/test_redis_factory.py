from __future__ import annotations

import types

import pytest

from job_monitor.app.core.Infrastructure import redis_factory as rf
from job_monitor.app.core.Metrics.metrics_manager import get_metrics_registry


def _metric_entries(registry, name):
    seq = registry.values.get(name)
    if not seq:
        return []
    return list(seq)


def test_sync_client_error_records_metrics(monkeypatch):
    class FailingSyncRedis:
        def ping(self):
            raise ConnectionError("nope")

        def close(self):
            return None

    monkeypatch.setattr(
        rf,
        "redis",
        types.SimpleNamespace(from_url=lambda *args, **kwargs: FailingSyncRedis()),
        raising=False,
    )

    registry = get_metrics_registry()
    before_attempts = len(_metric_entries(registry, "infra_redis_connection_attempts_total"))
    before_errors = len(_metric_entries(registry, "infra_redis_connection_errors_total"))

    with pytest.raises(ConnectionError):
        rf.create_sync_redis_client(preferred_url="redis://nowhere:6379/0", context="tests-sync-error", fallback_to_fake=False)

    attempts = _metric_entries(registry, "infra_redis_connection_attempts_total")
    errors = _metric_entries(registry, "infra_redis_connection_errors_total")
    assert len(attempts) == before_attempts + 1
    assert len(errors) == before_errors + 1
    assert attempts[-1].labels == {"mode": "sync", "context": "tests-sync-error", "outcome": "error"}
    assert errors[-1].labels == {"mode": "sync", "context": "tests-sync-error", "error": "ConnectionError"}


def test_sync_client_falls_back_to_in_memory_stub(monkeypatch):
    class FailingSyncRedis:
        def ping(self):
            raise ConnectionError("down")

        def close(self):
            return None

    monkeypatch.setattr(
        rf,
        "redis",
        types.SimpleNamespace(from_url=lambda *args, **kwargs: FailingSyncRedis()),
        raising=False,
    )
    registry = get_metrics_registry()
    before_fallbacks = len(_metric_entries(registry, "infra_redis_fallback_total"))

    client = rf.create_sync_redis_client(preferred_url="redis://nowhere:6379/0", context="tests-sync-fallback")

    assert isinstance(client, rf.InMemorySyncRedis)
    fallbacks = _metric_entries(registry, "infra_redis_fallback_total")
    assert len(fallbacks) == before_fallbacks + 1
    assert fallbacks[-1].labels == {"mode": "sync", "context": "tests-sync-fallback", "reason": "ConnectionError"}


def test_sync_client_success_returns_real_client(monkeypatch):
    class FakeSyncRedis:
        def __init__(self, url, **kwargs):
            self.url = url
            self.kwargs = kwargs

        def ping(self):
            return True

    monkeypatch.setattr(
        rf,
        "redis",
        types.SimpleNamespace(from_url=lambda url, **kwargs: FakeSyncRedis(url, **kwargs)),
        raising=False,
    )
    client = rf.create_sync_redis_client(preferred_url="redis://cache:6379/2", context="tests-sync-real")
    assert isinstance(client, FakeSyncRedis)
    assert client.url == "redis://cache:6379/2"
    assert client.kwargs["decode_responses"] is True


def test_in_memory_hash_operations():
    client = rf.InMemorySyncRedis()
    assert client.hset("h", "a", 1) == 1
    assert client.hset("h", mapping={"a": 2, "b": "x"}) == 1
    assert client.hgetall("h") == {"a": "2", "b": "x"}
    assert client.hincrby("h", "n", 3) == 3
    assert client.hincrbyfloat("h", "f", 0.25) == pytest.approx(0.25)
    assert client.hincrbyfloat("h", "f", 0.5) == pytest.approx(0.75)
    assert client.hdel("h", "a", "missing") == 1
    assert client.hget("h", "a") is None


def test_in_memory_hash_disappears_when_emptied():
    client = rf.InMemorySyncRedis()
    client.hset("h", "only", "1")
    client.hdel("h", "only")
    assert client.exists("h") == 0


def test_in_memory_expiry(monkeypatch):
    client = rf.InMemorySyncRedis()
    now = [1000.0]
    monkeypatch.setattr(client._core, "_now", lambda: now[0])

    client.set("s", "v", ex=10)
    client.hset("h", "f", "v")
    client.expire("h", 5)
    assert client.ttl("s") == 10
    assert client.ttl("h") == 5

    now[0] += 6
    assert client.exists("h") == 0
    assert client.get("s") == "v"

    now[0] += 5
    assert client.get("s") is None
    assert client.ttl("s") == -2


def test_in_memory_scan_pages_through_matches():
    client = rf.InMemorySyncRedis()
    for i in range(25):
        client.hset(f"command:metrics:cmd:{i:02d}", "job_count", 0)
    client.hset("commands:running", "x", "{}")

    seen = []
    cursor = 0
    while True:
        cursor, page = client.scan(cursor, match="command:metrics:*", count=10)
        assert len(page) <= 10
        seen.extend(page)
        if cursor == 0:
            break
    assert len(seen) == 25


def test_in_memory_hash_max_script():
    client = rf.InMemorySyncRedis()
    script = "local c = redis.call('HGET', KEYS[1], ARGV[1]) if tonumber(ARGV[2]) > tonumber(c) then redis.call('HSET', KEYS[1], ARGV[1], ARGV[2]) end"
    sha = client.script_load(script)
    assert client.evalsha(sha, 1, "h", "peak", "100") == "100"
    assert client.evalsha(sha, 1, "h", "peak", "40") == "100"
    assert client.evalsha(sha, 1, "h", "peak", "250") == "250"
    assert client.hget("h", "peak") == "250"
