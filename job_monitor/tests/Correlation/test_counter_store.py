import threading

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import NoScriptError

from job_monitor.app.core.Correlation import keys
from job_monitor.app.core.Correlation.store import RedisCounterStore
from job_monitor.app.core.exceptions import CorrelationStoreError


def test_hash_roundtrip_and_delete_field(store):
    store.set_fields("h", {"a": 1, "b": "two"})
    store.set_field("h", "c", 3.5)
    assert store.get_all("h") == {"a": "1", "b": "two", "c": "3.5"}
    assert store.get_field("h", "b") == "two"
    assert store.delete_field("h", "a", "nope") == 1
    assert store.delete_field("h") == 0
    assert store.get_field("h", "a") is None


def test_increments_are_cumulative(store):
    assert store.increment("c", "job_count") == 1
    assert store.increment("c", "job_count", 4) == 5
    assert store.increment_float("c", "total_job_time", 2.5) == pytest.approx(2.5)
    assert store.increment_float("c", "total_job_time", 0.25) == pytest.approx(2.75)


def test_max_field_keeps_high_water_mark(store):
    assert store.max_field("c", "peak_memory", 100) == 100
    assert store.max_field("c", "peak_memory", 50) == 100
    assert store.max_field("c", "peak_memory", 300) == 300
    assert store.get_field("c", "peak_memory") == "300"


def test_max_field_reloads_script_after_flush(redis_client):
    calls = {"load": 0, "evalsha": 0}
    real_load, real_evalsha = redis_client.script_load, redis_client.evalsha

    def script_load(script):
        calls["load"] += 1
        return real_load(script)

    def evalsha(sha, num_keys, *args):
        calls["evalsha"] += 1
        if calls["evalsha"] == 1:
            raise NoScriptError("NOSCRIPT No matching script")
        return real_evalsha(sha, num_keys, *args)

    redis_client.script_load = script_load
    redis_client.evalsha = evalsha
    store = RedisCounterStore(redis_client)

    assert store.max_field("c", "peak_memory", 42) == 42
    assert calls == {"load": 2, "evalsha": 2}


def test_concurrent_increments_are_not_lost(store):
    key = keys.counters_key("reports:daily", "pid-1")

    def worker():
        for _ in range(200):
            store.increment(key, "job_count")
            store.increment_float(key, "total_job_time", 0.5)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    data = store.get_all(key)
    assert int(data["job_count"]) == 1600
    assert float(data["total_job_time"]) == pytest.approx(800.0)


def test_values_with_ttl(store, redis_client):
    store.set_value(keys.pid_map_key("reports:daily"), "pid-1", ttl=300)
    assert store.get_value(keys.pid_map_key("reports:daily")) == "pid-1"
    assert 0 < redis_client.ttl(keys.pid_map_key("reports:daily")) <= 300
    assert store.exists(keys.pid_map_key("reports:daily"))
    assert store.delete(keys.pid_map_key("reports:daily")) == 1
    assert not store.exists(keys.pid_map_key("reports:daily"))


def test_collect_keys_uses_patterns(store):
    store.set_field(keys.jobs_key("p1"), "j1", "{}")
    store.set_field(keys.jobs_key("p2"), "j2", "{}")
    store.set_field(keys.counters_key("cmd", "p1"), "job_count", 1)
    store.set_field(keys.standalone_job_key("j9"), "status", "success")

    assert store.collect_keys(keys.JOB_HASH_PATTERN, count=1) == ["command:p1:jobs", "command:p2:jobs"]
    assert store.collect_keys(keys.COUNTERS_PATTERN) == ["command:metrics:cmd:p1"]
    assert store.collect_keys(keys.STANDALONE_JOB_PATTERN) == ["job:metrics:j9"]


def test_redis_errors_become_correlation_store_errors():
    class DownRedis:
        def hgetall(self, key):
            raise RedisConnectionError("connection refused")

        def ping(self):
            raise RedisConnectionError("connection refused")

    store = RedisCounterStore(DownRedis())
    with pytest.raises(CorrelationStoreError) as excinfo:
        store.get_all("command:p1:jobs")
    assert excinfo.value.key == "command:p1:jobs"
    with pytest.raises(CorrelationStoreError):
        store.ping()


def test_key_helpers():
    assert keys.jobs_key("abc") == "command:abc:jobs"
    assert keys.process_id_from_jobs_key("command:abc:jobs") == "abc"
    assert keys.process_id_from_jobs_key("command:metrics:x:jobs") is None
    assert keys.process_id_from_jobs_key("commands:running") is None
    assert keys.counters_key("app:sync", "p1") == "command:metrics:app:sync:p1"
