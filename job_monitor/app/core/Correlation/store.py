"""
Counter store abstraction over Redis hashes.

`CounterStore` is the narrow protocol the recorder, sync engine and read API
use. `RedisCounterStore` works with either a real `redis.Redis` client or
the `InMemorySyncRedis` substitute from the Redis factory; all counter
mutations are single atomic server-side operations.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from loguru import logger
from redis.exceptions import NoScriptError, RedisError

from job_monitor.app.core.config import get_settings
from job_monitor.app.core.exceptions import CorrelationStoreError
from job_monitor.app.core.Infrastructure.redis_factory import create_sync_redis_client

T = TypeVar("T")

# Atomic high-water mark for a hash field; values are passed and returned as strings
# so Lua does not truncate floats.
HASH_MAX_SCRIPT = """
local current = redis.call('HGET', KEYS[1], ARGV[1])
if (not current) or tonumber(ARGV[2]) > tonumber(current) then
  redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
  return ARGV[2]
end
return current
"""


class CounterStore(ABC):
    """Hash/counter operations needed for job and command correlation."""

    @abstractmethod
    def set_field(self, key: str, field: str, value: Any) -> None: ...

    @abstractmethod
    def set_fields(self, key: str, mapping: Dict[str, Any]) -> None: ...

    @abstractmethod
    def get_field(self, key: str, field: str) -> Optional[str]: ...

    @abstractmethod
    def get_all(self, key: str) -> Dict[str, str]: ...

    @abstractmethod
    def delete_field(self, key: str, *fields: str) -> int: ...

    @abstractmethod
    def increment(self, key: str, field: str, amount: int = 1) -> int: ...

    @abstractmethod
    def increment_float(self, key: str, field: str, amount: float) -> float: ...

    @abstractmethod
    def max_field(self, key: str, field: str, value: float) -> float: ...

    @abstractmethod
    def delete(self, *keys: str) -> int: ...

    @abstractmethod
    def expire(self, key: str, seconds: int) -> None: ...

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def set_value(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    @abstractmethod
    def get_value(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def scan_keys(self, pattern: str, count: int = 500) -> Iterator[str]: ...

    def collect_keys(self, pattern: str, count: int = 500) -> List[str]:
        """Sorted, de-duplicated snapshot of `scan_keys` (SCAN may repeat keys)."""
        return sorted(set(self.scan_keys(pattern, count=count)))

    def ping(self) -> bool:
        return True


class RedisCounterStore(CounterStore):
    """CounterStore backed by a synchronous redis-py compatible client."""

    def __init__(self, client):
        self.client = client
        self._max_sha: Optional[str] = None

    def _call(self, op: str, key: Optional[str], fn: Callable[[], T]) -> T:
        try:
            return fn()
        except (RedisError, OSError, RuntimeError) as exc:
            raise CorrelationStoreError(f"Redis {op} failed for {key}: {exc}", key=key) from exc

    @staticmethod
    def _text(value: Any) -> Optional[str]:
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def ping(self) -> bool:
        return bool(self._call("ping", None, self.client.ping))

    def set_field(self, key: str, field: str, value: Any) -> None:
        self._call("hset", key, lambda: self.client.hset(key, field, value))

    def set_fields(self, key: str, mapping: Dict[str, Any]) -> None:
        if not mapping:
            return
        clean = {k: ("" if v is None else v) for k, v in mapping.items()}
        self._call("hset", key, lambda: self.client.hset(key, mapping=clean))

    def get_field(self, key: str, field: str) -> Optional[str]:
        return self._text(self._call("hget", key, lambda: self.client.hget(key, field)))

    def get_all(self, key: str) -> Dict[str, str]:
        raw = self._call("hgetall", key, lambda: self.client.hgetall(key)) or {}
        return {self._text(k): self._text(v) for k, v in raw.items()}

    def delete_field(self, key: str, *fields: str) -> int:
        if not fields:
            return 0
        return int(self._call("hdel", key, lambda: self.client.hdel(key, *fields)) or 0)

    def increment(self, key: str, field: str, amount: int = 1) -> int:
        return int(self._call("hincrby", key, lambda: self.client.hincrby(key, field, int(amount))))

    def increment_float(self, key: str, field: str, amount: float) -> float:
        return float(self._call("hincrbyfloat", key, lambda: self.client.hincrbyfloat(key, field, float(amount))))

    def max_field(self, key: str, field: str, value: float) -> float:
        def _run():
            if self._max_sha is None:
                self._max_sha = self.client.script_load(HASH_MAX_SCRIPT)
            try:
                return self.client.evalsha(self._max_sha, 1, key, field, str(value))
            except NoScriptError:
                self._max_sha = self.client.script_load(HASH_MAX_SCRIPT)
                return self.client.evalsha(self._max_sha, 1, key, field, str(value))

        result = self._call("max", key, _run)
        return float(self._text(result) or 0)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._call("del", keys[0], lambda: self.client.delete(*keys)) or 0)

    def expire(self, key: str, seconds: int) -> None:
        self._call("expire", key, lambda: self.client.expire(key, int(seconds)))

    def exists(self, key: str) -> bool:
        return bool(self._call("exists", key, lambda: self.client.exists(key)))

    def set_value(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self._call("set", key, lambda: self.client.set(key, value, ex=ttl))

    def get_value(self, key: str) -> Optional[str]:
        return self._text(self._call("get", key, lambda: self.client.get(key)))

    def scan_keys(self, pattern: str, count: int = 500) -> Iterator[str]:
        """Iterate keys matching `pattern` with SCAN (never KEYS)."""
        cursor = 0
        while True:
            cursor, batch = self._call(
                "scan", pattern, lambda c=cursor: self.client.scan(c, match=pattern, count=count)
            )
            for key in batch:
                yield self._text(key)
            if int(cursor) == 0:
                break


_default_store: Optional[CounterStore] = None


def get_counter_store() -> CounterStore:
    """Process-wide store bound to the configured Redis URL."""
    global _default_store
    if _default_store is None:
        settings = get_settings()
        client = create_sync_redis_client(
            preferred_url=settings.REDIS_URL,
            fallback_to_fake=settings.REDIS_ALLOW_IN_MEMORY_FALLBACK,
            context="job_monitor",
        )
        _default_store = RedisCounterStore(client)
        logger.debug(f"Job monitor counter store ready ({type(client).__name__})")
    return _default_store


def set_counter_store(store: Optional[CounterStore]) -> None:
    global _default_store
    _default_store = store
