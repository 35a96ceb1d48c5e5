from __future__ import annotations

import fnmatch
import hashlib
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

try:  # pragma: no cover - import guard
    import redis  # type: ignore
except Exception as exc:  # pragma: no cover
    redis = None  # type: ignore
    _import_error = exc
else:
    _import_error = None

from job_monitor.app.core.Metrics.metrics_manager import get_metrics_registry

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


def _resolve_url(preferred: Optional[str] = None) -> str:
    if preferred and str(preferred).strip():
        return str(preferred).strip()
    try:
        from job_monitor.app.core.config import get_settings

        return get_settings().REDIS_URL
    except Exception as exc:
        logger.debug(f"Falling back to default Redis URL: {exc}")
        return DEFAULT_REDIS_URL


def _record_connection_metrics(
    *,
    mode: str,
    context: str,
    outcome: str,
    start_time: float,
    error: Optional[BaseException] = None,
):
    elapsed = max(time.perf_counter() - start_time, 0.0)
    labels = {"mode": mode, "context": context, "outcome": outcome}
    try:
        registry = get_metrics_registry()
        registry.increment("infra_redis_connection_attempts_total", 1, labels)
        registry.observe("infra_redis_connection_duration_seconds", elapsed, labels)
        if outcome == "stub":
            reason = type(error).__name__ if error else "fallback"
            registry.increment(
                "infra_redis_fallback_total",
                1,
                {"mode": mode, "context": context, "reason": reason},
            )
        elif outcome == "error":
            reason = type(error).__name__ if error else "unknown"
            registry.increment(
                "infra_redis_connection_errors_total",
                1,
                {"mode": mode, "context": context, "error": reason},
            )
    except Exception as metric_exc:
        logger.debug(
            "Failed to record Redis infrastructure metrics: {err}",
            err=metric_exc,
        )


def create_sync_redis_client(
    *,
    preferred_url: Optional[str] = None,
    decode_responses: bool = True,
    fallback_to_fake: bool = True,
    context: str = "default",
    redis_kwargs: Optional[dict] = None,
):
    """
    Instantiate a synchronous Redis client with optional in-memory fallback.

    Args:
        preferred_url: Explicit URL to prioritize over settings.
        decode_responses: Whether to decode bytes into str.
        fallback_to_fake: If True, transparently fall back to an in-memory stub when
            the real server is unreachable.
        context: Human-readable label for logging (helps trace callers).
    """

    if redis is None:
        raise RuntimeError(
            "redis client is required but not installed"
        ) from _import_error

    url = _resolve_url(preferred_url)
    context_label = (context or "default").strip() or "default"
    options = dict(redis_kwargs or {})
    if "decode_responses" not in options:
        options["decode_responses"] = decode_responses
    start_time = time.perf_counter()
    client = None

    try:
        client = redis.from_url(url, **options)
        client.ping()
    except Exception as exc:
        if client is not None:
            try:
                client.close()
            except Exception as close_exc:
                logger.debug(f"Ignoring Redis close failure: {close_exc}")
        if not fallback_to_fake:
            _record_connection_metrics(
                mode="sync",
                context=context_label,
                outcome="error",
                start_time=start_time,
                error=exc,
            )
            raise
        logger.warning(
            "Redis unavailable at {url} for {context}; using in-memory stub. Error: {err}",
            url=url,
            context=context_label,
            err=exc,
        )
        fake_client = InMemorySyncRedis(
            decode_responses=options.get("decode_responses", True)
        )
        fake_client.ping()
        _record_connection_metrics(
            mode="sync",
            context=context_label,
            outcome="stub",
            start_time=start_time,
            error=exc,
        )
        return fake_client

    _record_connection_metrics(
        mode="sync",
        context=context_label,
        outcome="real",
        start_time=start_time,
    )
    return client


class _InMemoryRedisCore:
    """Stateful in-memory substitute implementing the string/hash subset of Redis."""

    def __init__(self, decode_responses: bool = True):
        self.decode_responses = decode_responses
        self._strings: Dict[str, str] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._expiry: Dict[str, float] = {}
        self._scripts: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Basic utilities
    # ------------------------------------------------------------------
    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def _now(self) -> float:
        return time.time()

    def _delete_internal(self, key: str) -> None:
        self._strings.pop(key, None)
        self._hashes.pop(key, None)
        self._expiry.pop(key, None)

    def _check_expiry(self, key: str) -> None:
        expires_at = self._expiry.get(key)
        if expires_at is not None and expires_at <= self._now():
            self._delete_internal(key)

    def _all_keys(self) -> List[str]:
        for key in list(self._expiry.keys()):
            self._check_expiry(key)
        return sorted(set(self._strings.keys()) | set(self._hashes.keys()))

    # ------------------------------------------------------------------
    # Hash operations
    # ------------------------------------------------------------------
    def hset(
        self,
        key: str,
        field: Optional[str] = None,
        value: Any = None,
        mapping: Optional[Dict[str, Any]] = None,
    ) -> int:
        self._check_expiry(key)
        items: Dict[str, Any] = {}
        if field is not None:
            items[str(field)] = value
        if mapping:
            items.update(mapping)
        if not items:
            raise ValueError("hset requires field/value or mapping")
        target = self._hashes.setdefault(key, {})
        created = 0
        for name, val in items.items():
            name = str(name)
            if name not in target:
                created += 1
            target[name] = str(val)
        return created

    def hget(self, key: str, field: str) -> Optional[str]:
        self._check_expiry(key)
        return self._hashes.get(key, {}).get(str(field))

    def hgetall(self, key: str) -> Dict[str, str]:
        self._check_expiry(key)
        return dict(self._hashes.get(key, {}))

    def hdel(self, key: str, *fields: str) -> int:
        self._check_expiry(key)
        target = self._hashes.get(key)
        if not target:
            return 0
        removed = 0
        for name in fields:
            if target.pop(str(name), None) is not None:
                removed += 1
        if not target:
            self._delete_internal(key)
        return removed

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        self._check_expiry(key)
        target = self._hashes.setdefault(key, {})
        current = int(target.get(str(field), "0"))
        current += int(amount)
        target[str(field)] = str(current)
        return current

    def hincrbyfloat(self, key: str, field: str, amount: float = 1.0) -> float:
        self._check_expiry(key)
        target = self._hashes.setdefault(key, {})
        current = float(target.get(str(field), "0"))
        current += float(amount)
        target[str(field)] = repr(current)
        return current

    # ------------------------------------------------------------------
    # String operations
    # ------------------------------------------------------------------
    def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        self._strings[key] = str(value)
        self._expiry.pop(key, None)
        if ex is not None:
            self._expiry[key] = self._now() + int(ex)
        return True

    def get(self, key: str) -> Optional[str]:
        self._check_expiry(key)
        return self._strings.get(key)

    # ------------------------------------------------------------------
    # Key operations
    # ------------------------------------------------------------------
    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self._check_expiry(key)
            if key in self._strings or key in self._hashes:
                removed += 1
            self._delete_internal(key)
        return removed

    def exists(self, *keys: str) -> int:
        count = 0
        for key in keys:
            self._check_expiry(key)
            if key in self._strings or key in self._hashes:
                count += 1
        return count

    def expire(self, key: str, seconds: int) -> bool:
        self._check_expiry(key)
        if key in self._strings or key in self._hashes:
            self._expiry[key] = self._now() + int(seconds)
            return True
        return False

    def ttl(self, key: str) -> int:
        """Remaining TTL in seconds (-1 no expiry, -2 missing); lets tests assert expirations."""
        self._check_expiry(key)
        if key not in self._strings and key not in self._hashes:
            return -2
        expires_at = self._expiry.get(key)
        if expires_at is None:
            return -1
        remaining = int(round(expires_at - self._now()))
        return remaining if remaining >= 0 else -2

    def scan(self, cursor: int = 0, match: Optional[str] = None, count: Optional[int] = None) -> Tuple[int, List[str]]:
        keys = self._all_keys()
        if match:
            keys = [k for k in keys if fnmatch.fnmatchcase(k, match)]
        start = int(cursor or 0)
        size = int(count) if count else 10
        page = keys[start:start + size]
        next_cursor = start + size if start + size < len(keys) else 0
        return next_cursor, page

    # ------------------------------------------------------------------
    # Scripts
    # ------------------------------------------------------------------
    def script_load(self, script: str) -> str:
        sha = hashlib.sha1(script.encode("utf-8")).hexdigest()
        self._scripts[sha] = script
        return sha

    def evalsha(self, sha: str, num_keys: int, *args) -> Any:
        script = self._scripts.get(sha)
        if script is None:
            raise RuntimeError("NOSCRIPT")
        return self.eval(script, num_keys, *args)

    def eval(self, script: str, num_keys: int, *args) -> Any:
        # Heuristic: handle the hash high-water-mark script used by the counter store
        if "HGET" in script and "HSET" in script and "tonumber" in script:
            if num_keys != 1 or len(args) < 3:
                raise RuntimeError("Invalid arguments for hash max script")
            key, field, candidate = args[0], str(args[1]), float(args[2])
            current_raw = self.hget(key, field)
            current = float(current_raw) if current_raw is not None else 0.0
            if current_raw is None or candidate > current:
                self.hset(key, field, args[2])
                return str(args[2])
            return current_raw
        raise RuntimeError("Unsupported script")


class InMemorySyncRedis:
    """Synchronous, thread-safe wrapper around the in-memory Redis core."""

    def __init__(self, decode_responses: bool = True):
        self._core = _InMemoryRedisCore(decode_responses=decode_responses)
        self._lock = threading.RLock()

    def ping(self):
        with self._lock:
            return self._core.ping()

    def close(self):
        with self._lock:
            self._core.close()

    def hset(self, key: str, field: Optional[str] = None, value: Any = None, mapping: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            return self._core.hset(key, field, value, mapping=mapping)

    def hget(self, key: str, field: str) -> Optional[str]:
        with self._lock:
            return self._core.hget(key, field)

    def hgetall(self, key: str) -> Dict[str, str]:
        with self._lock:
            return self._core.hgetall(key)

    def hdel(self, key: str, *fields: str) -> int:
        with self._lock:
            return self._core.hdel(key, *fields)

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        with self._lock:
            return self._core.hincrby(key, field, amount)

    def hincrbyfloat(self, key: str, field: str, amount: float = 1.0) -> float:
        with self._lock:
            return self._core.hincrbyfloat(key, field, amount)

    def expire(self, key: str, seconds: int):
        with self._lock:
            return self._core.expire(key, seconds)

    def ttl(self, key: str) -> int:
        with self._lock:
            return self._core.ttl(key)

    def exists(self, *keys: str) -> int:
        with self._lock:
            return self._core.exists(*keys)

    def get(self, key: str):
        with self._lock:
            return self._core.get(key)

    def set(self, key: str, value: Any, ex: Optional[int] = None):
        with self._lock:
            return self._core.set(key, value, ex=ex)

    def delete(self, *keys: str) -> int:
        with self._lock:
            return self._core.delete(*keys)

    def scan(self, cursor: int = 0, match: Optional[str] = None, count: Optional[int] = None):
        with self._lock:
            return self._core.scan(cursor, match, count)

    def script_load(self, script: str) -> str:
        with self._lock:
            return self._core.script_load(script)

    def evalsha(self, sha: str, num_keys: int, *args) -> Any:
        with self._lock:
            return self._core.evalsha(sha, num_keys, *args)

