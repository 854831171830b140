"""Shared key-value store used for lockout counters, rate-limit windows and QR tokens.

Production deployments point ``REDIS_URL`` at a Redis instance so that every
API process sees the same counters. ``KV_BACKEND=memory`` selects a
process-local store, which is only suitable for a single process (local
development and tests).
"""

import logging
import os
import threading
import time
from collections.abc import Callable
from typing import Protocol

import redis

from osnovci.core.errors import StoreError

logger = logging.getLogger(__name__)

KV_BACKEND = os.getenv("KV_BACKEND", "redis").strip().lower()
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...
    def incr(self, key: str) -> int: ...
    def expire(self, key: str, ttl_seconds: int) -> None: ...
    def ttl(self, key: str) -> int | None: ...
    def delete(self, *keys: str) -> int: ...
    def scan(self, prefix: str) -> list[str]: ...


class InMemoryStore:
    """Thread-safe TTL map with the same semantics as the Redis store."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key: str) -> tuple[str, float | None] | None:
        hit = self._data.get(key)
        if hit is None:
            return None
        _, expires_at = hit
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return hit

    def get(self, key: str) -> str | None:
        with self._lock:
            hit = self._live(key)
            return hit[0] if hit else None

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = (str(value), expires_at)

    def incr(self, key: str) -> int:
        with self._lock:
            hit = self._live(key)
            if hit is None:
                value, expires_at = 0, None
            else:
                try:
                    value = int(hit[0])
                except ValueError as exc:
                    raise StoreError(f"Value at {key} is not an integer") from exc
                expires_at = hit[1]
            value += 1
            self._data[key] = (str(value), expires_at)
            return value

    def expire(self, key: str, ttl_seconds: int) -> None:
        with self._lock:
            hit = self._live(key)
            if hit is not None:
                self._data[key] = (hit[0], self._clock() + ttl_seconds)

    def ttl(self, key: str) -> int | None:
        with self._lock:
            hit = self._live(key)
            if hit is None or hit[1] is None:
                return None
            return max(0, int(hit[1] - self._clock()))

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._data.pop(key, None)
        return removed

    def scan(self, prefix: str) -> list[str]:
        with self._lock:
            keys = [key for key in list(self._data.keys()) if key.startswith(prefix)]
            return [key for key in keys if self._live(key) is not None]


class RedisStore:
    """redis-py backed store. Connection and command errors become ``StoreError``."""

    def __init__(self, client: redis.Redis) -> None:
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.Redis.from_url(url, decode_responses=True, socket_timeout=5))

    def _call(self, op: str, key: str, fn: Callable):
        try:
            return fn()
        except redis.RedisError as exc:
            logger.error("Redis %s failed key=%s: %s", op, key, exc)
            raise StoreError() from exc

    def get(self, key: str) -> str | None:
        return self._call("GET", key, lambda: self._redis.get(key))

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._call("SET", key, lambda: self._redis.set(key, value, ex=ttl_seconds or None))

    def incr(self, key: str) -> int:
        return int(self._call("INCR", key, lambda: self._redis.incr(key)))

    def expire(self, key: str, ttl_seconds: int) -> None:
        self._call("EXPIRE", key, lambda: self._redis.expire(key, ttl_seconds))

    def ttl(self, key: str) -> int | None:
        value = self._call("TTL", key, lambda: self._redis.ttl(key))
        # -2: no such key, -1: key without expiry
        if value is None or value < 0:
            return None
        return int(value)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._call("DEL", ",".join(keys), lambda: self._redis.delete(*keys)))

    def scan(self, prefix: str) -> list[str]:
        return self._call("SCAN", prefix, lambda: list(self._redis.scan_iter(match=f"{prefix}*", count=500)))


_store: KeyValueStore | None = None
_store_lock = threading.Lock()


def build_store(backend: str = KV_BACKEND, url: str = REDIS_URL) -> KeyValueStore:
    if backend == "memory":
        logger.warning("Using in-memory key-value store; counters are not shared between processes")
        return InMemoryStore()
    if backend != "redis":
        raise ValueError(f"Unknown KV_BACKEND: {backend}")
    logger.info("Using Redis key-value store url=%s", url.split("@")[-1])
    return RedisStore.from_url(url)


def get_kv_store() -> KeyValueStore:
    """FastAPI dependency returning the process-wide store."""
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                _store = build_store()
    return _store
