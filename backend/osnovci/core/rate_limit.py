import logging
from dataclasses import dataclass

from osnovci.core.errors import RateLimitedError
from osnovci.core.kv_store import KeyValueStore
from osnovci.core.metrics import increment_counter

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int


def _key(action: str, identifier: str) -> str:
    return f"ratelimit:{action}:{identifier}"


def hit_rate_limit(
    store: KeyValueStore,
    identifier: str,
    action: str,
    *,
    limit: int,
    window_seconds: int,
) -> RateLimitResult:
    """Count one request in a fixed window and report whether it is within ``limit``."""
    key = _key(action, identifier)
    count = store.incr(key)
    if count == 1:
        store.expire(key, window_seconds)
    ttl = store.ttl(key)
    if ttl is None:
        # Window lost its expiry (e.g. INCR raced with EXPIRE); restart it.
        store.expire(key, window_seconds)
        ttl = window_seconds
    remaining = max(0, limit - count)
    return RateLimitResult(
        allowed=count <= limit,
        limit=limit,
        remaining=remaining,
        retry_after_seconds=max(1, ttl),
    )


def check_rate_limit(
    store: KeyValueStore,
    identifier: str,
    action: str,
    *,
    limit: int,
    window_seconds: int,
) -> RateLimitResult:
    result = hit_rate_limit(store, identifier, action, limit=limit, window_seconds=window_seconds)
    if not result.allowed:
        logger.warning(
            "Rate limit exceeded action=%s identifier=%s limit=%s window_seconds=%s",
            action,
            identifier,
            limit,
            window_seconds,
        )
        increment_counter("rate_limited_total", action=action)
        raise RateLimitedError(retry_after_seconds=result.retry_after_seconds)
    return result


def reset_rate_limit(store: KeyValueStore, identifier: str, action: str) -> None:
    store.delete(_key(action, identifier))
