import pytest

from osnovci.core.errors import RateLimitedError
from osnovci.core.kv_store import InMemoryStore
from osnovci.core.rate_limit import check_rate_limit, hit_rate_limit, reset_rate_limit


def test_fixed_window_allows_up_to_limit(fake_clock):
    store = InMemoryStore(clock=fake_clock)
    results = [hit_rate_limit(store, "1.2.3.4", "login", limit=3, window_seconds=60) for _ in range(4)]

    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert results[-1].retry_after_seconds == 60


def test_window_resets_after_expiry(fake_clock):
    clock = fake_clock
    store = InMemoryStore(clock=clock)
    for _ in range(2):
        hit_rate_limit(store, "u1", "qr", limit=2, window_seconds=30)
    assert hit_rate_limit(store, "u1", "qr", limit=2, window_seconds=30).allowed is False

    clock.advance(31)
    assert hit_rate_limit(store, "u1", "qr", limit=2, window_seconds=30).allowed is True


def test_check_rate_limit_raises_with_retry_after(fake_clock):
    store = InMemoryStore(clock=fake_clock)
    check_rate_limit(store, "ip", "verify", limit=1, window_seconds=900)
    with pytest.raises(RateLimitedError) as exc_info:
        check_rate_limit(store, "ip", "verify", limit=1, window_seconds=900)

    assert exc_info.value.status_code == 429
    assert exc_info.value.retry_after_seconds == 900
    assert exc_info.value.headers() == {"Retry-After": "900"}


def test_identifiers_and_actions_are_independent(fake_clock):
    store = InMemoryStore(clock=fake_clock)
    check_rate_limit(store, "a", "login", limit=1, window_seconds=60)
    check_rate_limit(store, "b", "login", limit=1, window_seconds=60)
    check_rate_limit(store, "a", "register", limit=1, window_seconds=60)

    reset_rate_limit(store, "a", "login")
    check_rate_limit(store, "a", "login", limit=1, window_seconds=60)
