import threading
import time

import pytest
from flask import Flask
from limits.storage import MemoryStorage

from paydesk.extensions import RATE_LIMITER_KEY
from paydesk.services.rate_limit import (
    InMemoryCounterStore,
    RateLimiter,
    RateLimitPreset,
    check_rate_limit,
    client_ip,
    init_rate_limiter,
    rate_limit_headers,
)

SHORT = {"AUTH": RateLimitPreset(window=1, max=5, fallback_max=3)}


class _UnreachableStorage(MemoryStorage):
    """A counter store whose every round trip fails."""

    def incr(self, *args, **kwargs):
        raise ConnectionError("store unreachable")

    def get(self, *args, **kwargs):
        raise ConnectionError("store unreachable")


def _never():
    return 1.0


def test_store_allows_max_then_rejects_then_resets():
    limiter = RateLimiter(storage=MemoryStorage(), presets=SHORT, rng=_never)

    results = [limiter.check("1.2.3.4", "AUTH") for _ in range(5)]
    assert all(r.allowed for r in results)
    assert [r.remaining for r in results] == [4, 3, 2, 1, 0]
    assert not any(r.fallback for r in results)

    sixth = limiter.check("1.2.3.4", "AUTH")
    assert not sixth.allowed
    assert sixth.remaining == 0

    time.sleep(1.2)
    assert limiter.check("1.2.3.4", "AUTH").allowed

def test_reset_comes_from_store_expiry():
    limiter = RateLimiter(storage=MemoryStorage(), rng=_never)

    first = limiter.check("u1", "API")
    time.sleep(0.05)
    second = limiter.check("u1", "API")

    # Both report the window end the store recorded on the first hit
    assert first.reset_at == second.reset_at
    assert 55 <= first.reset_at.timestamp() - time.time() <= 60

def test_fallback_when_store_unreachable_is_stricter():
    limiter = RateLimiter(storage=_UnreachableStorage(), rng=_never)

    results = [limiter.check("9.9.9.9", "AUTH") for _ in range(4)]
    assert [r.allowed for r in results] == [True, True, True, False]
    assert all(r.fallback for r in results)

def test_fallback_when_store_not_configured_is_still_bounded():
    limiter = RateLimiter(storage=None, rng=_never)
    preset = limiter.presets["WEBHOOK"]
    allowed = sum(limiter.check("burst", "WEBHOOK").allowed for _ in range(preset.max * 2))
    assert allowed == preset.fallback_max

def test_keys_are_scoped_by_namespace_or_preset():
    assert RateLimiter.key_for("1.2.3.4", "INTAKE", "formspree") == "rate_limit:formspree:1.2.3.4"
    assert RateLimiter.key_for("1.2.3.4", "INTAKE") == "rate_limit:intake:1.2.3.4"

    one = {"API": RateLimitPreset(window=60, max=1, fallback_max=1)}
    for storage in (None, MemoryStorage()):
        limiter = RateLimiter(storage=storage, presets=one, rng=_never)
        assert limiter.check("ip", "API", "a").allowed
        assert not limiter.check("ip", "API", "a").allowed
        assert limiter.check("ip", "API", "b").allowed

def test_sweep_drops_only_expired_windows():
    store = InMemoryCounterStore()
    store.increment("old", 1)
    count, reset_at = store.increment("new", 60)
    assert count == 1

    time.sleep(1.2)
    assert store.sweep() == 1
    assert len(store) == 1
    assert store.peek("new") == (1, reset_at)
    assert store.peek("old") is None

def test_sweep_is_probabilistic():
    store = InMemoryCounterStore()
    store.increment("stale", 1)
    time.sleep(1.2)

    RateLimiter(fallback=store, rng=_never).check("x", "API")
    assert len(store) == 2

    RateLimiter(fallback=store, rng=lambda: 0.0).check("x", "API")
    assert store.peek("rate_limit:api:x")[0] == 2
    assert len(store) == 1

def test_in_memory_store_is_safe_under_concurrent_increments():
    store = InMemoryCounterStore()
    threads = 8
    per_thread = 500
    barrier = threading.Barrier(threads)

    def _worker():
        barrier.wait()
        for _ in range(per_thread):
            store.increment("hot", 60)

    workers = [threading.Thread(target=_worker) for _ in range(threads)]
    for w in workers:
        w.start()
    for w in workers:
        w.join()

    count, _ = store.peek("hot")
    assert count == threads * per_thread

def test_retry_after_and_headers():
    limiter = RateLimiter(storage=MemoryStorage(), rng=_never)
    result = limiter.check("h", "API")
    headers = rate_limit_headers(result)
    assert headers["X-RateLimit-Remaining"] == "29"
    assert abs(int(headers["X-RateLimit-Reset"]) - (time.time() + 60)) <= 2
    assert result.retry_after(now=result.reset_at.timestamp() - 59.5) == 60
    assert result.retry_after(now=result.reset_at.timestamp() + 5) == 0

def test_app_limiter_and_client_ip(app):
    with app.test_request_context("/", headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"}):
        assert client_ip() == "203.0.113.5"
        result = check_rate_limit(client_ip(), "API")
        assert result.allowed and result.fallback
    with app.test_request_context("/", headers={"X-Real-IP": "198.51.100.7"}):
        assert client_ip() == "198.51.100.7"
    with app.test_request_context("/", environ_base={"REMOTE_ADDR": "192.0.2.1"}):
        assert client_ip() == "192.0.2.1"

def test_init_with_unreachable_redis_falls_back():
    pytest.importorskip("redis")
    from limits.storage import RedisStorage

    flask_app = Flask(__name__)
    flask_app.config.update(REDIS_URL="redis://127.0.0.1:1/0", REDIS_TIMEOUT_SECONDS=0.2)
    limiter = init_rate_limiter(flask_app)

    assert flask_app.extensions[RATE_LIMITER_KEY] is limiter
    assert isinstance(limiter.storage, RedisStorage)
    result = limiter.check("10.0.0.1", "API")
    assert result.allowed and result.fallback
