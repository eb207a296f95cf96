"""
Per-identifier fixed-window rate limiting on the `limits` library.

Primary path: a shared counter store (Redis through limits' RedisStorage, so
counts are INCR'd with an expiry and reset times come back from the key's TTL).
Fallback path: a process-local MemoryStorage with stricter per-preset maxima,
used when the store is unconfigured, unreachable or times out.

The fallback is only coherent inside one process; under horizontal scaling
each instance keeps its own counters, which multiplies the effective limit by
the instance count. The smaller fallback maxima partially compensate.
"""
import logging
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Set, Tuple

from flask import current_app, request
from limits import RateLimitItemPerSecond
from limits.errors import StorageError
from limits.storage import MemoryStorage, Storage, storage_from_string
from limits.strategies import FixedWindowRateLimiter

from paydesk.extensions import RATE_LIMITER_KEY
from paydesk.observability import structured

logger = logging.getLogger(__name__)

LIMITS_NAMESPACE = "paydesk"


@dataclass(frozen=True)
class RateLimitPreset:
    window: int  # seconds
    max: int
    fallback_max: int

    def item(self, fallback: bool = False) -> RateLimitItemPerSecond:
        amount = self.fallback_max if fallback else self.max
        return RateLimitItemPerSecond(amount, self.window, namespace=LIMITS_NAMESPACE)


RATE_LIMITS: Dict[str, RateLimitPreset] = {
    # Webhook intake - moderate limit
    "INTAKE": RateLimitPreset(window=60, max=10, fallback_max=5),
    # Auth endpoints - stricter to prevent brute force
    "AUTH": RateLimitPreset(window=60, max=5, fallback_max=3),
    # Admin endpoints - moderate (already behind auth)
    "ADMIN": RateLimitPreset(window=60, max=20, fallback_max=10),
    # General API
    "API": RateLimitPreset(window=60, max=30, fallback_max=15),
    # Provider webhooks (Stripe sends bursts)
    "WEBHOOK": RateLimitPreset(window=60, max=100, fallback_max=50),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    fallback: bool = False

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(0, int(self.reset_at.timestamp() - now) + 1)


class InMemoryCounterStore:
    """
    Process-local fixed-window counters over limits' MemoryStorage.

    increment() returns (count, reset epoch seconds) for the current window.
    The lock keeps each increment and its read-back consistent and makes sweep
    atomic against increments, so a sweep never drops a key mid-increment.
    """

    def __init__(self, storage: Optional[MemoryStorage] = None):
        self._storage = storage if storage is not None else MemoryStorage()
        self._keys: Set[str] = set()
        self._lock = threading.Lock()

    def increment(self, key: str, window_seconds: int) -> Tuple[int, float]:
        with self._lock:
            count = self._storage.incr(key, window_seconds)
            self._keys.add(key)
            return count, self._storage.get_expiry(key)

    def peek(self, key: str) -> Optional[Tuple[int, float]]:
        with self._lock:
            count = self._storage.get(key)
            if not count:
                return None
            return count, self._storage.get_expiry(key)

    def sweep(self) -> int:
        """Forget expired windows; returns how many were removed."""
        with self._lock:
            # MemoryStorage.get() drops the counter once its expiry has passed
            expired = [k for k in self._keys if not self._storage.get(k)]
            for k in expired:
                self._keys.discard(k)
                self._storage.clear(k)
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


class RateLimiter:
    """
    `storage` is a limits Storage (RedisStorage in production); None means
    "fallback only".
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        fallback: Optional[InMemoryCounterStore] = None,
        presets: Optional[Dict[str, RateLimitPreset]] = None,
        sweep_probability: float = 0.01,
        rng: Callable[[], float] = random.random,
        store_errors: Tuple[type, ...] = (StorageError, OSError),
    ):
        self.storage = storage
        self.fallback = fallback if fallback is not None else InMemoryCounterStore()
        self.presets = dict(presets or RATE_LIMITS)
        self.sweep_probability = sweep_probability
        self._rng = rng
        self._store_errors = store_errors

    @property
    def storage(self) -> Optional[Storage]:
        return self._storage

    @storage.setter
    def storage(self, storage: Optional[Storage]) -> None:
        self._storage = storage
        self._strategy = FixedWindowRateLimiter(storage) if storage is not None else None

    @staticmethod
    def key_for(identifier: str, preset: str, namespace: Optional[str] = None) -> str:
        scope = namespace or preset.lower()
        return f"rate_limit:{scope}:{identifier}"

    def check(self, identifier: str, preset: str = "API", namespace: Optional[str] = None) -> RateLimitResult:
        config = self.presets[preset]
        key = self.key_for(identifier, preset, namespace)

        if self._strategy is None:
            logger.warning(structured("rate_limit.fallback", preset=preset, reason="store_not_configured"))
            return self._check_fallback(key, config)

        try:
            return self._check_store(key, config)
        except self._store_errors as exc:
            logger.error(structured("rate_limit.fallback", preset=preset, reason="store_error", error=type(exc).__name__))
            return self._check_fallback(key, config)

    def _check_store(self, key: str, config: RateLimitPreset) -> RateLimitResult:
        item = config.item()
        allowed = self._strategy.hit(item, key)
        # Reset time is the store's own expiry bookkeeping (TTL on Redis)
        reset_time, remaining = self._strategy.get_window_stats(item, key)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, int(remaining)),
            reset_at=datetime.fromtimestamp(reset_time, tz=timezone.utc),
        )

    def _check_fallback(self, key: str, config: RateLimitPreset) -> RateLimitResult:
        if self._rng() < self.sweep_probability:
            self.fallback.sweep()

        count, reset_at = self.fallback.increment(key, config.window)
        return RateLimitResult(
            allowed=count <= config.fallback_max,
            remaining=max(0, config.fallback_max - count),
            reset_at=datetime.fromtimestamp(reset_at, tz=timezone.utc),
            fallback=True,
        )


def init_rate_limiter(app) -> RateLimiter:
    """Build the app-owned limiter; Redis when REDIS_URL is set, fallback only otherwise."""
    storage = None
    store_errors: Tuple[type, ...] = (StorageError, OSError)
    url = app.config.get("REDIS_URL")
    if url:
        from redis.exceptions import RedisError
        store_errors = (StorageError, RedisError, OSError)
        timeout = float(app.config.get("REDIS_TIMEOUT_SECONDS", 0.5))
        storage = storage_from_string(
            url,
            wrap_exceptions=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )

    limiter = RateLimiter(
        storage=storage,
        sweep_probability=float(app.config.get("RATE_LIMIT_SWEEP_PROBABILITY", 0.01)),
        store_errors=store_errors,
    )
    app.extensions[RATE_LIMITER_KEY] = limiter
    return limiter


def get_rate_limiter() -> RateLimiter:
    return current_app.extensions[RATE_LIMITER_KEY]


def check_rate_limit(identifier: str, preset: str = "API", namespace: Optional[str] = None) -> RateLimitResult:
    return get_rate_limiter().check(identifier, preset, namespace)


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    return {
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at.timestamp())),
    }


def client_ip(req=None) -> str:
    req = req or request
    forwarded = (req.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return forwarded or req.headers.get("X-Real-IP") or req.remote_addr or "unknown"
