"""Fixed-window rate limiting for the Tripp gateway.

Counting is delegated to `limits` (the storage layer under slowapi): a
`FixedWindowRateLimiter` over a storage chosen by URI, in-memory by default.
A fixed window can admit up to twice the limit across a boundary; this is a
soft abuse guard, so that is acceptable. In-memory state is lost on restart
and expired windows are evicted by the storage.
"""
from dataclasses import dataclass
from typing import Callable, Dict, Optional
import logging
import threading
import time

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage, storage_from_string
from limits.strategies import FixedWindowRateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset: int  # epoch seconds when the window resets
    limit: int
    window: int  # seconds

    def retry_after(self, now: float) -> int:
        return max(0, int(self.reset - now))


class RateLimiter:
    """Fixed-window counter keyed by arbitrary strings.

    `clock` is only used to compute Retry-After; window expiry follows the
    storage's own clock.
    """

    def __init__(
        self,
        default_limit: int = 30,
        default_window_seconds: int = 60,
        storage: Optional[Storage] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.default_limit = default_limit
        self.default_window_seconds = default_window_seconds
        self.storage = storage if storage is not None else MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self.storage)
        self._clock = clock
        # Keeps the hit and the stats read for one check consistent.
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config, **kwargs) -> "RateLimiter":
        kwargs.setdefault("storage", storage_from_string(config.rate_limit_storage_uri))
        return cls(
            default_limit=config.rate_limit_requests,
            default_window_seconds=config.rate_limit_window_seconds,
            **kwargs,
        )

    def now(self) -> int:
        return int(self._clock())

    def check(
        self,
        key: str,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> RateLimitResult:
        """Count one request against `key` and report whether it is allowed."""
        limit = self.default_limit if limit is None else limit
        window = self.default_window_seconds if window_seconds is None else window_seconds
        item = RateLimitItemPerSecond(limit, window)

        with self._lock:
            allowed = self._strategy.hit(item, key)
            stats = self._strategy.get_window_stats(item, key)

        if not allowed:
            logger.info("Rate limit exceeded for %s (limit %d/%ds)", key, limit, window)
        return RateLimitResult(
            allowed=allowed,
            remaining=stats.remaining,
            reset=int(stats.reset_time),
            limit=limit,
            window=window,
        )

    def reset(self) -> None:
        """Drop all counters."""
        with self._lock:
            self.storage.reset()


def build_rate_key(
    client_id: str,
    ip: str,
    path: str,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
) -> str:
    """Composite key so limits are scoped per route per identity tuple."""
    uid = user_id or "-"
    sid = session_id or "-"
    return f"rl:{client_id}:{ip}:{uid}:{sid}:{path}"


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset),
    }
