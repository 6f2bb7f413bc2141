"""
Per-provider sliding-window rate limiter.

Each provider keeps the timestamps of its admitted requests within the
trailing ``period``. Entries that have left the window are pruned before
every decision. State is process-local; a shared backend can replace it
behind the same method names.
"""
import threading
import time
from collections import deque
from typing import Callable

from webhook_hub.core.exceptions import RateLimitExceededError
from webhook_hub.core.logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """Sliding-window admission control keyed by provider name"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}
        self._locks: dict[str, threading.Lock] = {}
        # guards creation of per-provider locks only
        self._registry_lock = threading.Lock()

    def _lock_for(self, provider: str) -> threading.Lock:
        lock = self._locks.get(provider)
        if lock is None:
            with self._registry_lock:
                lock = self._locks.get(provider)
                if lock is None:
                    lock = threading.Lock()
                    self._locks[provider] = lock
        return lock

    def _prune(self, provider: str, period: int, now: float) -> deque[float]:
        """Drop entries older than the window. Caller holds the provider lock."""
        window = self._windows.setdefault(provider, deque())
        cutoff = now - period
        while window and window[0] < cutoff:
            window.popleft()
        return window

    def allowed(self, provider: str, limit: int, period: int) -> bool:
        """True when one more request fits in the window (does not record it)"""
        now = self._clock()
        with self._lock_for(provider):
            return len(self._prune(provider, period, now)) < limit

    def record(self, provider: str, limit: int, period: int) -> None:
        """
        Admit one request or raise.

        The check and the append happen under the same lock, so two
        concurrent callers can never both take the last slot.

        Raises:
            RateLimitExceededError: the window already holds ``limit`` entries
        """
        now = self._clock()
        with self._lock_for(provider):
            window = self._prune(provider, period, now)
            if len(window) >= limit:
                retry_after = max(0.0, window[0] + period - now) if window else float(period)
                logger.warning(
                    "Rate limit exceeded",
                    extra_data={
                        "provider": provider,
                        "current_count": len(window),
                        "limit": limit,
                        "period": period,
                    }
                )
                raise RateLimitExceededError(
                    provider=provider,
                    current_count=len(window),
                    limit=limit,
                    period=period,
                    retry_after_seconds=retry_after,
                )
            window.append(now)

    def remaining(self, provider: str, limit: int, period: int) -> int:
        now = self._clock()
        with self._lock_for(provider):
            return max(0, limit - len(self._prune(provider, period, now)))

    def current_count(self, provider: str, period: int) -> int:
        now = self._clock()
        with self._lock_for(provider):
            return len(self._prune(provider, period, now))

    def reset(self, provider: str) -> None:
        with self._lock_for(provider):
            self._windows.pop(provider, None)

    def clear(self) -> None:
        """Forget every provider (tests, config reload)"""
        with self._registry_lock:
            self._windows.clear()
            self._locks.clear()

    def stats(self, provider: str, period: int) -> dict:
        now = self._clock()
        with self._lock_for(provider):
            window = self._prune(provider, period, now)
            return {
                "provider": provider,
                "current_count": len(window),
                "period": period,
                "oldest_request_at": window[0] if window else None,
                "newest_request_at": window[-1] if window else None,
            }
