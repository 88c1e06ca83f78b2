from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache

from leadflow.core.config import get_settings


@dataclass
class _CounterState:
    count: int
    expires_at: float


class MutationRateLimiter:
    """Fixed-window counter per caller, bounded in both key count and key lifetime.

    A key's window restarts from its last accepted write. Keys beyond
    ``max_keys`` are evicted least-recently-written first; expired keys are
    dropped lazily when touched.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: int = 60,
        max_keys: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_keys = max_keys
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: OrderedDict[str, _CounterState] = OrderedDict()

    def take(self, key: str) -> tuple[bool, int]:
        if self.max_requests <= 0:
            return False, self.window_seconds

        now = self._clock()
        with self._lock:
            current = self._counters.get(key)
            if current is not None and current.expires_at <= now:
                del self._counters[key]
                current = None

            count = current.count if current is not None else 0
            if count >= self.max_requests:
                retry_after = max(1, math.ceil(current.expires_at - now)) if current is not None else 1
                return False, retry_after

            self._counters[key] = _CounterState(count=count + 1, expires_at=now + self.window_seconds)
            self._counters.move_to_end(key)
            while len(self._counters) > self.max_keys:
                self._counters.popitem(last=False)
            return True, 0

    def count(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            current = self._counters.get(key)
            if current is None or current.expires_at <= now:
                return 0
            return current.count

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()


class _UnlimitedRateLimiter(MutationRateLimiter):
    def take(self, key: str) -> tuple[bool, int]:
        return True, 0


@lru_cache
def get_rate_limiter() -> MutationRateLimiter:
    settings = get_settings()
    if settings.rate_limit_disabled:
        return _UnlimitedRateLimiter()
    return MutationRateLimiter(
        max_requests=settings.rate_limit_mutations_per_minute,
        window_seconds=settings.rate_limit_window_seconds,
        max_keys=settings.rate_limit_max_keys,
    )


def reset_rate_limiter() -> None:
    get_rate_limiter.cache_clear()
