"""
Sliding-window rate limiting for RoomHub.

Counters live behind the CounterStore interface so a shared backend can
replace the in-process one when several server instances run.

Invariants:
    - At most ``max_requests`` hits per key inside any ``window_ms`` window
    - Rejected requests are not recorded
    - Keys are namespaced by the limiter prefix

How to change safely:
    - Keep CounterStore minimal, every backend must implement it
    - Changing window or limit only affects new hits
"""

from __future__ import annotations

import logging
import math
import threading
from collections import defaultdict
from typing import Protocol

from .errors import RateLimitedError
from .models import now_ms as current_ms

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    """Storage for per-key hit timestamps (Unix ms)."""

    def hits(self, key: str, since_ms: int) -> list[int]:
        """Return hits newer than ``since_ms``, oldest first, dropping older ones."""
        ...

    def add(self, key: str, at_ms: int) -> None:
        ...

    def clear(self) -> None:
        ...


class InMemoryCounterStore:
    """Process-local CounterStore."""

    def __init__(self) -> None:
        self._hits: dict[str, list[int]] = defaultdict(list)
        self._lock = threading.Lock()

    def hits(self, key: str, since_ms: int) -> list[int]:
        with self._lock:
            kept = [ts for ts in self._hits.get(key, []) if ts > since_ms]
            if kept:
                self._hits[key] = kept
            else:
                self._hits.pop(key, None)
            return list(kept)

    def add(self, key: str, at_ms: int) -> None:
        with self._lock:
            self._hits[key].append(at_ms)

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()


class SlidingWindowRateLimiter:
    """Allow ``max_requests`` per key in any ``window_ms`` window.

    Example:
        >>> limiter = SlidingWindowRateLimiter(InMemoryCounterStore(), 5000, 3, "message")
        >>> limiter.check("user_1")
    """

    def __init__(
        self,
        store: CounterStore,
        window_ms: int,
        max_requests: int,
        prefix: str = "rate",
        message: str = "Rate limit exceeded",
    ) -> None:
        if window_ms < 1 or max_requests < 1:
            raise ValueError("window_ms and max_requests must be positive")
        self.store = store
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.prefix = prefix
        self.message = message

    def check(self, key: str, now_ms: int | None = None) -> None:
        """Record a hit for ``key`` or reject it.

        Raises:
            RateLimitedError: The key already used its budget for this window
        """
        now = current_ms() if now_ms is None else now_ms
        scoped = f"{self.prefix}:{key}"
        recent = self.store.hits(scoped, now - self.window_ms)

        if len(recent) >= self.max_requests:
            retry_after = max(1, math.ceil((recent[0] + self.window_ms - now) / 1000))
            logger.info(
                "Rate limit exceeded",
                extra={"limiter": self.prefix, "key": key, "retry_after_seconds": retry_after},
            )
            raise RateLimitedError(
                f"{self.message}. Please wait {retry_after} seconds.",
                retry_after_seconds=retry_after,
            )

        self.store.add(scoped, now)
