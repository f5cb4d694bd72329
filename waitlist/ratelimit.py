# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

import threading
import time
from typing import Callable, Dict, Protocol

class CounterStore(Protocol):
    """Windowed counter used by the rate limiter and the invalid-attempt tracker.

    The in-memory implementation below is per process. A shared store (Redis,
    Memcached, ...) can be dropped in by implementing the same two methods.
    """

    def increment(self, key: str) -> int: ...

    def reset(self) -> None: ...

class _Entry:
    __slots__ = ("count", "reset_at")

    def __init__(self, count: int, reset_at: float):
        self.count = count
        self.reset_at = reset_at

class InMemoryCounter:
    """Fixed-window counter with lazy expiry.

    Every call to increment() first sweeps expired entries, so there is no
    background cleanup thread. Gunicorn/Flask serve requests on threads, so
    all mutation happens under a lock.
    """

    def __init__(self, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def _sweep(self, now: float):
        expired = [key for key, entry in self._entries.items() if entry.reset_at <= now]
        for key in expired:
            del self._entries[key]

    def increment(self, key: str) -> int:
        with self._lock:
            now = self._clock()
            self._sweep(now)

            entry = self._entries.get(key)
            if entry is None:
                self._entries[key] = _Entry(1, now + self.window_seconds)
                return 1

            entry.count += 1
            return entry.count

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

class RateLimiter:
    """Soft limiter: allows `max_requests` per key per window."""

    def __init__(self, counter: CounterStore, max_requests: int):
        self.counter = counter
        self.max_requests = max_requests

    def hit(self, key: str) -> bool:
        """Record a request for `key`. Returns True when the key is over its limit."""
        return self.counter.increment(key) > self.max_requests

    def reset(self):
        self.counter.reset()
