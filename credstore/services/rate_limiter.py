"""Per-client request rate limiting.

Fixed-window counters kept in process memory:
- A window is created lazily on a client's first request
- The window resets once the current time passes its reset time
- State is not durable; a process restart forgets every window
- Stale windows are evicted after a TTL and the store is bounded in size

The limiter is an injected component (see ``credstore.api.dependencies``)
so tests can build isolated instances with a controllable clock.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from fastapi import Request
import structlog

logger = structlog.get_logger()


@dataclass
class RateLimitWindow:
    """Request count for one client inside the current window."""
    count: int
    reset_time: float
    last_accessed: float = field(default_factory=time.time)


class RateLimiter:
    """Fixed-window limiter shared by every request in the process.

    Counters are guarded by a small set of lock shards picked by key hash,
    so unrelated clients rarely contend. Windows idle for longer than
    ``KEY_TTL`` are swept at most once per ``CLEANUP_INTERVAL``, and when
    ``MAX_KEYS`` clients are tracked the least recently seen tenth is
    dropped to make room.
    """

    MAX_KEYS = 10000
    CLEANUP_INTERVAL = 60
    KEY_TTL = 300
    LOCK_BUCKETS = 64

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock or time.time
        self._store: dict[str, RateLimitWindow] = {}
        self._shards = [threading.Lock() for _ in range(self.LOCK_BUCKETS)]
        # Held only while sweeping or evicting
        self._maintenance_lock = threading.Lock()
        self._last_cleanup = self._clock()

    def _shard(self, client_id: str) -> threading.Lock:
        return self._shards[hash(client_id) % self.LOCK_BUCKETS]

    def allow(self, client_id: str) -> bool:
        """Record one request for ``client_id``; False once its window is spent."""
        now = self._clock()

        with self._shard(client_id):
            self._sweep_if_due(now)

            window = self._store.get(client_id)
            if window is not None and now <= window.reset_time:
                window.last_accessed = now
                if window.count >= self.max_requests:
                    return False
                window.count += 1
                return True

            if window is None:
                self._make_room()
            self._store[client_id] = RateLimitWindow(
                count=1,
                reset_time=now + self.window_seconds,
                last_accessed=now,
            )
            return True

    def retry_after(self, client_id: str) -> int:
        """Whole seconds until the client's current window resets."""
        window = self._store.get(client_id)
        if window is None:
            return 0
        return max(0, int(window.reset_time - self._clock()) + 1)

    def _sweep_if_due(self, now: float) -> None:
        if now - self._last_cleanup <= self.CLEANUP_INTERVAL:
            return
        # Another request is already sweeping; skip rather than wait
        if not self._maintenance_lock.acquire(blocking=False):
            return
        try:
            if now - self._last_cleanup > self.CLEANUP_INTERVAL:
                self._sweep(now)
                self._last_cleanup = now
        finally:
            self._maintenance_lock.release()

    def _sweep(self, now: float) -> None:
        cutoff = now - self.KEY_TTL
        idle = [key for key, window in list(self._store.items()) if window.last_accessed < cutoff]
        for key in idle:
            self._store.pop(key, None)

        if idle:
            logger.debug("Swept idle rate limit windows", removed=len(idle), tracked=len(self._store))

    def _make_room(self) -> None:
        if len(self._store) < self.MAX_KEYS:
            return
        if not self._maintenance_lock.acquire(blocking=False):
            return
        try:
            if len(self._store) < self.MAX_KEYS:
                return
            by_age = sorted(
                list(self._store.items()),
                key=lambda item: item[1].last_accessed,
            )
            evicted = max(1, len(by_age) // 10)
            for key, _ in by_age[:evicted]:
                self._store.pop(key, None)
        finally:
            self._maintenance_lock.release()

        logger.warning("Rate limiter full, evicted least recent clients", evicted=evicted, max_keys=self.MAX_KEYS)

    def get_stats(self) -> dict:
        with self._maintenance_lock:
            return {
                "total_keys": len(self._store),
                "total_requests": sum(w.count for w in self._store.values()),
                "max_keys": self.MAX_KEYS,
                "max_requests": self.max_requests,
                "window_seconds": self.window_seconds,
            }

    def clear(self) -> None:
        with self._maintenance_lock:
            self._store.clear()


def get_client_id(request: Request) -> str:
    """Rate limit key for a request: the originating IP behind any proxy."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # Left-most entry is the original client
        return forwarded.split(",")[0].strip()

    for header in ("CF-Connecting-IP", "X-Real-IP"):
        value = request.headers.get(header)
        if value:
            return value.strip()

    return request.client.host if request.client else "unknown"
