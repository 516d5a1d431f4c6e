"""Per-owner bounds on simultaneous and per-window upload operations."""

import logging
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator

from streamflow.utils.clock import Clock, ensure_utc, utcnow
from streamflow.utils.errors import CapacityError, RateLimitError

logger = logging.getLogger(__name__)


class ConcurrencyGuard:
    """
    In-memory counter of active operations per owner.

    Counters live as long as the guard instance and are never persisted.
    A lock is held around each update because FastAPI runs sync
    dependencies on a thread pool.
    """

    def __init__(self) -> None:
        self._active: dict[str, int] = {}
        self._lock = threading.Lock()

    def acquire(self, owner_id: str, limit: int) -> int:
        """
        Take one slot for owner.

        Returns:
            The owner's active count after acquiring

        Raises:
            CapacityError: If the owner already holds ``limit`` slots
        """
        with self._lock:
            current = self._active.get(owner_id, 0)
            if current >= limit:
                logger.warning(f"Concurrent limit exceeded for owner {owner_id}: {current}/{limit}")
                raise CapacityError(owner_id, limit)
            self._active[owner_id] = current + 1
        logger.debug(f"Owner {owner_id} active operations: {current + 1}/{limit}")
        return current + 1

    def release(self, owner_id: str) -> int:
        """Give back one slot; never goes below zero."""
        with self._lock:
            current = self._active.get(owner_id, 0)
            if current <= 1:
                self._active.pop(owner_id, None)
                return 0
            self._active[owner_id] = current - 1
            return current - 1

    def active(self, owner_id: str) -> int:
        with self._lock:
            return self._active.get(owner_id, 0)

    @contextmanager
    def slot(self, owner_id: str, limit: int) -> Iterator[int]:
        """Hold a slot for the duration of the block, releasing on every exit path."""
        count = self.acquire(owner_id, limit)
        try:
            yield count
        finally:
            self.release(owner_id)


class UploadRateLimiter:
    """
    Sliding-window cap on how many uploads an owner may begin.

    Complements ``ConcurrencyGuard``: that bounds uploads in flight, this
    bounds uploads started per window. State is in memory only.
    """

    def __init__(self, limit: int, window_seconds: float, clock: Clock = utcnow) -> None:
        if limit < 1 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.limit = limit
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock
        self._hits: dict[str, deque[datetime]] = {}
        self._lock = threading.Lock()

    def _prune(self, owner_id: str, now: datetime) -> deque[datetime]:
        hits = self._hits.setdefault(owner_id, deque())
        while hits and hits[0] <= now - self.window:
            hits.popleft()
        return hits

    def hit(self, owner_id: str) -> int:
        """
        Count one upload for owner.

        Returns:
            Uploads counted in the current window, including this one

        Raises:
            RateLimitError: If the owner already used the window's allowance
        """
        now = ensure_utc(self.clock())
        with self._lock:
            hits = self._prune(owner_id, now)
            if len(hits) >= self.limit:
                retry_after = (hits[0] + self.window - now).total_seconds()
                logger.warning(f"Upload rate limit exceeded for owner {owner_id}")
                raise RateLimitError(owner_id, self.limit, self.window.total_seconds(), retry_after)
            hits.append(now)
            return len(hits)

    def remaining(self, owner_id: str) -> int:
        now = ensure_utc(self.clock())
        with self._lock:
            return max(0, self.limit - len(self._prune(owner_id, now)))
