"""Per-user rate limiting of query executions.

Wraps pyrate-limiter with one in-memory bucket per user.
Each bucket enforces a fixed quota of queries over a sliding
one minute window: once a user used the quota, further queries
are refused until the oldest ones fall out of the window.

Example::

    limiter = UserRateLimiter(requests_per_minute=60)
    if not limiter.try_acquire("alice"):
        raise RateLimitExceededError(...)

Timestamps come from the ``clock`` provided to the limiter,
so tests can move time forward to roll the window over.

Buckets of users that have no query left in the window are dropped,
at most once per window while acquiring or explicitly with
:meth:`UserRateLimiter.prune`.
"""

import threading
import time
from typing import Callable

from pyrate_limiter import InMemoryBucket, Rate, RateItem

WINDOW_MS = 60_000


class UserRateLimiter:
    """Rate limiter keeping a separate sliding window for each user.

    The map of buckets and each bucket are guarded by a lock,
    so the limiter can be shared by concurrent requests.
    """

    def __init__(
        self,
        requests_per_minute: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        :param requests_per_minute: How many queries a user can run in any one minute window.
                                    Must be greater than 0.
        :param clock: Source of the current time in seconds.

        :raises ValueError: If the quota is not positive.
        """
        if requests_per_minute <= 0:
            msg = f"requests_per_minute must be positive, got {requests_per_minute}"
            raise ValueError(msg)
        self.requests_per_minute = requests_per_minute
        self.clock = clock
        self._buckets: dict[str, InMemoryBucket] = {}
        self._lock = threading.Lock()
        self._last_prune_ms = 0

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def try_acquire(self, user_id: str) -> bool:
        """Consume one query of the user quota.

        Returns ``True`` if the query is allowed, ``False`` if the
        user already reached the quota for the current window.
        """
        now = self._now_ms()
        with self._lock:
            if now - self._last_prune_ms >= WINDOW_MS:
                self._prune(now)
            bucket = self._buckets.get(user_id)
            if bucket is None:
                bucket = InMemoryBucket([Rate(self.requests_per_minute, WINDOW_MS)])
                self._buckets[user_id] = bucket
            bucket.leak(now)
            return bucket.put(RateItem(user_id, now))

    def remaining(self, user_id: str) -> int:
        """How many more queries the user can run in the current window."""
        now = self._now_ms()
        with self._lock:
            bucket = self._buckets.get(user_id)
            if bucket is None:
                return self.requests_per_minute
            bucket.leak(now)
            used = bucket.count()
            if used == 0:
                del self._buckets[user_id]
            return max(self.requests_per_minute - used, 0)

    def prune(self) -> int:
        """Drop the buckets with no query in the current window.

        Returns how many users were forgotten.
        """
        now = self._now_ms()
        with self._lock:
            return self._prune(now)

    def _prune(self, now: int) -> int:
        idle = []
        for user_id, bucket in self._buckets.items():
            bucket.leak(now)
            if bucket.count() == 0:
                idle.append(user_id)
        for user_id in idle:
            del self._buckets[user_id]
        self._last_prune_ms = now
        return len(idle)

    def reset(self, user_id: str | None = None) -> None:
        """Forget the usage of a user, or of every user when ``user_id`` is ``None``."""
        with self._lock:
            if user_id is None:
                self._buckets.clear()
            else:
                self._buckets.pop(user_id, None)

    @property
    def tracked_users(self) -> int:
        with self._lock:
            return len(self._buckets)
