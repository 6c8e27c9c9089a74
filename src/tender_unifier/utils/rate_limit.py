from __future__ import annotations

import threading
import time
from typing import Callable


class RateLimiter:
    """Spaces calls per key so no more than ``rpm`` start in any minute."""

    def __init__(
        self,
        rpm: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rpm = int(rpm or 0)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot: dict[str, float] = {}

    @property
    def enabled(self) -> bool:
        return self.rpm > 0

    def reserve(self, key: str) -> float:
        """Claim the next slot for ``key`` and return how long to wait for it."""
        if not self.enabled:
            return 0.0
        interval = 60.0 / float(self.rpm)
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(key, 0.0))
            self._next_slot[key] = slot + interval
        return slot - now

    def wait(self, key: str) -> None:
        delay = self.reserve(key)
        if delay > 0:
            self._sleep(delay)


_SHARED: dict[int, RateLimiter] = {}
_SHARED_LOCK = threading.Lock()


def shared_limiter(rpm: int) -> RateLimiter:
    """One limiter per rate, shared by every worker thread in the process."""
    with _SHARED_LOCK:
        limiter = _SHARED.get(int(rpm or 0))
        if limiter is None:
            limiter = RateLimiter(rpm)
            _SHARED[int(rpm or 0)] = limiter
        return limiter
