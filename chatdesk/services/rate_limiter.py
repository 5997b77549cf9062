"""Thread-safe fixed-window rate limiter keyed by session.

Design decisions
────────────────
• **Fixed window per key**: the first message opens a window of
  ``window_seconds``; up to ``max_requests`` messages are admitted inside
  it, the rest are refused until the window expires.
• **OrderedDict** keyed by session so stale windows can be pruned from the
  oldest end in O(expired) without scanning every key.
• **threading.Lock** for thread safety (FastAPI runs handlers on a thread
  pool).  Keys never contend with each other beyond the lock itself.
• Purely in-process: counters are lost on restart and not shared across
  replicas, which is acceptable for abuse throttling.

Usage
─────
>>> limiter = FixedWindowRateLimiter(max_requests=30, window_seconds=60)
>>> limiter.hit("+15550001111")
True
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 30
DEFAULT_WINDOW_SECONDS = 60.0


class FixedWindowRateLimiter:
    """Counts hits per key inside a fixed window."""

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        # key → (count, window_reset_at); ordered by window start
        self._windows: OrderedDict[str, tuple[int, float]] = OrderedDict()
        self._lock = threading.Lock()

    def hit(self, key: str) -> bool:
        """Register one request for *key*.  Returns ``False`` when over budget."""
        now = self._clock()
        with self._lock:
            self._prune(now)
            record = self._windows.get(key)
            if record is None or now >= record[1]:
                self._windows.pop(key, None)
                self._windows[key] = (1, now + self._window_seconds)
                return True

            count, reset_at = record
            if count >= self._max_requests:
                return False
            self._windows[key] = (count + 1, reset_at)
            return True

    def retry_after(self, key: str) -> float:
        """Seconds until *key*'s current window resets (0 if none is open)."""
        with self._lock:
            record = self._windows.get(key)
        if record is None:
            return 0.0
        return max(0.0, record[1] - self._clock())

    def reset(self, key: str | None = None) -> None:
        """Forget one key, or every key when *key* is ``None``."""
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    @property
    def tracked_keys(self) -> int:
        return len(self._windows)

    def _prune(self, now: float) -> None:
        # Windows are inserted in start order and share one length, so the
        # oldest-first prefix holds every expired entry.
        while self._windows:
            key, (_, reset_at) = next(iter(self._windows.items()))
            if reset_at > now:
                break
            self._windows.popitem(last=False)
            logger.debug("Rate limiter: pruned expired window for %s", key)
