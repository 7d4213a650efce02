"""
Per-key fixed-window request limiter for the agent API.

Each key gets a window that opens on its first request. Requests inside the
window are admitted until the count reaches the key's quota; the window is
a hard edge, not a sliding one. Each key has its own lock, so keys never
block one another, and the stale-window sweep takes the same lock as check.
"""

import threading
import time
from dataclasses import dataclass

DEFAULT_WINDOW_MS = 60 * 1000
STALE_FACTOR = 5


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in_ms: int


class _Window:
    __slots__ = ("lock", "window_start", "count", "retired")

    def __init__(self):
        self.lock = threading.Lock()
        self.window_start = None
        self.count = 0
        self.retired = False


def _monotonic_ms():
    return int(time.monotonic() * 1000)


class RateLimiter:
    def __init__(self, window_ms=DEFAULT_WINDOW_MS, clock=_monotonic_ms):
        self.window_ms = window_ms
        self._clock = clock
        self._windows = {}
        self._registry_lock = threading.Lock()

    def _window_for(self, key):
        with self._registry_lock:
            win = self._windows.get(key)
            if win is None:
                win = _Window()
                self._windows[key] = win
            return win

    def check(self, key, max_requests):
        """Count one request for key and report whether it is admitted."""
        while True:
            win = self._window_for(key)
            with win.lock:
                if win.retired:
                    # Swept between lookup and lock; start over with a fresh window.
                    continue
                now = self._clock()
                if win.window_start is None or now - win.window_start >= self.window_ms:
                    win.window_start = now
                    win.count = 1
                    return RateLimitResult(True, max(max_requests - 1, 0), self.window_ms)

                elapsed = now - win.window_start
                reset_in = self.window_ms - elapsed
                if win.count >= max_requests:
                    return RateLimitResult(False, 0, reset_in)
                win.count += 1
                return RateLimitResult(True, max_requests - win.count, reset_in)

    def sweep(self):
        """Drop windows idle for more than 5x the window length. Returns count removed."""
        now = self._clock()
        cutoff = self.window_ms * STALE_FACTOR
        removed = 0
        with self._registry_lock:
            for key, win in list(self._windows.items()):
                if not win.lock.acquire(blocking=False):
                    continue  # in use right now, so not stale
                try:
                    if win.window_start is None or now - win.window_start > cutoff:
                        win.retired = True
                        del self._windows[key]
                        removed += 1
                finally:
                    win.lock.release()
        return removed

    def __len__(self):
        with self._registry_lock:
            return len(self._windows)
