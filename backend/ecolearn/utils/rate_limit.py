"""In-memory sliding-window throttle for the login endpoint."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from typing import Optional


class LoginThrottle:
    """Allow at most `max_attempts` per key within `window_seconds`.

    Keys with no attempt left inside the window are dropped on a periodic
    sweep, so the table only holds recently active clients.
    """

    def __init__(self, max_attempts: int, window_seconds: int):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._attempts = defaultdict(deque)
        self._lock = threading.Lock()
        self._last_sweep = time.monotonic()

    def hit(self, key: str) -> Optional[int]:
        """Record an attempt; return seconds to wait if over the limit, else None."""
        now = time.monotonic()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            recent = self._attempts[key]
            while recent and recent[0] <= cutoff:
                recent.popleft()
            if len(recent) >= self.max_attempts:
                return max(1, int(self.window_seconds - (now - recent[0])))
            recent.append(now)
        return None

    def _sweep(self, cutoff: float) -> None:
        stale = [k for k, recent in self._attempts.items() if not recent or recent[-1] <= cutoff]
        for k in stale:
            del self._attempts[k]

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._attempts.clear()
            else:
                self._attempts.pop(key, None)

    def __len__(self) -> int:
        return len(self._attempts)
