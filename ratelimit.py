"""Fixed-window per-IP rate limiting, used as FastAPI route dependencies."""
import threading
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request


class FixedWindowLimiter:
    """
    Count requests per (client IP, window). The count resets once the window
    has elapsed; the request that would exceed `limit` gets a 429.

    Expired windows are dropped at most once per window length, so clients
    that never return do not stay in memory.
    """

    def __init__(self, limit: int, window_seconds: int, message: str,
                 clock: Callable[[], float] = time.time):
        self.limit = limit
        self.window_seconds = window_seconds
        self.message = message
        self.clock = clock
        self._hits: Dict[str, Tuple[float, int]] = {}
        self._last_prune = clock()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        expired = [key for key, (started, _) in self._hits.items() if now - started >= self.window_seconds]
        for key in expired:
            del self._hits[key]
        self._last_prune = now

    def hit(self, key: str) -> bool:
        """Record a request for key. Returns False once the cap is reached."""
        now = self.clock()
        with self._lock:
            if now - self._last_prune >= self.window_seconds:
                self._prune(now)
            started, count = self._hits.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            if count >= self.limit:
                self._hits[key] = (started, count)
                return False
            self._hits[key] = (started, count + 1)
            return True

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._last_prune = self.clock()

    def __call__(self, request: Request) -> None:
        key = request.client.host if request.client else "unknown"
        if not self.hit(key):
            raise HTTPException(status_code=429, detail=self.message)
