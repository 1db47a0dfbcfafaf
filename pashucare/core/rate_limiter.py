"""
Rate Limiter

Fixed-window request counter per client, used as a FastAPI dependency on
the public endpoints.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from fastapi import HTTPException, Request

from pashucare.config import settings


class RateLimiter:
    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}

    def hit(self, client_id: str) -> bool:
        """Count one request; return False if the client is over its limit."""
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(client_id, (now, 0))
            if now - started >= self.window:
                started, count = now, 0
            count += 1
            self._windows[client_id] = (started, count)
            if len(self._windows) > 10_000:
                self._evict(now)
        return count <= self.limit

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def _evict(self, now: float) -> None:
        stale = [cid for cid, (started, _) in self._windows.items() if now - started >= self.window]
        for cid in stale:
            del self._windows[cid]


rate_limiter = RateLimiter(settings.RATE_LIMIT_PER_MINUTE)


async def enforce_rate_limit(request: Request) -> None:
    """FastAPI dependency: 429 when the calling client exceeds its window."""
    client_id = request.headers.get("x-device-id") or (request.client.host if request.client else "unknown")
    if not rate_limiter.hit(client_id):
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please wait a minute and try again.",
        )
