"""
Ecosystem — RateLimiter: sliding-window quotas and a concurrency bound

One instance is created per process in the FastAPI lifespan and injected
wherever it is needed:

- inbound, ``check(key)`` enforces a per-user quota on expensive endpoints
  and raises ``RateLimitError`` carrying a ``retry_after`` hint;
- outbound, ``wait(key)`` throttles provider traffic by sleeping until the
  window has room, and ``slot()`` caps the number of in-flight requests.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

import structlog

from ecosystem.errors import RateLimitError

logger = structlog.get_logger("ecosystem.rate_limiter")


class RateLimiter:
    """Sliding-window request quota keyed by an arbitrary string."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 60.0,
        max_concurrent: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError(f"max_requests must be >= 1, got {max_requests}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be > 0, got {window_seconds}")
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_concurrent = max_concurrent
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = clock()
        self._lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._in_flight = 0

    # ── Internal helpers ─────────────────────────────────────────────

    def _prune(self, key: str, now: float) -> deque[float]:
        """Drop expired hits for *key*; keys with nothing left are forgotten."""
        hits = self._hits.get(key)
        if hits is None:
            return deque()
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if not hits:
            del self._hits[key]
        return hits

    def _sweep(self, now: float) -> None:
        # Keys that stop sending requests are never pruned by their own calls.
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for key in list(self._hits):
            self._prune(key, now)

    async def _try_acquire(self, key: str) -> float:
        """Record a hit and return 0, or return seconds until a hit frees up."""
        async with self._lock:
            now = self._clock()
            self._sweep(now)
            hits = self._prune(key, now)
            if len(hits) < self.max_requests:
                hits.append(now)
                self._hits[key] = hits
                return 0.0
            return max(0.0, hits[0] + self.window_seconds - now)

    # ── Public API ───────────────────────────────────────────────────

    async def check(self, key: str) -> None:
        """Consume one request for *key* or raise ``RateLimitError``."""
        retry_after = await self._try_acquire(key)
        if retry_after > 0:
            logger.warning("rate_limit_exceeded", key=key, retry_after=round(retry_after, 2))
            raise RateLimitError(
                f"Rate limit exceeded for {key}",
                retry_after=retry_after,
                details={"retry_after": round(retry_after, 2)},
            )

    async def wait(self, key: str) -> None:
        """Block until *key* has room in its window, then consume one request."""
        while True:
            delay = await self._try_acquire(key)
            if delay <= 0:
                return
            logger.debug("rate_limit_wait", key=key, delay=round(delay, 2))
            await asyncio.sleep(delay)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one of ``max_concurrent`` outbound request slots."""
        async with self._semaphore:
            self._in_flight += 1
            try:
                yield
            finally:
                self._in_flight -= 1

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def remaining(self, key: str) -> int:
        hits = self._prune(key, self._clock())
        return max(0, self.max_requests - len(hits))

    def tracked_keys(self) -> int:
        return len(self._hits)
