"""
Ecosystem — EmbeddingCache: single-flight de-duplication and memoisation

Two concurrent profile saves for the same user must not race two provider
requests for the same semantic field.  The cache guarantees that at most one
request per ``(user_id, field_type)`` is in flight:

- a caller asking for the *same text* as the in-flight request awaits the
  same future and receives the same vector (or the same error);
- a caller asking for *different text* waits for the in-flight request to
  settle and then issues its own.

Successful vectors are memoised by a hash of model + text, in process and
optionally in Redis with a TTL.  Failures are never cached.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from collections import OrderedDict
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger("ecosystem.embedding_cache")

_REDIS_KEY_PREFIX = "ecosystem:embedding:"
_DEFAULT_MAX_ENTRIES = 4096

Fetcher = Callable[[], Awaitable[list[float]]]


def text_digest(model: str, text: str) -> str:
    """Stable cache key for a (model, text) pair."""
    return hashlib.sha256(f"{model}\x00{text}".encode("utf-8")).hexdigest()


class EmbeddingCache:
    """Process-owned embedding cache, injected into the provider client.

    Parameters
    ----------
    redis:
        Optional ``redis.asyncio`` client used as a shared second level.
    ttl_seconds:
        Expiry applied to Redis entries.
    max_entries:
        Upper bound on the in-process LRU.
    """

    def __init__(
        self,
        redis: Any | None = None,
        ttl_seconds: int = 86_400,
        max_entries: int = _DEFAULT_MAX_ENTRIES,
    ) -> None:
        self._redis = redis
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._memory: OrderedDict[str, list[float]] = OrderedDict()
        self._inflight: dict[tuple[str, str], tuple[str, asyncio.Future]] = {}
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    # ── Public API ───────────────────────────────────────────────────

    async def get_or_fetch(
        self,
        user_id: str,
        field_type: str,
        digest: str,
        fetch: Fetcher,
    ) -> list[float]:
        """Return the vector for *digest*, calling *fetch* at most once
        concurrently per ``(user_id, field_type)``.

        The fetch runs as its own task; every caller, the one that started it
        included, awaits the shared future under its own deadline.  Cancelling
        one caller never cancels the fetch the others are waiting on.
        """
        key = (str(user_id), str(field_type))
        log = logger.bind(user_id=key[0], field_type=key[1])

        while True:
            async with self._lock:
                cached = self._memory.get(digest)
                if cached is not None:
                    self._memory.move_to_end(digest)
                    log.debug("embedding_cache_hit", layer="memory")
                    return list(cached)

                inflight = self._inflight.get(key)
                if inflight is None:
                    future: asyncio.Future = asyncio.get_running_loop().create_future()
                    self._inflight[key] = (digest, future)
                    task = asyncio.create_task(self._run_fetch(key, digest, fetch, future))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                    log.debug("embedding_cache_fetch_started")
                    break
                inflight_digest, future = inflight

            if inflight_digest == digest:
                log.debug("embedding_cache_join_inflight")
                return list(await asyncio.shield(future))

            # Different text in flight: let it settle, then try again.
            log.debug("embedding_cache_wait_inflight")
            await asyncio.wait([future])

        return list(await asyncio.shield(future))

    def inflight_count(self) -> int:
        return len(self._inflight)

    def clear(self) -> None:
        self._memory.clear()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _run_fetch(
        self,
        key: tuple[str, str],
        digest: str,
        fetch: Fetcher,
        future: asyncio.Future,
    ) -> None:
        try:
            vector = await self._redis_get(digest)
            if vector is None:
                vector = await fetch()
                await self._redis_set(digest, vector)
            else:
                logger.debug("embedding_cache_hit", layer="redis", field_type=key[1])
        except asyncio.CancelledError:
            await self._forget(key, future)
            future.cancel()
            raise
        except Exception as exc:
            await self._forget(key, future)
            future.set_exception(exc)
            # Nobody may be left waiting; mark the failure retrieved.
            future.exception()
        else:
            async with self._lock:
                self._remember(digest, vector)
            await self._forget(key, future)
            future.set_result(vector)

    async def _forget(self, key: tuple[str, str], future: asyncio.Future) -> None:
        async with self._lock:
            if self._inflight.get(key, (None, None))[1] is future:
                del self._inflight[key]

    def _remember(self, digest: str, vector: list[float]) -> None:
        self._memory[digest] = list(vector)
        self._memory.move_to_end(digest)
        while len(self._memory) > self._max_entries:
            self._memory.popitem(last=False)

    async def _redis_get(self, digest: str) -> list[float] | None:
        if self._redis is None:
            return None
        redis_key = f"{_REDIS_KEY_PREFIX}{digest}"
        try:
            raw = await self._redis.get(redis_key)
            if raw is None:
                return None
            return [float(v) for v in json.loads(raw)]
        except Exception:
            logger.exception("embedding_cache_redis_read_failed", redis_key=redis_key)
            return None

    async def _redis_set(self, digest: str, vector: list[float]) -> None:
        if self._redis is None:
            return
        redis_key = f"{_REDIS_KEY_PREFIX}{digest}"
        try:
            await self._redis.setex(redis_key, self._ttl_seconds, json.dumps(vector))
        except Exception:
            logger.exception("embedding_cache_redis_write_failed", redis_key=redis_key)
