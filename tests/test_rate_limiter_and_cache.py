"""Unit tests for RateLimiter and EmbeddingCache."""
import asyncio
import time

import pytest

from ecosystem.errors import ProviderUnavailable, RateLimitError
from ecosystem.services.embedding_cache import EmbeddingCache, text_digest
from ecosystem.services.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    def __init__(self, broken: bool = False):
        self.data: dict[str, str] = {}
        self.broken = broken

    async def get(self, key):
        if self.broken:
            raise ConnectionError("redis down")
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        if self.broken:
            raise ConnectionError("redis down")
        self.data[key] = value


# ──────────────────────────────────────────────────────────────────────────────
# RateLimiter
# ──────────────────────────────────────────────────────────────────────────────

class TestRateLimiter:

    def test_rejects_bad_configuration(self):
        with pytest.raises(ValueError):
            RateLimiter(max_requests=0)
        with pytest.raises(ValueError):
            RateLimiter(max_requests=1, window_seconds=0)
        with pytest.raises(ValueError):
            RateLimiter(max_requests=1, max_concurrent=0)

    @pytest.mark.asyncio
    async def test_check_enforces_window(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=2, window_seconds=60, clock=clock)

        await limiter.check("user:1")
        clock.advance(10)
        await limiter.check("user:1")

        with pytest.raises(RateLimitError) as exc_info:
            await limiter.check("user:1")

        assert exc_info.value.retry_after == pytest.approx(50.0)
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_window_slides(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        await limiter.check("user:1")

        clock.advance(60.5)

        await limiter.check("user:1")
        assert limiter.remaining("user:1") == 0

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())

        await limiter.check("user:1")
        await limiter.check("user:2")

        assert limiter.remaining("user:3") == 1

    @pytest.mark.asyncio
    async def test_expired_keys_are_forgotten(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=2, window_seconds=60, clock=clock)
        for n in range(50):
            await limiter.check(f"user:{n}")
        assert limiter.tracked_keys() == 50

        clock.advance(61)
        await limiter.check("user:fresh")

        assert limiter.tracked_keys() == 1

    @pytest.mark.asyncio
    async def test_remaining_does_not_track_unknown_keys(self):
        limiter = RateLimiter(max_requests=3, window_seconds=60, clock=FakeClock())

        assert limiter.remaining("user:never") == 3
        assert limiter.tracked_keys() == 0

    @pytest.mark.asyncio
    async def test_wait_blocks_until_room(self):
        limiter = RateLimiter(max_requests=1, window_seconds=0.05)

        started = time.monotonic()
        await limiter.wait("provider")
        await limiter.wait("provider")

        assert time.monotonic() - started >= 0.04

    @pytest.mark.asyncio
    async def test_slot_caps_concurrency(self):
        limiter = RateLimiter(max_requests=100, max_concurrent=2)
        peak = 0

        async def worker():
            nonlocal peak
            async with limiter.slot():
                peak = max(peak, limiter.in_flight)
                await asyncio.sleep(0.01)

        await asyncio.gather(*(worker() for _ in range(6)))

        assert peak == 2
        assert limiter.in_flight == 0


# ──────────────────────────────────────────────────────────────────────────────
# EmbeddingCache
# ──────────────────────────────────────────────────────────────────────────────

class CountingFetcher:
    def __init__(self, vector=None, error: Exception | None = None, delay: float = 0.01):
        self.vector = vector or [0.1, 0.2]
        self.error = error
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.vector)


class TestEmbeddingCache:

    def test_digest_depends_on_model_and_text(self):
        assert text_digest("m", "x") == text_digest("m", "x")
        assert text_digest("m", "x") != text_digest("n", "x")
        assert text_digest("m", "x") != text_digest("m", "y")

    @pytest.mark.asyncio
    async def test_concurrent_same_text_single_flight(self):
        cache = EmbeddingCache()
        fetch = CountingFetcher()
        digest = text_digest("m", "Python")

        results = await asyncio.gather(
            *(cache.get_or_fetch("u1", "needs", digest, fetch) for _ in range(4))
        )

        assert fetch.calls == 1
        assert all(r == [0.1, 0.2] for r in results)
        assert cache.inflight_count() == 0

    @pytest.mark.asyncio
    async def test_different_text_waits_then_fetches(self):
        cache = EmbeddingCache()
        first = CountingFetcher(vector=[1.0])
        second = CountingFetcher(vector=[2.0])

        a, b = await asyncio.gather(
            cache.get_or_fetch("u1", "needs", text_digest("m", "Python"), first),
            cache.get_or_fetch("u1", "needs", text_digest("m", "Rust"), second),
        )

        assert (a, b) == ([1.0], [2.0])
        assert first.calls == second.calls == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_leaves_fetch_running(self):
        cache = EmbeddingCache()
        fetch = CountingFetcher(delay=0.1)
        digest = text_digest("m", "Python")

        first = asyncio.create_task(cache.get_or_fetch("u1", "needs", digest, fetch))
        second = asyncio.create_task(cache.get_or_fetch("u1", "needs", digest, fetch))
        await asyncio.sleep(0.01)
        first.cancel()

        assert await second == [0.1, 0.2]
        assert first.cancelled()
        assert fetch.calls == 1
        assert cache.inflight_count() == 0

    @pytest.mark.asyncio
    async def test_memoised_after_success(self):
        cache = EmbeddingCache()
        fetch = CountingFetcher()
        digest = text_digest("m", "Python")

        await cache.get_or_fetch("u1", "needs", digest, fetch)
        await cache.get_or_fetch("u2", "needs", digest, fetch)

        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_failures_are_shared_but_not_cached(self):
        cache = EmbeddingCache()
        failing = CountingFetcher(error=ProviderUnavailable("down"))
        digest = text_digest("m", "Python")

        results = await asyncio.gather(
            cache.get_or_fetch("u1", "needs", digest, failing),
            cache.get_or_fetch("u1", "needs", digest, failing),
            return_exceptions=True,
        )

        assert failing.calls == 1
        assert all(isinstance(r, ProviderUnavailable) for r in results)

        recovered = CountingFetcher()
        assert await cache.get_or_fetch("u1", "needs", digest, recovered) == [0.1, 0.2]
        assert recovered.calls == 1

    @pytest.mark.asyncio
    async def test_redis_second_level_shared_between_processes(self):
        redis = FakeRedis()
        digest = text_digest("m", "Python")
        await EmbeddingCache(redis=redis).get_or_fetch("u1", "needs", digest, CountingFetcher())

        fetch = CountingFetcher()
        vector = await EmbeddingCache(redis=redis).get_or_fetch("u1", "needs", digest, fetch)

        assert fetch.calls == 0
        assert vector == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_redis_outage_falls_through_to_fetch(self):
        cache = EmbeddingCache(redis=FakeRedis(broken=True))
        fetch = CountingFetcher()

        vector = await cache.get_or_fetch("u1", "needs", text_digest("m", "Python"), fetch)

        assert vector == [0.1, 0.2]
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_memory_layer_is_bounded(self):
        cache = EmbeddingCache(max_entries=1)
        first = CountingFetcher()
        d1, d2 = text_digest("m", "a"), text_digest("m", "b")

        await cache.get_or_fetch("u1", "needs", d1, first)
        await cache.get_or_fetch("u1", "goals", d2, CountingFetcher())
        await cache.get_or_fetch("u1", "needs", d1, first)

        assert first.calls == 2
