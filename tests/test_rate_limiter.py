"""Tests for the failed-login rate limiter."""

from unittest.mock import AsyncMock

import pytest

from tenantauth.service.errors import RateLimitedError
from tenantauth.service.rate_limit import LoginRateLimiter
from tenantauth.storage.redis_cache import RedisCache


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return LoginRateLimiter(None, max_attempts=3, window_seconds=60, clock=clock)


class TestLocalCounters:
    async def test_allows_until_threshold(self, limiter):
        """Checks pass until max_attempts failures are recorded."""
        for expected in (1, 2):
            assert (await limiter.check("a@x.com", "1.1.1.1")).allowed
            assert await limiter.increment_failure("a@x.com", "1.1.1.1") == expected

        await limiter.increment_failure("a@x.com", "1.1.1.1")
        status = await limiter.check("a@x.com", "1.1.1.1")

        assert not status.allowed
        assert status.attempts == 3
        assert status.retry_after_ms == 60_000

    async def test_window_opens_on_first_failure(self, limiter, clock):
        """Later failures do not extend the window."""
        await limiter.increment_failure("a@x.com", "ip")
        clock.advance(40)
        await limiter.increment_failure("a@x.com", "ip")
        await limiter.increment_failure("a@x.com", "ip")

        status = await limiter.check("a@x.com", "ip")
        assert not status.allowed
        assert status.retry_after_ms == 20_000

        clock.advance(20)
        assert (await limiter.check("a@x.com", "ip")).allowed

    async def test_subjects_are_isolated(self, limiter):
        """Counters are keyed on the email and ip pair."""
        for _ in range(3):
            await limiter.increment_failure("a@x.com", "ip-1")

        assert not (await limiter.check("A@X.com ", "ip-1")).allowed
        assert (await limiter.check("a@x.com", "ip-2")).allowed
        assert (await limiter.check("b@x.com", "ip-1")).allowed

    async def test_clear_resets(self, limiter):
        for _ in range(3):
            await limiter.increment_failure("a@x.com", None)

        await limiter.clear_failures("a@x.com", None)

        assert (await limiter.check("a@x.com", None)).allowed
        assert await limiter.increment_failure("a@x.com", None) == 1

    async def test_expired_windows_are_swept(self, limiter, clock):
        """Stale subjects do not accumulate across windows."""
        await limiter.increment_failure("a@x.com", "ip")
        clock.advance(61)

        await limiter.increment_failure("b@x.com", "ip")

        assert list(limiter._local) == [limiter.subject("b@x.com", "ip")]


class TestStoreBackedCounters:
    async def test_delegates_to_store(self):
        """Counters go through the injected store's atomic operations."""
        store = AsyncMock()
        store.record_login_failure.return_value = (4, 12_000)
        store.get_login_failures.return_value = (5, 9_000)
        limiter = LoginRateLimiter(store, max_attempts=5, window_seconds=900)
        subject = LoginRateLimiter.subject("a@x.com", "ip")

        attempts = await limiter.increment_failure("a@x.com", "ip")
        status = await limiter.check("a@x.com", "ip")
        await limiter.clear_failures("a@x.com", "ip")

        assert attempts == 4
        store.record_login_failure.assert_awaited_once_with(subject, 900_000)
        assert not status.allowed
        assert status.retry_after_ms == 9_000
        store.clear_login_failures.assert_awaited_once_with(subject)

    async def test_open_window_without_ttl_still_blocks(self):
        store = AsyncMock()
        store.get_login_failures.return_value = (5, 0)
        limiter = LoginRateLimiter(store, max_attempts=5)

        status = await limiter.check("a@x.com", "ip")

        assert not status.allowed
        assert status.retry_after_ms == 1


class TestRedisKeys:
    def test_failure_key_hides_subject(self):
        key = RedisCache.login_failure_key("login:a@x.com:1.1.1.1")

        assert key.startswith("auth:login_failures:")
        assert "a@x.com" not in key


class TestRateLimitedError:
    def test_retry_after_rounds_up(self):
        error = RateLimitedError("slow down", retry_after_ms=1_200)

        assert error.status_code == 429
        assert error.retry_after_seconds == 2
        assert error.detail == {"retry_after_ms": 1_200}
