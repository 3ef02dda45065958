from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for login-failure counters and OAuth state."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic increment that starts the window on the first failure only, so
    # concurrent failures from several devices never reset or lose a count.
    _FAILURE_INCR_SCRIPT = """
local attempts = redis.call('INCR', KEYS[1])
if attempts == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {attempts, ttl}
"""

    # Single-use read for OAuth state
    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._failure_incr = self.client.register_script(self._FAILURE_INCR_SCRIPT)
        self._getdel = self.client.register_script(self._GETDEL_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL of at least one second from an absolute expiry."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def login_failure_key(subject: str) -> str:
        """Hash the (email, ip) subject so user input never shapes the key layout."""

        digest = hashlib.sha256(subject.encode()).hexdigest()
        return f"auth:login_failures:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity using a short-lived sync client."""

        sync_client = Redis.from_url(
            self.redis_url,
            socket_timeout=self.DEFAULT_OPERATION_TIMEOUT,
            socket_connect_timeout=self.DEFAULT_OPERATION_TIMEOUT,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def record_login_failure(self, subject: str, window_ms: int) -> Tuple[int, int]:
        """Increment the failure counter; returns (attempts, remaining_window_ms)."""

        result = await self._failure_incr(
            keys=[self.login_failure_key(subject)], args=[window_ms]
        )
        return int(result[0]), int(result[1])

    async def get_login_failures(self, subject: str) -> Tuple[int, int]:
        """Return (attempts, remaining_window_ms); (0, 0) when no window is open."""

        key = self.login_failure_key(subject)
        pipe = self.client.pipeline()
        pipe.get(key)
        pipe.pttl(key)
        raw, ttl = await pipe.execute()
        if raw is None:
            return 0, 0
        return int(raw), max(0, int(ttl))

    async def clear_login_failures(self, subject: str) -> None:
        await self.client.delete(self.login_failure_key(subject))

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        ttl = self._ttl_seconds(expires_at)
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(f"auth:oauth:{state}", json.dumps(payload), ex=ttl)

    async def pop_oauth_state(self, state: str) -> Optional[str]:
        """Atomically consume OAuth state; returns the provider or None."""

        cached = await self._getdel(keys=[f"auth:oauth:{state}"])
        return _parse_oauth_state(cached)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


def _parse_oauth_state(cached: Optional[str]) -> Optional[str]:
    if cached is None:
        return None
    try:
        data = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        return None
    expires_raw = data.get("expires_at")
    if isinstance(expires_raw, str):
        try:
            if datetime.fromisoformat(expires_raw) <= datetime.now(timezone.utc):
                return None
        except (ValueError, TypeError):
            return None
    return data.get("provider")


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._failure_incr = self.client.register_script(RedisCache._FAILURE_INCR_SCRIPT)
        self._getdel = self.client.register_script(RedisCache._GETDEL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def record_login_failure(self, subject: str, window_ms: int) -> Tuple[int, int]:
        result = self._failure_incr(
            keys=[RedisCache.login_failure_key(subject)], args=[window_ms]
        )
        return int(result[0]), int(result[1])

    async def get_login_failures(self, subject: str) -> Tuple[int, int]:
        key = RedisCache.login_failure_key(subject)
        pipe = self.client.pipeline()
        pipe.get(key)
        pipe.pttl(key)
        raw, ttl = pipe.execute()
        if raw is None:
            return 0, 0
        return int(raw), max(0, int(ttl))

    async def clear_login_failures(self, subject: str) -> None:
        self.client.delete(RedisCache.login_failure_key(subject))

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        ttl = RedisCache._ttl_seconds(expires_at)
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        self.client.set(f"auth:oauth:{state}", json.dumps(payload), ex=ttl)

    async def pop_oauth_state(self, state: str) -> Optional[str]:
        cached = self._getdel(keys=[f"auth:oauth:{state}"])
        return _parse_oauth_state(cached)

    async def close(self) -> None:
        self.client.close()
