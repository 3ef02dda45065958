from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from tenantauth.logging import get_logger

logger = get_logger(__name__)


class FailureCounterStore(Protocol):
    async def record_login_failure(self, subject: str, window_ms: int) -> tuple[int, int]: ...

    async def get_login_failures(self, subject: str) -> tuple[int, int]: ...

    async def clear_login_failures(self, subject: str) -> None: ...


@dataclass
class RateLimitStatus:
    allowed: bool
    retry_after_ms: int = 0
    attempts: int = 0


class LoginRateLimiter:
    """Failed-login counter keyed on the (email, ip) pair.

    The window opens on the first failure and closes ``window_seconds`` later;
    once ``max_attempts`` failures land inside it, checks are refused until it
    closes. Counters live in the injected store (Redis in production). Without
    one, a lock-protected in-process dict is used, which only suits single
    process test and dev setups.
    """

    def __init__(
        self,
        store: Optional[FailureCounterStore],
        *,
        max_attempts: int = 5,
        window_seconds: int = 900,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.window_ms = window_seconds * 1000
        self._clock = clock
        self._lock = threading.Lock()
        # subject -> (attempts, window_expires_at_monotonic)
        self._local: dict[str, tuple[int, float]] = {}

    @staticmethod
    def subject(email: str, ip: Optional[str]) -> str:
        return f"login:{email.strip().lower()}:{ip or 'unknown'}"

    def _local_get(self, subject: str) -> tuple[int, int]:
        now = self._clock()
        entry = self._local.get(subject)
        if not entry:
            return 0, 0
        attempts, expires_at = entry
        if expires_at <= now:
            self._local.pop(subject, None)
            return 0, 0
        return attempts, int((expires_at - now) * 1000)

    def _sweep_expired(self) -> None:
        now = self._clock()
        for key in [key for key, (_, expires_at) in self._local.items() if expires_at <= now]:
            del self._local[key]

    async def check(self, email: str, ip: Optional[str]) -> RateLimitStatus:
        subject = self.subject(email, ip)
        if self.store is not None:
            attempts, remaining_ms = await self.store.get_login_failures(subject)
        else:
            with self._lock:
                attempts, remaining_ms = self._local_get(subject)
        if attempts >= self.max_attempts:
            logger.warning(
                "login_rate_limited",
                attempts=attempts,
                retry_after_ms=remaining_ms,
                ip=ip or "unknown",
            )
            return RateLimitStatus(False, max(remaining_ms, 1), attempts)
        return RateLimitStatus(True, 0, attempts)

    async def increment_failure(self, email: str, ip: Optional[str]) -> int:
        subject = self.subject(email, ip)
        if self.store is not None:
            attempts, _ = await self.store.record_login_failure(subject, self.window_ms)
            return attempts
        with self._lock:
            self._sweep_expired()
            attempts, _ = self._local_get(subject)
            if attempts == 0:
                expires_at = self._clock() + self.window_ms / 1000
            else:
                expires_at = self._local[subject][1]
            self._local[subject] = (attempts + 1, expires_at)
            return attempts + 1

    async def clear_failures(self, email: str, ip: Optional[str]) -> None:
        subject = self.subject(email, ip)
        if self.store is not None:
            await self.store.clear_login_failures(subject)
            return
        with self._lock:
            self._local.pop(subject, None)
