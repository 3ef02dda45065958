import asyncio
import inspect
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps rate limits and OAuth state in-process and per test
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters keep hashing fast in tests
os.environ.setdefault("ARGON2_MEMORY_COST", "8192")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenantauth.config import Settings  # noqa: E402
from tenantauth.service.auth import AuthService  # noqa: E402
from tenantauth.service.crypto import PasswordHashing  # noqa: E402
from tenantauth.service.email import EmailDispatcher, EmailService  # noqa: E402
from tenantauth.service.oauth import OAuthService  # noqa: E402
from tenantauth.service.organizations import OrganizationService  # noqa: E402
from tenantauth.service.plans import PlanService  # noqa: E402
from tenantauth.service.rate_limit import LoginRateLimiter  # noqa: E402
from tenantauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantauth.service.sessions import SessionManager  # noqa: E402
from tenantauth.service.tokens import TokenIssuer  # noqa: E402
from tenantauth.storage.memory import MemoryStore  # noqa: E402

_LINK_PATTERN = re.compile(r"/(verify-email|reset-password|accept-invite)\?token=([0-9a-f]+)")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class RecordingEmailService(EmailService):
    """EmailService that keeps rendered messages instead of sending them."""

    def __init__(self, **kwargs):
        super().__init__(base_url="https://app.test", **kwargs)
        self.sent: List[dict] = []
        self.fail_with: Optional[Exception] = None

    def _send_email(self, to_email, subject, html_body, text_body=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"to": to_email, "subject": subject, "text": text_body or ""})
        return True

    def messages_to(self, email: str) -> List[dict]:
        return [message for message in self.sent if message["to"] == email]

    def token_for(self, email: str, link: str) -> str:
        """Token from the latest ``link`` (e.g. "reset-password") emailed to ``email``."""
        for message in reversed(self.messages_to(email)):
            match = _LINK_PATTERN.search(message["text"])
            if match and match.group(1) == link:
                return match.group(2)
        raise AssertionError(f"no {link} link emailed to {email}")


@dataclass
class Services:
    settings: Settings
    store: MemoryStore
    outbox: RecordingEmailService
    emails: EmailDispatcher
    tokens: TokenIssuer
    sessions: SessionManager
    rate_limiter: LoginRateLimiter
    hashing: PasswordHashing
    plans: PlanService
    auth: AuthService
    oauth: OAuthService
    orgs: OrganizationService


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        argon2_memory_cost=8192,
        argon2_time_cost=1,
        argon2_parallelism=1,
    )


@pytest.fixture
def memory_store():
    """Create memory store for testing."""
    return MemoryStore()


@pytest.fixture
def services(settings, memory_store):
    """Wire every service over one memory store, with a recording outbox."""
    outbox = RecordingEmailService()
    emails = EmailDispatcher(outbox)
    tokens = TokenIssuer(settings)
    sessions = SessionManager(memory_store, tokens, settings)
    rate_limiter = LoginRateLimiter(
        None,
        max_attempts=settings.login_rate_limit_max_attempts,
        window_seconds=settings.login_rate_limit_window_seconds,
    )
    hashing = PasswordHashing(
        memory_cost=settings.argon2_memory_cost,
        time_cost=settings.argon2_time_cost,
        parallelism=settings.argon2_parallelism,
    )
    plans = PlanService(memory_store)
    return Services(
        settings=settings,
        store=memory_store,
        outbox=outbox,
        emails=emails,
        tokens=tokens,
        sessions=sessions,
        rate_limiter=rate_limiter,
        hashing=hashing,
        plans=plans,
        auth=AuthService(
            memory_store, sessions, rate_limiter, hashing, emails, plans, settings
        ),
        oauth=OAuthService(memory_store, sessions, settings),
        orgs=OrganizationService(memory_store, plans, emails, settings),
    )
