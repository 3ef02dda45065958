"""Tests for server-side sessions and refresh."""

from datetime import datetime, timedelta, timezone

import pytest

from tenantauth.service.crypto import sha256
from tenantauth.service.errors import AuthenticationError, SessionExpiredError
from tenantauth.service.sessions import SessionManager
from tenantauth.service.tokens import TokenIssuer


@pytest.fixture
def manager(settings, memory_store):
    return SessionManager(memory_store, TokenIssuer(settings), settings)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("alice@x.com", "Alice")


class TestCreateSession:
    async def test_tokens_reference_session(self, manager, user, settings):
        session, tokens = await manager.create_session(
            user, ip_address="10.0.0.1", user_agent="pytest"
        )

        access = manager.tokens.verify(tokens.access_token)
        refresh = manager.tokens.verify(tokens.refresh_token)
        assert access["sid"] == refresh["sid"] == session.id
        assert access["type"] == "access"
        assert refresh["type"] == "refresh"
        assert tokens.expires_in == settings.access_token_ttl_minutes * 60
        assert session.ip_address == "10.0.0.1"

    async def test_only_hash_is_stored(self, manager, user, memory_store):
        """The stored token is a sha256 digest, never a JWT."""
        session, tokens = await manager.create_session(user)

        stored = memory_store.get_session(session.id)
        assert len(stored.token_hash) == len(sha256(""))
        assert stored.token_hash not in (tokens.access_token, tokens.refresh_token)


class TestValidateSession:
    async def test_live_session(self, manager, user):
        session, _ = await manager.create_session(user)

        context = await manager.validate_session(session.id)

        assert context.user.id == user.id
        assert context.session.id == session.id

    async def test_missing_or_expired(self, manager, user, memory_store):
        session, _ = await manager.create_session(user)
        memory_store.sessions[session.id].expires_at = datetime.now(timezone.utc) - timedelta(
            seconds=1
        )

        assert await manager.validate_session(None) is None
        assert await manager.validate_session("nope") is None
        assert await manager.validate_session(session.id) is None

    async def test_deleted_user(self, manager, user, memory_store):
        session, _ = await manager.create_session(user)
        memory_store.update_user(user.id, deleted_at=datetime.now(timezone.utc))

        assert await manager.validate_session(session.id) is None


class TestRefresh:
    async def test_refresh_keeps_refresh_token(self, manager, user):
        """Refresh mints a new access token; the refresh token is not rotated."""
        session, tokens = await manager.create_session(user)

        refreshed = await manager.refresh_access_token(tokens.refresh_token)

        assert refreshed.refresh_token == tokens.refresh_token
        assert manager.tokens.verify(refreshed.access_token)["sid"] == session.id

    async def test_access_token_cannot_refresh(self, manager, user):
        _, tokens = await manager.create_session(user)

        with pytest.raises(AuthenticationError, match="Invalid token type"):
            await manager.refresh_access_token(tokens.access_token)

    async def test_revoked_session(self, manager, user):
        session, tokens = await manager.create_session(user)
        await manager.logout(session.id)

        with pytest.raises(AuthenticationError, match="Session not found"):
            await manager.refresh_access_token(tokens.refresh_token)

    async def test_expired_session(self, manager, user, memory_store):
        session, tokens = await manager.create_session(user)
        memory_store.sessions[session.id].expires_at = datetime.now(timezone.utc) - timedelta(
            seconds=1
        )

        with pytest.raises(SessionExpiredError):
            await manager.refresh_access_token(tokens.refresh_token)


class TestLogout:
    async def test_logout_all(self, manager, user, memory_store):
        for _ in range(3):
            await manager.create_session(user)
        other = memory_store.create_user("bob@x.com", "Bob")
        other_session, _ = await manager.create_session(other)

        revoked = await manager.logout_all(user.id)

        assert revoked == 3
        assert memory_store.list_user_sessions(user.id) == []
        assert memory_store.get_session(other_session.id) is not None

    async def test_logout_unknown_session_is_noop(self, manager):
        await manager.logout("missing")
