from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.crypto import generate_token, sha256
from tenantauth.service.errors import AuthenticationError, SessionExpiredError
from tenantauth.service.tokens import ACCESS_TOKEN_TYPE, REFRESH_TOKEN_TYPE, TokenIssuer
from tenantauth.storage.models import Session, User

logger = get_logger(__name__)

SESSION_SECRET_BYTES = 16


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_session(
        self,
        user_id: str,
        token_hash: str,
        *,
        ttl_minutes: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...


@dataclass
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass
class SessionContext:
    user: User
    session: Session


class SessionManager:
    """Server-side sessions and the access/refresh tokens bound to them."""

    def __init__(self, store: SessionStore, tokens: TokenIssuer, settings: Settings) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def _access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def _access_token(self, user: User, session: Session) -> str:
        return self.tokens.sign(
            {"sub": user.id, "email": user.email, "sid": session.id, "type": ACCESS_TOKEN_TYPE},
            self._access_ttl,
        )

    def _refresh_token(self, user: User, session: Session) -> str:
        return self.tokens.sign(
            {"sub": user.id, "sid": session.id, "type": REFRESH_TOKEN_TYPE},
            timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )

    async def create_session(
        self,
        user: User,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[Session, AuthTokens]:
        # Only the hash of the opaque secret is persisted
        secret = generate_token(SESSION_SECRET_BYTES)
        session = self.store.create_session(
            user.id,
            sha256(secret),
            ttl_minutes=self.settings.session_ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        tokens = AuthTokens(
            access_token=self._access_token(user, session),
            refresh_token=self._refresh_token(user, session),
            expires_in=int(self._access_ttl.total_seconds()),
        )
        logger.info("session_created", user_id=user.id, session_id=session.id)
        return session, tokens

    async def refresh_access_token(self, refresh_token: str) -> AuthTokens:
        """Mint a new access token for the refresh token's session.

        The refresh token itself is returned unchanged; it is not rotated.
        """
        payload = self.tokens.verify(refresh_token)
        if payload.get("type") != REFRESH_TOKEN_TYPE:
            raise AuthenticationError("Invalid token type")
        session_id = payload.get("sid")
        session = self.store.get_session(session_id) if session_id else None
        if not session:
            raise AuthenticationError("Session not found")
        if session.is_expired(self._now()):
            raise SessionExpiredError("Session expired")
        user = self.store.get_user(session.user_id)
        if not user or user.is_deleted or payload.get("sub") != user.id:
            raise AuthenticationError("Session not found")
        return AuthTokens(
            access_token=self._access_token(user, session),
            refresh_token=refresh_token,
            expires_in=int(self._access_ttl.total_seconds()),
        )

    async def validate_session(self, session_id: Optional[str]) -> Optional[SessionContext]:
        """Return the live session and its user, or None when not authenticated."""
        if not session_id:
            return None
        session = self.store.get_session(session_id)
        if not session or session.is_expired(self._now()):
            return None
        user = self.store.get_user(session.user_id)
        if not user or user.is_deleted:
            return None
        return SessionContext(user=user, session=session)

    async def logout(self, session_id: str) -> None:
        if self.store.delete_session(session_id):
            logger.info("session_revoked", session_id=session_id)

    async def logout_all(self, user_id: str) -> int:
        revoked = self.store.delete_user_sessions(user_id)
        logger.info("user_sessions_revoked", user_id=user_id, revoked=revoked)
        return revoked
