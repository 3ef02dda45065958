from __future__ import annotations

import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol
from urllib.parse import urlencode

import httpx

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.auth import AuthResult
from tenantauth.service.errors import AuthenticationError, ConflictError, ValidationError
from tenantauth.service.schemas import normalize_email
from tenantauth.service.sessions import SessionManager
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import AuthProvider, User

logger = get_logger(__name__)

GOOGLE_PROVIDER = "google"
GOOGLE_OAUTH = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}


class OAuthUserStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        auth_provider: AuthProvider = AuthProvider.PASSWORD,
        google_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
        email_verified: bool = False,
        email_verify_token: Optional[str] = None,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...


class OAuthStateCache(Protocol):
    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None: ...

    async def pop_oauth_state(self, state: str) -> Optional[str]: ...


class OAuthService:
    """Google sign-in: authorize URL, code exchange and account linking."""

    def __init__(
        self,
        store: OAuthUserStore,
        sessions: SessionManager,
        settings: Settings,
        *,
        cache: Optional[OAuthStateCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self.cache = cache
        self._transport = transport
        self._state_lock = threading.Lock()
        # state -> (provider, expires_at); only used without a cache
        self._oauth_states: dict[str, tuple[str, datetime]] = {}
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def is_configured(self) -> bool:
        return bool(
            self.settings.oauth_google_client_id
            and self.settings.oauth_google_client_secret
            and self.settings.oauth_redirect_uri
        )

    def _require_configured(self) -> None:
        if not self.is_configured:
            self.logger.warning("oauth_not_configured", provider=GOOGLE_PROVIDER)
            raise ValidationError("Google OAuth is not configured")

    async def _store_state(self, state: str, expires_at: datetime) -> None:
        if self.cache:
            await self.cache.set_oauth_state(state, GOOGLE_PROVIDER, expires_at)
            return
        if not (self.settings.test_mode or self.settings.allow_redis_fallback_dev):
            raise RuntimeError("OAuth state cache is required for multi-process safety")
        with self._state_lock:
            now = self._now()
            for stale in [s for s, (_, exp) in self._oauth_states.items() if exp <= now]:
                self._oauth_states.pop(stale, None)
            self._oauth_states[state] = (GOOGLE_PROVIDER, expires_at)

    async def _consume_state(self, state: str) -> Optional[str]:
        if not state:
            return None
        if self.cache:
            return await self.cache.pop_oauth_state(state)
        with self._state_lock:
            stored = self._oauth_states.pop(state, None)
        if not stored or stored[1] <= self._now():
            return None
        return stored[0]

    async def get_google_auth_url(self) -> dict[str, str]:
        self._require_configured()
        state = secrets.token_urlsafe(32)
        expires_at = self._now() + timedelta(minutes=self.settings.oauth_state_ttl_minutes)
        await self._store_state(state, expires_at)
        params = {
            "client_id": self.settings.oauth_google_client_id,
            "redirect_uri": self.settings.oauth_redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_OAUTH["scope"],
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return {
            "authorization_url": f"{GOOGLE_OAUTH['auth_url']}?{urlencode(params)}",
            "state": state,
        }

    async def _fetch_google_profile(self, code: str) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    GOOGLE_OAUTH["token_url"],
                    data={
                        "client_id": self.settings.oauth_google_client_id,
                        "client_secret": self.settings.oauth_google_client_secret,
                        "code": code,
                        "redirect_uri": self.settings.oauth_redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider=GOOGLE_PROVIDER)
                    raise AuthenticationError("Google authentication failed")

                userinfo_response = await client.get(
                    GOOGLE_OAUTH["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=GOOGLE_PROVIDER,
                status_code=exc.response.status_code,
            )
            raise AuthenticationError("Google authentication failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error(
                "oauth_exchange_error", provider=GOOGLE_PROVIDER, error=str(exc)
            )
            raise AuthenticationError("Google authentication failed") from exc
        if not isinstance(userinfo, dict) or not userinfo.get("id") or not userinfo.get("email"):
            self.logger.error("oauth_identity_incomplete", provider=GOOGLE_PROVIDER)
            raise AuthenticationError("Google authentication failed")
        return userinfo

    async def complete_google_auth(
        self,
        code: str,
        state: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        self._require_configured()
        # State is single use, consumed before the code exchange
        provider = await self._consume_state(state)
        if provider != GOOGLE_PROVIDER:
            self.logger.warning("oauth_state_invalid", provider=GOOGLE_PROVIDER)
            raise ValidationError("Invalid OAuth state")
        profile = await self._fetch_google_profile(code)
        if not profile.get("verified_email", False):
            raise ValidationError("Google account email is not verified")
        return await self.handle_google_auth(
            str(profile["id"]),
            profile["email"],
            profile.get("name") or "",
            profile.get("picture"),
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def handle_google_auth(
        self,
        google_id: str,
        email: str,
        name: str,
        avatar_url: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Sign in with a Google identity, creating or linking the account.

        Google has already verified the address, so new and newly linked
        accounts are marked ``email_verified``.
        """
        normalized = normalize_email(email)
        user = self.store.get_user_by_google_id(google_id) or self.store.get_user_by_email(
            normalized
        )
        is_new_user = False
        if not user:
            try:
                user = self.store.create_user(
                    normalized,
                    name.strip() or normalized.split("@", 1)[0],
                    auth_provider=AuthProvider.GOOGLE,
                    google_id=google_id,
                    avatar_url=avatar_url,
                    email_verified=True,
                )
            except ConstraintViolation:
                raise ConflictError("Email already registered") from None
            is_new_user = True
        elif not user.google_id:
            try:
                user = self.store.update_user(
                    user.id,
                    google_id=google_id,
                    email_verified=True,
                    avatar_url=user.avatar_url or avatar_url,
                ) or user
            except ConstraintViolation:
                raise ConflictError("Google account already linked to another user") from None
            self.logger.info("oauth_account_linked", user_id=user.id, provider=GOOGLE_PROVIDER)

        session, tokens = await self.sessions.create_session(
            user, ip_address=ip_address, user_agent=user_agent
        )
        user = self.store.update_user(user.id, last_login_at=self._now()) or user
        self.logger.info(
            "oauth_login", user_id=user.id, provider=GOOGLE_PROVIDER, is_new_user=is_new_user
        )
        return AuthResult(user=user, session=session, tokens=tokens, is_new_user=is_new_user)
