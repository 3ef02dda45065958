from __future__ import annotations

import contextlib
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.crypto import PasswordHashing, generate_token, sha256
from tenantauth.service.email import EmailDispatcher
from tenantauth.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from tenantauth.service.organizations import provision_organization
from tenantauth.service.plans import PlanService
from tenantauth.service.rate_limit import LoginRateLimiter
from tenantauth.service.schemas import (
    ChangePasswordInput,
    ForgotPasswordInput,
    LoginInput,
    RegisterInput,
    ResetPasswordInput,
    parse_input,
)
from tenantauth.service.sessions import AuthTokens, SessionContext, SessionManager
from tenantauth.service.tokens import ACCESS_TOKEN_TYPE
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    AuthProvider,
    Organization,
    OrgMembership,
    OrgRole,
    Session,
    User,
)

logger = get_logger(__name__)

VERIFY_TOKEN_BYTES = 32
RESET_TOKEN_BYTES = 32


class AuthStore(Protocol):
    def transaction(self) -> contextlib.AbstractContextManager["AuthStore"]: ...

    def lock_user(self, user_id: str) -> None: ...

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

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token_hash: str, now: datetime) -> Optional[User]: ...

    def get_user_by_verify_token(self, token: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def list_user_memberships(
        self, user_id: str, *, limit: Optional[int] = None, offset: int = 0
    ) -> List[OrgMembership]: ...

    def get_organization(self, org_id: str) -> Optional[Organization]: ...


@dataclass
class AuthResult:
    user: User
    session: Session
    tokens: AuthTokens
    organization: Optional[Organization] = None
    is_new_user: bool = False


@dataclass
class OrganizationSummary:
    id: str
    name: str
    slug: str
    role: OrgRole


@dataclass
class SessionInfo:
    user: User
    organizations: List[OrganizationSummary] = field(default_factory=list)


class AuthService:
    """Password credentials, email verification and password recovery.

    Sessions and tokens are delegated to :class:`SessionManager`; brute
    force protection to :class:`LoginRateLimiter`. Emails go through the
    fire-and-forget :class:`EmailDispatcher` so a mail outage never fails
    an auth operation.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        rate_limiter: LoginRateLimiter,
        hashing: PasswordHashing,
        emails: EmailDispatcher,
        plans: PlanService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.hashing = hashing
        self.emails = emails
        self.plans = plans
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    async def _start_session(
        self,
        user: User,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> tuple[User, Session, AuthTokens]:
        session, tokens = await self.sessions.create_session(
            user, ip_address=ip_address, user_agent=user_agent
        )
        user = self.store.update_user(user.id, last_login_at=self._now()) or user
        return user, session, tokens

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        organization_name: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        data = parse_input(
            RegisterInput,
            email=email,
            password=password,
            name=name,
            organization_name=organization_name,
        )
        if self.store.get_user_by_email(data.email):
            raise ConflictError("Email already registered")

        password_hash = self.hashing.hash_password(data.password)
        verify_token = generate_token(VERIFY_TOKEN_BYTES)
        organization = None
        try:
            with self.store.transaction() as tx:
                user = tx.create_user(
                    data.email,
                    data.name,
                    password_hash=password_hash,
                    auth_provider=AuthProvider.PASSWORD,
                    email_verify_token=verify_token,
                )
                if data.organization_name:
                    organization, _ = provision_organization(
                        tx, self.plans, user.id, data.organization_name
                    )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise ConflictError("Email already registered") from None
            raise

        user, session, tokens = await self._start_session(
            user, ip_address=ip_address, user_agent=user_agent
        )
        self.logger.info(
            "user_registered",
            user_id=user.id,
            org_id=organization.id if organization else None,
        )
        self.emails.send_verification_email(user.email, verify_token)
        return AuthResult(
            user=user,
            session=session,
            tokens=tokens,
            organization=organization,
            is_new_user=True,
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        data = parse_input(LoginInput, email=email, password=password)
        status = await self.rate_limiter.check(data.email, ip_address)
        if not status.allowed:
            retry_after = max(1, math.ceil(status.retry_after_ms / 1000))
            raise RateLimitedError(
                f"Too many login attempts. Please try again in {retry_after} seconds.",
                retry_after_ms=status.retry_after_ms,
            )

        user = self.store.get_user_by_email(data.email)
        if not user or not user.password_hash:
            # Same work and same answer whether or not the account exists
            self.hashing.burn_verification(data.password)
            await self.rate_limiter.increment_failure(data.email, ip_address)
            raise AuthenticationError("Invalid email or password")
        if not self.hashing.verify_password(user.password_hash, data.password):
            attempts = await self.rate_limiter.increment_failure(data.email, ip_address)
            self.logger.warning(
                "login_failed", user_id=user.id, attempts=attempts, ip=ip_address or "unknown"
            )
            raise AuthenticationError("Invalid email or password")

        await self.rate_limiter.clear_failures(data.email, ip_address)
        user, session, tokens = await self._start_session(
            user, ip_address=ip_address, user_agent=user_agent
        )
        self.logger.info("user_logged_in", user_id=user.id, session_id=session.id)
        return AuthResult(user=user, session=session, tokens=tokens)

    async def logout(self, session_id: str) -> None:
        await self.sessions.logout(session_id)

    async def logout_all(self, user_id: str) -> int:
        return await self.sessions.logout_all(user_id)

    async def refresh(self, refresh_token: str) -> AuthTokens:
        return await self.sessions.refresh_access_token(refresh_token)

    async def authenticate(self, access_token: str) -> SessionContext:
        """Resolve a bearer access token to its live session and user."""
        payload = self.sessions.tokens.verify(access_token)
        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise AuthenticationError("Invalid token type")
        context = await self.sessions.validate_session(payload.get("sid"))
        if not context or context.user.id != payload.get("sub"):
            raise AuthenticationError("Session expired or invalid")
        return context

    async def get_session_info(self, user_id: str) -> SessionInfo:
        user = self.store.get_user(user_id)
        if not user or user.is_deleted:
            raise NotFoundError("User")
        organizations = []
        for membership in self.store.list_user_memberships(user_id):
            org = self.store.get_organization(membership.organization_id)
            if org:
                organizations.append(
                    OrganizationSummary(
                        id=org.id, name=org.name, slug=org.slug, role=membership.role
                    )
                )
        return SessionInfo(user=user, organizations=organizations)

    async def forgot_password(self, email: str) -> None:
        """Start a password reset; the outcome never reveals whether the email exists."""
        data = parse_input(ForgotPasswordInput, email=email)
        user = self.store.get_user_by_email(data.email)
        if not user:
            self.logger.info("password_reset_unknown_email")
            return None
        token = generate_token(RESET_TOKEN_BYTES)
        self.store.update_user(
            user.id,
            password_reset_token=sha256(token),
            password_reset_expires=self._now()
            + timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        self.emails.send_password_reset_email(user.email, token)
        return None

    async def reset_password(self, token: str, new_password: str) -> None:
        data = parse_input(ResetPasswordInput, token=token, password=new_password)
        user = self.store.get_user_by_reset_token(sha256(data.token), self._now())
        if not user:
            self.logger.warning("password_reset_invalid_token")
            raise ValidationError("Invalid or expired reset token")
        password_hash = self.hashing.hash_password(data.password)
        with self.store.transaction() as tx:
            tx.lock_user(user.id)
            current = tx.get_user_by_reset_token(sha256(data.token), self._now())
            if not current or current.id != user.id:
                self.logger.warning("password_reset_token_consumed", user_id=user.id)
                raise ValidationError("Invalid or expired reset token")
            tx.update_user(
                user.id,
                password_hash=password_hash,
                password_reset_token=None,
                password_reset_expires=None,
            )
            revoked = tx.delete_user_sessions(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        """Replace the password; existing sessions stay valid."""
        data = parse_input(
            ChangePasswordInput,
            current_password=current_password,
            new_password=new_password,
        )
        user = self.store.get_user(user_id)
        if not user or user.is_deleted:
            raise NotFoundError("User")
        if not user.password_hash or not self.hashing.verify_password(
            user.password_hash, data.current_password
        ):
            raise AuthenticationError("Current password is incorrect")
        self.store.update_user(user.id, password_hash=self.hashing.hash_password(data.new_password))
        self.logger.info("password_changed", user_id=user.id)

    async def verify_email(self, token: str) -> None:
        user = self.store.get_user_by_verify_token(token) if token else None
        if not user:
            raise ValidationError("Invalid verification token")
        self.store.update_user(user.id, email_verified=True, email_verify_token=None)
        self.logger.info("email_verified", user_id=user.id)
