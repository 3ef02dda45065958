from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class AuthProvider(str, Enum):
    PASSWORD = "PASSWORD"
    GOOGLE = "GOOGLE"


class OrgRole(str, Enum):
    """Organization roles in ascending privilege order.

    Comparisons for authorization go through ``rank``; never compare role
    strings for equality to decide access.
    """

    VIEWER = "VIEWER"
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"
    OWNER = "OWNER"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]


_ROLE_RANK = {
    OrgRole.VIEWER: 0,
    OrgRole.MEMBER: 1,
    OrgRole.ADMIN: 2,
    OrgRole.OWNER: 3,
}


class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: Optional[str] = None
    avatar_url: Optional[str] = None
    auth_provider: AuthProvider = AuthProvider.PASSWORD
    google_id: Optional[str] = None
    email_verified: bool = False
    mfa_enabled: bool = False
    deleted_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    email_verify_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl_minutes: int = 7 * 24 * 60,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(minutes=ttl_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class Organization:
    id: str
    name: str
    slug: str
    logo_url: Optional[str] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class OrgMembership:
    id: str
    organization_id: str
    user_id: str
    role: OrgRole
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class PendingInvitation:
    id: str
    organization_id: str
    email: str
    role: OrgRole
    token_hash: str
    invited_by_id: str
    expires_at: datetime
    status: InvitationStatus = InvitationStatus.PENDING
    accepted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class Plan:
    id: str
    slug: str
    name: str
    users_limit: int = 2
    projects_limit: int = 1
    responses_limit: int = 100


@dataclass
class Subscription:
    id: str
    organization_id: str
    plan_id: str
    current_period_start: datetime
    current_period_end: datetime
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)


FREE_PLAN_SLUG = "free"

# Seeded into every store so registration can always attach a subscription
DEFAULT_PLANS = (
    {"slug": FREE_PLAN_SLUG, "name": "Free", "users_limit": 2, "projects_limit": 1, "responses_limit": 100},
    {"slug": "pro", "name": "Pro", "users_limit": 10, "projects_limit": 10, "responses_limit": 10000},
    {"slug": "enterprise", "name": "Enterprise", "users_limit": -1, "projects_limit": -1, "responses_limit": -1},
)
