from __future__ import annotations

import contextlib
import copy
import threading
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    DEFAULT_PLANS,
    AuthProvider,
    InvitationStatus,
    Organization,
    OrgMembership,
    OrgRole,
    PendingInvitation,
    Plan,
    Session,
    Subscription,
    SubscriptionStatus,
    User,
    new_id,
    utcnow,
)

_USER_FIELDS = frozenset(
    {
        "name",
        "password_hash",
        "avatar_url",
        "auth_provider",
        "google_id",
        "email_verified",
        "mfa_enabled",
        "deleted_at",
        "last_login_at",
        "password_reset_token",
        "password_reset_expires",
        "email_verify_token",
    }
)
_ORG_FIELDS = frozenset({"name", "slug", "logo_url", "deleted_at"})

_TABLES = (
    "users",
    "sessions",
    "organizations",
    "memberships",
    "invitations",
    "plans",
    "subscriptions",
)


def _norm_email(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """In-process backing store used for tests and local development.

    Every operation holds ``_data_lock``. ``transaction()`` keeps the lock for
    the whole unit of work and restores a snapshot of every table when the
    block raises, so multi-entity writes are all-or-nothing.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.organizations: Dict[str, Organization] = {}
        self.memberships: Dict[str, OrgMembership] = {}
        self.invitations: Dict[str, PendingInvitation] = {}
        self.plans: Dict[str, Plan] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self._seed_plans()

    def _seed_plans(self) -> None:
        for spec in DEFAULT_PLANS:
            plan = Plan(id=new_id(), **spec)
            self.plans[plan.id] = plan

    # unit of work
    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            if self._tx_depth:
                # Nested blocks join the outer unit of work
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                for name, table in snapshot.items():
                    setattr(self, name, table)
                self.logger.debug("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth = 0

    def lock_organization(self, org_id: str) -> None:
        """Row lock hook; the data lock already serializes transactions."""
        return None

    def lock_user(self, user_id: str) -> None:
        return None

    # users
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
    ) -> User:
        normalized = _norm_email(email)
        with self._data_lock:
            for existing in self.users.values():
                if existing.is_deleted:
                    continue
                if existing.email == normalized:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if google_id and existing.google_id == google_id:
                    raise ConstraintViolation(
                        "google id already linked", {"field": "google_id"}
                    )
            user = User(
                id=new_id(),
                email=normalized,
                name=name,
                password_hash=password_hash,
                avatar_url=avatar_url,
                auth_provider=auth_provider,
                google_id=google_id,
                email_verified=email_verified,
                email_verify_token=email_verify_token,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = _norm_email(email)
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email == normalized and not u.is_deleted
                ),
                None,
            )

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.google_id == google_id and not u.is_deleted
                ),
                None,
            )

    def get_user_by_reset_token(self, token_hash: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.password_reset_token == token_hash
                    and u.password_reset_expires is not None
                    and u.password_reset_expires > now
                    and not u.is_deleted
                ),
                None,
            )

    def get_user_by_verify_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email_verify_token == token and not u.is_deleted
                ),
                None,
            )

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            google_id = fields.get("google_id")
            if google_id and any(
                u.google_id == google_id and u.id != user_id and not u.is_deleted
                for u in self.users.values()
            ):
                raise ConstraintViolation("google id already linked", {"field": "google_id"})
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            return user

    # sessions
    def create_session(
        self,
        user_id: str,
        token_hash: str,
        *,
        ttl_minutes: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                token_hash,
                ttl_minutes,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.sessions[sess.id] = sess
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [s for s in self.sessions.values() if s.user_id == user_id]

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    # organizations
    def create_organization(
        self, name: str, slug: str, *, logo_url: Optional[str] = None
    ) -> Organization:
        with self._data_lock:
            if self.slug_exists(slug):
                raise ConstraintViolation("slug already exists", {"field": "slug"})
            org = Organization(id=new_id(), name=name, slug=slug, logo_url=logo_url)
            self.organizations[org.id] = org
            return org

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(org_id)
            if not org or org.deleted_at is not None:
                return None
            return org

    def get_organization_by_slug(self, slug: str) -> Optional[Organization]:
        with self._data_lock:
            return next(
                (
                    o
                    for o in self.organizations.values()
                    if o.slug == slug and o.deleted_at is None
                ),
                None,
            )

    def slug_exists(self, slug: str, *, exclude_id: Optional[str] = None) -> bool:
        """Slugs stay reserved by soft-deleted organizations too."""
        with self._data_lock:
            return any(
                o.slug == slug and o.id != exclude_id
                for o in self.organizations.values()
            )

    def update_organization(self, org_id: str, **fields) -> Optional[Organization]:
        unknown = set(fields) - _ORG_FIELDS
        if unknown:
            raise ValueError(f"unknown organization fields: {sorted(unknown)}")
        with self._data_lock:
            org = self.organizations.get(org_id)
            if not org:
                return None
            slug = fields.get("slug")
            if slug and self.slug_exists(slug, exclude_id=org_id):
                raise ConstraintViolation("slug already exists", {"field": "slug"})
            for key, value in fields.items():
                setattr(org, key, value)
            org.updated_at = utcnow()
            return org

    # memberships
    def create_membership(self, org_id: str, user_id: str, role: OrgRole) -> OrgMembership:
        with self._data_lock:
            if org_id not in self.organizations:
                raise ConstraintViolation("organization does not exist", {"organization_id": org_id})
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if self.get_membership(org_id, user_id):
                raise ConstraintViolation("membership already exists", {"field": "membership"})
            membership = OrgMembership(
                id=new_id(), organization_id=org_id, user_id=user_id, role=OrgRole(role)
            )
            self.memberships[membership.id] = membership
            return membership

    def get_membership(self, org_id: str, user_id: str) -> Optional[OrgMembership]:
        with self._data_lock:
            return next(
                (
                    m
                    for m in self.memberships.values()
                    if m.organization_id == org_id and m.user_id == user_id
                ),
                None,
            )

    def get_membership_by_id(self, membership_id: str) -> Optional[OrgMembership]:
        with self._data_lock:
            return self.memberships.get(membership_id)

    def list_memberships(
        self, org_id: str, *, limit: Optional[int] = None, offset: int = 0
    ) -> List[OrgMembership]:
        with self._data_lock:
            rows = sorted(
                (m for m in self.memberships.values() if m.organization_id == org_id),
                key=lambda m: m.created_at,
            )
        end = None if limit is None else offset + limit
        return rows[offset:end]

    def count_memberships(self, org_id: str, *, role: Optional[OrgRole] = None) -> int:
        with self._data_lock:
            return sum(
                1
                for m in self.memberships.values()
                if m.organization_id == org_id and (role is None or m.role == role)
            )

    def list_user_memberships(
        self, user_id: str, *, limit: Optional[int] = None, offset: int = 0
    ) -> List[OrgMembership]:
        with self._data_lock:
            rows = sorted(
                (
                    m
                    for m in self.memberships.values()
                    if m.user_id == user_id
                    and self.get_organization(m.organization_id) is not None
                ),
                key=lambda m: m.created_at,
            )
        end = None if limit is None else offset + limit
        return rows[offset:end]

    def count_user_memberships(self, user_id: str) -> int:
        return len(self.list_user_memberships(user_id))

    def update_membership_role(self, membership_id: str, role: OrgRole) -> Optional[OrgMembership]:
        with self._data_lock:
            membership = self.memberships.get(membership_id)
            if not membership:
                return None
            membership.role = OrgRole(role)
            membership.updated_at = utcnow()
            return membership

    def delete_membership(self, membership_id: str) -> bool:
        with self._data_lock:
            return self.memberships.pop(membership_id, None) is not None

    # invitations
    def create_invitation(
        self,
        org_id: str,
        email: str,
        role: OrgRole,
        *,
        token_hash: str,
        invited_by_id: str,
        expires_at: datetime,
    ) -> PendingInvitation:
        normalized = _norm_email(email)
        with self._data_lock:
            if self.get_pending_invitation(org_id, normalized):
                raise ConstraintViolation(
                    "pending invitation already exists", {"field": "invitation"}
                )
            invitation = PendingInvitation(
                id=new_id(),
                organization_id=org_id,
                email=normalized,
                role=OrgRole(role),
                token_hash=token_hash,
                invited_by_id=invited_by_id,
                expires_at=expires_at,
            )
            self.invitations[invitation.id] = invitation
            return invitation

    def get_invitation(self, invitation_id: str) -> Optional[PendingInvitation]:
        with self._data_lock:
            return self.invitations.get(invitation_id)

    def get_invitation_by_token(self, token_hash: str) -> Optional[PendingInvitation]:
        with self._data_lock:
            return next(
                (i for i in self.invitations.values() if i.token_hash == token_hash),
                None,
            )

    def get_pending_invitation(self, org_id: str, email: str) -> Optional[PendingInvitation]:
        normalized = _norm_email(email)
        with self._data_lock:
            return next(
                (
                    i
                    for i in self.invitations.values()
                    if i.organization_id == org_id
                    and i.email == normalized
                    and i.status == InvitationStatus.PENDING
                ),
                None,
            )

    def list_invitations(
        self, org_id: str, *, status: Optional[InvitationStatus] = None
    ) -> List[PendingInvitation]:
        with self._data_lock:
            return sorted(
                (
                    i
                    for i in self.invitations.values()
                    if i.organization_id == org_id and (status is None or i.status == status)
                ),
                key=lambda i: i.created_at,
            )

    def update_invitation_status(
        self,
        invitation_id: str,
        status: InvitationStatus,
        *,
        accepted_at: Optional[datetime] = None,
    ) -> Optional[PendingInvitation]:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if not invitation:
                return None
            invitation.status = InvitationStatus(status)
            if accepted_at is not None:
                invitation.accepted_at = accepted_at
            return invitation

    # plans
    def get_plan(self, plan_id: str) -> Optional[Plan]:
        with self._data_lock:
            return self.plans.get(plan_id)

    def get_plan_by_slug(self, slug: str) -> Optional[Plan]:
        with self._data_lock:
            return next((p for p in self.plans.values() if p.slug == slug), None)

    def create_subscription(
        self,
        org_id: str,
        plan_id: str,
        *,
        period_start: datetime,
        period_end: datetime,
    ) -> Subscription:
        with self._data_lock:
            if plan_id not in self.plans:
                raise ConstraintViolation("plan does not exist", {"plan_id": plan_id})
            if self.get_active_subscription(org_id):
                raise ConstraintViolation(
                    "organization already subscribed", {"field": "subscription"}
                )
            subscription = Subscription(
                id=new_id(),
                organization_id=org_id,
                plan_id=plan_id,
                current_period_start=period_start,
                current_period_end=period_end,
            )
            self.subscriptions[subscription.id] = subscription
            return subscription

    def get_active_subscription(self, org_id: str) -> Optional[Subscription]:
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.subscriptions.values()
                    if s.organization_id == org_id
                    and s.status == SubscriptionStatus.ACTIVE
                ),
                None,
            )
