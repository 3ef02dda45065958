from __future__ import annotations

import contextlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Generic, List, Optional, Protocol, TypeVar, Union

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.crypto import generate_token, sha256
from tenantauth.service.email import EmailDispatcher
from tenantauth.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tenantauth.service.plans import PlanService
from tenantauth.service.roles import RoleLike, has_permission
from tenantauth.service.schemas import (
    CreateOrganizationInput,
    InviteMemberInput,
    PaginationInput,
    UpdateMemberRoleInput,
    UpdateOrganizationInput,
    normalize_email,
    parse_input,
)
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    InvitationStatus,
    Organization,
    OrgMembership,
    OrgRole,
    PendingInvitation,
    User,
)

logger = get_logger(__name__)

SLUG_MAX_LENGTH = 50
_SLUG_INVALID = re.compile(r"[^a-z0-9]+")

T = TypeVar("T")


def slugify(name: str) -> str:
    """Lowercase, collapse non-alphanumerics to ``-``, trim and cap at 50 chars."""
    slug = _SLUG_INVALID.sub("-", name.lower()).strip("-")
    slug = slug[:SLUG_MAX_LENGTH].rstrip("-")
    return slug or "org"


def unique_slug(store: "OrganizationStore", base: str) -> str:
    slug = base
    counter = 1
    while store.slug_exists(slug):
        slug = f"{base}-{counter}"
        counter += 1
    return slug


class OrganizationStore(Protocol):
    def transaction(self) -> contextlib.AbstractContextManager["OrganizationStore"]: ...

    def lock_organization(self, org_id: str) -> None: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_organization(
        self, name: str, slug: str, *, logo_url: Optional[str] = None
    ) -> Organization: ...

    def get_organization(self, org_id: str) -> Optional[Organization]: ...

    def get_organization_by_slug(self, slug: str) -> Optional[Organization]: ...

    def slug_exists(self, slug: str, *, exclude_id: Optional[str] = None) -> bool: ...

    def update_organization(self, org_id: str, **fields) -> Optional[Organization]: ...

    def create_membership(self, org_id: str, user_id: str, role: OrgRole) -> OrgMembership: ...

    def get_membership(self, org_id: str, user_id: str) -> Optional[OrgMembership]: ...

    def get_membership_by_id(self, membership_id: str) -> Optional[OrgMembership]: ...

    def list_memberships(
        self, org_id: str, *, limit: Optional[int] = None, offset: int = 0
    ) -> List[OrgMembership]: ...

    def count_memberships(self, org_id: str, *, role: Optional[OrgRole] = None) -> int: ...

    def list_user_memberships(
        self, user_id: str, *, limit: Optional[int] = None, offset: int = 0
    ) -> List[OrgMembership]: ...

    def count_user_memberships(self, user_id: str) -> int: ...

    def update_membership_role(
        self, membership_id: str, role: OrgRole
    ) -> Optional[OrgMembership]: ...

    def delete_membership(self, membership_id: str) -> bool: ...

    def create_invitation(
        self,
        org_id: str,
        email: str,
        role: OrgRole,
        *,
        token_hash: str,
        invited_by_id: str,
        expires_at: datetime,
    ) -> PendingInvitation: ...

    def get_invitation(self, invitation_id: str) -> Optional[PendingInvitation]: ...

    def get_invitation_by_token(self, token_hash: str) -> Optional[PendingInvitation]: ...

    def get_pending_invitation(
        self, org_id: str, email: str
    ) -> Optional[PendingInvitation]: ...

    def list_invitations(
        self, org_id: str, *, status: Optional[InvitationStatus] = None
    ) -> List[PendingInvitation]: ...

    def update_invitation_status(
        self,
        invitation_id: str,
        status: InvitationStatus,
        *,
        accepted_at: Optional[datetime] = None,
    ) -> Optional[PendingInvitation]: ...


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    limit: int
    offset: int


@dataclass
class MemberInfo:
    id: str
    user_id: str
    email: str
    name: str
    avatar_url: Optional[str]
    role: OrgRole
    joined_at: datetime


@dataclass
class InvitationInfo:
    id: str
    email: str
    role: OrgRole
    status: str
    expires_at: datetime
    invited_by_id: str
    created_at: datetime


@dataclass
class OrganizationWithMembership:
    id: str
    name: str
    slug: str
    logo_url: Optional[str]
    created_at: datetime
    member_count: int
    current_user_role: OrgRole
    updated_at: Optional[datetime] = field(default=None)


def provision_organization(
    tx: OrganizationStore,
    plans: PlanService,
    owner_id: str,
    name: str,
    slug: Optional[str] = None,
) -> tuple[Organization, OrgMembership]:
    """Create an organization with its owner membership and free subscription.

    Must run inside ``tx.transaction()``. An explicit slug that is already
    taken raises ConflictError; a derived slug gets a ``-N`` suffix instead.
    """
    if slug is not None:
        if tx.slug_exists(slug):
            raise ConflictError("Organization slug already exists")
    else:
        slug = unique_slug(tx, slugify(name))
    try:
        org = tx.create_organization(name, slug)
    except ConstraintViolation as exc:
        if exc.field == "slug":
            raise ConflictError("Organization slug already exists") from None
        raise
    membership = tx.create_membership(org.id, owner_id, OrgRole.OWNER)
    plans.attach_free_subscription(tx, org.id)
    return org, membership


def _role_input(role: RoleLike) -> RoleLike:
    return role.strip().upper() if isinstance(role, str) else role


def _member_info(membership: OrgMembership, user: User) -> MemberInfo:
    return MemberInfo(
        id=membership.id,
        user_id=user.id,
        email=user.email,
        name=user.name,
        avatar_url=user.avatar_url,
        role=membership.role,
        joined_at=membership.created_at,
    )


def _invitation_info(invitation: PendingInvitation) -> InvitationInfo:
    return InvitationInfo(
        id=invitation.id,
        email=invitation.email,
        role=invitation.role,
        status=InvitationStatus(invitation.status).value.lower(),
        expires_at=invitation.expires_at,
        invited_by_id=invitation.invited_by_id,
        created_at=invitation.created_at,
    )


class OrganizationService:
    """Organization lifecycle, memberships and invitations.

    Every operation resolves the caller's membership first. A caller who is
    not a member of the organization gets ``NotFoundError("Organization")``
    so the organization's existence is not disclosed. Role checks compare
    ranks through :func:`has_permission`.
    """

    def __init__(
        self,
        store: OrganizationStore,
        plans: PlanService,
        emails: EmailDispatcher,
        settings: Settings,
    ) -> None:
        self.store = store
        self.plans = plans
        self.emails = emails
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _require_membership(
        self, org_id: str, user_id: str
    ) -> tuple[Organization, OrgMembership]:
        org = self.store.get_organization(org_id)
        membership = self.store.get_membership(org_id, user_id) if org else None
        if not org or not membership:
            raise NotFoundError("Organization")
        return org, membership

    def _locked_actor(self, tx: OrganizationStore, org_id: str, actor_id: str) -> OrgMembership:
        """Re-read the actor after the organization lock is held."""
        actor = tx.get_membership(org_id, actor_id)
        if not actor:
            raise NotFoundError("Organization")
        return actor

    def _with_membership(
        self, org: Organization, role: OrgRole
    ) -> OrganizationWithMembership:
        return OrganizationWithMembership(
            id=org.id,
            name=org.name,
            slug=org.slug,
            logo_url=org.logo_url,
            created_at=org.created_at,
            updated_at=org.updated_at,
            member_count=self.store.count_memberships(org.id),
            current_user_role=role,
        )

    # reads
    async def get_user_organizations(
        self, user_id: str, limit: int = 20, offset: int = 0
    ) -> Page[OrganizationWithMembership]:
        page = parse_input(PaginationInput, limit=limit, offset=offset)
        memberships = self.store.list_user_memberships(
            user_id, limit=page.limit, offset=page.offset
        )
        items = []
        for membership in memberships:
            org = self.store.get_organization(membership.organization_id)
            if org:
                items.append(self._with_membership(org, membership.role))
        return Page(
            items=items,
            total=self.store.count_user_memberships(user_id),
            limit=page.limit,
            offset=page.offset,
        )

    async def get_organization(
        self, org_id: str, user_id: str
    ) -> OrganizationWithMembership:
        org, membership = self._require_membership(org_id, user_id)
        return self._with_membership(org, membership.role)

    async def get_organization_by_slug(
        self, slug: str, user_id: str
    ) -> OrganizationWithMembership:
        org = self.store.get_organization_by_slug(slug)
        if not org:
            raise NotFoundError("Organization")
        org, membership = self._require_membership(org.id, user_id)
        return self._with_membership(org, membership.role)

    async def get_user_role(self, org_id: str, user_id: str) -> Optional[OrgRole]:
        if not self.store.get_organization(org_id):
            return None
        membership = self.store.get_membership(org_id, user_id)
        return membership.role if membership else None

    async def require_role(
        self, org_id: str, user_id: str, role: RoleLike
    ) -> OrgMembership:
        required = parse_input(UpdateMemberRoleInput, role=_role_input(role)).role
        _, membership = self._require_membership(org_id, user_id)
        if not has_permission(membership.role, required):
            raise ForbiddenError(f"Requires {required.value} role or higher")
        return membership

    # lifecycle
    async def create_organization(
        self, user_id: str, name: str, slug: Optional[str] = None
    ) -> OrganizationWithMembership:
        data = parse_input(CreateOrganizationInput, name=name, slug=slug)
        user = self.store.get_user(user_id)
        if not user or user.is_deleted:
            raise NotFoundError("User")
        with self.store.transaction() as tx:
            org, membership = provision_organization(
                tx, self.plans, user_id, data.name, data.slug
            )
        self.logger.info(
            "organization_created", org_id=org.id, slug=org.slug, owner_id=user_id
        )
        return self._with_membership(org, membership.role)

    async def update_organization(
        self,
        org_id: str,
        user_id: str,
        *,
        name: Optional[str] = None,
        slug: Optional[str] = None,
        logo_url: Optional[str] = None,
    ) -> OrganizationWithMembership:
        data = parse_input(UpdateOrganizationInput, name=name, slug=slug, logo_url=logo_url)
        org, membership = self._require_membership(org_id, user_id)
        if not has_permission(membership.role, OrgRole.ADMIN):
            raise ForbiddenError("Only admins can update organization settings")
        changes = data.model_dump(exclude_none=True)
        if data.slug and data.slug != org.slug:
            if self.store.slug_exists(data.slug, exclude_id=org_id):
                raise ConflictError("Organization slug already exists")
        if not changes:
            return self._with_membership(org, membership.role)
        try:
            updated = self.store.update_organization(org_id, **changes)
        except ConstraintViolation as exc:
            if exc.field == "slug":
                raise ConflictError("Organization slug already exists") from None
            raise
        if not updated:
            raise NotFoundError("Organization")
        self.logger.info(
            "organization_updated", org_id=org_id, fields=sorted(changes), updated_by=user_id
        )
        return self._with_membership(updated, membership.role)

    async def delete_organization(self, org_id: str, user_id: str) -> None:
        _, membership = self._require_membership(org_id, user_id)
        if membership.role != OrgRole.OWNER:
            raise ForbiddenError("Only owners can delete the organization")
        self.store.update_organization(org_id, deleted_at=self._now())
        self.logger.info("organization_deleted", org_id=org_id, deleted_by=user_id)

    # members
    async def get_members(
        self, org_id: str, user_id: str, limit: int = 20, offset: int = 0
    ) -> Page[MemberInfo]:
        page = parse_input(PaginationInput, limit=limit, offset=offset)
        self._require_membership(org_id, user_id)
        members = []
        for membership in self.store.list_memberships(
            org_id, limit=page.limit, offset=page.offset
        ):
            user = self.store.get_user(membership.user_id)
            if user:
                members.append(_member_info(membership, user))
        return Page(
            items=members,
            total=self.store.count_memberships(org_id),
            limit=page.limit,
            offset=page.offset,
        )

    async def update_member_role(
        self, org_id: str, member_id: str, actor_id: str, role: RoleLike
    ) -> MemberInfo:
        data = parse_input(UpdateMemberRoleInput, role=_role_input(role))
        _, actor = self._require_membership(org_id, actor_id)
        if not has_permission(actor.role, OrgRole.ADMIN):
            raise ForbiddenError("Only admins can update member roles")
        with self.store.transaction() as tx:
            tx.lock_organization(org_id)
            actor = self._locked_actor(tx, org_id, actor_id)
            if not has_permission(actor.role, OrgRole.ADMIN):
                raise ForbiddenError("Only admins can update member roles")
            target = tx.get_membership_by_id(member_id)
            if not target or target.organization_id != org_id:
                raise NotFoundError("Member")
            if target.role == OrgRole.OWNER and actor.role != OrgRole.OWNER:
                raise ForbiddenError("Cannot modify owner role")
            if data.role == OrgRole.OWNER and actor.role != OrgRole.OWNER:
                raise ForbiddenError("Only owners can promote to owner")
            if (
                target.role == OrgRole.OWNER
                and data.role != OrgRole.OWNER
                and tx.count_memberships(org_id, role=OrgRole.OWNER) <= 1
            ):
                raise ForbiddenError("Cannot demote the only owner. Transfer ownership first.")
            updated = tx.update_membership_role(member_id, data.role)
        user = self.store.get_user(updated.user_id)
        self.logger.info(
            "member_role_updated",
            org_id=org_id,
            member_id=member_id,
            new_role=data.role.value,
            updated_by=actor_id,
        )
        return _member_info(updated, user)

    async def remove_member(self, org_id: str, member_id: str, actor_id: str) -> None:
        self._require_membership(org_id, actor_id)
        with self.store.transaction() as tx:
            tx.lock_organization(org_id)
            actor = self._locked_actor(tx, org_id, actor_id)
            target = tx.get_membership_by_id(member_id)
            if not target or target.organization_id != org_id:
                raise NotFoundError("Member")
            is_self = target.user_id == actor_id
            if not is_self and not has_permission(actor.role, OrgRole.ADMIN):
                raise ForbiddenError("Only admins can remove members")
            if target.role == OrgRole.OWNER:
                if not is_self and actor.role != OrgRole.OWNER:
                    raise ForbiddenError("Only owners can remove an owner")
                if tx.count_memberships(org_id, role=OrgRole.OWNER) <= 1:
                    raise ForbiddenError(
                        "Cannot remove the only owner. Transfer ownership first."
                    )
            tx.delete_membership(member_id)
        self.logger.info(
            "member_removed", org_id=org_id, member_id=member_id, removed_by=actor_id
        )

    # invitations
    async def invite_member(
        self,
        org_id: str,
        inviter_id: str,
        email: str,
        role: RoleLike = OrgRole.MEMBER,
    ) -> Union[InvitationInfo, MemberInfo]:
        """Invite ``email`` to the organization.

        A registered user is added as a member right away and notified. An
        unknown address gets a pending invitation whose raw token is only
        ever sent by email; the store keeps its sha256.
        """
        data = parse_input(InviteMemberInput, email=email, role=_role_input(role))
        org, inviter = self._require_membership(org_id, inviter_id)
        if not has_permission(inviter.role, OrgRole.ADMIN):
            raise ForbiddenError("Only admins can invite members")
        if data.role == OrgRole.OWNER and inviter.role != OrgRole.OWNER:
            raise ForbiddenError("Only owners can invite owners")
        await self.plans.check_user_limit(org_id)
        inviter_user = self.store.get_user(inviter_id)
        inviter_name = inviter_user.name if inviter_user else "A teammate"

        existing = self.store.get_user_by_email(data.email)
        if existing:
            if self.store.get_membership(org_id, existing.id):
                raise ConflictError("User is already a member of this organization")
            try:
                membership = self.store.create_membership(org_id, existing.id, data.role)
            except ConstraintViolation:
                raise ConflictError("User is already a member of this organization") from None
            self.logger.info(
                "member_added",
                org_id=org_id,
                user_id=existing.id,
                role=data.role.value,
                added_by=inviter_id,
            )
            self.emails.send_member_added_email(
                existing.email,
                inviter_name=inviter_name,
                organization_name=org.name,
                role=data.role.value,
            )
            return _member_info(membership, existing)

        raw_token = generate_token(32)
        now = self._now()
        try:
            with self.store.transaction() as tx:
                pending = tx.get_pending_invitation(org_id, data.email)
                if pending:
                    if not pending.is_expired(now):
                        raise ConflictError("An invitation is already pending for this email")
                    tx.update_invitation_status(pending.id, InvitationStatus.EXPIRED)
                invitation = tx.create_invitation(
                    org_id,
                    data.email,
                    data.role,
                    token_hash=sha256(raw_token),
                    invited_by_id=inviter_id,
                    expires_at=now + timedelta(days=self.settings.invitation_ttl_days),
                )
        except ConstraintViolation:
            raise ConflictError("An invitation is already pending for this email") from None
        self.logger.info(
            "invitation_created",
            org_id=org_id,
            invitation_id=invitation.id,
            role=data.role.value,
            invited_by=inviter_id,
        )
        self.emails.send_invitation_email(
            invitation.email,
            inviter_name=inviter_name,
            organization_name=org.name,
            role=data.role.value,
            token=raw_token,
        )
        return _invitation_info(invitation)

    async def accept_invitation(self, token: str, user_id: str) -> MemberInfo:
        user = self.store.get_user(user_id)
        if not user or user.is_deleted:
            raise NotFoundError("User")
        invitation = self.store.get_invitation_by_token(sha256(token or ""))
        if not invitation:
            raise NotFoundError("Invitation")
        if invitation.status == InvitationStatus.PENDING and invitation.is_expired(self._now()):
            # The expiry is recorded even though the acceptance fails
            self.store.update_invitation_status(invitation.id, InvitationStatus.EXPIRED)
            self.logger.info("invitation_expired", invitation_id=invitation.id)
            raise ForbiddenError("Invitation has expired")
        if invitation.status != InvitationStatus.PENDING:
            raise ForbiddenError("Invitation is no longer valid")
        if normalize_email(user.email) != normalize_email(invitation.email):
            self.logger.warning(
                "invitation_email_mismatch", invitation_id=invitation.id, user_id=user_id
            )
            raise ForbiddenError("This invitation was sent to a different email address")
        org_id = invitation.organization_id
        if not self.store.get_organization(org_id):
            raise NotFoundError("Organization")

        with self.store.transaction() as tx:
            tx.lock_organization(org_id)
            current = tx.get_invitation(invitation.id)
            if not current or current.status != InvitationStatus.PENDING:
                raise ForbiddenError("Invitation is no longer valid")
            if tx.get_membership(org_id, user_id):
                raise ConflictError("User is already a member of this organization")
            tx.update_invitation_status(
                invitation.id, InvitationStatus.ACCEPTED, accepted_at=self._now()
            )
            membership = tx.create_membership(org_id, user_id, invitation.role)
        self.logger.info(
            "invitation_accepted",
            org_id=org_id,
            invitation_id=invitation.id,
            user_id=user_id,
            role=invitation.role.value,
        )
        return _member_info(membership, user)

    async def revoke_invitation(
        self, org_id: str, invitation_id: str, user_id: str
    ) -> InvitationInfo:
        _, membership = self._require_membership(org_id, user_id)
        if not has_permission(membership.role, OrgRole.ADMIN):
            raise ForbiddenError("Only admins can revoke invitations")
        invitation = self.store.get_invitation(invitation_id)
        if not invitation or invitation.organization_id != org_id:
            raise NotFoundError("Invitation")
        if invitation.status != InvitationStatus.PENDING:
            raise ValidationError("Only pending invitations can be revoked")
        revoked = self.store.update_invitation_status(invitation_id, InvitationStatus.REVOKED)
        self.logger.info(
            "invitation_revoked", org_id=org_id, invitation_id=invitation_id, revoked_by=user_id
        )
        return _invitation_info(revoked)

    async def list_invitations(self, org_id: str, user_id: str) -> List[InvitationInfo]:
        _, membership = self._require_membership(org_id, user_id)
        if not has_permission(membership.role, OrgRole.ADMIN):
            raise ForbiddenError("Only admins can view invitations")
        return [
            _invitation_info(invitation)
            for invitation in self.store.list_invitations(
                org_id, status=InvitationStatus.PENDING
            )
        ]
