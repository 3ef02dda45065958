"""Tests for organization lifecycle, membership reads and role authority."""

from functools import partial
from unittest.mock import patch

import pytest

from tenantauth.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tenantauth.service.organizations import slugify
from tenantauth.storage.models import OrgRole

PASSWORD = "Pw12345!"


async def _acme(services):
    """Alice owns Acme."""
    result = await services.auth.register("alice@x.com", PASSWORD, "Alice", "Acme")
    return result.organization, result.user


def _member(services, org, email, role):
    user = services.store.create_user(email, email.split("@")[0].title())
    membership = services.store.create_membership(org.id, user.id, role)
    return user, membership


class TestSlugify:
    def test_collapses_and_trims(self):
        assert slugify("  Hello, World!! ") == "hello-world"

    def test_empty_result_falls_back(self):
        assert slugify("!!!") == "org"

    def test_truncates_without_trailing_hyphen(self):
        slug = slugify("a" * 49 + " b")
        assert len(slug) <= 50
        assert not slug.endswith("-")


class TestCreateOrganization:
    async def test_creator_becomes_owner(self, services):
        """The creating user is the single OWNER of the new org."""
        _, alice = await _acme(services)

        org = await services.orgs.create_organization(alice.id, "Second Venture")

        assert org.slug == "second-venture"
        assert org.current_user_role == OrgRole.OWNER
        assert org.member_count == 1
        assert services.store.get_active_subscription(org.id) is not None

    async def test_explicit_slug_conflict(self, services):
        """An explicit slug that is taken is a conflict, not suffixed."""
        _, alice = await _acme(services)

        with pytest.raises(ConflictError, match="Organization slug already exists"):
            await services.orgs.create_organization(alice.id, "Other", slug="acme")

    async def test_explicit_slug_format_validated(self, services):
        """Slugs must be lowercase alphanumerics and inner hyphens."""
        _, alice = await _acme(services)

        with pytest.raises(ValidationError):
            await services.orgs.create_organization(alice.id, "Other", slug="-Bad Slug")

    async def test_derived_slug_gets_suffix(self, services):
        """Derived slugs avoid collisions with a counter."""
        _, alice = await _acme(services)

        org = await services.orgs.create_organization(alice.id, "Acme")

        assert org.slug == "acme-1"


class TestReads:
    async def test_non_member_sees_not_found(self, services):
        """Organizations are hidden from non-members."""
        org, _ = await _acme(services)
        outsider = services.store.create_user("eve@x.com", "Eve")

        with pytest.raises(NotFoundError, match="Organization not found"):
            await services.orgs.get_organization(org.id, outsider.id)
        with pytest.raises(NotFoundError):
            await services.orgs.get_organization_by_slug("acme", outsider.id)
        assert await services.orgs.get_user_role(org.id, outsider.id) is None

    async def test_get_organization_by_slug(self, services):
        org, alice = await _acme(services)

        found = await services.orgs.get_organization_by_slug("acme", alice.id)

        assert found.id == org.id
        assert found.current_user_role == OrgRole.OWNER

    async def test_get_members_paginates(self, services):
        """Members come back in join order with the total count."""
        org, alice = await _acme(services)
        _member(services, org, "bob@x.com", OrgRole.MEMBER)
        _member(services, org, "carol@x.com", OrgRole.VIEWER)

        first = await services.orgs.get_members(org.id, alice.id, limit=2, offset=0)
        rest = await services.orgs.get_members(org.id, alice.id, limit=2, offset=2)

        assert first.total == 3
        assert [m.email for m in first.items] == ["alice@x.com", "bob@x.com"]
        assert [m.email for m in rest.items] == ["carol@x.com"]

    async def test_get_members_rejects_bad_pagination(self, services):
        org, alice = await _acme(services)

        with pytest.raises(ValidationError):
            await services.orgs.get_members(org.id, alice.id, limit=0)
        with pytest.raises(ValidationError):
            await services.orgs.get_members(org.id, alice.id, limit=101)

    async def test_user_organizations(self, services):
        """Each organization reports the member count and the caller's role."""
        org, alice = await _acme(services)
        bob, _ = _member(services, org, "bob@x.com", OrgRole.ADMIN)

        page = await services.orgs.get_user_organizations(bob.id)

        assert page.total == 1
        assert page.items[0].slug == "acme"
        assert page.items[0].member_count == 2
        assert page.items[0].current_user_role == OrgRole.ADMIN

    async def test_require_role(self, services):
        org, _ = await _acme(services)
        bob, _ = _member(services, org, "bob@x.com", OrgRole.MEMBER)

        assert (await services.orgs.require_role(org.id, bob.id, "VIEWER")).role == OrgRole.MEMBER
        with pytest.raises(ForbiddenError, match="Requires ADMIN role or higher"):
            await services.orgs.require_role(org.id, bob.id, OrgRole.ADMIN)

    async def test_require_role_unknown_role(self, services):
        org, alice = await _acme(services)

        with pytest.raises(ValidationError):
            await services.orgs.require_role(org.id, alice.id, "SUPERUSER")


class TestUpdateAndDelete:
    async def test_member_cannot_update(self, services):
        org, _ = await _acme(services)
        bob, _ = _member(services, org, "bob@x.com", OrgRole.MEMBER)

        with pytest.raises(ForbiddenError, match="Only admins can update organization settings"):
            await services.orgs.update_organization(org.id, bob.id, name="Hacked")

    async def test_admin_updates_name_and_slug(self, services):
        org, _ = await _acme(services)
        bob, _ = _member(services, org, "bob@x.com", OrgRole.ADMIN)

        updated = await services.orgs.update_organization(
            org.id, bob.id, name="Acme Corp", slug="acme-corp"
        )

        assert updated.name == "Acme Corp"
        assert updated.slug == "acme-corp"

    async def test_slug_change_rechecks_uniqueness(self, services):
        org, alice = await _acme(services)
        await services.orgs.create_organization(alice.id, "Globex")

        with pytest.raises(ConflictError):
            await services.orgs.update_organization(org.id, alice.id, slug="globex")

    async def test_admin_cannot_delete(self, services):
        org, _ = await _acme(services)
        bob, _ = _member(services, org, "bob@x.com", OrgRole.ADMIN)

        with pytest.raises(ForbiddenError, match="Only owners can delete the organization"):
            await services.orgs.delete_organization(org.id, bob.id)

    async def test_owner_soft_deletes(self, services):
        """Deleted orgs disappear from reads but keep their slug reserved."""
        org, alice = await _acme(services)

        await services.orgs.delete_organization(org.id, alice.id)

        with pytest.raises(NotFoundError):
            await services.orgs.get_organization(org.id, alice.id)
        assert services.store.organizations[org.id].deleted_at is not None
        assert (await services.orgs.get_user_organizations(alice.id)).total == 0
        with pytest.raises(ConflictError):
            await services.orgs.create_organization(alice.id, "Acme", slug="acme")


class TestMemberRoles:
    async def test_admin_cannot_modify_owner(self, services):
        org, alice = await _acme(services)
        bob, _ = _member(services, org, "bob@x.com", OrgRole.ADMIN)
        owner_membership = services.store.get_membership(org.id, alice.id)

        with pytest.raises(ForbiddenError, match="Cannot modify owner role"):
            await services.orgs.update_member_role(org.id, owner_membership.id, bob.id, "MEMBER")

    async def test_admin_cannot_promote_to_owner(self, services):
        org, _ = await _acme(services)
        bob, _ = _member(services, org, "bob@x.com", OrgRole.ADMIN)
        _, carol_membership = _member(services, org, "carol@x.com", OrgRole.MEMBER)

        with pytest.raises(ForbiddenError, match="Only owners can promote to owner"):
            await services.orgs.update_member_role(org.id, carol_membership.id, bob.id, "OWNER")

    async def test_member_cannot_change_roles(self, services):
        org, _ = await _acme(services)
        bob, _ = _member(services, org, "bob@x.com", OrgRole.MEMBER)
        _, carol_membership = _member(services, org, "carol@x.com", OrgRole.VIEWER)

        with pytest.raises(ForbiddenError):
            await services.orgs.update_member_role(org.id, carol_membership.id, bob.id, "ADMIN")

    async def test_owner_promotes_and_demotes(self, services):
        org, alice = await _acme(services)
        _, bob_membership = _member(services, org, "bob@x.com", OrgRole.MEMBER)

        promoted = await services.orgs.update_member_role(
            org.id, bob_membership.id, alice.id, "admin"
        )

        assert promoted.role == OrgRole.ADMIN
        assert services.store.get_membership_by_id(bob_membership.id).role == OrgRole.ADMIN

    async def test_invalid_role_rejected(self, services):
        org, alice = await _acme(services)
        _, bob_membership = _member(services, org, "bob@x.com", OrgRole.MEMBER)

        with pytest.raises(ValidationError):
            await services.orgs.update_member_role(org.id, bob_membership.id, alice.id, "ROOT")

    async def test_last_owner_cannot_be_demoted(self, services):
        """Demoting the only owner would leave the org ownerless."""
        org, alice = await _acme(services)
        owner_membership = services.store.get_membership(org.id, alice.id)

        with pytest.raises(ForbiddenError, match="only owner"):
            await services.orgs.update_member_role(org.id, owner_membership.id, alice.id, "ADMIN")

        assert services.store.count_memberships(org.id, role=OrgRole.OWNER) == 1

    async def test_owner_can_step_down_after_transfer(self, services):
        org, alice = await _acme(services)
        _, bob_membership = _member(services, org, "bob@x.com", OrgRole.ADMIN)
        owner_membership = services.store.get_membership(org.id, alice.id)

        await services.orgs.update_member_role(org.id, bob_membership.id, alice.id, "OWNER")
        await services.orgs.update_member_role(org.id, owner_membership.id, alice.id, "ADMIN")

        assert services.store.count_memberships(org.id, role=OrgRole.OWNER) == 1
        assert services.store.get_membership_by_id(bob_membership.id).role == OrgRole.OWNER

    async def test_unknown_member_not_found(self, services):
        org, alice = await _acme(services)

        with pytest.raises(NotFoundError, match="Member not found"):
            await services.orgs.update_member_role(org.id, "missing", alice.id, "ADMIN")


class TestRemoveMember:
    async def test_sole_owner_cannot_leave(self, services):
        """The sole owner must transfer ownership first."""
        org, alice = await _acme(services)
        owner_membership = services.store.get_membership(org.id, alice.id)

        with pytest.raises(ForbiddenError, match="Transfer ownership first"):
            await services.orgs.remove_member(org.id, owner_membership.id, alice.id)

        assert services.store.get_membership(org.id, alice.id) is not None

    async def test_member_can_leave(self, services):
        org, _ = await _acme(services)
        bob, bob_membership = _member(services, org, "bob@x.com", OrgRole.MEMBER)

        await services.orgs.remove_member(org.id, bob_membership.id, bob.id)

        assert services.store.get_membership(org.id, bob.id) is None

    async def test_member_cannot_remove_others(self, services):
        org, _ = await _acme(services)
        bob, _ = _member(services, org, "bob@x.com", OrgRole.MEMBER)
        _, carol_membership = _member(services, org, "carol@x.com", OrgRole.VIEWER)

        with pytest.raises(ForbiddenError, match="Only admins can remove members"):
            await services.orgs.remove_member(org.id, carol_membership.id, bob.id)

    async def test_admin_removes_member(self, services):
        org, _ = await _acme(services)
        bob, _ = _member(services, org, "bob@x.com", OrgRole.ADMIN)
        carol, carol_membership = _member(services, org, "carol@x.com", OrgRole.MEMBER)

        await services.orgs.remove_member(org.id, carol_membership.id, bob.id)

        assert services.store.get_membership(org.id, carol.id) is None

    async def test_admin_cannot_remove_owner(self, services):
        org, alice = await _acme(services)
        bob, _ = _member(services, org, "bob@x.com", OrgRole.ADMIN)
        _member(services, org, "carol@x.com", OrgRole.OWNER)
        owner_membership = services.store.get_membership(org.id, alice.id)

        with pytest.raises(ForbiddenError):
            await services.orgs.remove_member(org.id, owner_membership.id, bob.id)

    async def test_owner_leaves_after_transfer(self, services):
        org, alice = await _acme(services)
        _, bob_membership = _member(services, org, "bob@x.com", OrgRole.MEMBER)
        owner_membership = services.store.get_membership(org.id, alice.id)

        await services.orgs.update_member_role(org.id, bob_membership.id, alice.id, "OWNER")
        await services.orgs.remove_member(org.id, owner_membership.id, alice.id)

        assert services.store.count_memberships(org.id, role=OrgRole.OWNER) == 1
        assert services.store.get_membership(org.id, alice.id) is None

    async def test_member_from_other_org_not_found(self, services):
        org, alice = await _acme(services)
        other = await services.orgs.create_organization(alice.id, "Globex")
        _, foreign_membership = _member(
            services, services.store.get_organization(other.id), "bob@x.com", OrgRole.MEMBER
        )

        with pytest.raises(NotFoundError, match="Member not found"):
            await services.orgs.remove_member(org.id, foreign_membership.id, alice.id)


class TestActorRecheckedUnderLock:
    """The actor's role is read again once the organization lock is held."""

    def _while_locking(self, services, change):
        lock = services.store.lock_organization

        def lock_then_change(org_id):
            lock(org_id)
            change()

        return patch.object(services.store, "lock_organization", side_effect=lock_then_change)

    async def test_demoted_admin_cannot_change_roles(self, services):
        org, _ = await _acme(services)
        _, bob_membership = _member(services, org, "bob@x.com", OrgRole.ADMIN)
        _, carol_membership = _member(services, org, "carol@x.com", OrgRole.MEMBER)
        demote = partial(services.store.update_membership_role, bob_membership.id, OrgRole.MEMBER)

        with self._while_locking(services, demote):
            with pytest.raises(ForbiddenError, match="Only admins can update member roles"):
                await services.orgs.update_member_role(
                    org.id, carol_membership.id, bob_membership.user_id, "ADMIN"
                )

        assert services.store.get_membership_by_id(carol_membership.id).role == OrgRole.MEMBER

    async def test_demoted_owner_cannot_remove_owner(self, services):
        org, alice = await _acme(services)
        bob, bob_membership = _member(services, org, "bob@x.com", OrgRole.OWNER)
        owner_membership = services.store.get_membership(org.id, alice.id)
        demote = partial(services.store.update_membership_role, bob_membership.id, OrgRole.ADMIN)

        with self._while_locking(services, demote):
            with pytest.raises(ForbiddenError, match="Only owners can remove an owner"):
                await services.orgs.remove_member(org.id, owner_membership.id, bob.id)

        assert services.store.get_membership(org.id, alice.id) is not None

    async def test_removed_actor_not_found(self, services):
        org, _ = await _acme(services)
        bob, bob_membership = _member(services, org, "bob@x.com", OrgRole.ADMIN)
        _, carol_membership = _member(services, org, "carol@x.com", OrgRole.MEMBER)
        remove = partial(services.store.delete_membership, bob_membership.id)

        with self._while_locking(services, remove):
            with pytest.raises(NotFoundError, match="Organization not found"):
                await services.orgs.remove_member(org.id, carol_membership.id, bob.id)

        assert services.store.get_membership(org.id, bob.id) is not None
