"""Tests for the in-memory store's constraints and units of work."""

from datetime import datetime, timedelta, timezone

import pytest

from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import InvitationStatus, OrgRole


class TestConstraints:
    def test_email_unique_case_insensitive(self, memory_store):
        memory_store.create_user("alice@x.com", "Alice")

        with pytest.raises(ConstraintViolation) as exc:
            memory_store.create_user(" ALICE@x.com", "Alice Again")

        assert exc.value.field == "email"

    def test_deleted_user_frees_email(self, memory_store):
        user = memory_store.create_user("alice@x.com", "Alice")
        memory_store.update_user(user.id, deleted_at=datetime.now(timezone.utc))

        assert memory_store.get_user_by_email("alice@x.com") is None
        memory_store.create_user("alice@x.com", "Alice")

    def test_one_membership_per_user_and_org(self, memory_store):
        user = memory_store.create_user("alice@x.com", "Alice")
        org = memory_store.create_organization("Acme", "acme")
        memory_store.create_membership(org.id, user.id, OrgRole.OWNER)

        with pytest.raises(ConstraintViolation):
            memory_store.create_membership(org.id, user.id, OrgRole.MEMBER)

    def test_one_pending_invitation_per_email(self, memory_store):
        user = memory_store.create_user("alice@x.com", "Alice")
        org = memory_store.create_organization("Acme", "acme")
        expires = datetime.now(timezone.utc) + timedelta(days=7)
        first = memory_store.create_invitation(
            org.id, "bob@x.com", OrgRole.MEMBER, token_hash="h1", invited_by_id=user.id, expires_at=expires
        )

        with pytest.raises(ConstraintViolation):
            memory_store.create_invitation(
                org.id, "Bob@x.com", OrgRole.MEMBER, token_hash="h2", invited_by_id=user.id, expires_at=expires
            )

        memory_store.update_invitation_status(first.id, InvitationStatus.REVOKED)
        memory_store.create_invitation(
            org.id, "bob@x.com", OrgRole.MEMBER, token_hash="h3", invited_by_id=user.id, expires_at=expires
        )

    def test_slug_reserved_after_soft_delete(self, memory_store):
        org = memory_store.create_organization("Acme", "acme")
        memory_store.update_organization(org.id, deleted_at=datetime.now(timezone.utc))

        assert memory_store.get_organization_by_slug("acme") is None
        with pytest.raises(ConstraintViolation):
            memory_store.create_organization("Acme", "acme")

    def test_unknown_update_fields(self, memory_store):
        user = memory_store.create_user("alice@x.com", "Alice")

        with pytest.raises(ValueError):
            memory_store.update_user(user.id, email="x@x.com")

    def test_plans_seeded(self, memory_store):
        assert memory_store.get_plan_by_slug("free").users_limit == 2
        assert memory_store.get_plan_by_slug("enterprise").users_limit == -1


class TestTransaction:
    def test_rollback_restores_every_table(self, memory_store):
        """A failing unit of work leaves no partial rows behind."""
        with pytest.raises(RuntimeError):
            with memory_store.transaction() as tx:
                user = tx.create_user("alice@x.com", "Alice")
                org = tx.create_organization("Acme", "acme")
                tx.create_membership(org.id, user.id, OrgRole.OWNER)
                raise RuntimeError("boom")

        assert memory_store.users == {}
        assert memory_store.organizations == {}
        assert memory_store.memberships == {}
        assert not memory_store.slug_exists("acme")

    def test_commit_keeps_rows(self, memory_store):
        with memory_store.transaction() as tx:
            tx.create_user("alice@x.com", "Alice")

        assert memory_store.get_user_by_email("alice@x.com") is not None

    def test_nested_block_joins_outer(self, memory_store):
        """An inner failure rolls back the whole outer unit of work."""
        with pytest.raises(ConstraintViolation):
            with memory_store.transaction() as tx:
                tx.create_user("alice@x.com", "Alice")
                with tx.transaction():
                    tx.create_user("ALICE@x.com", "Duplicate")

        assert memory_store.users == {}
