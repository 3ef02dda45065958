from __future__ import annotations

import contextlib
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

# Connection bound to the unit of work running in the current context
_active_conn: ContextVar[Any] = ContextVar("tenantauth_pg_conn", default=None)

_USER_COLUMNS = frozenset(
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
_ORG_COLUMNS = frozenset({"name", "slug", "logo_url", "deleted_at"})

REQUIRED_TABLES = (
    "app_user",
    "auth_session",
    "organization",
    "org_membership",
    "pending_invitation",
    "plan",
    "subscription",
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_user (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL,
    name TEXT NOT NULL,
    password_hash TEXT,
    avatar_url TEXT,
    auth_provider TEXT NOT NULL DEFAULT 'PASSWORD',
    google_id TEXT,
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    deleted_at TIMESTAMPTZ,
    last_login_at TIMESTAMPTZ,
    password_reset_token TEXT,
    password_reset_expires TIMESTAMPTZ,
    email_verify_token TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_active
    ON app_user (email) WHERE deleted_at IS NULL;
CREATE UNIQUE INDEX IF NOT EXISTS app_user_google_id_active
    ON app_user (google_id) WHERE deleted_at IS NULL AND google_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS app_user_reset_token ON app_user (password_reset_token);
CREATE INDEX IF NOT EXISTS app_user_verify_token ON app_user (email_verify_token);

CREATE TABLE IF NOT EXISTS auth_session (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES app_user (id) ON DELETE CASCADE,
    token_hash TEXT NOT NULL UNIQUE,
    ip_address TEXT,
    user_agent TEXT,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS auth_session_user ON auth_session (user_id);

CREATE TABLE IF NOT EXISTS organization (
    id UUID PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    logo_url TEXT,
    deleted_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS org_membership (
    id UUID PRIMARY KEY,
    organization_id UUID NOT NULL REFERENCES organization (id) ON DELETE CASCADE,
    user_id UUID NOT NULL REFERENCES app_user (id) ON DELETE CASCADE,
    role TEXT NOT NULL CHECK (role IN ('VIEWER', 'MEMBER', 'ADMIN', 'OWNER')),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (organization_id, user_id)
);

CREATE TABLE IF NOT EXISTS pending_invitation (
    id UUID PRIMARY KEY,
    organization_id UUID NOT NULL REFERENCES organization (id) ON DELETE CASCADE,
    email TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('VIEWER', 'MEMBER', 'ADMIN', 'OWNER')),
    token_hash TEXT NOT NULL UNIQUE,
    invited_by_id UUID NOT NULL REFERENCES app_user (id),
    status TEXT NOT NULL DEFAULT 'PENDING'
        CHECK (status IN ('PENDING', 'ACCEPTED', 'EXPIRED', 'REVOKED')),
    expires_at TIMESTAMPTZ NOT NULL,
    accepted_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS pending_invitation_open
    ON pending_invitation (organization_id, email) WHERE status = 'PENDING';

CREATE TABLE IF NOT EXISTS plan (
    id UUID PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    users_limit INTEGER NOT NULL,
    projects_limit INTEGER NOT NULL,
    responses_limit INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS subscription (
    id UUID PRIMARY KEY,
    organization_id UUID NOT NULL REFERENCES organization (id) ON DELETE CASCADE,
    plan_id UUID NOT NULL REFERENCES plan (id),
    status TEXT NOT NULL DEFAULT 'ACTIVE',
    current_period_start TIMESTAMPTZ NOT NULL,
    current_period_end TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS subscription_active
    ON subscription (organization_id) WHERE status = 'ACTIVE';
"""


def _norm_email(email: str) -> str:
    return email.strip().lower()


def _row_to_user(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row["name"],
        password_hash=row.get("password_hash"),
        avatar_url=row.get("avatar_url"),
        auth_provider=AuthProvider(row.get("auth_provider") or AuthProvider.PASSWORD),
        google_id=row.get("google_id"),
        email_verified=bool(row.get("email_verified")),
        mfa_enabled=bool(row.get("mfa_enabled")),
        deleted_at=row.get("deleted_at"),
        last_login_at=row.get("last_login_at"),
        password_reset_token=row.get("password_reset_token"),
        password_reset_expires=row.get("password_reset_expires"),
        email_verify_token=row.get("email_verify_token"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _row_to_session(row: dict) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        created_at=row.get("created_at") or utcnow(),
    )


def _row_to_org(row: dict) -> Organization:
    return Organization(
        id=str(row["id"]),
        name=row["name"],
        slug=row["slug"],
        logo_url=row.get("logo_url"),
        deleted_at=row.get("deleted_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _row_to_membership(row: dict) -> OrgMembership:
    return OrgMembership(
        id=str(row["id"]),
        organization_id=str(row["organization_id"]),
        user_id=str(row["user_id"]),
        role=OrgRole(row["role"]),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _row_to_invitation(row: dict) -> PendingInvitation:
    return PendingInvitation(
        id=str(row["id"]),
        organization_id=str(row["organization_id"]),
        email=row["email"],
        role=OrgRole(row["role"]),
        token_hash=row["token_hash"],
        invited_by_id=str(row["invited_by_id"]),
        expires_at=row["expires_at"],
        status=InvitationStatus(row["status"]),
        accepted_at=row.get("accepted_at"),
        created_at=row.get("created_at") or utcnow(),
    )


def _row_to_plan(row: dict) -> Plan:
    return Plan(
        id=str(row["id"]),
        slug=row["slug"],
        name=row["name"],
        users_limit=row["users_limit"],
        projects_limit=row["projects_limit"],
        responses_limit=row["responses_limit"],
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        id=str(row["id"]),
        organization_id=str(row["organization_id"]),
        plan_id=str(row["plan_id"]),
        current_period_start=row["current_period_start"],
        current_period_end=row["current_period_end"],
        status=SubscriptionStatus(row["status"]),
        created_at=row.get("created_at") or utcnow(),
    )


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


class PostgresStore:
    """Postgres-backed store for users, sessions and organization data."""

    def __init__(self, dsn: str, *, ensure_schema: bool = False) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self.ensure_schema()
        self._verify_required_schema()
        self._seed_plans()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        conn = _active_conn.get()
        if conn is not None:
            yield conn
            return
        with self.pool.connection() as conn:
            yield conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        """Run the enclosed store calls on one connection inside one transaction.

        Nested blocks become savepoints of the outer transaction.
        """
        conn = _active_conn.get()
        if conn is not None:
            with conn.transaction():
                yield self
            return
        with self.pool.connection() as conn, conn.transaction():
            token = _active_conn.set(conn)
            try:
                yield self
            finally:
                _active_conn.reset(token)

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_schema = current_schema()"
            ).fetchall()
        present = {row["table_name"] for row in rows}
        missing = [table for table in REQUIRED_TABLES if table not in present]
        if missing:
            self.logger.error("postgres_schema_missing_tables", missing=missing)
            raise RuntimeError(
                f"Missing required tables: {', '.join(missing)}; run ensure_schema() first"
            )

    def _seed_plans(self) -> None:
        with self._connect() as conn:
            for spec in DEFAULT_PLANS:
                conn.execute(
                    """
                    INSERT INTO plan (id, slug, name, users_limit, projects_limit, responses_limit)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (slug) DO NOTHING
                    """,
                    (
                        new_id(),
                        spec["slug"],
                        spec["name"],
                        spec["users_limit"],
                        spec["projects_limit"],
                        spec["responses_limit"],
                    ),
                )

    def lock_organization(self, org_id: str) -> None:
        """Serialize owner-count checks for an organization within the current transaction."""
        with self._connect() as conn:
            conn.execute("SELECT id FROM organization WHERE id = %s FOR UPDATE", (org_id,))

    def lock_user(self, user_id: str) -> None:
        """Serialize single-use token consumption for a user."""
        with self._connect() as conn:
            conn.execute("SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,))

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, password_hash, avatar_url, auth_provider,
                                          google_id, email_verified, email_verify_token)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        _norm_email(email),
                        name,
                        password_hash,
                        avatar_url,
                        _enum_value(auth_provider),
                        google_id,
                        email_verified,
                        email_verify_token,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "google_id" if "google_id" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return _row_to_user(row)

    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM app_user WHERE {where}", params).fetchone()
        return _row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email = %s AND deleted_at IS NULL", (_norm_email(email),))

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        return self._fetch_user("google_id = %s AND deleted_at IS NULL", (google_id,))

    def get_user_by_reset_token(self, token_hash: str, now: datetime) -> Optional[User]:
        return self._fetch_user(
            "password_reset_token = %s AND password_reset_expires > %s AND deleted_at IS NULL",
            (token_hash, now),
        )

    def get_user_by_verify_token(self, token: str) -> Optional[User]:
        return self._fetch_user(
            "email_verify_token = %s AND deleted_at IS NULL", (token,)
        )

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _USER_COLUMNS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments = ", ".join(f"{column} = %s" for column in fields)
        params = [_enum_value(value) for value in fields.values()]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    (*params, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("google id already linked", {"field": "google_id"})
        return _row_to_user(row) if row else None

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
        sess = Session.new(
            user_id, token_hash, ttl_minutes, ip_address=ip_address, user_agent=user_agent
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, token_hash, ip_address, user_agent, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.token_hash,
                        sess.ip_address,
                        sess.user_agent,
                        sess.expires_at,
                        sess.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _row_to_session(row) if row else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at", (user_id,)
            ).fetchall()
        return [_row_to_session(row) for row in rows]

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
        return cur.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
        return cur.rowcount

    # organizations
    def create_organization(
        self, name: str, slug: str, *, logo_url: Optional[str] = None
    ) -> Organization:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO organization (id, name, slug, logo_url) VALUES (%s, %s, %s, %s) RETURNING *",
                    (new_id(), name, slug, logo_url),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("slug already exists", {"field": "slug"})
        return _row_to_org(row)

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE id = %s AND deleted_at IS NULL", (org_id,)
            ).fetchone()
        return _row_to_org(row) if row else None

    def get_organization_by_slug(self, slug: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE slug = %s AND deleted_at IS NULL", (slug,)
            ).fetchone()
        return _row_to_org(row) if row else None

    def slug_exists(self, slug: str, *, exclude_id: Optional[str] = None) -> bool:
        with self._connect() as conn:
            if exclude_id:
                row = conn.execute(
                    "SELECT 1 AS hit FROM organization WHERE slug = %s AND id <> %s",
                    (slug, exclude_id),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT 1 AS hit FROM organization WHERE slug = %s", (slug,)
                ).fetchone()
        return row is not None

    def update_organization(self, org_id: str, **fields) -> Optional[Organization]:
        unknown = set(fields) - _ORG_COLUMNS
        if unknown:
            raise ValueError(f"unknown organization fields: {sorted(unknown)}")
        if not fields:
            return self.get_organization(org_id)
        assignments = ", ".join(f"{column} = %s" for column in fields)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE organization SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    (*fields.values(), org_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("slug already exists", {"field": "slug"})
        return _row_to_org(row) if row else None

    # memberships
    def create_membership(self, org_id: str, user_id: str, role: OrgRole) -> OrgMembership:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO org_membership (id, organization_id, user_id, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), org_id, user_id, _enum_value(role)),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("membership already exists", {"field": "membership"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "organization or user does not exist",
                {"organization_id": org_id, "user_id": user_id},
            )
        return _row_to_membership(row)

    def get_membership(self, org_id: str, user_id: str) -> Optional[OrgMembership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM org_membership WHERE organization_id = %s AND user_id = %s",
                (org_id, user_id),
            ).fetchone()
        return _row_to_membership(row) if row else None

    def get_membership_by_id(self, membership_id: str) -> Optional[OrgMembership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM org_membership WHERE id = %s", (membership_id,)
            ).fetchone()
        return _row_to_membership(row) if row else None

    def list_memberships(
        self, org_id: str, *, limit: Optional[int] = None, offset: int = 0
    ) -> List[OrgMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM org_membership WHERE organization_id = %s
                ORDER BY created_at ASC LIMIT %s OFFSET %s
                """,
                (org_id, limit, offset),
            ).fetchall()
        return [_row_to_membership(row) for row in rows]

    def count_memberships(self, org_id: str, *, role: Optional[OrgRole] = None) -> int:
        with self._connect() as conn:
            if role is None:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM org_membership WHERE organization_id = %s",
                    (org_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM org_membership WHERE organization_id = %s AND role = %s",
                    (org_id, _enum_value(role)),
                ).fetchone()
        return int(row["n"])

    def list_user_memberships(
        self, user_id: str, *, limit: Optional[int] = None, offset: int = 0
    ) -> List[OrgMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT m.* FROM org_membership m
                JOIN organization o ON o.id = m.organization_id
                WHERE m.user_id = %s AND o.deleted_at IS NULL
                ORDER BY m.created_at ASC LIMIT %s OFFSET %s
                """,
                (user_id, limit, offset),
            ).fetchall()
        return [_row_to_membership(row) for row in rows]

    def count_user_memberships(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM org_membership m
                JOIN organization o ON o.id = m.organization_id
                WHERE m.user_id = %s AND o.deleted_at IS NULL
                """,
                (user_id,),
            ).fetchone()
        return int(row["n"])

    def update_membership_role(self, membership_id: str, role: OrgRole) -> Optional[OrgMembership]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE org_membership SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (_enum_value(role), membership_id),
            ).fetchone()
        return _row_to_membership(row) if row else None

    def delete_membership(self, membership_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM org_membership WHERE id = %s", (membership_id,))
        return cur.rowcount > 0

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO pending_invitation (id, organization_id, email, role, token_hash,
                                                    invited_by_id, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        org_id,
                        _norm_email(email),
                        _enum_value(role),
                        token_hash,
                        invited_by_id,
                        expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "pending invitation already exists", {"field": "invitation"}
            )
        return _row_to_invitation(row)

    def get_invitation(self, invitation_id: str) -> Optional[PendingInvitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_invitation WHERE id = %s", (invitation_id,)
            ).fetchone()
        return _row_to_invitation(row) if row else None

    def get_invitation_by_token(self, token_hash: str) -> Optional[PendingInvitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_invitation WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _row_to_invitation(row) if row else None

    def get_pending_invitation(self, org_id: str, email: str) -> Optional[PendingInvitation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM pending_invitation
                WHERE organization_id = %s AND email = %s AND status = 'PENDING'
                """,
                (org_id, _norm_email(email)),
            ).fetchone()
        return _row_to_invitation(row) if row else None

    def list_invitations(
        self, org_id: str, *, status: Optional[InvitationStatus] = None
    ) -> List[PendingInvitation]:
        with self._connect() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM pending_invitation WHERE organization_id = %s ORDER BY created_at",
                    (org_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM pending_invitation WHERE organization_id = %s AND status = %s
                    ORDER BY created_at
                    """,
                    (org_id, _enum_value(status)),
                ).fetchall()
        return [_row_to_invitation(row) for row in rows]

    def update_invitation_status(
        self,
        invitation_id: str,
        status: InvitationStatus,
        *,
        accepted_at: Optional[datetime] = None,
    ) -> Optional[PendingInvitation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE pending_invitation
                SET status = %s, accepted_at = COALESCE(%s, accepted_at)
                WHERE id = %s
                RETURNING *
                """,
                (_enum_value(status), accepted_at, invitation_id),
            ).fetchone()
        return _row_to_invitation(row) if row else None

    # plans
    def get_plan(self, plan_id: str) -> Optional[Plan]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM plan WHERE id = %s", (plan_id,)).fetchone()
        return _row_to_plan(row) if row else None

    def get_plan_by_slug(self, slug: str) -> Optional[Plan]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM plan WHERE slug = %s", (slug,)).fetchone()
        return _row_to_plan(row) if row else None

    def create_subscription(
        self,
        org_id: str,
        plan_id: str,
        *,
        period_start: datetime,
        period_end: datetime,
    ) -> Subscription:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO subscription (id, organization_id, plan_id, current_period_start,
                                              current_period_end)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), org_id, plan_id, period_start, period_end),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "organization already subscribed", {"field": "subscription"}
            )
        return _row_to_subscription(row)

    def get_active_subscription(self, org_id: str) -> Optional[Subscription]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM subscription WHERE organization_id = %s AND status = 'ACTIVE'",
                (org_id,),
            ).fetchone()
        return _row_to_subscription(row) if row else None
