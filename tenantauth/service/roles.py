from __future__ import annotations

from typing import Union

from tenantauth.storage.models import OrgRole

RoleLike = Union[OrgRole, str]


def role_rank(role: RoleLike) -> int:
    """Rank of a role in the hierarchy; raises ValueError for unknown roles."""
    return OrgRole(role).rank


def has_permission(actual: RoleLike, required: RoleLike) -> bool:
    """True when ``actual`` is at least as privileged as ``required``."""
    return role_rank(actual) >= role_rank(required)


def parse_role(value: RoleLike) -> OrgRole:
    if isinstance(value, OrgRole):
        return value
    return OrgRole(str(value).strip().upper())


__all__ = ["RoleLike", "role_rank", "has_permission", "parse_role"]
