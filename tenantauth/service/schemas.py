from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from tenantauth.service.errors import ValidationError
from tenantauth.storage.models import OrgRole

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")


def normalize_email(value: str) -> str:
    return unicodedata.normalize("NFKC", value).strip().lower()


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[a-z]", value):
        raise ValueError("password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain at least one uppercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("password must contain at least one number")
    return value


def _validate_slug(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if len(value) < 3:
        raise ValueError("slug must be at least 3 characters")
    if len(value) > 50:
        raise ValueError("slug must be at most 50 characters")
    if not _SLUG_PATTERN.match(value):
        raise ValueError("slug can only contain lowercase letters, numbers, and hyphens")
    if value.startswith("-") or value.endswith("-"):
        raise ValueError("slug cannot start or end with a hyphen")
    return value


class _Input(BaseModel):
    model_config = ConfigDict(extra="forbid")


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


class RegisterInput(_Input):
    email: str
    password: str = Field(max_length=128)
    name: str = Field(min_length=1, max_length=100)
    organization_name: Optional[str] = Field(default=None, min_length=1, max_length=100)

    @field_validator("name", "organization_name", mode="before")
    @classmethod
    def _strip_names(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginInput(_Input):
    email: str
    password: str = Field(min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class ForgotPasswordInput(_Input):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordInput(_Input):
    token: str = Field(min_length=1)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordInput(_Input):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class CreateOrganizationInput(_Input):
    name: str = Field(min_length=1, max_length=100)
    slug: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("slug")
    @classmethod
    def _validate_org_slug(cls, value: Optional[str]) -> Optional[str]:
        return _validate_slug(value)


class UpdateOrganizationInput(_Input):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    slug: Optional[str] = None
    logo_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("slug")
    @classmethod
    def _validate_org_slug(cls, value: Optional[str]) -> Optional[str]:
        return _validate_slug(value)

    @field_validator("logo_url")
    @classmethod
    def _validate_logo_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.startswith(("https://", "http://")):
            raise ValueError("logo_url must be an http(s) URL")
        return value


class InviteMemberInput(_Input):
    email: str
    role: OrgRole = OrgRole.MEMBER

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)


class UpdateMemberRoleInput(_Input):
    role: OrgRole


class PaginationInput(_Input):
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


M = TypeVar("M", bound=BaseModel)


def parse_input(model: Type[M], **data: Any) -> M:
    """Validate keyword input against ``model``; raise the service ValidationError."""
    payload = {key: value for key, value in data.items() if value is not None}
    try:
        return model(**payload)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        message = errors[0]["message"] if errors else "Invalid input"
        raise ValidationError(message, detail={"errors": errors}) from None
