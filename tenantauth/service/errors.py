from __future__ import annotations

import math
from typing import Optional


class ServiceError(Exception):
    """Base class for business-rule failures surfaced to the HTTP boundary.

    Each subclass carries both an HTTP status_code and a stable error_code so
    callers can map failures without inspecting messages:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed or out-of-policy input, including invalid/expired tokens (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad credentials or not logged in (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class ForbiddenError(ServiceError):
    """Authenticated but not allowed to perform the action (403)."""
    status_code = 403
    error_code = "forbidden"


class PlanLimitError(ForbiddenError):
    """Organization seat quota exhausted (403)."""
    error_code = "plan_limit_exceeded"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"

    def __init__(self, resource: str = "Resource", **kwargs) -> None:
        super().__init__(f"{resource} not found", **kwargs)
        self.resource = resource


class ConflictError(ServiceError):
    """Uniqueness violation: email, slug, membership or pending invitation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429); retry_after_ms tells the caller when to retry."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_ms: int = 0, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("retry_after_ms", retry_after_ms)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after_ms = retry_after_ms

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after_ms / 1000))


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "PlanLimitError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
]
