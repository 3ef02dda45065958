from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from tenantauth.logging import get_logger
from tenantauth.service.errors import PlanLimitError
from tenantauth.storage.models import FREE_PLAN_SLUG, Plan, Subscription

logger = get_logger(__name__)

BILLING_PERIOD = timedelta(days=30)
UNLIMITED = -1


class PlanStore(Protocol):
    def get_plan(self, plan_id: str) -> Optional[Plan]: ...

    def get_plan_by_slug(self, slug: str) -> Optional[Plan]: ...

    def get_active_subscription(self, org_id: str) -> Optional[Subscription]: ...

    def create_subscription(
        self, org_id: str, plan_id: str, *, period_start: datetime, period_end: datetime
    ) -> Subscription: ...

    def count_memberships(self, org_id: str, *, role=None) -> int: ...


class PlanService:
    """Seat limits and default subscriptions for organizations."""

    def __init__(self, store: PlanStore) -> None:
        self.store = store

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def attach_free_subscription(self, tx: PlanStore, org_id: str) -> Subscription:
        """Create the free-tier subscription; call inside the org-creating unit of work."""
        plan = tx.get_plan_by_slug(FREE_PLAN_SLUG)
        if plan is None:
            raise RuntimeError("free plan is not provisioned")
        start = self._now()
        return tx.create_subscription(
            org_id, plan.id, period_start=start, period_end=start + BILLING_PERIOD
        )

    def get_plan_for_organization(self, org_id: str) -> Optional[Plan]:
        subscription = self.store.get_active_subscription(org_id)
        if subscription:
            plan = self.store.get_plan(subscription.plan_id)
            if plan:
                return plan
        return self.store.get_plan_by_slug(FREE_PLAN_SLUG)

    def seats_used(self, org_id: str) -> int:
        return self.store.count_memberships(org_id)

    async def check_user_limit(self, org_id: str) -> None:
        plan = self.get_plan_for_organization(org_id)
        limit = plan.users_limit if plan else 2
        if limit == UNLIMITED:
            return
        used = self.seats_used(org_id)
        if used >= limit:
            logger.info("plan_user_limit_reached", org_id=org_id, used=used, limit=limit)
            raise PlanLimitError(
                f"User limit reached ({limit}). Please upgrade your plan.",
                detail={"limit": limit, "used": used},
            )
