from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional

from .events import as_utc
from .models import Plan
from .plans import ProductMapping, plan_benefits
from .repository import SubscriptionRepository


@dataclass(frozen=True)
class UserPlan:
    user_id: str
    plan: Plan
    benefits: tuple[str, ...]
    status: str
    subscription_id: Optional[str] = None
    product_id: Optional[str] = None
    interval: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


def resolve_user_plan(
    repo: SubscriptionRepository,
    user_id: str,
    *,
    products: Mapping[str, ProductMapping],
) -> UserPlan:
    """
    Current plan for ``user_id``: the latest ACTIVE subscription, else FREE.

    FREE here means "no active subscription". A stored product that is no
    longer in the mapping table keeps the plan recorded on the row.
    """

    subscription = repo.get_current_for_user(user_id)
    if subscription is None:
        return UserPlan(user_id=user_id, plan=Plan.FREE, benefits=plan_benefits(Plan.FREE), status="none")

    mapping = products.get(str(subscription.product_id or ""))
    plan = mapping.plan if mapping is not None else subscription.plan
    period_end = subscription.current_period_end
    return UserPlan(
        user_id=user_id,
        plan=plan,
        benefits=plan_benefits(plan),
        status=subscription.status.value,
        subscription_id=subscription.provider_subscription_id,
        product_id=subscription.product_id,
        interval=subscription.interval.value if subscription.interval is not None else None,
        current_period_end=as_utc(period_end) if period_end is not None else None,
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
    )
