"""Provider product id -> internal plan mapping."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Mapping, Optional

from .errors import UnknownProductError
from .models import BillingInterval, Plan

PLAN_BENEFITS: Final[dict[Plan, tuple[str, ...]]] = {
    Plan.FREE: (
        "Upload files up to 80 MB",
        "Share links expiring within 7 days",
        "Up to 5 active share links",
    ),
    Plan.PRO: (
        "Upload files up to 2 GB",
        "Share links with custom or no expiry",
        "Unlimited active share links",
        "Password-protected share links",
    ),
}

# Provider recurring interval -> internal billing interval.
_RECURRING_INTERVALS: Final[dict[str, BillingInterval]] = {
    "day": BillingInterval.DAY,
    "week": BillingInterval.WEEK,
    "month": BillingInterval.MONTH,
    "year": BillingInterval.YEAR,
}


@dataclass(frozen=True)
class ProductMapping:
    plan: Plan
    interval: BillingInterval


@dataclass(frozen=True)
class PlanDetails:
    plan: Plan
    benefits: tuple[str, ...]
    interval: BillingInterval


def plan_benefits(plan: Plan) -> tuple[str, ...]:
    return PLAN_BENEFITS.get(plan, ())


def _resolve_interval(interval: Optional[str], fallback: BillingInterval) -> Optional[BillingInterval]:
    raw = str(interval or "").strip().lower()
    if not raw:
        return fallback
    return _RECURRING_INTERVALS.get(raw)


def map_product(
    product_id: Optional[str],
    interval: Optional[str],
    *,
    products: Mapping[str, ProductMapping],
) -> PlanDetails:
    """
    Resolve a provider product into the internal plan, benefits and interval.

    Pure and deterministic. Unmapped products are a hard error: a mapping miss
    must never downgrade a paying customer to the free tier.
    """

    key = str(product_id or "").strip()
    mapping = products.get(key) if key else None
    if mapping is None:
        raise UnknownProductError(f"unknown product: {key or '-'}", product_id=key or None)
    resolved = _resolve_interval(interval, mapping.interval)
    if resolved is None:
        raise UnknownProductError(
            f"unknown recurring interval {interval!r} for product {key}",
            product_id=key,
        )
    return PlanDetails(plan=mapping.plan, benefits=plan_benefits(mapping.plan), interval=resolved)


def list_plan_catalog(products: Mapping[str, ProductMapping]) -> list[dict[str, object]]:
    catalog: list[dict[str, object]] = [
        {
            "plan": Plan.FREE.value,
            "interval": None,
            "product_id": None,
            "benefits": list(plan_benefits(Plan.FREE)),
        }
    ]
    for product_id, mapping in sorted(products.items(), key=lambda item: (item[1].plan.value, item[0])):
        catalog.append(
            {
                "plan": mapping.plan.value,
                "interval": mapping.interval.value,
                "product_id": product_id,
                "benefits": list(plan_benefits(mapping.plan)),
            }
        )
    return catalog
