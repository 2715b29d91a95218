from __future__ import annotations

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

import config

from .models import BillingInterval, Plan
from .plans import ProductMapping


@dataclass(frozen=True)
class BillingConfig:
    """
    Process-lifetime billing configuration.

    Built once at startup and injected into the reconciler and the webhook
    endpoint; never mutated afterwards.
    """

    webhook_secret: str = field(default="", repr=False)
    webhook_tolerance_seconds: int = 300
    products: Mapping[str, ProductMapping] = field(default_factory=lambda: MappingProxyType({}))
    redis_url: str = field(default="", repr=False)
    redis_disabled: bool = True
    lock_timeout_seconds: float = 30.0
    lock_wait_seconds: float = 10.0
    api_access_token: str = field(default="", repr=False)
    api_base_url: str = "https://sandbox-api.polar.sh"
    api_timeout_seconds: float = 20.0
    checkout_success_url: str = ""
    checkout_return_url: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "products", MappingProxyType(dict(self.products)))


def _parse_product_map(raw: str) -> dict[str, ProductMapping]:
    if not raw:
        return {}
    try:
        parsed: Any = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError("POLAR_PRODUCT_MAP must be valid JSON") from exc
    if not isinstance(parsed, dict):
        raise RuntimeError("POLAR_PRODUCT_MAP must be a JSON object")
    out: dict[str, ProductMapping] = {}
    for product_id, entry in parsed.items():
        if not isinstance(entry, dict):
            raise RuntimeError(f"POLAR_PRODUCT_MAP entry for {product_id} must be an object")
        try:
            plan = Plan(str(entry.get("plan") or "").strip().upper())
            interval = BillingInterval(str(entry.get("interval") or "MONTH").strip().upper())
        except ValueError as exc:
            raise RuntimeError(f"POLAR_PRODUCT_MAP entry for {product_id} is invalid: {exc}") from exc
        key = str(product_id).strip()
        if key:
            out[key] = ProductMapping(plan=plan, interval=interval)
    return out


def load_billing_config() -> BillingConfig:
    products = _parse_product_map(config.POLAR_PRODUCT_MAP)
    if config.POLAR_PRODUCT_PRO:
        products.setdefault(config.POLAR_PRODUCT_PRO, ProductMapping(plan=Plan.PRO, interval=BillingInterval.MONTH))
    return BillingConfig(
        webhook_secret=config.POLAR_WEBHOOK_SECRET,
        webhook_tolerance_seconds=config.POLAR_WEBHOOK_TOLERANCE_SECONDS,
        products=products,
        redis_url=config.REDIS_URL,
        redis_disabled=config.REDIS_DISABLED or str(config.REDIS_URL or "").startswith("memory://"),
        lock_timeout_seconds=config.SUBSCRIPTION_LOCK_TIMEOUT_SECONDS,
        lock_wait_seconds=config.SUBSCRIPTION_LOCK_WAIT_SECONDS,
        api_access_token=config.POLAR_ACCESS_TOKEN,
        api_base_url=config.POLAR_API_BASE_URL,
        api_timeout_seconds=config.POLAR_API_TIMEOUT_SECONDS,
        checkout_success_url=config.POLAR_CHECKOUT_SUCCESS_URL,
        checkout_return_url=config.POLAR_CHECKOUT_RETURN_URL,
    )
