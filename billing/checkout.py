"""User-facing billing actions that go through the Polar API.

Neither action writes the Subscription row. A checkout only creates state
once Polar delivers the first subscription event, and a cancellation request
only lands when the ``subscription.canceled`` webhook is reconciled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .errors import (
    ActiveSubscriptionExistsError,
    ProductNotFoundError,
    ProviderNotConfiguredError,
    UnknownProductError,
)
from .plans import map_product
from .provider import CheckoutSession, PolarClient
from .repository import SubscriptionRepository
from .settings import BillingConfig

_LOGGER = get_logger("sharebox.billing.checkout")


@dataclass(frozen=True)
class CancellationRequest:
    requested: bool
    subscription_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class _CurrentSubscription:
    provider_subscription_id: str
    cancel_at_period_end: bool


def _load_current(session_factory: SessionFactory | None, user_id: str) -> Optional[_CurrentSubscription]:
    # Read and release the session before any provider round trip.
    with session_scope(session_factory) as session:
        row = SubscriptionRepository(session).get_current_for_user(user_id)
        if row is None:
            return None
        return _CurrentSubscription(
            provider_subscription_id=row.provider_subscription_id,
            cancel_at_period_end=bool(row.cancel_at_period_end),
        )


def create_checkout(
    client: PolarClient,
    config: BillingConfig,
    *,
    user_id: str,
    product_id: str,
    customer_email: Optional[str] = None,
    customer_name: Optional[str] = None,
    session_factory: SessionFactory | None = None,
) -> CheckoutSession:
    product_id = str(product_id or "").strip()
    try:
        details = map_product(product_id, None, products=config.products)
    except UnknownProductError as exc:
        raise ProductNotFoundError(f"product is not offered: {product_id or '-'}") from exc

    current = _load_current(session_factory, user_id)
    if current is not None:
        raise ActiveSubscriptionExistsError(
            f"user already has an active subscription: {current.provider_subscription_id}",
            subscription_id=current.provider_subscription_id,
        )

    if not config.checkout_success_url:
        raise ProviderNotConfiguredError("POLAR_CHECKOUT_SUCCESS_URL is missing")

    if client.get_product(product_id) is None:
        log_event(_LOGGER, logging.WARNING, "billing.checkout.product_missing", product_id=product_id)
        raise ProductNotFoundError(f"polar does not know product: {product_id}")

    session = client.create_checkout(
        product_id=product_id,
        user_id=user_id,
        success_url=config.checkout_success_url,
        return_url=config.checkout_return_url or None,
        customer_email=customer_email,
        customer_name=customer_name,
    )
    log_event(
        _LOGGER,
        logging.INFO,
        "billing.checkout.created",
        user_id=user_id,
        product_id=product_id,
        plan=details.plan.value,
        checkout_id=session.checkout_id,
    )
    return session


def request_cancellation(
    client: PolarClient,
    *,
    user_id: str,
    session_factory: SessionFactory | None = None,
) -> CancellationRequest:
    current = _load_current(session_factory, user_id)
    if current is None:
        return CancellationRequest(requested=False, reason="no active subscription")
    if current.cancel_at_period_end:
        return CancellationRequest(
            requested=False,
            subscription_id=current.provider_subscription_id,
            reason="already cancels at period end",
        )

    client.cancel_subscription(current.provider_subscription_id)
    log_event(
        _LOGGER,
        logging.INFO,
        "billing.cancel.requested",
        user_id=user_id,
        subscription_id=current.provider_subscription_id,
    )
    return CancellationRequest(requested=True, subscription_id=current.provider_subscription_id)
