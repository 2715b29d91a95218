from __future__ import annotations

import datetime as dt
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Literal, Optional

from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .errors import SubscriptionWebhookError, UnknownProductError
from .events import (
    ORDER_CREATED,
    RENEWAL_BILLING_REASONS,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_REVOKED,
    SUBSCRIPTION_UNCANCELED,
    OrderCreatedEvent,
    SubscriptionEvent,
    SubscriptionPayload,
    UnhandledEvent,
    parse_event,
)
from .guard import OrderingGuard
from .locks import SubscriptionLockManager
from .models import SubscriptionProvider, SubscriptionStatus
from .plans import PlanDetails, map_product
from .repository import SubscriptionRepository
from .settings import BillingConfig

_LOGGER = get_logger("sharebox.billing.reconciler")

ResultStatus = Literal["applied", "stale", "ignored"]
Fields = dict[str, Any]
FieldBuilder = Callable[[SubscriptionPayload, PlanDetails, dt.datetime], tuple[Optional[Fields], Fields]]


@dataclass(frozen=True)
class ReconcileResult:
    status: ResultStatus
    event_type: str
    subscription_id: Optional[str] = None
    write: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


def _refreshed_fields(sub: SubscriptionPayload, details: PlanDetails) -> Fields:
    fields: Fields = {
        "provider": SubscriptionProvider.POLAR,
        "plan": details.plan,
        "interval": details.interval,
        "interval_count": int(sub.recurring_interval_count or 1),
    }
    if sub.product_id:
        fields["product_id"] = sub.product_id
    if sub.amount is not None:
        fields["amount"] = int(sub.amount)
    if sub.currency:
        fields["currency"] = sub.currency.lower()
    if sub.customer_id:
        fields["provider_customer_id"] = sub.customer_id
    return fields


def _creation_fields(sub: SubscriptionPayload, details: PlanDetails, event_at: dt.datetime) -> Optional[Fields]:
    if not sub.user_id:
        return None
    return {
        "user_id": sub.user_id,
        "provider": SubscriptionProvider.POLAR,
        "plan": details.plan,
        "status": SubscriptionStatus.ACTIVE,
        "amount": int(sub.amount or 0),
        "currency": (sub.currency or "usd").lower(),
        "product_id": sub.product_id,
        "provider_customer_id": sub.customer_id,
        "interval": details.interval,
        "interval_count": int(sub.recurring_interval_count or 1),
        "started_at": sub.started_at or event_at,
        "current_period_start": sub.current_period_start,
        "current_period_end": sub.current_period_end,
        "cancel_at_period_end": False,
        "cancelled_at": None,
        "ended_at": None,
    }


def _with(base: Optional[Fields], **overrides: Any) -> Optional[Fields]:
    if base is None:
        return None
    merged = dict(base)
    merged.update(overrides)
    return merged


def _period_fields(sub: SubscriptionPayload) -> Fields:
    fields: Fields = {}
    if sub.current_period_start is not None:
        fields["current_period_start"] = sub.current_period_start
    if sub.current_period_end is not None:
        fields["current_period_end"] = sub.current_period_end
    return fields


def _active_fields(sub: SubscriptionPayload, details: PlanDetails, event_at: dt.datetime) -> tuple[Optional[Fields], Fields]:
    cancel = bool(sub.cancel_at_period_end)
    cancelled_at = (sub.canceled_at or event_at) if cancel else None
    state = {
        "status": SubscriptionStatus.ACTIVE,
        "cancel_at_period_end": cancel,
        "cancelled_at": cancelled_at,
        "ended_at": None,
    }
    create = _with(_creation_fields(sub, details, event_at), **state)
    return create, {**_refreshed_fields(sub, details), **_period_fields(sub), **state}


def _canceled_fields(sub: SubscriptionPayload, details: PlanDetails, event_at: dt.datetime) -> tuple[Optional[Fields], Fields]:
    status = SubscriptionStatus.ACTIVE if str(sub.status or "active").lower() == "active" else SubscriptionStatus.INACTIVE
    state = {"cancel_at_period_end": True, "cancelled_at": sub.canceled_at or event_at}
    create = _with(_creation_fields(sub, details, event_at), status=status, **state)
    update_fields: Fields = {"plan": details.plan, **state}
    if sub.product_id:
        update_fields["product_id"] = sub.product_id
    if sub.customer_id:
        update_fields["provider_customer_id"] = sub.customer_id
    return create, update_fields


def _uncanceled_fields(sub: SubscriptionPayload, details: PlanDetails, event_at: dt.datetime) -> tuple[Optional[Fields], Fields]:
    state = {
        "status": SubscriptionStatus.ACTIVE,
        "cancel_at_period_end": False,
        "cancelled_at": None,
        "ended_at": None,
    }
    return _with(_creation_fields(sub, details, event_at), **state), dict(state)


def _revoked_fields(sub: SubscriptionPayload, details: PlanDetails, event_at: dt.datetime) -> tuple[Optional[Fields], Fields]:
    ended_at = sub.ended_at or event_at
    cancel = bool(sub.cancel_at_period_end)
    create = _with(
        _creation_fields(sub, details, event_at),
        status=SubscriptionStatus.INACTIVE,
        ended_at=ended_at,
        cancel_at_period_end=cancel,
        cancelled_at=(sub.canceled_at or event_at) if cancel else None,
    )
    update_fields: Fields = {"status": SubscriptionStatus.INACTIVE, "ended_at": ended_at}
    if sub.product_id:
        update_fields["product_id"] = sub.product_id
    return create, update_fields


_SUBSCRIPTION_HANDLERS: dict[str, FieldBuilder] = {
    SUBSCRIPTION_ACTIVE: _active_fields,
    SUBSCRIPTION_CANCELED: _canceled_fields,
    SUBSCRIPTION_UNCANCELED: _uncanceled_fields,
    SUBSCRIPTION_REVOKED: _revoked_fields,
}


class SubscriptionReconciler:
    """
    Folds verified provider events into the current Subscription row.

    One delivery runs under the per-subscription lock and inside a single
    transaction: staleness check, plan mapping, then exactly one conditional
    write (or none for stale and ignored events).
    """

    def __init__(
        self,
        config: BillingConfig,
        *,
        session_factory: SessionFactory | None = None,
        locks: SubscriptionLockManager | None = None,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.locks = locks or SubscriptionLockManager(
            redis_url=config.redis_url,
            redis_disabled=config.redis_disabled,
            lock_timeout_seconds=config.lock_timeout_seconds,
            wait_seconds=config.lock_wait_seconds,
        )

    def reconcile(self, event_type: str, payload: Any, event_at: dt.datetime) -> ReconcileResult:
        event = parse_event(event_type, payload, event_at)
        log_event(
            _LOGGER,
            logging.INFO,
            "billing.webhook.received",
            event_type=event.type or "unknown",
            event_at=event.occurred_at,
        )

        if isinstance(event, UnhandledEvent):
            log_event(_LOGGER, logging.WARNING, "billing.webhook.ignored", event_type=event.type or "unknown")
            return ReconcileResult(status="ignored", event_type=event.type, reason="unhandled event type")

        renewed: Optional[SubscriptionPayload] = None
        if isinstance(event, OrderCreatedEvent):
            renewed = event.order.subscription
            skip_reason = self._order_skip_reason(event)
            if skip_reason or renewed is None:
                log_event(
                    _LOGGER,
                    logging.INFO,
                    "billing.webhook.ignored",
                    event_type=event.type,
                    order_id=event.order.id,
                    reason=skip_reason,
                )
                return ReconcileResult(status="ignored", event_type=event.type, reason=skip_reason)
            subscription_id = renewed.id
        else:
            subscription_id = event.subscription.id

        try:
            with self.locks.hold(subscription_id):
                with session_scope(self.session_factory) as session:
                    repo = SubscriptionRepository(session)
                    if isinstance(event, OrderCreatedEvent) and renewed is not None:
                        result = self._apply_order(repo, event, renewed)
                    else:
                        result = self._apply_subscription(repo, event)
        except SubscriptionWebhookError as exc:
            exc.event_type = exc.event_type or event.type
            exc.subscription_id = exc.subscription_id or subscription_id
            raise

        log_event(
            _LOGGER,
            logging.INFO,
            f"billing.webhook.{result.status}",
            event_type=result.event_type,
            subscription_id=result.subscription_id,
            write=result.write,
        )
        return result

    @staticmethod
    def _order_skip_reason(event: OrderCreatedEvent) -> Optional[str]:
        order = event.order
        if order.subscription is None:
            return "order is not subscription related"
        if order.billing_reason not in RENEWAL_BILLING_REASONS or str(order.status or "").lower() != "paid":
            return f"billing_reason={order.billing_reason or '-'} status={order.status or '-'}"
        return None

    def _map(self, sub: SubscriptionPayload, event_type: str) -> PlanDetails:
        try:
            return map_product(sub.product_id, sub.recurring_interval, products=self.config.products)
        except UnknownProductError as exc:
            log_event(
                _LOGGER,
                logging.ERROR,
                "billing.webhook.unknown_product",
                event_type=event_type,
                subscription_id=sub.id,
                product_id=sub.product_id,
                recurring_interval=sub.recurring_interval,
            )
            exc.event_type = event_type
            exc.subscription_id = sub.id
            raise

    def _apply_subscription(self, repo: SubscriptionRepository, event: SubscriptionEvent) -> ReconcileResult:
        sub = event.subscription
        if OrderingGuard(repo).is_stale(sub.id, event.occurred_at):
            return ReconcileResult(status="stale", event_type=event.type, subscription_id=sub.id, reason="older than last applied event")

        details = self._map(sub, event.type)
        create, update_fields = _SUBSCRIPTION_HANDLERS[event.type](sub, details, event.occurred_at)
        outcome = repo.upsert(sub.id, event_at=event.occurred_at, create=create, update_fields=update_fields)
        if outcome == "stale":
            return ReconcileResult(status="stale", event_type=event.type, subscription_id=sub.id, reason="lost race to a newer event")
        return ReconcileResult(status="applied", event_type=event.type, subscription_id=sub.id, write=outcome)

    def _apply_order(
        self,
        repo: SubscriptionRepository,
        event: OrderCreatedEvent,
        sub: SubscriptionPayload,
    ) -> ReconcileResult:
        order = event.order
        if OrderingGuard(repo).is_stale(sub.id, event.occurred_at):
            return ReconcileResult(status="stale", event_type=event.type, subscription_id=sub.id, reason="older than last applied event")

        details = self._map(sub, event.type)
        fields: Fields = {
            "status": SubscriptionStatus.ACTIVE,
            "plan": details.plan,
            "interval": details.interval,
            "interval_count": int(sub.recurring_interval_count or 1),
            "current_period_start": sub.current_period_start or event.occurred_at,
            "ended_at": None,
        }
        if sub.product_id:
            fields["product_id"] = sub.product_id
        if sub.current_period_end is not None:
            fields["current_period_end"] = sub.current_period_end
        amount = sub.amount if sub.amount else order.total_amount
        if amount is not None:
            fields["amount"] = int(amount)
        if order.currency:
            fields["currency"] = order.currency.lower()

        outcome = repo.update_period_on_renewal(sub.id, event_at=event.occurred_at, fields=fields)
        if outcome == "stale":
            return ReconcileResult(status="stale", event_type=ORDER_CREATED, subscription_id=sub.id, reason="lost race to a newer event")
        return ReconcileResult(
            status="applied",
            event_type=ORDER_CREATED,
            subscription_id=sub.id,
            write=outcome,
            reason=f"order {order.id} billing_reason={order.billing_reason}",
        )
