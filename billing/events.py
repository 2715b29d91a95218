"""
Typed webhook event envelope.

Each provider event type maps onto one payload shape; ``parse_event`` picks
the variant by the ``type`` discriminator and validates it with pydantic.
Field names accept both the provider's snake_case wire form and the SDK's
camelCase form.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Final, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import MalformedEventError

SUBSCRIPTION_ACTIVE: Final[str] = "subscription.active"
SUBSCRIPTION_CANCELED: Final[str] = "subscription.canceled"
SUBSCRIPTION_UNCANCELED: Final[str] = "subscription.uncanceled"
SUBSCRIPTION_REVOKED: Final[str] = "subscription.revoked"
ORDER_CREATED: Final[str] = "order.created"

SUBSCRIPTION_EVENT_TYPES: Final[frozenset[str]] = frozenset(
    {SUBSCRIPTION_ACTIVE, SUBSCRIPTION_CANCELED, SUBSCRIPTION_UNCANCELED, SUBSCRIPTION_REVOKED}
)
RENEWAL_BILLING_REASONS: Final[frozenset[str]] = frozenset({"subscription_cycle", "subscription_update"})


def as_utc(value: dt.datetime) -> dt.datetime:
    """Naive datetimes are treated as UTC (SQLite drops the offset on read-back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def parse_timestamp(value: Any) -> Optional[dt.datetime]:
    if value in {None, ""}:
        return None
    if isinstance(value, dt.datetime):
        return as_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return dt.datetime.fromtimestamp(float(value), tz=dt.timezone.utc)
    raw = str(value).strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    return as_utc(parsed)


class _EventModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SubscriptionMetadata(_EventModel):
    user_id: Optional[str] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class SubscriptionPayload(_EventModel):
    id: str = Field(min_length=1)
    product_id: Optional[str] = None
    recurring_interval: Optional[str] = None
    recurring_interval_count: int = 1
    amount: Optional[int] = None
    currency: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[str] = None
    metadata: SubscriptionMetadata = Field(default_factory=SubscriptionMetadata)
    started_at: Optional[dt.datetime] = None
    current_period_start: Optional[dt.datetime] = None
    current_period_end: Optional[dt.datetime] = None
    cancel_at_period_end: Optional[bool] = None
    canceled_at: Optional[dt.datetime] = None
    ended_at: Optional[dt.datetime] = None

    @field_validator("started_at", "current_period_start", "current_period_end", "canceled_at", "ended_at")
    @classmethod
    def _to_utc(cls, value: Optional[dt.datetime]) -> Optional[dt.datetime]:
        return as_utc(value) if value is not None else None

    @field_validator("metadata", mode="before")
    @classmethod
    def _null_metadata(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.user_id


class OrderPayload(_EventModel):
    id: str = Field(min_length=1)
    billing_reason: Optional[str] = None
    status: Optional[str] = None
    total_amount: Optional[int] = None
    currency: Optional[str] = None
    subscription: Optional[SubscriptionPayload] = None


@dataclass(frozen=True)
class SubscriptionEvent:
    type: Literal[
        "subscription.active",
        "subscription.canceled",
        "subscription.uncanceled",
        "subscription.revoked",
    ]
    occurred_at: dt.datetime
    subscription: SubscriptionPayload


@dataclass(frozen=True)
class OrderCreatedEvent:
    type: Literal["order.created"]
    occurred_at: dt.datetime
    order: OrderPayload


@dataclass(frozen=True)
class UnhandledEvent:
    type: str
    occurred_at: dt.datetime


BillingEvent = Union[SubscriptionEvent, OrderCreatedEvent, UnhandledEvent]


def parse_event(event_type: str, payload: Any, occurred_at: dt.datetime) -> BillingEvent:
    """Validate ``payload`` against the shape the event type dictates."""

    normalized_type = str(event_type or "").strip()
    occurred = as_utc(occurred_at)
    if normalized_type not in SUBSCRIPTION_EVENT_TYPES and normalized_type != ORDER_CREATED:
        return UnhandledEvent(type=normalized_type, occurred_at=occurred)
    if not isinstance(payload, dict):
        raise MalformedEventError("event data must be a JSON object", event_type=normalized_type)
    try:
        if normalized_type == ORDER_CREATED:
            return OrderCreatedEvent(
                type=ORDER_CREATED,
                occurred_at=occurred,
                order=OrderPayload.model_validate(payload),
            )
        return SubscriptionEvent(
            type=normalized_type,  # type: ignore[arg-type]
            occurred_at=occurred,
            subscription=SubscriptionPayload.model_validate(payload),
        )
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise MalformedEventError(
            f"invalid {normalized_type} payload: {location or '-'} {first.get('msg', '')}".strip(),
            event_type=normalized_type,
            subscription_id=str(payload.get("id") or "") or None,
        ) from exc
