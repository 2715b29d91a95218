from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class SubscriptionProvider(str, enum.Enum):
    POLAR = "polar"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    # Also covers revoked subscriptions.
    INACTIVE = "inactive"


class Plan(str, enum.Enum):
    FREE = "FREE"
    PRO = "PRO"


class BillingInterval(str, enum.Enum):
    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"
    YEAR = "YEAR"


class Subscription(Base):
    __tablename__ = "billing_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider_subscription_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    provider: Mapped[SubscriptionProvider] = mapped_column(
        Enum(SubscriptionProvider, native_enum=False), default=SubscriptionProvider.POLAR
    )
    plan: Mapped[Plan] = mapped_column(Enum(Plan, native_enum=False), default=Plan.FREE)
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, native_enum=False), default=SubscriptionStatus.ACTIVE
    )
    amount: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(8), default="usd")
    product_id: Mapped[str] = mapped_column(String(128))
    provider_customer_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    interval: Mapped[BillingInterval] = mapped_column(
        Enum(BillingInterval, native_enum=False), default=BillingInterval.MONTH
    )
    interval_count: Mapped[int] = mapped_column(Integer, default=1)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class WebhookAuditLog(Base):
    """
    Append-only record of every webhook delivery attempt, failures included.

    The raw payload is kept verbatim for dispute resolution.
    """

    __tablename__ = "billing_webhook_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    provider: Mapped[str] = mapped_column(String(32), default=SubscriptionProvider.POLAR.value, index=True)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    webhook_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    provider_subscription_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    raw_payload: Mapped[str] = mapped_column(Text)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


Index("ix_billing_subscriptions_user_status", Subscription.user_id, Subscription.status)
