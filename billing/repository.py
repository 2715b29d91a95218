from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import MissingUserReferenceError, SubscriptionNotFoundError
from .events import as_utc
from .models import Subscription, SubscriptionStatus, WebhookAuditLog, utc_now

WriteOutcome = Literal["created", "updated", "stale"]

# Columns an event may never rewrite once the row exists.
_IMMUTABLE_COLUMNS = frozenset({"id", "provider_subscription_id", "user_id", "started_at", "created_at"})


def _normalize_values(values: Mapping[str, Any]) -> dict[str, Any]:
    # SQLite stores DateTime without an offset, so every bound value must be UTC.
    return {key: (as_utc(value) if isinstance(value, datetime) else value) for key, value in values.items()}


class SubscriptionRepository:
    """
    Keyed storage for the one Subscription row per provider subscription id.

    Every write is conditional on the ``last_event_at`` watermark so a stale
    event can never overwrite a newer one, even when two deliveries for the
    same subscription race each other.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _dialect_name(self) -> str:
        bind = self.session.get_bind()
        return str(getattr(getattr(bind, "dialect", None), "name", "")).lower()

    def get_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        key = str(provider_subscription_id or "").strip()
        if not key:
            return None
        query = (
            select(Subscription)
            .where(Subscription.provider_subscription_id == key)
            .execution_options(populate_existing=True)
        )
        return self.session.scalar(query)

    def find_last_event_at(self, provider_subscription_id: str) -> Optional[datetime]:
        value = self.session.scalar(
            select(Subscription.last_event_at).where(
                Subscription.provider_subscription_id == str(provider_subscription_id)
            )
        )
        return as_utc(value) if value is not None else None

    def get_current_for_user(self, user_id: str) -> Optional[Subscription]:
        key = str(user_id or "").strip()
        if not key:
            return None
        query = (
            select(Subscription)
            .where(Subscription.user_id == key, Subscription.status == SubscriptionStatus.ACTIVE)
            .order_by(Subscription.last_event_at.desc())
            .limit(1)
        )
        return self.session.scalar(query)

    def _conditional_update(self, key: str, event_at: datetime, fields: Mapping[str, Any]) -> bool:
        blocked = _IMMUTABLE_COLUMNS.intersection(fields)
        if blocked:
            raise ValueError(f"immutable subscription columns in update: {sorted(blocked)}")
        values = _normalize_values(fields)
        values["last_event_at"] = event_at
        values["updated_at"] = utc_now()
        statement = (
            update(Subscription)
            .where(Subscription.provider_subscription_id == key)
            .where(Subscription.last_event_at < event_at)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(statement)
        return bool(result.rowcount)

    def _insert_if_absent(self, values: dict[str, Any]) -> bool:
        dialect = self._dialect_name()
        if dialect in {"sqlite", "postgresql"}:
            if dialect == "sqlite":
                from sqlalchemy.dialects.sqlite import insert as dialect_insert
            else:
                from sqlalchemy.dialects.postgresql import insert as dialect_insert
            statement = (
                dialect_insert(Subscription)
                .values(**values)
                .on_conflict_do_nothing(index_elements=[Subscription.provider_subscription_id])
            )
            result = self.session.execute(statement)
            return bool(result.rowcount)
        try:
            with self.session.begin_nested():
                self.session.execute(insert(Subscription).values(**values))
        except IntegrityError:
            return False
        return True

    def upsert(
        self,
        provider_subscription_id: str,
        *,
        event_at: datetime,
        create: Optional[Mapping[str, Any]],
        update_fields: Mapping[str, Any],
    ) -> WriteOutcome:
        """
        Apply one event to the row keyed by ``provider_subscription_id``.

        - Existing row with an older watermark: ``update_fields`` are written.
        - Existing row with a watermark >= ``event_at``: nothing is written ("stale").
        - No row: ``create`` is inserted; ``create=None`` means the event lacks
          the owning user and raises ``MissingUserReferenceError``.
        """

        key = str(provider_subscription_id or "").strip()
        if not key:
            raise ValueError("provider_subscription_id is required")
        ts = as_utc(event_at)

        if self._conditional_update(key, ts, update_fields):
            return "updated"
        if self.find_last_event_at(key) is not None:
            return "stale"
        if create is None:
            raise MissingUserReferenceError(
                "event carries no metadata.userId and the subscription does not exist yet",
                subscription_id=key,
            )

        values = _normalize_values(create)
        values.update(provider_subscription_id=key, last_event_at=ts)
        values.setdefault("started_at", ts)
        if self._insert_if_absent(values):
            return "created"
        # A concurrent delivery created the row between our read and insert.
        if self._conditional_update(key, ts, update_fields):
            return "updated"
        return "stale"

    def update_period_on_renewal(
        self,
        provider_subscription_id: str,
        *,
        event_at: datetime,
        fields: Mapping[str, Any],
    ) -> WriteOutcome:
        key = str(provider_subscription_id or "").strip()
        ts = as_utc(event_at)
        if self._conditional_update(key, ts, fields):
            return "updated"
        if self.find_last_event_at(key) is None:
            raise SubscriptionNotFoundError(f"subscription not found: {key}", subscription_id=key)
        return "stale"

    def record_audit_log(
        self,
        *,
        event_type: str,
        raw_payload: str,
        outcome: str,
        provider: str = "polar",
        webhook_id: Optional[str] = None,
        provider_subscription_id: Optional[str] = None,
        signature_valid: bool = False,
        detail: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> WebhookAuditLog:
        log = WebhookAuditLog(
            provider=str(provider or "polar")[:32],
            event_type=str(event_type or "")[:64] or "unknown",
            webhook_id=str(webhook_id)[:128] if webhook_id else None,
            provider_subscription_id=str(provider_subscription_id)[:128] if provider_subscription_id else None,
            signature_valid=bool(signature_valid),
            raw_payload=str(raw_payload or ""),
            outcome=str(outcome or "")[:32] or "unknown",
            detail=str(detail) if detail else None,
            occurred_at=as_utc(occurred_at) if occurred_at else datetime.now(timezone.utc),
        )
        self.session.add(log)
        self.session.flush()
        return log

    def list_audit_logs(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        provider_subscription_id: Optional[str] = None,
        outcome: Optional[str] = None,
    ) -> list[WebhookAuditLog]:
        query = select(WebhookAuditLog).order_by(WebhookAuditLog.occurred_at.desc())
        if provider_subscription_id:
            query = query.where(WebhookAuditLog.provider_subscription_id == provider_subscription_id)
        if outcome:
            query = query.where(WebhookAuditLog.outcome == outcome)
        query = query.limit(max(1, min(int(limit), 200))).offset(max(0, int(offset)))
        return list(self.session.scalars(query).all())
