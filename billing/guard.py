from __future__ import annotations

from datetime import datetime

from .events import as_utc
from .repository import SubscriptionRepository


class OrderingGuard:
    """Per-subscription staleness check against the stored ``last_event_at`` watermark."""

    def __init__(self, repo: SubscriptionRepository) -> None:
        self.repo = repo

    def is_stale(self, provider_subscription_id: str, event_at: datetime) -> bool:
        # An event that is not strictly newer than the watermark is stale; the
        # first event for an unknown subscription always applies.
        stored = self.repo.find_last_event_at(provider_subscription_id)
        if stored is None:
            return False
        return stored >= as_utc(event_at)
