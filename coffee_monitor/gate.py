from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional

from .store import CoffeeStore, utc_now

DEFAULT_COOLDOWN_HOURS = 24.0


class NotificationGate:
    """Suppresses repeat notifications for a (product, type) pair within a cooldown."""

    def __init__(
        self, store: CoffeeStore, cooldown_hours: float = DEFAULT_COOLDOWN_HOURS
    ) -> None:
        self._store = store
        self.cooldown_hours = cooldown_hours

    def was_notified_recently(
        self,
        product_id: int,
        notification_type: str,
        window_hours: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        hours = self.cooldown_hours if window_hours is None else window_hours
        since = (now or utc_now()) - timedelta(hours=hours)
        return self._store.count_notifications_since(product_id, notification_type, since) > 0

    def record_sent(
        self,
        product_ids: Iterable[int],
        notification_type: str,
        now: Optional[datetime] = None,
    ) -> None:
        for product_id in dict.fromkeys(product_ids):
            self._store.record_notification(product_id, notification_type, sent_at=now)
