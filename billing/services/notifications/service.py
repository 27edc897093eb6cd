"""
Expiry notifications.

Each warning threshold (N days before end_date) and the expiry itself is a "crossing" with a
fixed crossing time. A subscription is notified for a crossing only if last_notified_at is
older than that crossing time; last_notified_at is claimed with a conditional UPDATE before
sending, so concurrent ticks can't both send.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.models.subscription import Subscription, SubscriptionStatus
from billing.services.notifications.dispatcher import (
    NotificationDispatcher,
    NotificationTemplate,
    expiry_warning,
    subscription_expired,
)
from billing.services.subscriptions.service import subscription_to_dict
from billing.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)


def due_notification(
    status: SubscriptionStatus,
    end_date: datetime,
    now: datetime,
    warning_days: list[int],
) -> tuple[NotificationTemplate, datetime] | None:
    """Latest crossing at or before `now` for this subscription, with its template."""
    end_date = as_utc(end_date)
    if status is SubscriptionStatus.GRACE_PERIOD:
        if now >= end_date:
            return subscription_expired(), end_date
        return None
    if status is not SubscriptionStatus.ACTIVE or now >= end_date:
        return None
    # smallest threshold already crossed is the most recent crossing
    for days in sorted(warning_days):
        crossing = end_date - timedelta(days=days)
        if crossing <= now:
            return expiry_warning(days, end_date.isoformat()), crossing
    return None


class SubscriptionNotifier:
    def __init__(
        self,
        db: Session,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
        warning_days: list[int] | None = None,
    ) -> None:
        self.db = db
        self.dispatcher = dispatcher
        self.clock = clock
        self.warning_days = warning_days or settings.expiry_warning_days_list

    def _claim(self, subscription_id: str, crossing: datetime, now: datetime) -> bool:
        rows = (
            self.db.query(Subscription)
            .filter(
                Subscription.id == subscription_id,
                or_(Subscription.last_notified_at.is_(None), Subscription.last_notified_at < crossing),
            )
            .update({Subscription.last_notified_at: now}, synchronize_session=False)
        )
        self.db.commit()
        return rows == 1

    def process_expiry_notifications(self) -> int:
        """Send due expiry notices. Returns the number the dispatcher accepted."""
        now = self.clock()
        window_end = now + timedelta(days=max(self.warning_days))
        candidates = (
            self.db.query(Subscription)
            .filter(
                or_(
                    Subscription.status == SubscriptionStatus.GRACE_PERIOD,
                    (Subscription.status == SubscriptionStatus.ACTIVE) & (Subscription.end_date <= window_end),
                )
            )
            .all()
        )
        sent = 0
        for sub in candidates:
            try:
                due = due_notification(SubscriptionStatus(sub.status), sub.end_date, now, self.warning_days)
                if due is None:
                    continue
                template, crossing = due
                last = as_utc(sub.last_notified_at)
                if last is not None and last >= crossing:
                    continue
                payload = subscription_to_dict(sub)
                if not self._claim(sub.id, crossing, now):
                    continue
                if self.dispatcher.send(payload, template):
                    sent += 1
            except Exception:
                self.db.rollback()
                logger.exception("notification_check_item_failed", extra={"subscription_id": sub.id})
        logger.info("notification_check_done", extra={"count": sent})
        return sent
