"""
Reconciliation runner: expiration check, grace-period check, notification check.

The tick functions open their own session so they can run from the in-process scheduler
or from Celery beat (billing.workers.tasks.reconciliation) alike.
"""
import logging
from typing import Callable

from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.db.session import SessionLocal
from billing.services.notifications.dispatcher import HttpNotificationDispatcher, NotificationDispatcher
from billing.services.notifications.service import SubscriptionNotifier
from billing.services.reconciliation.scheduler import ScheduledTask, TaskScheduler
from billing.services.subscriptions.service import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)

EXPIRATION_CHECK = "subscription_expiration_check"
GRACE_PERIOD_CHECK = "grace_period_check"
NOTIFICATION_CHECK = "expiry_notification_check"


def run_expiration_check(session_factory: Callable[[], Session] = SessionLocal) -> int:
    db = session_factory()
    try:
        return SubscriptionLifecycleManager(db).process_expired_subscriptions()
    finally:
        db.close()


def run_grace_period_check(session_factory: Callable[[], Session] = SessionLocal) -> int:
    db = session_factory()
    try:
        return SubscriptionLifecycleManager(db).process_grace_period_expiry()
    finally:
        db.close()


def run_notification_check(
    dispatcher: NotificationDispatcher,
    session_factory: Callable[[], Session] = SessionLocal,
) -> int:
    db = session_factory()
    try:
        return SubscriptionNotifier(db, dispatcher).process_expiry_notifications()
    finally:
        db.close()


class ScheduledReconciliationRunner:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        dispatcher: NotificationDispatcher | None = None,
        scheduler: TaskScheduler | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher or HttpNotificationDispatcher()
        self.scheduler = scheduler or TaskScheduler(max_workers=settings.scheduler_max_workers)
        for task in self.build_tasks():
            self.scheduler.add_task(task)

    def build_tasks(self) -> list[ScheduledTask]:
        delay = settings.scheduler_initial_delay_seconds
        return [
            ScheduledTask(
                name=EXPIRATION_CHECK,
                interval_seconds=settings.subscription_expiry_check_interval_minutes * 60,
                handler=lambda: run_expiration_check(self.session_factory),
                initial_delay_seconds=delay,
            ),
            ScheduledTask(
                name=GRACE_PERIOD_CHECK,
                interval_seconds=settings.grace_period_check_interval_hours * 3600,
                handler=lambda: run_grace_period_check(self.session_factory),
                initial_delay_seconds=delay,
            ),
            ScheduledTask(
                name=NOTIFICATION_CHECK,
                interval_seconds=settings.notification_check_interval_hours * 3600,
                handler=lambda: run_notification_check(self.dispatcher, self.session_factory),
                initial_delay_seconds=delay + settings.notification_check_offset_seconds,
            ),
        ]

    def start(self) -> None:
        self.scheduler.start()
        logger.info("reconciliation_runner_started")

    def stop(self, timeout: float | None = None) -> bool:
        timeout = timeout if timeout is not None else settings.scheduler_shutdown_timeout_seconds
        clean = self.scheduler.shutdown(timeout=timeout)
        close = getattr(self.dispatcher, "close", None)
        if close is not None:
            close()
        logger.info("reconciliation_runner_stopped")
        return clean
