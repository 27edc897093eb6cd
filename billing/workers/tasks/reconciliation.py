"""
Celery beat tasks: subscription expiration, grace-period expiry, expiry notifications.
Each task wraps one reconciliation tick; per-subscription failures are already isolated inside.
"""
import logging

from billing.core.celery_app import celery_app
from billing.services.notifications.dispatcher import HttpNotificationDispatcher
from billing.services.reconciliation.runner import (
    run_expiration_check,
    run_grace_period_check,
    run_notification_check,
)

logger = logging.getLogger(__name__)


@celery_app.task(
    name="billing.workers.tasks.reconciliation.expiration_check",
    time_limit=600,
    soft_time_limit=570,
)
def expiration_check() -> dict:
    try:
        moved = run_expiration_check()
        return {"ok": True, "moved_to_grace": moved}
    except Exception as e:
        logger.exception("expiration_check_task_failed", extra={"task": "expiration_check"})
        return {"ok": False, "error": str(e)}


@celery_app.task(
    name="billing.workers.tasks.reconciliation.grace_period_check",
    time_limit=600,
    soft_time_limit=570,
)
def grace_period_check() -> dict:
    try:
        moved = run_grace_period_check()
        return {"ok": True, "expired": moved}
    except Exception as e:
        logger.exception("grace_period_check_task_failed", extra={"task": "grace_period_check"})
        return {"ok": False, "error": str(e)}


@celery_app.task(
    name="billing.workers.tasks.reconciliation.notification_check",
    time_limit=600,
    soft_time_limit=570,
)
def notification_check() -> dict:
    dispatcher = HttpNotificationDispatcher()
    try:
        sent = run_notification_check(dispatcher)
        return {"ok": True, "sent": sent}
    except Exception as e:
        logger.exception("notification_check_task_failed", extra={"task": "notification_check"})
        return {"ok": False, "error": str(e)}
    finally:
        dispatcher.close()
