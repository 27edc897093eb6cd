"""
Celery application: broker and result backend from settings.
Beat runs the same reconciliation ticks as the in-process scheduler; deployments that use
beat set SCHEDULER_ENABLED=false on the API. Ticks are idempotent, so overlap is harmless.
"""
from celery import Celery
from celery.schedules import crontab

from billing.core.config import settings

celery_app = Celery(
    "billing",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "billing.workers.tasks.reconciliation",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=3600,
    result_expires=86400,
    beat_schedule={
        "subscription-expiration-check": {
            "task": "billing.workers.tasks.reconciliation.expiration_check",
            "schedule": crontab(minute=0, hour="*/12"),
        },
        "grace-period-check": {
            "task": "billing.workers.tasks.reconciliation.grace_period_check",
            "schedule": crontab(minute=0, hour=0),
        },
        "expiry-notification-check": {
            "task": "billing.workers.tasks.reconciliation.notification_check",
            "schedule": crontab(minute=5, hour=0),
        },
    },
)

celery_app.autodiscover_tasks(["billing.workers.tasks"])
