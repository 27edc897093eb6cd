"""
Notification delivery. The lifecycle core only needs send(subscription, template) -> bool;
HttpNotificationDispatcher posts to the push gateway configured in NOTIFICATION_API_URL.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from billing.core.config import settings
from billing.utils.metrics import notifications_sent_total

logger = logging.getLogger(__name__)

RENEW_ACTION = "RENEW_SUBSCRIPTION"


@dataclass(frozen=True)
class NotificationTemplate:
    name: str
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)


def expiry_warning(days_remaining: int, end_date: str) -> NotificationTemplate:
    plural = "s" if days_remaining > 1 else ""
    return NotificationTemplate(
        name=f"expiry_warning_{days_remaining}d",
        title="Subscription Expiring Soon",
        body=f"Your premium subscription expires in {days_remaining} day{plural}. Renew now!",
        data={"action": RENEW_ACTION, "days_remaining": str(days_remaining), "end_date": end_date},
    )


def subscription_expired() -> NotificationTemplate:
    return NotificationTemplate(
        name="subscription_expired",
        title="Subscription Expired",
        body="Your premium subscription has expired. Renew now to regain access!",
        data={"action": RENEW_ACTION},
    )


class NotificationDispatcher(Protocol):
    def send(self, subscription: dict[str, Any], template: NotificationTemplate) -> bool: ...


class HttpNotificationDispatcher:
    """
    Sync push-gateway client. Never raises: failures are logged and reported as False,
    the caller does not retry.
    """

    def __init__(self, url: str | None = None, api_key: str | None = None, timeout: float | None = None) -> None:
        self._url = url if url is not None else settings.notification_api_url
        self._api_key = api_key if api_key is not None else settings.notification_api_key
        self._timeout = timeout or settings.notification_timeout_seconds
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
            self._client = httpx.Client(timeout=self._timeout, headers=headers)
        return self._client

    def send(self, subscription: dict[str, Any], template: NotificationTemplate) -> bool:
        user_email = subscription.get("user_email")
        if not self._url:
            logger.warning("notification_dispatcher_disabled", extra={"user_email": user_email, "template": template.name})
            notifications_sent_total.labels(template=template.name, status="skipped").inc()
            return False

        start = time.time()
        payload = {
            "user_email": user_email,
            "subscription_id": subscription.get("id"),
            "title": template.title,
            "body": template.body,
            "data": template.data,
        }
        try:
            resp = self.client.post(self._url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            notifications_sent_total.labels(template=template.name, status="error").inc()
            logger.error(
                "notification_send_failed",
                extra={"user_email": user_email, "template": template.name, "error": str(e)},
            )
            return False
        notifications_sent_total.labels(template=template.name, status="success").inc()
        logger.info(
            "notification_sent",
            extra={
                "user_email": user_email,
                "template": template.name,
                "duration_ms": int((time.time() - start) * 1000),
            },
        )
        return True

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
