"""
Razorpay refund webhooks: refund.processed, refund.failed, refund.created.
Signature is HMAC-SHA256 of the raw body with the webhook secret (X-Razorpay-Signature header).
"""
import hashlib
import hmac
import json
import logging

from billing.core.config import settings
from billing.services.refunds.ledger import RefundLedger
from billing.services.refunds.provider import parse_speed_processed
from billing.services.result import ErrorKind, Result

logger = logging.getLogger(__name__)

HANDLED_EVENTS = ("refund.processed", "refund.failed", "refund.created")


def verify_signature(body: bytes, signature: str | None, secret: str | None = None) -> bool:
    secret = secret if secret is not None else settings.razorpay_webhook_secret
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


class RefundWebhookHandler:
    def __init__(self, ledger: RefundLedger, secret: str | None = None) -> None:
        self.ledger = ledger
        self.secret = secret

    def handle(self, body: bytes, signature: str | None) -> Result[dict]:
        if not verify_signature(body, signature, self.secret):
            logger.warning("webhook_signature_invalid")
            return Result.failure(ErrorKind.VALIDATION, "Invalid webhook signature")
        try:
            event = json.loads(body)
            name = event["event"]
            entity = event["payload"]["refund"]["entity"]
            provider_refund_id = entity["id"]
        except (ValueError, KeyError, TypeError):
            return Result.failure(ErrorKind.VALIDATION, "Malformed webhook payload")

        if name not in HANDLED_EVENTS:
            logger.info("webhook_event_ignored", extra={"status": name})
            return Result.success({"event": name, "handled": False})
        if name == "refund.created":
            # creation is recorded on our side before the provider is called
            return Result.success({"event": name, "handled": False})

        result = self.ledger.apply_provider_update(
            provider_refund_id,
            status="processed" if name == "refund.processed" else "failed",
            speed_processed=parse_speed_processed(entity.get("speed_processed")),
            error_code=entity.get("error_code") or ("PROVIDER_FAILED" if name == "refund.failed" else None),
            error_description=entity.get("error_description"),
        )
        if not result.ok:
            logger.warning("webhook_refund_update_failed", extra={"refund_id": provider_refund_id, "error": result.error.message})
            return Result(error=result.error)
        if not result.value:
            logger.info("webhook_duplicate_skipped", extra={"refund_id": provider_refund_id, "status": name})
        return Result.success({"event": name, "handled": result.value})
