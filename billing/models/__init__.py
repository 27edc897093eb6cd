"""Importing this package registers every table on Base.metadata."""
from billing.models.audit_log import AuditLog
from billing.models.payment import Payment, PaymentStatus
from billing.models.refund import Refund, RefundSpeed, RefundStatus
from billing.models.subscription import Subscription, SubscriptionStatus

__all__ = [
    "AuditLog",
    "Payment",
    "PaymentStatus",
    "Refund",
    "RefundSpeed",
    "RefundStatus",
    "Subscription",
    "SubscriptionStatus",
]
