"""
Shared FastAPI dependencies: admin auth and the long-lived collaborators (provider client,
payment locks, metrics cache) that per-request services are built around.
"""
import hmac
from functools import lru_cache

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.db.session import get_db
from billing.services.cache import TTLCache
from billing.services.financial.service import FinancialMetricsAggregator
from billing.services.refunds.ledger import RefundLedger
from billing.services.refunds.locks import PaymentLocks, build_payment_locks
from billing.services.refunds.provider import RazorpayRefundClient, RefundProvider
from billing.services.subscriptions.service import SubscriptionLifecycleManager


def require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    """Check X-Admin-Key against ADMIN_API_KEY. Open when no key is configured (local only)."""
    expected = settings.admin_api_key
    if not expected:
        if settings.app_env != "local":
            raise HTTPException(status_code=503, detail="Admin API key is not configured")
        return
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=401, detail="Invalid admin key")


def get_actor(x_admin_email: str | None = Header(default=None)) -> str:
    return x_admin_email or "admin"


@lru_cache
def get_refund_provider() -> RefundProvider:
    return RazorpayRefundClient()


@lru_cache
def get_payment_locks() -> PaymentLocks:
    return build_payment_locks()


@lru_cache
def get_metrics_cache() -> TTLCache:
    return TTLCache(ttl_seconds=settings.metrics_cache_ttl_seconds)


def get_refund_ledger(
    db: Session = Depends(get_db),
    provider: RefundProvider = Depends(get_refund_provider),
    locks: PaymentLocks = Depends(get_payment_locks),
    cache: TTLCache = Depends(get_metrics_cache),
) -> RefundLedger:
    return RefundLedger(db, provider, locks, metrics_cache=cache)


def get_financial_aggregator(
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_metrics_cache),
) -> FinancialMetricsAggregator:
    return FinancialMetricsAggregator(db, cache=cache)


def get_subscription_manager(db: Session = Depends(get_db)) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(db)
