"""
Admin API: refunds, financial reports, subscriptions, metrics cache.
All amounts in request bodies are minor units.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from billing.api.deps import (
    get_actor,
    get_financial_aggregator,
    get_metrics_cache,
    get_refund_ledger,
    get_subscription_manager,
    require_admin,
)
from billing.api.errors import unwrap_or_raise
from billing.schemas.admin import ActivateSubscriptionRequest, CancelSubscriptionRequest, RefundRequest
from billing.services.cache import TTLCache
from billing.services.financial.service import FinancialMetricsAggregator
from billing.services.refunds.ledger import RefundLedger
from billing.services.subscriptions.service import SubscriptionLifecycleManager
from billing.utils.dates import parse_date_param

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _date_range(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    try:
        return parse_date_param(start), parse_date_param(end, end_of_day=True)
    except ValueError:
        raise HTTPException(status_code=400, detail="Dates must be ISO formatted (YYYY-MM-DD)")


def _csv(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ---------- Refunds ----------
@router.post("/refunds")
def refunds_initiate(
    payload: RefundRequest,
    actor: str = Depends(get_actor),
    ledger: RefundLedger = Depends(get_refund_ledger),
):
    result = ledger.initiate_refund(
        payload.payment_id,
        amount=payload.amount,
        speed=payload.speed,
        reason=payload.reason,
        actor=actor,
        notes=payload.notes,
        receipt=payload.receipt,
    )
    return unwrap_or_raise(result)


@router.get("/refunds")
def refunds_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    ledger: RefundLedger = Depends(get_refund_ledger),
):
    start, end = _date_range(start_date, end_date)
    return unwrap_or_raise(ledger.get_refund_history(page, page_size, status, start, end))


@router.get("/refunds/export")
def refunds_export(
    start_date: str | None = None,
    end_date: str | None = None,
    ledger: RefundLedger = Depends(get_refund_ledger),
):
    start, end = _date_range(start_date, end_date)
    return _csv(unwrap_or_raise(ledger.export_refunds(start, end)), "refunds.csv")


@router.get("/refunds/{refund_id}")
def refunds_get(refund_id: str, ledger: RefundLedger = Depends(get_refund_ledger)):
    return unwrap_or_raise(ledger.get_refund(refund_id))


@router.get("/payments/{payment_id}/refunds")
def payment_refunds(payment_id: str, ledger: RefundLedger = Depends(get_refund_ledger)):
    return unwrap_or_raise(ledger.get_refunds_for_payment(payment_id))


@router.post("/payments/{payment_id}/refunds/sync")
def payment_refunds_sync(payment_id: str, ledger: RefundLedger = Depends(get_refund_ledger)):
    return unwrap_or_raise(ledger.check_payment_refund_status(payment_id))


# ---------- Financial ----------
@router.get("/financial/metrics")
def financial_metrics(svc: FinancialMetricsAggregator = Depends(get_financial_aggregator)):
    return unwrap_or_raise(svc.get_financial_metrics())


@router.get("/financial/refund-metrics")
def financial_refund_metrics(svc: FinancialMetricsAggregator = Depends(get_financial_aggregator)):
    return unwrap_or_raise(svc.get_refund_metrics())


@router.get("/financial/payments")
def financial_payments(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    svc: FinancialMetricsAggregator = Depends(get_financial_aggregator),
):
    start, end = _date_range(start_date, end_date)
    return unwrap_or_raise(svc.get_payment_history(page, page_size, status, start, end))


@router.get("/financial/payments/export")
def financial_payments_export(
    start_date: str | None = None,
    end_date: str | None = None,
    svc: FinancialMetricsAggregator = Depends(get_financial_aggregator),
):
    start, end = _date_range(start_date, end_date)
    return _csv(unwrap_or_raise(svc.export_payments(start, end)), "payments.csv")


@router.get("/financial/subscriptions/export")
def financial_subscriptions_export(
    start_date: str | None = None,
    end_date: str | None = None,
    svc: FinancialMetricsAggregator = Depends(get_financial_aggregator),
):
    start, end = _date_range(start_date, end_date)
    return _csv(unwrap_or_raise(svc.export_subscriptions(start, end)), "subscriptions.csv")


@router.get("/financial/export")
def financial_export_all(
    start_date: str | None = None,
    end_date: str | None = None,
    svc: FinancialMetricsAggregator = Depends(get_financial_aggregator),
):
    start, end = _date_range(start_date, end_date)
    return _csv(unwrap_or_raise(svc.export_all(start, end)), "payments_and_subscriptions.csv")


@router.get("/financial/users/{user_email}/transactions")
def financial_user_transactions(
    user_email: str,
    svc: FinancialMetricsAggregator = Depends(get_financial_aggregator),
):
    return unwrap_or_raise(svc.get_user_transactions(user_email))


# ---------- Subscriptions ----------
@router.get("/subscriptions")
def subscriptions_list(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: str | None = None,
    svc: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    return unwrap_or_raise(svc.list_subscriptions(page, page_size, status))


@router.get("/subscriptions/analytics")
def subscriptions_analytics(svc: SubscriptionLifecycleManager = Depends(get_subscription_manager)):
    return unwrap_or_raise(svc.get_subscription_analytics())


@router.post("/subscriptions/activate")
def subscriptions_activate(
    payload: ActivateSubscriptionRequest,
    svc: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    return unwrap_or_raise(svc.activate_subscription(payload.payment_id, payload.service, payload.duration_days))


@router.post("/subscriptions/cancel")
def subscriptions_cancel(
    payload: CancelSubscriptionRequest,
    actor: str = Depends(get_actor),
    svc: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    return unwrap_or_raise(svc.cancel_subscription(payload.user_email, actor, payload.reason))


@router.get("/subscriptions/users/{user_email}")
def subscriptions_user_status(
    user_email: str,
    svc: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    return unwrap_or_raise(svc.get_subscription_status(user_email))


@router.get("/subscriptions/users/{user_email}/history")
def subscriptions_user_history(
    user_email: str,
    svc: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    return unwrap_or_raise(svc.get_subscription_history(user_email))


# ---------- Metrics cache ----------
@router.get("/cache/stats")
def cache_stats(cache: TTLCache = Depends(get_metrics_cache)):
    stats = cache.stats()
    return {
        "ttl_seconds": cache.ttl_seconds,
        "total_entries": stats.total_entries,
        "valid_entries": stats.valid_entries,
        "expired_entries": stats.expired_entries,
        "hits": stats.hits,
        "misses": stats.misses,
    }


@router.post("/cache/clear")
def cache_clear(cache: TTLCache = Depends(get_metrics_cache)):
    return {"cleared": cache.clear()}
