"""
Read-only financial reporting over payments, refunds and subscriptions.

Amounts are stored in minor units and reported in major units. Metric groups degrade
independently: if refund data can't be read, refund fields are 0 and the call still succeeds.
"""
import csv
import io
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.models.payment import Payment, PaymentStatus
from billing.models.refund import Refund, RefundSpeed, RefundStatus
from billing.models.subscription import Subscription, SubscriptionStatus
from billing.services.cache import TTLCache
from billing.services.refunds.ledger import refund_to_dict
from billing.services.result import ErrorKind, Result
from billing.utils.currency import to_major
from billing.utils.dates import as_utc, last_n_month_keys, month_key, month_start, shift_months, utcnow
from billing.utils.pagination import pagination_meta, valid_page

logger = logging.getLogger(__name__)

FINANCIAL_METRICS_KEY = "financial_metrics"
REFUND_METRICS_KEY = "refund_metrics"

PAYMENT_METHOD = "Razorpay"
PAYMENT_EXPORT_HEADER = [
    "Payment ID", "User Email", "Amount", "Currency", "Payment Method",
    "Status", "Transaction ID", "Created At",
]
SUBSCRIPTION_EXPORT_HEADER = [
    "Subscription ID", "User Email", "Service", "Status", "Amount", "Currency", "Payment ID",
    "Start Date", "End Date", "Grace Period End", "Cancelled Date", "Created Date",
]


def payment_to_dict(payment: Payment) -> dict[str, Any]:
    return {
        "id": payment.id,
        "user_email": payment.user_email,
        "order_id": payment.order_id,
        "amount": to_major(payment.amount),
        "amount_minor": payment.amount,
        "currency": payment.currency,
        "payment_method": PAYMENT_METHOD,
        "status": PaymentStatus(payment.status).value,
        "transaction_id": payment.provider_payment_id,
        "created_at": as_utc(payment.created_at),
    }


def _refund_rate(total_refunds: float, total_revenue: float) -> float:
    if total_revenue <= 0:
        return 0.0
    return round(total_refunds / total_revenue * 100, 2)


class FinancialMetricsAggregator:
    def __init__(
        self,
        db: Session,
        cache: TTLCache | None = None,
        clock: Callable[[], datetime] = utcnow,
        export_limit: int | None = None,
        chart_months: int | None = None,
    ) -> None:
        self.db = db
        self.cache = cache
        self.clock = clock
        self.export_limit = export_limit or settings.export_max_records
        self.chart_months = chart_months or settings.refund_monthly_chart_months

    def _cached(self, key: str, compute: Callable[[], Result[dict]]) -> Result[dict]:
        if self.cache is not None:
            hit = self.cache.get(key)
            if hit is not None:
                return Result.success(hit)
        result = compute()
        # failures are never cached
        if result.ok and self.cache is not None:
            self.cache.set(key, result.value)
        return result

    # ------------------------------------------------------------------
    # Revenue
    # ------------------------------------------------------------------

    def get_financial_metrics(self) -> Result[dict]:
        return self._cached(FINANCIAL_METRICS_KEY, self._compute_financial_metrics)

    def _compute_financial_metrics(self) -> Result[dict]:
        now = self.clock()
        try:
            total_minor, count = (
                self.db.query(func.coalesce(func.sum(Payment.amount), 0), func.count(Payment.id))
                .filter(Payment.status == PaymentStatus.VERIFIED)
                .one()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("financial_metrics_payments_failed")
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to aggregate payments: {e}")

        chart = self._monthly_revenue_chart(now)
        total_revenue = to_major(total_minor)

        try:
            total_refunds, monthly_refunds = self._processed_refund_totals(now)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("financial_metrics_refunds_degraded", extra={"error": str(e)})
            total_refunds, monthly_refunds = 0.0, 0.0

        return Result.success({
            "total_revenue": total_revenue,
            "monthly_revenue": chart[-1]["revenue"],
            "total_payments_count": int(count),
            "monthly_revenue_chart": chart,
            "total_refunds": total_refunds,
            "monthly_refunds": monthly_refunds,
            "refund_rate": _refund_rate(total_refunds, total_revenue),
            "net_revenue": round(total_revenue - total_refunds, 2),
        })

    def _monthly_revenue_chart(self, now: datetime) -> list[dict[str, Any]]:
        """Last 12 months, oldest first, zero-filled."""
        keys = last_n_month_keys(12, now)
        buckets: dict[str, int] = defaultdict(int)
        try:
            rows = (
                self.db.query(Payment.created_at, Payment.amount)
                .filter(Payment.status == PaymentStatus.VERIFIED, Payment.created_at >= shift_months(now, -11))
                .all()
            )
            for created_at, amount in rows:
                buckets[month_key(created_at)] += amount
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("financial_metrics_chart_degraded", extra={"error": str(e)})
        return [{"month": key, "revenue": to_major(buckets.get(key, 0))} for key in keys]

    def _processed_refund_totals(self, now: datetime) -> tuple[float, float]:
        processed = self.db.query(func.coalesce(func.sum(Refund.amount), 0)).filter(
            Refund.status == RefundStatus.PROCESSED
        )
        total = processed.scalar()
        monthly = processed.filter(Refund.processed_at >= month_start(now)).scalar()
        return to_major(total), to_major(monthly)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def _payments_query(self, status: str | None, start: datetime | None, end: datetime | None):
        query = self.db.query(Payment)
        if status:
            query = query.filter(Payment.status == PaymentStatus(status.lower()))
        if start:
            query = query.filter(Payment.created_at >= start)
        if end:
            query = query.filter(Payment.created_at <= end)
        return query

    def get_payment_history(
        self,
        page: int = 1,
        page_size: int = 20,
        status: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> Result[dict]:
        if not valid_page(page, page_size):
            return Result.failure(ErrorKind.VALIDATION, "page must be >= 1 and page_size between 1 and 100")
        if start and end and start > end:
            return Result.failure(ErrorKind.VALIDATION, "start date must not be after end date")
        try:
            query = self._payments_query(status, start, end)
        except ValueError:
            return Result.failure(ErrorKind.VALIDATION, f"Unknown payment status: {status}")
        try:
            total = query.count()
            rows = query.order_by(Payment.created_at.desc()).offset((page - 1) * page_size).limit(page_size).all()
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to load payment history: {e}")
        return Result.success({
            "payments": [payment_to_dict(p) for p in rows],
            "pagination": pagination_meta(page, page_size, total),
        })

    # ------------------------------------------------------------------
    # Exports
    # ------------------------------------------------------------------

    def _over_limit(self, what: str, count: int) -> Result[str] | None:
        if count <= self.export_limit:
            return None
        logger.warning("export_over_limit", extra={"task": what, "count": count})
        return Result.failure(
            ErrorKind.VALIDATION,
            f"Export exceeds {self.export_limit:,} records limit. Please narrow your date range.",
            count=count,
            limit=self.export_limit,
        )

    @staticmethod
    def _payment_rows(payments: list[Payment]) -> list[list[str]]:
        return [
            [
                p.id,
                p.user_email,
                f"{to_major(p.amount):.2f}",
                p.currency,
                PAYMENT_METHOD,
                PaymentStatus(p.status).value,
                p.provider_payment_id,
                as_utc(p.created_at).isoformat(),
            ]
            for p in payments
        ]

    @staticmethod
    def _subscription_rows(subscriptions: list[Subscription]) -> list[list[str]]:
        def stamp(value: datetime | None) -> str:
            return as_utc(value).isoformat() if value else ""

        return [
            [
                s.id,
                s.user_email,
                s.service,
                SubscriptionStatus(s.status).value,
                f"{to_major(s.amount):.2f}" if s.amount is not None else "",
                s.currency or "",
                s.payment_id or "",
                stamp(s.start_date),
                stamp(s.end_date),
                stamp(s.grace_period_end),
                stamp(s.cancelled_at),
                stamp(s.created_at),
            ]
            for s in subscriptions
        ]

    @staticmethod
    def _write_csv(writer, header: list[str], rows: list[list[str]]) -> None:
        writer.writerow(header)
        writer.writerows(rows)

    def export_payments(self, start: datetime | None = None, end: datetime | None = None) -> Result[str]:
        """CSV of payments in the range; refuses (and exports nothing) above the record cap."""
        if start and end and start > end:
            return Result.failure(ErrorKind.VALIDATION, "start date must not be after end date")
        try:
            query = self._payments_query(None, start, end)
            rejected = self._over_limit("payments", query.count())
            if rejected is not None:
                return rejected
            rows = query.order_by(Payment.created_at.desc()).all()
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to export payments: {e}")

        buf = io.StringIO()
        self._write_csv(csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n"),
                        PAYMENT_EXPORT_HEADER, self._payment_rows(rows))
        logger.info("payments_exported", extra={"count": len(rows)})
        return Result.success(buf.getvalue())

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _subscriptions_query(self, start: datetime | None, end: datetime | None):
        query = self.db.query(Subscription)
        if start:
            query = query.filter(Subscription.created_at >= start)
        if end:
            query = query.filter(Subscription.created_at <= end)
        return query

    def export_subscriptions(self, start: datetime | None = None, end: datetime | None = None) -> Result[str]:
        """CSV of subscriptions created in the range, under the same record cap as payments."""
        if start and end and start > end:
            return Result.failure(ErrorKind.VALIDATION, "start date must not be after end date")
        try:
            query = self._subscriptions_query(start, end)
            rejected = self._over_limit("subscriptions", query.count())
            if rejected is not None:
                return rejected
            rows = query.order_by(Subscription.created_at.desc()).all()
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to export subscriptions: {e}")

        buf = io.StringIO()
        self._write_csv(csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n"),
                        SUBSCRIPTION_EXPORT_HEADER, self._subscription_rows(rows))
        logger.info("subscriptions_exported", extra={"count": len(rows)})
        return Result.success(buf.getvalue())

    def export_all(self, start: datetime | None = None, end: datetime | None = None) -> Result[str]:
        """
        Payments and subscriptions in one CSV document, one titled section each, separated by a
        blank line. The cap applies to the two sections together.
        """
        if start and end and start > end:
            return Result.failure(ErrorKind.VALIDATION, "start date must not be after end date")
        try:
            payments = self._payments_query(None, start, end)
            subscriptions = self._subscriptions_query(start, end)
            rejected = self._over_limit("payments_and_subscriptions", payments.count() + subscriptions.count())
            if rejected is not None:
                return rejected
            payment_rows = payments.order_by(Payment.created_at.desc()).all()
            subscription_rows = subscriptions.order_by(Subscription.created_at.desc()).all()
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to export payments and subscriptions: {e}")

        buf = io.StringIO()
        writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(["Payments"])
        self._write_csv(writer, PAYMENT_EXPORT_HEADER, self._payment_rows(payment_rows))
        writer.writerow([])
        writer.writerow(["Subscriptions"])
        self._write_csv(writer, SUBSCRIPTION_EXPORT_HEADER, self._subscription_rows(subscription_rows))
        logger.info("combined_export", extra={"count": len(payment_rows) + len(subscription_rows)})
        return Result.success(buf.getvalue())

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def get_refund_metrics(self) -> Result[dict]:
        return self._cached(REFUND_METRICS_KEY, self._compute_refund_metrics)

    def _compute_refund_metrics(self) -> Result[dict]:
        now = self.clock()
        this_month = month_start(now)
        try:
            total_minor, total_count = (
                self.db.query(func.coalesce(func.sum(Refund.amount), 0), func.count(Refund.id))
                .filter(Refund.status == RefundStatus.PROCESSED)
                .one()
            )
            monthly_minor, monthly_count = (
                self.db.query(func.coalesce(func.sum(Refund.amount), 0), func.count(Refund.id))
                .filter(Refund.status == RefundStatus.PROCESSED, Refund.processed_at >= this_month)
                .one()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("refund_metrics_failed")
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to aggregate refunds: {e}")

        speed_counts = {RefundSpeed.OPTIMUM: 0, RefundSpeed.NORMAL: 0}
        try:
            rows = (
                self.db.query(Refund.speed_processed, func.count(Refund.id))
                .filter(Refund.status == RefundStatus.PROCESSED, Refund.speed_processed.isnot(None))
                .group_by(Refund.speed_processed)
                .all()
            )
            for speed, count in rows:
                speed_counts[RefundSpeed(speed)] = count
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("refund_metrics_speed_degraded", extra={"error": str(e)})

        average_hours = 0.0
        chart_keys = last_n_month_keys(self.chart_months, now)
        amounts: dict[str, int] = defaultdict(int)
        counts: dict[str, int] = defaultdict(int)
        try:
            timings = (
                self.db.query(Refund.amount, Refund.created_at, Refund.processed_at)
                .filter(Refund.status == RefundStatus.PROCESSED, Refund.processed_at.isnot(None))
                .all()
            )
            window_start = shift_months(now, -(self.chart_months - 1))
            hours = []
            for amount, created_at, processed_at in timings:
                processed_at = as_utc(processed_at)
                hours.append((processed_at - as_utc(created_at)).total_seconds() / 3600)
                if processed_at >= window_start:
                    key = month_key(processed_at)
                    amounts[key] += amount
                    counts[key] += 1
            if hours:
                average_hours = round(sum(hours) / len(hours), 2)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("refund_metrics_timing_degraded", extra={"error": str(e)})

        total_refunds = to_major(total_minor)
        try:
            revenue_minor = (
                self.db.query(func.coalesce(func.sum(Payment.amount), 0))
                .filter(Payment.status == PaymentStatus.VERIFIED)
                .scalar()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("refund_metrics_revenue_degraded", extra={"error": str(e)})
            revenue_minor = 0

        return Result.success({
            "total_refunds": total_refunds,
            "monthly_refunds": to_major(monthly_minor),
            "refund_rate": _refund_rate(total_refunds, to_major(revenue_minor)),
            "total_refund_count": int(total_count),
            "monthly_refund_count": int(monthly_count),
            "instant_refund_count": speed_counts[RefundSpeed.OPTIMUM],
            "normal_refund_count": speed_counts[RefundSpeed.NORMAL],
            "average_processing_time_hours": average_hours,
            "monthly_refund_chart": [
                {"month": key, "refund_amount": to_major(amounts.get(key, 0)), "refund_count": counts.get(key, 0)}
                for key in chart_keys
            ],
        })

    # ------------------------------------------------------------------
    # Per user
    # ------------------------------------------------------------------

    def get_user_transactions(self, user_email: str) -> Result[dict]:
        try:
            payments = (
                self.db.query(Payment)
                .filter(Payment.user_email == user_email)
                .order_by(Payment.created_at.desc())
                .all()
            )
            refunds = (
                self.db.query(Refund)
                .filter(Refund.user_email == user_email)
                .order_by(Refund.created_at.desc())
                .all()
            )
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to load transactions: {e}")

        paid = sum(p.amount for p in payments if PaymentStatus(p.status) is PaymentStatus.VERIFIED)
        refunded = sum(r.amount for r in refunds if RefundStatus(r.status) is RefundStatus.PROCESSED)
        return Result.success({
            "user_email": user_email,
            "payments": [payment_to_dict(p) for p in payments],
            "refunds": [refund_to_dict(r) for r in refunds],
            "total_paid": to_major(paid),
            "total_refunded": to_major(refunded),
        })
