"""
Refund ledger.

Guarantees that, per payment, the sum of PROCESSED refunds never exceeds the payment amount.

Flow of initiate_refund:
1. Under the per-payment lock (and a row lock on the payment), compute what is still
   refundable, counting PENDING refunds as reserved, and insert a PENDING refund. Commit.
2. Outside the lock, call the provider.
3. Finalize PENDING -> PROCESSED / FAILED with a conditional UPDATE, so the webhook and the
   request path can never both finalize the same refund.

A refund left PENDING (lost webhook, crash after step 1) is settled by check_payment_refund_status,
which asks the provider for the payment's refunds.
"""
import csv
import io
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.models.payment import Payment, PaymentStatus
from billing.models.refund import Refund, RefundSpeed, RefundStatus
from billing.services.audit.service import AuditService
from billing.services.cache import TTLCache
from billing.services.refunds.locks import LockTimeout, PaymentLocks
from billing.services.refunds.provider import ProviderError, ProviderRefund, RefundProvider
from billing.services.result import ErrorKind, Result
from billing.services.subscriptions.service import SubscriptionLifecycleManager
from billing.utils.currency import to_major
from billing.utils.dates import as_utc, utcnow
from billing.utils.metrics import refund_rejections_total, refunds_total
from billing.utils.pagination import pagination_meta, valid_page

logger = logging.getLogger(__name__)

# keys the ledger drops from the metrics cache when money actually leaves
METRICS_CACHE_KEYS = ("financial_metrics", "refund_metrics")

PROVIDER_TERMINAL_STATUS = {"processed": RefundStatus.PROCESSED, "failed": RefundStatus.FAILED}

REFUND_EXPORT_HEADER = [
    "Refund ID", "Payment ID", "User Email", "Amount", "Currency", "Status",
    "Refund Type", "Reason", "Processed By", "Created Date", "Processed Date",
]


def refund_to_dict(refund: Refund) -> dict[str, Any]:
    return {
        "id": refund.id,
        "provider_refund_id": refund.provider_refund_id,
        "payment_id": refund.payment_id,
        "user_email": refund.user_email,
        "amount": refund.amount,
        "amount_major": to_major(refund.amount),
        "currency": refund.currency,
        "status": RefundStatus(refund.status).value,
        "speed_requested": RefundSpeed(refund.speed_requested).value,
        "speed_processed": RefundSpeed(refund.speed_processed).value if refund.speed_processed else None,
        "reason": refund.reason,
        "processed_by": refund.processed_by,
        "created_at": as_utc(refund.created_at),
        "processed_at": as_utc(refund.processed_at),
        "failed_at": as_utc(refund.failed_at),
        "error_code": refund.error_code,
        "error_description": refund.error_description,
    }


class RefundLedger:
    def __init__(
        self,
        db: Session,
        provider: RefundProvider,
        locks: PaymentLocks,
        metrics_cache: TTLCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.provider = provider
        self.locks = locks
        self.metrics_cache = metrics_cache
        self.clock = clock
        self.audit = AuditService(db)
        self.subscriptions = SubscriptionLifecycleManager(db, clock=clock)

    # ------------------------------------------------------------------
    # Sums
    # ------------------------------------------------------------------

    def _refund_totals(self, payment_id: str) -> tuple[int, int]:
        """
        (processed, committed) for a payment, read in one statement. `committed` is PROCESSED plus
        PENDING; a refund settling PENDING -> PROCESSED concurrently leaves it unchanged.
        """
        processed, committed = (
            self.db.query(
                func.coalesce(func.sum(case((Refund.status == RefundStatus.PROCESSED, Refund.amount), else_=0)), 0),
                func.coalesce(func.sum(Refund.amount), 0),
            )
            .filter(
                Refund.payment_id == payment_id,
                Refund.status.in_((RefundStatus.PROCESSED, RefundStatus.PENDING)),
            )
            .one()
        )
        return int(processed or 0), int(committed or 0)

    def _reject(self, kind: ErrorKind, message: str, **details: Any) -> Result[dict]:
        refund_rejections_total.labels(kind=kind.value).inc()
        logger.warning("refund_rejected", extra={"payment_id": details.get("payment_id"), "error": message})
        return Result.failure(kind, message, **details)

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------

    def initiate_refund(
        self,
        payment_id: str,
        amount: int | None = None,
        speed: RefundSpeed = RefundSpeed.OPTIMUM,
        reason: str | None = None,
        actor: str = "system",
        notes: str | None = None,
        receipt: str | None = None,
    ) -> Result[dict]:
        """
        Refund `amount` minor units of a verified payment; None refunds everything remaining.
        Returns the refund as a dict (status PROCESSED, FAILED, or PENDING when the provider
        settles asynchronously).
        """
        if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0):
            return self._reject(ErrorKind.VALIDATION, "Refund amount must be a positive integer", payment_id=payment_id)

        try:
            with self.locks.hold(payment_id):
                reserved = self._reserve(payment_id, amount, speed, reason, actor, notes, receipt)
        except LockTimeout as e:
            return self._reject(ErrorKind.CONFLICT, str(e), payment_id=payment_id)
        if not reserved.ok:
            return reserved

        refund_id, provider_payment_id, refund_amount = reserved.value
        try:
            return self._settle(refund_id, payment_id, provider_payment_id, refund_amount, speed,
                                notes or reason, receipt)
        except SQLAlchemyError as e:
            self.db.rollback()
            # the row stays PENDING; check_payment_refund_status or the webhook settles it later
            logger.exception("refund_settle_failed", extra={"refund_id": refund_id, "payment_id": payment_id})
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to record refund outcome: {e}",
                                  refund_id=refund_id, payment_id=payment_id)

    def _settle(
        self,
        refund_id: str,
        payment_id: str,
        provider_payment_id: str,
        refund_amount: int,
        speed: RefundSpeed,
        notes: str | None,
        receipt: str | None,
    ) -> Result[dict]:
        try:
            response = self.provider.create_refund(
                provider_payment_id, refund_amount, speed, notes=notes, receipt=receipt, reference=refund_id
            )
        except ProviderError as e:
            logger.error("refund_provider_failed", extra={"refund_id": refund_id, "payment_id": payment_id, "error": e.code})
            self.finalize(refund_id, RefundStatus.FAILED, error_code=e.code, error_description=e.description)
            refund = self.db.query(Refund).filter(Refund.id == refund_id).one()
            return Result.failure(ErrorKind.PROVIDER, e.description, refund=refund_to_dict(refund), error_code=e.code)
        except Exception as e:
            # the refund row must not stay PENDING forever, holding reserved capacity
            logger.exception("refund_provider_unexpected_error", extra={"refund_id": refund_id, "payment_id": payment_id})
            self.finalize(refund_id, RefundStatus.FAILED, error_code="UNEXPECTED_ERROR", error_description=str(e))
            refund = self.db.query(Refund).filter(Refund.id == refund_id).one()
            return Result.failure(ErrorKind.PROVIDER, "Refund provider call failed", refund=refund_to_dict(refund))

        self._apply_provider_response(refund_id, response)
        refund = self.db.query(Refund).filter(Refund.id == refund_id).one()
        return Result.success(refund_to_dict(refund))

    def _reserve(
        self,
        payment_id: str,
        amount: int | None,
        speed: RefundSpeed,
        reason: str | None,
        actor: str,
        notes: str | None,
        receipt: str | None,
    ) -> Result[tuple[str, str, int]]:
        """Check-then-write; must run under the payment lock. Commits a PENDING refund."""
        try:
            payment = (
                self.db.query(Payment)
                .filter(Payment.id == payment_id)
                .with_for_update()
                .one_or_none()
            )
            if payment is None:
                self.db.rollback()
                return self._reject(ErrorKind.NOT_FOUND, "Payment not found", payment_id=payment_id)
            if PaymentStatus(payment.status) is not PaymentStatus.VERIFIED:
                self.db.rollback()
                return self._reject(ErrorKind.VALIDATION, "Only verified payments can be refunded", payment_id=payment_id)

            processed, committed = self._refund_totals(payment_id)
            remaining = payment.amount - processed
            pending = committed - processed
            refund_amount = amount if amount is not None else remaining

            if remaining <= 0:
                self.db.rollback()
                return self._reject(ErrorKind.INVARIANT_VIOLATION, "Payment is already fully refunded",
                                    payment_id=payment_id, remaining_refundable=0)
            if refund_amount > remaining:
                self.db.rollback()
                return self._reject(
                    ErrorKind.INVARIANT_VIOLATION,
                    f"Refund amount {refund_amount} exceeds remaining refundable amount {remaining}",
                    payment_id=payment_id, remaining_refundable=remaining,
                )
            if refund_amount > payment.amount - committed:
                self.db.rollback()
                return self._reject(
                    ErrorKind.CONFLICT,
                    "Another refund for this payment is still in progress",
                    payment_id=payment_id, remaining_refundable=remaining, pending_amount=pending,
                )

            now = self.clock()
            refund = Refund(
                payment_id=payment.id,
                user_email=payment.user_email,
                amount=refund_amount,
                currency=payment.currency,
                status=RefundStatus.PENDING,
                speed_requested=speed,
                processed_by=actor,
                reason=reason,
                notes=notes,
                receipt=receipt,
                created_at=now,
            )
            self.db.add(refund)
            self.db.flush()
            self.audit.log(
                "admin" if actor != "system" else "system", actor, "refund_initiated", "refund", refund.id,
                {"payment_id": payment.id, "amount": refund_amount, "speed": speed.value, "reason": reason},
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("refund_reserve_failed", extra={"payment_id": payment_id})
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to record refund: {e}", payment_id=payment_id)

        logger.info(
            "refund_initiated",
            extra={"refund_id": refund.id, "payment_id": payment_id, "amount": refund_amount, "actor": actor},
        )
        return Result.success((refund.id, payment.provider_payment_id, refund_amount))

    def _apply_provider_response(self, refund_id: str, response: ProviderRefund) -> None:
        status = PROVIDER_TERMINAL_STATUS.get(response.status, RefundStatus.PENDING)
        if status is RefundStatus.PENDING:
            # settled later by the refund.processed / refund.failed webhook
            self.db.query(Refund).filter(Refund.id == refund_id, Refund.status == RefundStatus.PENDING).update(
                {Refund.provider_refund_id: response.provider_refund_id}, synchronize_session=False
            )
            self.db.commit()
            refunds_total.labels(outcome="pending").inc()
            logger.info("refund_awaiting_provider", extra={"refund_id": refund_id, "status": response.status})
            return
        self.finalize(
            refund_id,
            status,
            provider_refund_id=response.provider_refund_id,
            speed_processed=response.speed_processed,
            error_code="PROVIDER_FAILED" if status is RefundStatus.FAILED else None,
        )

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    def finalize(
        self,
        refund_id: str,
        status: RefundStatus,
        provider_refund_id: str | None = None,
        speed_processed: RefundSpeed | None = None,
        error_code: str | None = None,
        error_description: str | None = None,
    ) -> bool:
        """
        Move a PENDING refund to PROCESSED or FAILED. Returns False when the refund was already
        terminal, so repeated provider updates are no-ops.
        """
        if not status.is_terminal:
            raise ValueError("finalize() needs a terminal status")
        now = self.clock()
        values: dict[Any, Any] = {Refund.status: status}
        if provider_refund_id:
            values[Refund.provider_refund_id] = provider_refund_id
        if speed_processed is not None:
            values[Refund.speed_processed] = speed_processed
        if status is RefundStatus.PROCESSED:
            values[Refund.processed_at] = now
        else:
            values[Refund.failed_at] = now
            values[Refund.error_code] = error_code or "PROVIDER_ERROR"
            values[Refund.error_description] = error_description

        try:
            rows = (
                self.db.query(Refund)
                .filter(Refund.id == refund_id, Refund.status == RefundStatus.PENDING)
                .update(values, synchronize_session=False)
            )
            if rows != 1:
                self.db.rollback()
                logger.info("refund_already_final", extra={"refund_id": refund_id})
                return False
            self.audit.log("system", None, f"refund_{status.value.lower()}", "refund", refund_id,
                           {"error_code": error_code} if error_code else {})
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("refund_finalize_failed", extra={"refund_id": refund_id})
            raise

        refunds_total.labels(outcome=status.value.lower()).inc()
        logger.info("refund_finalized", extra={"refund_id": refund_id, "status": status.value})
        if status is RefundStatus.PROCESSED:
            self._after_processed(refund_id)
        return True

    def _after_processed(self, refund_id: str) -> None:
        if self.metrics_cache is not None:
            for key in METRICS_CACHE_KEYS:
                self.metrics_cache.invalidate(key)

        refund = self.db.query(Refund).filter(Refund.id == refund_id).one()
        payment = self.db.query(Payment).filter(Payment.id == refund.payment_id).one_or_none()
        if payment is None or self._refund_totals(payment.id)[0] < payment.amount:
            return
        # fully refunded: the subscription it bought goes away; a failure here must not undo the refund
        try:
            self.subscriptions.cancel_for_payment(payment.id, actor="system", reason="payment_fully_refunded")
        except Exception:
            self.db.rollback()
            logger.exception("refund_auto_cancel_failed", extra={"payment_id": payment.id, "refund_id": refund_id})

    def apply_provider_update(
        self,
        provider_refund_id: str,
        status: str,
        speed_processed: RefundSpeed | None = None,
        error_code: str | None = None,
        error_description: str | None = None,
    ) -> Result[bool]:
        """Settle a refund from an asynchronous provider notification. Result value: whether it changed."""
        refund = self.db.query(Refund).filter(Refund.provider_refund_id == provider_refund_id).one_or_none()
        if refund is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Refund not found", provider_refund_id=provider_refund_id)
        target = PROVIDER_TERMINAL_STATUS.get(status)
        if target is None:
            return Result.success(False)
        try:
            changed = self.finalize(
                refund.id, target, speed_processed=speed_processed,
                error_code=error_code, error_description=error_description,
            )
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to update refund: {e}")
        return Result.success(changed)

    # ------------------------------------------------------------------
    # Provider sync
    # ------------------------------------------------------------------

    def check_payment_refund_status(self, payment_id: str) -> Result[dict]:
        """
        Reconcile a payment's refunds with what the provider holds, then return the local summary
        (see get_refunds_for_payment) plus `synced`, the number of rows created or settled.

        - PENDING rows the provider reports as processed/failed are finalized.
        - Provider refunds with no local row (e.g. issued from the dashboard) are recorded.
        - PENDING rows the provider has never seen, older than REFUND_PENDING_STALE_MINUTES,
          are failed so their reservation is released.

        When the provider can't be reached the local summary is returned unchanged.
        """
        try:
            payment = self.db.query(Payment).filter(Payment.id == payment_id).one_or_none()
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to load payment: {e}")
        if payment is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Payment not found", payment_id=payment_id)

        try:
            remote = self.provider.fetch_refunds(payment.provider_payment_id)
        except ProviderError as e:
            logger.warning("refund_sync_provider_unavailable", extra={"payment_id": payment_id, "error": e.code})
            return self.get_refunds_for_payment(payment_id)

        try:
            with self.locks.hold(payment_id):
                synced = self._sync_with_provider(payment, remote)
        except LockTimeout as e:
            return Result.failure(ErrorKind.CONFLICT, str(e), payment_id=payment_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("refund_sync_failed", extra={"payment_id": payment_id})
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to sync refunds: {e}", payment_id=payment_id)

        logger.info("refund_sync_done", extra={"payment_id": payment_id, "count": synced})
        summary = self.get_refunds_for_payment(payment_id)
        if not summary.ok:
            return summary
        return Result.success({**summary.value, "synced": synced})

    def _sync_with_provider(self, payment: Payment, remote: list[ProviderRefund]) -> int:
        local = self.db.query(Refund).filter(Refund.payment_id == payment.id).all()
        by_provider_id = {r.provider_refund_id: r for r in local if r.provider_refund_id}
        by_id = {r.id: r for r in local}
        pending_ids = [r.id for r in local if RefundStatus(r.status) is RefundStatus.PENDING]
        unseen = {r.id: r.created_at for r in local if r.id in pending_ids and not r.provider_refund_id}
        changed = 0

        for item in remote:
            refund = by_provider_id.get(item.provider_refund_id) or by_id.get(item.reference)
            if refund is None:
                self._record_provider_refund(payment, item)
                changed += 1
                continue
            unseen.pop(refund.id, None)
            if refund.id not in pending_ids:
                continue
            target = PROVIDER_TERMINAL_STATUS.get(item.status)
            if target is None:
                self.db.query(Refund).filter(Refund.id == refund.id, Refund.status == RefundStatus.PENDING).update(
                    {Refund.provider_refund_id: item.provider_refund_id}, synchronize_session=False
                )
                self.db.commit()
                continue
            if self.finalize(
                refund.id,
                target,
                provider_refund_id=item.provider_refund_id,
                speed_processed=item.speed_processed,
                error_code="PROVIDER_FAILED" if target is RefundStatus.FAILED else None,
            ):
                changed += 1

        cutoff = self.clock() - timedelta(minutes=settings.refund_pending_stale_minutes)
        for refund_id, created_at in unseen.items():
            if as_utc(created_at) > cutoff:
                continue
            if self.finalize(
                refund_id,
                RefundStatus.FAILED,
                error_code="NOT_FOUND_AT_PROVIDER",
                error_description="Provider has no record of this refund",
            ):
                changed += 1
        return changed

    def _record_provider_refund(self, payment: Payment, item: ProviderRefund) -> None:
        status = PROVIDER_TERMINAL_STATUS.get(item.status, RefundStatus.PENDING)
        now = self.clock()
        refund = Refund(
            payment_id=payment.id,
            user_email=payment.user_email,
            provider_refund_id=item.provider_refund_id,
            amount=item.amount,
            currency=payment.currency,
            status=status,
            speed_requested=item.speed_processed or RefundSpeed.NORMAL,
            speed_processed=item.speed_processed,
            processed_by="system",
            reason="Auto-synced from Razorpay",
            created_at=item.created_at or now,
            processed_at=now if status is RefundStatus.PROCESSED else None,
            failed_at=now if status is RefundStatus.FAILED else None,
            error_code="PROVIDER_FAILED" if status is RefundStatus.FAILED else None,
        )
        self.db.add(refund)
        self.db.flush()
        self.audit.log("system", None, "refund_synced", "refund", refund.id,
                       {"provider_refund_id": item.provider_refund_id, "amount": item.amount, "status": status.value})
        self.db.commit()
        logger.info("refund_synced_from_provider", extra={"refund_id": refund.id, "payment_id": payment.id})
        if status is RefundStatus.PROCESSED:
            self._after_processed(refund.id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_refunds_for_payment(self, payment_id: str) -> Result[dict]:
        try:
            payment = self.db.query(Payment).filter(Payment.id == payment_id).one_or_none()
            if payment is None:
                return Result.failure(ErrorKind.NOT_FOUND, "Payment not found", payment_id=payment_id)
            refunds = (
                self.db.query(Refund)
                .filter(Refund.payment_id == payment_id)
                .order_by(Refund.created_at.desc())
                .all()
            )
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to load refunds: {e}")

        processed = sum(r.amount for r in refunds if RefundStatus(r.status) is RefundStatus.PROCESSED)
        pending = sum(r.amount for r in refunds if RefundStatus(r.status) is RefundStatus.PENDING)
        remaining = max(payment.amount - processed, 0)
        return Result.success({
            "payment_id": payment.id,
            "original_amount": payment.amount,
            "total_refunded": processed,
            "pending_amount": pending,
            "remaining_refundable": remaining,
            "refunds": [refund_to_dict(r) for r in refunds],
            "is_fully_refunded": remaining == 0,
        })

    def get_refund(self, refund_id: str) -> Result[dict]:
        """Look up by internal id or provider refund id."""
        refund = (
            self.db.query(Refund)
            .filter((Refund.id == refund_id) | (Refund.provider_refund_id == refund_id))
            .first()
        )
        if refund is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Refund not found", refund_id=refund_id)
        return Result.success(refund_to_dict(refund))

    def _filtered(self, status: str | None, start: datetime | None, end: datetime | None):
        query = self.db.query(Refund)
        if status:
            query = query.filter(Refund.status == RefundStatus(status.upper()))
        if start:
            query = query.filter(Refund.created_at >= start)
        if end:
            query = query.filter(Refund.created_at <= end)
        return query

    def get_refund_history(
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
            query = self._filtered(status, start, end)
        except ValueError:
            return Result.failure(ErrorKind.VALIDATION, f"Unknown refund status: {status}")
        try:
            total = query.count()
            rows = query.order_by(Refund.created_at.desc()).offset((page - 1) * page_size).limit(page_size).all()
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to load refund history: {e}")
        return Result.success({
            "refunds": [refund_to_dict(r) for r in rows],
            "pagination": pagination_meta(page, page_size, total),
        })

    def export_refunds(self, start: datetime | None = None, end: datetime | None = None) -> Result[str]:
        if start and end and start > end:
            return Result.failure(ErrorKind.VALIDATION, "start date must not be after end date")
        limit = settings.export_max_records
        try:
            query = self._filtered(None, start, end)
            count = query.count()
            if count > limit:
                return Result.failure(
                    ErrorKind.VALIDATION,
                    f"Export exceeds {limit:,} records limit. Please narrow your date range.",
                    count=count, limit=limit,
                )
            rows = query.order_by(Refund.created_at.desc()).all()
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to export refunds: {e}")

        buf = io.StringIO()
        writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(REFUND_EXPORT_HEADER)
        for r in rows:
            processed_at = as_utc(r.processed_at)
            writer.writerow([
                r.id,
                r.payment_id,
                r.user_email,
                f"{to_major(r.amount):.2f}",
                r.currency,
                RefundStatus(r.status).value,
                RefundSpeed(r.speed_processed or r.speed_requested).value,
                r.reason or "",
                r.processed_by,
                as_utc(r.created_at).isoformat(),
                processed_at.isoformat() if processed_at else "",
            ])
        logger.info("refunds_exported", extra={"count": len(rows)})
        return Result.success(buf.getvalue())
