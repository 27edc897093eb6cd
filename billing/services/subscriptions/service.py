"""
Subscription lifecycle: ACTIVE -> GRACE_PERIOD -> EXPIRED, plus explicit cancellation.

Every transition is a compare-and-set UPDATE guarded by the expected current status, so a
tick that runs twice (or races the other runner, or an admin cancel) never applies a
transition twice and never moves a CANCELLED or EXPIRED row.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.models.payment import Payment, PaymentStatus
from billing.models.subscription import CANCELLABLE_STATUSES, Subscription, SubscriptionStatus
from billing.services.audit.service import AuditService
from billing.services.result import ErrorKind, Result
from billing.utils.currency import to_major
from billing.utils.dates import as_utc, utcnow
from billing.utils.metrics import subscription_transitions_total
from billing.utils.pagination import pagination_meta, valid_page

logger = logging.getLogger(__name__)


def subscription_to_dict(sub: Subscription) -> dict[str, Any]:
    status = SubscriptionStatus(sub.status)
    return {
        "id": sub.id,
        "user_email": sub.user_email,
        "service": sub.service,
        "status": status.value,
        "start_date": as_utc(sub.start_date),
        "end_date": as_utc(sub.end_date),
        "grace_period_end": as_utc(sub.grace_period_end),
        "payment_id": sub.payment_id,
        "amount": to_major(sub.amount),
        "currency": sub.currency,
        "last_notified_at": as_utc(sub.last_notified_at),
        "cancelled_at": as_utc(sub.cancelled_at),
        "created_at": as_utc(sub.created_at),
        "is_active": status in CANCELLABLE_STATUSES,
    }


class SubscriptionLifecycleManager:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        grace_period: timedelta | None = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.grace_period = grace_period if grace_period is not None else timedelta(hours=settings.grace_period_hours)
        self.audit = AuditService(db)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _compare_and_set(
        self,
        subscription_id: str,
        expected: tuple[SubscriptionStatus, ...],
        values: dict[Any, Any],
    ) -> bool:
        """UPDATE ... WHERE id = :id AND status IN :expected. True if this call moved the row."""
        values = {**values, Subscription.updated_at: self.clock()}
        rows = (
            self.db.query(Subscription)
            .filter(Subscription.id == subscription_id, Subscription.status.in_(expected))
            .update(values, synchronize_session=False)
        )
        return rows == 1

    def process_expired_subscriptions(self) -> int:
        """Move every ACTIVE subscription past its end date to GRACE_PERIOD. Returns the number moved."""
        now = self.clock()
        candidates = (
            self.db.query(Subscription.id, Subscription.end_date)
            .filter(Subscription.status == SubscriptionStatus.ACTIVE, Subscription.end_date < now)
            .all()
        )
        moved = 0
        for sub_id, end_date in candidates:
            try:
                grace_end = as_utc(end_date) + self.grace_period
                if self._compare_and_set(
                    sub_id,
                    (SubscriptionStatus.ACTIVE,),
                    {Subscription.status: SubscriptionStatus.GRACE_PERIOD, Subscription.grace_period_end: grace_end},
                ):
                    self.audit.log("system", "scheduler", "grace_period_started", "subscription", sub_id,
                                   {"grace_period_end": grace_end.isoformat()})
                    moved += 1
                    subscription_transitions_total.labels(transition="active_to_grace").inc()
                    logger.info("subscription_grace_period_started", extra={"subscription_id": sub_id})
                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.exception("subscription_expiry_transition_failed", extra={"subscription_id": sub_id})
        logger.info("subscription_expiry_check_done", extra={"count": moved})
        return moved

    def process_grace_period_expiry(self) -> int:
        """Move every GRACE_PERIOD subscription past its grace end to EXPIRED. Returns the number moved."""
        now = self.clock()
        candidates = (
            self.db.query(Subscription.id, Subscription.end_date, Subscription.grace_period_end)
            .filter(Subscription.status == SubscriptionStatus.GRACE_PERIOD)
            .all()
        )
        moved = 0
        for sub_id, end_date, grace_end in candidates:
            try:
                # rows written before grace_period_end existed fall back to end_date + grace
                effective_end = as_utc(grace_end) if grace_end is not None else as_utc(end_date) + self.grace_period
                if not now > effective_end:
                    continue
                if self._compare_and_set(
                    sub_id,
                    (SubscriptionStatus.GRACE_PERIOD,),
                    {Subscription.status: SubscriptionStatus.EXPIRED},
                ):
                    self.audit.log("system", "scheduler", "subscription_expired", "subscription", sub_id)
                    moved += 1
                    subscription_transitions_total.labels(transition="grace_to_expired").inc()
                    logger.info("subscription_expired", extra={"subscription_id": sub_id})
                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.exception("subscription_grace_transition_failed", extra={"subscription_id": sub_id})
        logger.info("subscription_grace_check_done", extra={"count": moved})
        return moved

    def _cancel_rows(self, rows: list[Subscription], actor: str, reason: str | None) -> list[str]:
        now = self.clock()
        cancelled = []
        for sub in rows:
            if self._compare_and_set(
                sub.id,
                CANCELLABLE_STATUSES,
                {Subscription.status: SubscriptionStatus.CANCELLED, Subscription.cancelled_at: now},
            ):
                self.audit.log("admin" if actor != "system" else "system", actor, "subscription_cancelled",
                               "subscription", sub.id, {"reason": reason})
                cancelled.append(sub.id)
                subscription_transitions_total.labels(transition="cancelled").inc()
        return cancelled

    def cancel_subscription(self, user_email: str, actor: str, reason: str | None = None) -> Result[dict]:
        """Cancel the user's live subscription(s) immediately, skipping grace."""
        try:
            rows = (
                self.db.query(Subscription)
                .filter(Subscription.user_email == user_email, Subscription.status.in_(CANCELLABLE_STATUSES))
                .order_by(Subscription.created_at.desc())
                .all()
            )
            if not rows:
                return Result.failure(ErrorKind.NOT_FOUND, "No active subscription found for user", user_email=user_email)
            cancelled = self._cancel_rows(rows, actor, reason)
            if not cancelled:
                self.db.rollback()
                return Result.failure(ErrorKind.CONFLICT, "Subscription changed state while cancelling", user_email=user_email)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("subscription_cancel_failed", extra={"user_email": user_email})
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to cancel subscription: {e}")

        logger.info("subscription_cancelled", extra={"user_email": user_email, "actor": actor, "count": len(cancelled)})
        sub = self.db.query(Subscription).filter(Subscription.id == cancelled[0]).one()
        return Result.success(subscription_to_dict(sub))

    def cancel_for_payment(self, payment_id: str, actor: str, reason: str | None = None) -> int:
        """Cancel live subscriptions bought by a payment. Commits; returns how many were cancelled."""
        rows = (
            self.db.query(Subscription)
            .filter(Subscription.payment_id == payment_id, Subscription.status.in_(CANCELLABLE_STATUSES))
            .all()
        )
        cancelled = self._cancel_rows(rows, actor, reason)
        self.db.commit()
        if cancelled:
            logger.info("subscription_cancelled", extra={"payment_id": payment_id, "actor": actor, "count": len(cancelled)})
        return len(cancelled)

    def activate_subscription(self, payment_id: str, service: str, duration_days: int) -> Result[dict]:
        """Create the subscription bought by a verified payment. Idempotent per payment."""
        if duration_days <= 0:
            return Result.failure(ErrorKind.VALIDATION, "duration_days must be positive")
        try:
            payment = self.db.query(Payment).filter(Payment.id == payment_id).one_or_none()
            if payment is None:
                return Result.failure(ErrorKind.NOT_FOUND, "Payment not found", payment_id=payment_id)
            if PaymentStatus(payment.status) is not PaymentStatus.VERIFIED:
                return Result.failure(ErrorKind.VALIDATION, "Payment is not verified", payment_id=payment_id)

            existing = self.db.query(Subscription).filter(Subscription.payment_id == payment_id).one_or_none()
            if existing is not None:
                return Result.success(subscription_to_dict(existing))

            now = self.clock()
            sub = Subscription(
                user_email=payment.user_email,
                service=service,
                start_date=now,
                end_date=now + timedelta(days=duration_days),
                status=SubscriptionStatus.ACTIVE,
                payment_id=payment.id,
                amount=payment.amount,
                currency=payment.currency,
                created_at=now,
                updated_at=now,
            )
            self.db.add(sub)
            self.db.flush()
            self.audit.log("system", None, "subscription_activated", "subscription", sub.id,
                           {"payment_id": payment_id, "duration_days": duration_days})
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("subscription_activate_failed", extra={"payment_id": payment_id})
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to activate subscription: {e}")
        logger.info("subscription_activated", extra={"subscription_id": sub.id, "payment_id": payment_id})
        return Result.success(subscription_to_dict(sub))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_subscription_status(self, user_email: str) -> Result[dict]:
        """Most recent live subscription of the user, or the latest one if none is live."""
        try:
            rows = (
                self.db.query(Subscription)
                .filter(Subscription.user_email == user_email)
                .order_by(Subscription.created_at.desc())
                .all()
            )
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to load subscription: {e}")
        if not rows:
            return Result.failure(ErrorKind.NOT_FOUND, "No subscription found for user", user_email=user_email)
        live = [s for s in rows if not SubscriptionStatus(s.status).is_terminal]
        sub = live[0] if live else rows[0]
        data = subscription_to_dict(sub)
        end = as_utc(sub.end_date)
        data["days_remaining"] = max(0, (end - self.clock()).days) if data["is_active"] else 0
        data["is_in_grace_period"] = data["status"] == SubscriptionStatus.GRACE_PERIOD.value
        return Result.success(data)

    def get_subscription_history(self, user_email: str) -> Result[list]:
        try:
            rows = (
                self.db.query(Subscription)
                .filter(Subscription.user_email == user_email)
                .order_by(Subscription.created_at.desc())
                .all()
            )
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to load subscription history: {e}")
        return Result.success([subscription_to_dict(s) for s in rows])

    def list_subscriptions(self, page: int = 1, page_size: int = 20, status: str | None = None) -> Result[dict]:
        if not valid_page(page, page_size):
            return Result.failure(ErrorKind.VALIDATION, "page must be >= 1 and page_size between 1 and 100")
        query = self.db.query(Subscription)
        if status:
            try:
                query = query.filter(Subscription.status == SubscriptionStatus(status.upper()))
            except ValueError:
                return Result.failure(ErrorKind.VALIDATION, f"Unknown subscription status: {status}")
        try:
            total = query.count()
            rows = (
                query.order_by(Subscription.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to list subscriptions: {e}")
        return Result.success({
            "subscriptions": [subscription_to_dict(s) for s in rows],
            "pagination": pagination_meta(page, page_size, total),
        })

    def get_subscription_analytics(self) -> Result[dict]:
        """Counts per status, average subscription length and the ten most recent subscriptions."""
        try:
            counts = dict(
                self.db.query(Subscription.status, func.count(Subscription.id))
                .group_by(Subscription.status)
                .all()
            )
            periods = self.db.query(Subscription.start_date, Subscription.end_date).all()
            recent = self.db.query(Subscription).order_by(Subscription.created_at.desc()).limit(10).all()
        except SQLAlchemyError as e:
            return Result.failure(ErrorKind.REPOSITORY, f"Failed to load subscription analytics: {e}")

        by_status = {s.value: 0 for s in SubscriptionStatus}
        for status, count in counts.items():
            by_status[SubscriptionStatus(status).value] = count
        durations = [(as_utc(end) - as_utc(start)).days for start, end in periods]
        return Result.success({
            "total_subscriptions": sum(by_status.values()),
            "by_status": by_status,
            "average_duration_days": round(sum(durations) / len(durations), 1) if durations else 0.0,
            "recent_subscriptions": [subscription_to_dict(s) for s in recent],
        })


