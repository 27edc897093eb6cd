"""Tests for RefundLedger: remaining-refundable invariant, finalization, concurrency, auto-cancel."""
import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from billing.models import Refund, RefundSpeed, RefundStatus, Subscription, SubscriptionStatus
from billing.services.cache import TTLCache
from billing.services.refunds.ledger import REFUND_EXPORT_HEADER, RefundLedger
from billing.services.refunds.locks import LocalPaymentLocks, LockTimeout
from billing.services.refunds.provider import ProviderError, ProviderRefund
from billing.services.result import ErrorKind

from conftest import NOW, FakeRefundProvider


@pytest.fixture
def locks():
    return LocalPaymentLocks(timeout_seconds=10)


@pytest.fixture
def ledger(db, provider, locks):
    return RefundLedger(db, provider, locks)


def _refund_rows(db, payment_id):
    return db.query(Refund).filter(Refund.payment_id == payment_id).all()


class TestInitiateRefund:
    def test_full_refund_then_any_further_refund_is_rejected(self, db, ledger, make_payment):
        payment = make_payment(amount=10000)

        result = ledger.initiate_refund(payment.id, None, RefundSpeed.NORMAL)

        assert result.ok
        assert result.value["amount"] == 10000
        assert result.value["status"] == "PROCESSED"
        summary = ledger.get_refunds_for_payment(payment.id).value
        assert summary["remaining_refundable"] == 0
        assert summary["is_fully_refunded"] is True

        again = ledger.initiate_refund(payment.id, 1, RefundSpeed.NORMAL)
        assert again.kind is ErrorKind.INVARIANT_VIOLATION
        assert len(_refund_rows(db, payment.id)) == 1

    def test_amount_over_remaining_creates_no_row(self, db, ledger, make_payment):
        payment = make_payment(amount=5000)

        result = ledger.initiate_refund(payment.id, 5001)

        assert result.kind is ErrorKind.INVARIANT_VIOLATION
        assert result.error.details["remaining_refundable"] == 5000
        assert _refund_rows(db, payment.id) == []

    @pytest.mark.parametrize("amount", [0, -100])
    def test_non_positive_amount_is_validation_error(self, ledger, make_payment, provider, amount):
        payment = make_payment()
        result = ledger.initiate_refund(payment.id, amount)
        assert result.kind is ErrorKind.VALIDATION
        assert provider.calls == []

    def test_missing_payment_is_not_found(self, ledger):
        assert ledger.initiate_refund("nope", 100).kind is ErrorKind.NOT_FOUND

    def test_unverified_payment_cannot_be_refunded(self, ledger, make_payment):
        from billing.models import PaymentStatus

        payment = make_payment(status=PaymentStatus.PENDING)
        assert ledger.initiate_refund(payment.id, 100).kind is ErrorKind.VALIDATION

    def test_partial_refunds_accumulate(self, ledger, make_payment, provider):
        payment = make_payment(amount=10000)

        assert ledger.initiate_refund(payment.id, 3000).ok
        assert ledger.initiate_refund(payment.id, 2000).ok
        summary = ledger.get_refunds_for_payment(payment.id).value

        assert summary["total_refunded"] == 5000
        assert summary["remaining_refundable"] == 5000
        assert [c[1] for c in provider.calls] == [3000, 2000]

        rest = ledger.initiate_refund(payment.id)
        assert rest.value["amount"] == 5000

    def test_provider_error_marks_refund_failed_and_keeps_capacity(self, db, make_payment, locks, provider_factory):
        payment = make_payment(amount=10000)
        failing = provider_factory(error=ProviderError("The amount is invalid (Field: amount)", code="BAD_REQUEST_ERROR", status_code=400))
        ledger = RefundLedger(db, failing, locks)

        result = ledger.initiate_refund(payment.id, 4000)

        assert result.kind is ErrorKind.PROVIDER
        refund = result.error.details["refund"]
        assert refund["status"] == "FAILED"
        assert refund["error_code"] == "BAD_REQUEST_ERROR"
        assert refund["error_description"] == "The amount is invalid (Field: amount)"
        assert ledger.get_refunds_for_payment(payment.id).value["remaining_refundable"] == 10000

        # no automatic retry: a new call is a new refund row
        failing.error = None
        assert ledger.initiate_refund(payment.id, 4000).ok
        assert len(_refund_rows(db, payment.id)) == 2

    def test_unexpected_provider_exception_fails_refund(self, db, make_payment, locks, provider_factory):
        payment = make_payment()
        ledger = RefundLedger(db, provider_factory(error=RuntimeError("socket closed")), locks)

        result = ledger.initiate_refund(payment.id, 100)

        assert result.kind is ErrorKind.PROVIDER
        assert result.error.details["refund"]["error_code"] == "UNEXPECTED_ERROR"

    def test_lock_timeout_is_conflict(self, db, provider, make_payment):
        payment = make_payment()
        locks = MagicMock()
        locks.hold.side_effect = LockTimeout("busy")

        result = RefundLedger(db, provider, locks).initiate_refund(payment.id, 100)

        assert result.kind is ErrorKind.CONFLICT
        assert provider.calls == []

    def test_speed_processed_is_recorded(self, db, make_payment, locks, provider_factory):
        payment = make_payment()
        ledger = RefundLedger(db, provider_factory(speed_processed=RefundSpeed.OPTIMUM), locks)

        refund = ledger.initiate_refund(payment.id, 100, RefundSpeed.OPTIMUM).value

        assert refund["speed_requested"] == "OPTIMUM"
        assert refund["speed_processed"] == "OPTIMUM"
        assert refund["processed_at"] is not None


class TestPendingRefunds:
    def test_pending_amount_is_reserved(self, db, make_payment, locks, provider_factory):
        payment = make_payment(amount=10000)
        ledger = RefundLedger(db, provider_factory(status="pending"), locks)

        first = ledger.initiate_refund(payment.id, 7000)
        assert first.value["status"] == "PENDING"
        assert first.value["provider_refund_id"] == "rfnd_1"

        # fits remaining (10000) but not remaining minus pending (3000)
        second = ledger.initiate_refund(payment.id, 5000)
        assert second.kind is ErrorKind.CONFLICT
        assert ledger.initiate_refund(payment.id, 3000).ok

    def test_provider_update_settles_pending_refund_once(self, db, make_payment, locks, provider_factory):
        payment = make_payment(amount=10000)
        ledger = RefundLedger(db, provider_factory(status="pending"), locks)
        ledger.initiate_refund(payment.id, 10000)

        first = ledger.apply_provider_update("rfnd_1", "processed", speed_processed=RefundSpeed.NORMAL)
        duplicate = ledger.apply_provider_update("rfnd_1", "failed")

        assert first.value is True
        assert duplicate.value is False
        refund = db.query(Refund).filter(Refund.provider_refund_id == "rfnd_1").one()
        db.refresh(refund)
        assert refund.status == RefundStatus.PROCESSED
        assert ledger.get_refunds_for_payment(payment.id).value["remaining_refundable"] == 0

    def test_provider_update_for_unknown_refund(self, ledger):
        assert ledger.apply_provider_update("rfnd_missing", "processed").kind is ErrorKind.NOT_FOUND

    def test_finalize_rejects_pending_target(self, ledger):
        with pytest.raises(ValueError):
            ledger.finalize("any", RefundStatus.PENDING)


class TestConcurrentRefunds:
    def test_jointly_overflowing_requests_yield_exactly_one_success(
        self, session_factory, make_payment, locks, provider_factory
    ):
        payment = make_payment(amount=10000)
        payment_id = payment.id
        provider = provider_factory(delay=0.05)
        barrier = threading.Barrier(2)
        results = []

        def worker():
            session = session_factory()
            try:
                barrier.wait()
                results.append(RefundLedger(session, provider, locks).initiate_refund(payment_id, 6000))
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(results) == 2
        assert sum(r.ok for r in results) == 1
        failed = next(r for r in results if not r.ok)
        assert failed.kind in (ErrorKind.CONFLICT, ErrorKind.INVARIANT_VIOLATION)

        session = session_factory()
        processed = [
            r.amount for r in session.query(Refund).filter(Refund.payment_id == payment_id)
            if r.status == RefundStatus.PROCESSED
        ]
        session.close()
        assert sum(processed) <= 10000
        assert len(provider.calls) == 1

    def test_many_small_refunds_never_exceed_amount(self, session_factory, make_payment, locks, provider_factory):
        payment = make_payment(amount=1000)
        payment_id = payment.id
        provider = provider_factory()

        def worker():
            session = session_factory()
            try:
                RefundLedger(session, provider, locks).initiate_refund(payment_id, 300)
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        session = session_factory()
        total = sum(
            r.amount for r in session.query(Refund).filter(
                Refund.payment_id == payment_id, Refund.status == RefundStatus.PROCESSED
            )
        )
        session.close()
        assert total == 900
        assert len(locks) == 0

    def _settle_pending_refund(self, session_factory, provider_refund_id):
        session = session_factory()
        try:
            other = RefundLedger(session, FakeRefundProvider(), LocalPaymentLocks(timeout_seconds=1))
            assert other.apply_provider_update(provider_refund_id, "processed").value is True
        finally:
            session.close()

    def _processed_total(self, session_factory, payment_id):
        session = session_factory()
        try:
            return sum(
                r.amount for r in session.query(Refund).filter(
                    Refund.payment_id == payment_id, Refund.status == RefundStatus.PROCESSED
                )
            )
        finally:
            session.close()

    def test_settlement_right_after_the_check_cannot_overdraw(
        self, db, session_factory, make_payment, locks, provider_factory
    ):
        payment = make_payment(amount=1000)
        payment_id = payment.id
        RefundLedger(db, provider_factory(status="pending"), locks).initiate_refund(payment_id, 600)

        session = session_factory()
        second = RefundLedger(session, provider_factory(), locks)
        read_totals = second._refund_totals

        def totals_then_settle(pid):
            totals = read_totals(pid)
            self._settle_pending_refund(session_factory, "rfnd_1")
            return totals

        try:
            with patch.object(second, "_refund_totals", side_effect=totals_then_settle):
                result = second.initiate_refund(payment_id, 600)
        finally:
            session.close()

        assert result.kind is ErrorKind.CONFLICT
        assert self._processed_total(session_factory, payment_id) == 600

    def test_settlement_right_before_the_check_cannot_overdraw(
        self, db, session_factory, make_payment, locks, provider_factory
    ):
        payment = make_payment(amount=1000)
        payment_id = payment.id
        RefundLedger(db, provider_factory(status="pending"), locks).initiate_refund(payment_id, 600)

        session = session_factory()
        second = RefundLedger(session, provider_factory(), locks)
        read_totals = second._refund_totals

        def settle_then_totals(pid):
            self._settle_pending_refund(session_factory, "rfnd_1")
            return read_totals(pid)

        try:
            with patch.object(second, "_refund_totals", side_effect=settle_then_totals):
                result = second.initiate_refund(payment_id, 600)
        finally:
            session.close()

        assert result.kind is ErrorKind.INVARIANT_VIOLATION
        assert result.error.details["remaining_refundable"] == 400
        assert self._processed_total(session_factory, payment_id) == 600

    def test_totals_count_pending_and_processed_together(self, db, ledger, make_payment, provider_factory, locks):
        payment = make_payment(amount=1000)
        ledger.initiate_refund(payment.id, 200)
        RefundLedger(db, provider_factory(status="pending"), locks).initiate_refund(payment.id, 300)
        RefundLedger(db, provider_factory(status="failed"), locks).initiate_refund(payment.id, 100)

        assert ledger._refund_totals(payment.id) == (200, 500)


class TestSideEffects:
    def test_full_refund_cancels_subscription(self, db, ledger, make_payment, make_subscription):
        payment = make_payment(amount=10000)
        sub = make_subscription(payment_id=payment.id)

        ledger.initiate_refund(payment.id, 4000)
        db.refresh(sub)
        assert sub.status == SubscriptionStatus.ACTIVE

        ledger.initiate_refund(payment.id)
        db.refresh(sub)
        assert sub.status == SubscriptionStatus.CANCELLED
        assert sub.cancelled_at is not None

    def test_auto_cancel_failure_does_not_undo_refund(self, db, ledger, make_payment):
        payment = make_payment(amount=500)
        ledger.subscriptions = MagicMock()
        ledger.subscriptions.cancel_for_payment.side_effect = RuntimeError("db hiccup")

        result = ledger.initiate_refund(payment.id)

        assert result.ok
        assert result.value["status"] == "PROCESSED"

    def test_processed_refund_invalidates_metrics_cache(self, db, provider, locks, make_payment):
        cache = TTLCache(ttl_seconds=300)
        cache.set("financial_metrics", {"total_refunds": 0})
        cache.set("refund_metrics", {"total_refunds": 0})
        payment = make_payment()

        RefundLedger(db, provider, locks, metrics_cache=cache).initiate_refund(payment.id, 100)

        assert cache.get("financial_metrics") is None
        assert cache.get("refund_metrics") is None

    def test_initiation_is_audited(self, db, ledger, make_payment):
        from billing.models import AuditLog

        payment = make_payment()
        refund_id = ledger.initiate_refund(payment.id, 100, actor="ops@example.com").value["id"]

        actions = {a.action for a in db.query(AuditLog).filter(AuditLog.entity_id == refund_id)}
        assert {"refund_initiated", "refund_processed"} <= actions


class TestReads:
    def test_refund_lookup_by_internal_or_provider_id(self, ledger, make_payment):
        payment = make_payment()
        refund = ledger.initiate_refund(payment.id, 100).value

        assert ledger.get_refund(refund["id"]).value["id"] == refund["id"]
        assert ledger.get_refund(refund["provider_refund_id"]).value["id"] == refund["id"]
        assert ledger.get_refund("missing").kind is ErrorKind.NOT_FOUND

    def test_history_filters_by_status(self, db, make_payment, locks, provider_factory):
        payment = make_payment()
        ok_ledger = RefundLedger(db, provider_factory(), locks)
        ok_ledger.initiate_refund(payment.id, 100)
        RefundLedger(db, provider_factory(error=ProviderError("down", code="TIMEOUT")), locks).initiate_refund(payment.id, 100)

        page = ok_ledger.get_refund_history(status="failed").value

        assert page["pagination"]["total"] == 1
        assert page["refunds"][0]["error_code"] == "TIMEOUT"
        assert ok_ledger.get_refund_history(status="bogus").kind is ErrorKind.VALIDATION

    def test_export_refunds_csv(self, ledger, make_payment):
        payment = make_payment(user_email="buyer@example.com")
        ledger.initiate_refund(payment.id, 2550, reason="duplicate charge")

        csv_text = ledger.export_refunds().value
        lines = csv_text.strip().split("\n")

        assert lines[0] == ",".join(f'"{h}"' for h in REFUND_EXPORT_HEADER)
        assert '"25.50"' in lines[1]
        assert '"buyer@example.com"' in lines[1]
        assert '"duplicate charge"' in lines[1]


class TestProviderSync:
    def _pending_row(self, db, payment, amount, created_at, provider_refund_id=None):
        refund = Refund(
            payment_id=payment.id,
            user_email=payment.user_email,
            provider_refund_id=provider_refund_id,
            amount=amount,
            currency="INR",
            status=RefundStatus.PENDING,
            speed_requested=RefundSpeed.NORMAL,
            processed_by="ops@example.com",
            created_at=created_at,
        )
        db.add(refund)
        db.commit()
        return refund.id

    def test_pending_refund_reported_processed_is_settled(self, db, make_payment, locks, provider_factory):
        payment = make_payment(amount=10000)
        provider = provider_factory(status="pending")
        ledger = RefundLedger(db, provider, locks)
        ledger.initiate_refund(payment.id, 10000)
        assert ledger.initiate_refund(payment.id, 1).kind is ErrorKind.CONFLICT

        provider.remote = [ProviderRefund("rfnd_1", "processed", 10000, speed_processed=RefundSpeed.NORMAL)]
        summary = ledger.check_payment_refund_status(payment.id).value

        assert summary["synced"] == 1
        assert summary["total_refunded"] == 10000
        assert summary["pending_amount"] == 0
        assert summary["is_fully_refunded"] is True
        assert ledger.initiate_refund(payment.id, 1).kind is ErrorKind.INVARIANT_VIOLATION
        assert ledger.check_payment_refund_status(payment.id).value["synced"] == 0

    def test_pending_refund_reported_failed_releases_reservation(self, db, make_payment, locks, provider_factory):
        payment = make_payment(amount=10000)
        provider = provider_factory(status="pending")
        ledger = RefundLedger(db, provider, locks)
        ledger.initiate_refund(payment.id, 10000)

        provider.remote = [ProviderRefund("rfnd_1", "failed", 10000)]
        summary = ledger.check_payment_refund_status(payment.id).value

        assert summary["remaining_refundable"] == 10000
        assert summary["pending_amount"] == 0
        assert summary["refunds"][0]["error_code"] == "PROVIDER_FAILED"
        assert ledger.initiate_refund(payment.id, 5000).ok

    def test_row_without_provider_id_is_matched_by_reference(self, db, make_payment, locks, provider_factory):
        payment = make_payment(amount=10000)
        refund_id = self._pending_row(db, payment, 4000, NOW)
        provider = provider_factory(remote=[ProviderRefund("rfnd_late", "processed", 4000, reference=refund_id)])

        summary = RefundLedger(db, provider, locks, clock=lambda: NOW).check_payment_refund_status(payment.id).value

        assert len(summary["refunds"]) == 1
        assert summary["refunds"][0]["provider_refund_id"] == "rfnd_late"
        assert summary["refunds"][0]["status"] == "PROCESSED"
        assert summary["total_refunded"] == 4000

    def test_stale_pending_unknown_to_provider_is_failed(self, db, make_payment, locks, provider_factory):
        payment = make_payment(amount=10000)
        stale = self._pending_row(db, payment, 3000, NOW - timedelta(hours=2))
        fresh = self._pending_row(db, payment, 2000, NOW - timedelta(minutes=1))
        ledger = RefundLedger(db, provider_factory(), locks, clock=lambda: NOW)

        summary = ledger.check_payment_refund_status(payment.id).value

        by_id = {r["id"]: r for r in summary["refunds"]}
        assert by_id[stale]["status"] == "FAILED"
        assert by_id[stale]["error_code"] == "NOT_FOUND_AT_PROVIDER"
        assert by_id[fresh]["status"] == "PENDING"
        assert summary["pending_amount"] == 2000

    def test_provider_refund_missing_locally_is_recorded(self, db, make_payment, locks, provider_factory):
        payment = make_payment(amount=10000)
        provider = provider_factory(remote=[ProviderRefund("rfnd_dash", "processed", 2500)])

        summary = RefundLedger(db, provider, locks).check_payment_refund_status(payment.id).value

        assert summary["synced"] == 1
        assert summary["total_refunded"] == 2500
        assert summary["refunds"][0]["reason"] == "Auto-synced from Razorpay"
        assert summary["refunds"][0]["processed_by"] == "system"

    def test_provider_unavailable_returns_local_summary(self, db, make_payment, locks, provider_factory):
        payment = make_payment(amount=10000)
        provider = provider_factory(status="pending", fetch_error=ProviderError("down", code="CIRCUIT_OPEN"))
        ledger = RefundLedger(db, provider, locks)
        ledger.initiate_refund(payment.id, 4000)

        result = ledger.check_payment_refund_status(payment.id)

        assert result.ok
        assert "synced" not in result.value
        assert result.value["pending_amount"] == 4000

    def test_unknown_payment(self, ledger):
        assert ledger.check_payment_refund_status("missing").kind is ErrorKind.NOT_FOUND

    def test_storage_failure_after_provider_call_is_repository_error(self, db, make_payment, locks, provider_factory):
        payment = make_payment(amount=10000)
        provider = provider_factory()
        ledger = RefundLedger(db, provider, locks)

        with patch.object(ledger, "_apply_provider_response", side_effect=OperationalError("update", {}, Exception("gone"))):
            result = ledger.initiate_refund(payment.id, 10000)

        assert result.kind is ErrorKind.REPOSITORY
        refund_id = result.error.details["refund_id"]
        assert ledger.get_refund(refund_id).value["status"] == "PENDING"

        provider.remote = [ProviderRefund("rfnd_1", "processed", 10000, reference=refund_id)]
        summary = ledger.check_payment_refund_status(payment.id).value

        assert summary["total_refunded"] == 10000
        assert summary["pending_amount"] == 0
