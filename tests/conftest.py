"""Shared fixtures: env for Settings, a file-backed SQLite database per test, record factories."""
import itertools
import os
import threading
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("CB_STORAGE", "memory")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from billing.db.base import Base
from billing.models import Payment, PaymentStatus, Subscription, SubscriptionStatus
from billing.services.circuit_breaker import reset_circuit_breakers
from billing.services.refunds.provider import ProviderRefund

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_payment(db):
    counter = itertools.count(1)

    def _make(amount=10000, status=PaymentStatus.VERIFIED, user_email="user@example.com", created_at=None, **kwargs):
        n = next(counter)
        payment = Payment(
            user_email=user_email,
            order_id=f"order_{n}",
            provider_payment_id=kwargs.pop("provider_payment_id", f"pay_{n}"),
            amount=amount,
            currency="INR",
            status=status,
            created_at=created_at or NOW - timedelta(days=1),
            **kwargs,
        )
        db.add(payment)
        db.commit()
        return payment

    return _make


@pytest.fixture
def make_subscription(db):
    def _make(status=SubscriptionStatus.ACTIVE, end_date=None, user_email="user@example.com", **kwargs):
        end_date = end_date or NOW + timedelta(days=30)
        sub = Subscription(
            user_email=user_email,
            service="premium",
            start_date=kwargs.pop("start_date", end_date - timedelta(days=30)),
            end_date=end_date,
            status=status,
            created_at=kwargs.pop("created_at", NOW - timedelta(days=30)),
            **kwargs,
        )
        db.add(sub)
        db.commit()
        return sub

    return _make


class FakeRefundProvider:
    """Thread-safe stand-in for the provider: answers with `status`, records calls, lists `remote`."""

    def __init__(self, status="processed", speed_processed=None, error=None, delay=0.0, remote=None, fetch_error=None):
        self.status = status
        self.speed_processed = speed_processed
        self.error = error
        self.delay = delay
        self.remote = remote or []
        self.fetch_error = fetch_error
        self.calls = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create_refund(self, provider_payment_id, amount, speed, notes=None, receipt=None, reference=None):
        with self._lock:
            self.calls.append((provider_payment_id, amount, speed))
            refund_id = f"rfnd_{next(self._ids)}"
        if self.delay:
            threading.Event().wait(self.delay)
        if self.error is not None:
            raise self.error
        return ProviderRefund(
            provider_refund_id=refund_id,
            status=self.status,
            amount=amount,
            speed_processed=self.speed_processed,
            reference=reference,
        )

    def fetch_refunds(self, provider_payment_id):
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.remote)


@pytest.fixture
def provider():
    return FakeRefundProvider()


@pytest.fixture
def provider_factory():
    return FakeRefundProvider


@pytest.fixture(autouse=True)
def fresh_breakers():
    reset_circuit_breakers()
    yield
    reset_circuit_breakers()
