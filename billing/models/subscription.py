"""
Subscription model: access period bought by a payment.
Never deleted: EXPIRED and CANCELLED rows stay as history.
"""
import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum, Integer, String

from billing.db.base import Base


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    GRACE_PERIOD = "GRACE_PERIOD"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED)


CANCELLABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_email = Column(String, nullable=False, index=True)
    service = Column(String, nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False, index=True)
    grace_period_end = Column(DateTime(timezone=True), nullable=True, index=True)
    status = Column(
        Enum(SubscriptionStatus, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        index=True,
    )
    payment_id = Column(String, nullable=True, index=True)
    amount = Column(Integer, nullable=True)     # minor units
    currency = Column(String, nullable=True)
    last_notified_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
