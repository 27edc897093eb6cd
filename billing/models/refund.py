"""
Refund model: one refund attempt against a payment.
Created PENDING by an admin action; moved once to PROCESSED or FAILED, then never touched again.
"""
import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum, Integer, String

from billing.db.base import Base


class RefundStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not RefundStatus.PENDING


class RefundSpeed(str, enum.Enum):
    OPTIMUM = "OPTIMUM"  # instant if the card network allows it
    NORMAL = "NORMAL"    # 5-7 working days


def _enum(cls: type[enum.Enum]) -> Enum:
    return Enum(cls, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e])


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    provider_refund_id = Column(String, unique=True, nullable=True)  # rfnd_xxx, set once provider answers
    payment_id = Column(String, nullable=False, index=True)
    user_email = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)                        # minor units
    currency = Column(String, nullable=False, default="INR")
    status = Column(_enum(RefundStatus), nullable=False, default=RefundStatus.PENDING, index=True)
    speed_requested = Column(_enum(RefundSpeed), nullable=False, default=RefundSpeed.OPTIMUM)
    speed_processed = Column(_enum(RefundSpeed), nullable=True)
    processed_by = Column(String, nullable=False)                   # admin email or "system"
    reason = Column(String, nullable=True)
    notes = Column(String, nullable=True)
    receipt = Column(String, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )
    processed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    error_code = Column(String, nullable=True)
    error_description = Column(String, nullable=True)
