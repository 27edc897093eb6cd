"""
Payment model: one captured provider payment.
Amounts are integers in minor units. Only `status` changes after creation.
"""
import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum, Integer, String

from billing.db.base import Base


class PaymentStatus(str, enum.Enum):
    VERIFIED = "verified"
    PENDING = "pending"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_email = Column(String, nullable=False, index=True)
    order_id = Column(String, nullable=True)
    provider_payment_id = Column(String, unique=True, nullable=False)  # pay_xxx
    amount = Column(Integer, nullable=False)                          # minor units
    currency = Column(String, nullable=False, default="INR")
    status = Column(
        Enum(PaymentStatus, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )
