"""
Admin API request schemas.
Amount rules are enforced by the ledger so that bad amounts come back as 400, not 422.
"""
from pydantic import BaseModel, Field

from billing.models.refund import RefundSpeed


class RefundRequest(BaseModel):
    payment_id: str
    amount: int | None = Field(default=None, description="Minor units; omit to refund everything remaining")
    speed: RefundSpeed = RefundSpeed.OPTIMUM
    reason: str | None = Field(default=None, max_length=500)
    notes: str | None = Field(default=None, max_length=500)
    receipt: str | None = Field(default=None, max_length=40)


class CancelSubscriptionRequest(BaseModel):
    user_email: str
    reason: str | None = Field(default=None, max_length=500)


class ActivateSubscriptionRequest(BaseModel):
    payment_id: str
    service: str
    duration_days: int = Field(default=30, ge=1, le=3660)
