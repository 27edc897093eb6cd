"""
Provider webhooks. Authenticated by signature, not by admin key.
"""
from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from billing.api.deps import get_refund_ledger
from billing.api.errors import unwrap_or_raise
from billing.services.refunds.ledger import RefundLedger
from billing.services.refunds.webhook import RefundWebhookHandler

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/razorpay/refunds")
async def razorpay_refund_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    ledger: RefundLedger = Depends(get_refund_ledger),
):
    body = await request.body()
    result = await run_in_threadpool(RefundWebhookHandler(ledger).handle, body, x_razorpay_signature)
    return unwrap_or_raise(result)
