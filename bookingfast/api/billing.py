"""
bookingfast/api/billing.py
Stripe webhook endpoint.

- POST /api/billing/webhook: confirmed payments -> subscription activation
"""
from fastapi import APIRouter, Request, HTTPException

from bookingfast.features.billing.service import billing_enabled, process_webhook_event
from bookingfast.features.billing.provider import BillingWebhookError

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature, processes event idempotently, and updates subscription state.

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    if not billing_enabled():
        raise HTTPException(status_code=503, detail="Billing disabled")

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        result = process_webhook_event(headers, body)
    except BillingWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"received": True, "event_id": result.event_id}
