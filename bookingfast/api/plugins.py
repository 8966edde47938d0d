"""
bookingfast/api/plugins.py
FastAPI routes for the plugin catalog and an owner's plugin subscriptions.

- GET  /api/plugins
- POST /api/plugins/{plugin_id}/trial
- POST /api/plugins/{plugin_id}/checkout
- POST /api/plugins/{plugin_id}/cancel
- GET  /api/plugins/{plugin_id}/subscription
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from bookingfast.api.deps import get_acting_user_id
from bookingfast.features.access.service import get_subscription_summary
from bookingfast.features.billing.provider import BillingProviderError
from bookingfast.features.billing.service import cancel_processor_subscription, request_checkout
from bookingfast.features.plugins.service import list_plugins
from bookingfast.features.subscriptions.service import cancel, start_trial, with_cas_retry


router = APIRouter(prefix="/api/plugins", tags=["plugins"])


class CheckoutRequest(BaseModel):
    """Optional redirect overrides; defaults point back at the plugins page."""
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


@router.get("")
def get_catalog():
    plugins = list_plugins()
    return {"success": True, "data": [p.model_dump(mode="json") for p in plugins]}


@router.post("/{plugin_id}/trial")
def post_start_trial(plugin_id: str, owner_id: str = Depends(get_acting_user_id)):
    """
    Start the one-time 7-day trial.

    Errors:
        404: plugin_not_found
        409: trial_already_used, subscription_already_active
    """
    record = with_cas_retry(start_trial, owner_id, plugin_id)
    summary = get_subscription_summary(owner_id, plugin_id)
    return {
        "success": True,
        "data": {
            "subscription": record.model_dump(mode="json"),
            "summary": summary.model_dump(mode="json"),
        },
    }


@router.post("/{plugin_id}/checkout")
def post_checkout(
    plugin_id: str,
    request: Optional[CheckoutRequest] = None,
    owner_id: str = Depends(get_acting_user_id),
):
    """
    Create a Stripe checkout session for the plugin.

    Returns:
        {"success": true, "data": {"url": "https://checkout.stripe.com/..."}}

    Errors:
        404: plugin_not_found
        503: billing disabled
        502: Stripe API error
    """
    request = request or CheckoutRequest()
    try:
        url = request_checkout(owner_id, plugin_id, request.success_url, request.cancel_url)
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if not url:
        raise HTTPException(
            status_code=503,
            detail="Billing disabled. Stripe is not configured.",
        )
    return {"success": True, "data": {"url": url}}


@router.post("/{plugin_id}/cancel")
def post_cancel(plugin_id: str, owner_id: str = Depends(get_acting_user_id)):
    """
    Cancel a paid subscription. Access continues until the period ends.

    Errors:
        409: no_active_subscription
    """
    record = with_cas_retry(cancel, owner_id, plugin_id)
    processor_cancelled = cancel_processor_subscription(record.processor_ref)
    return {
        "success": True,
        "data": {
            "subscription": record.model_dump(mode="json"),
            "processor_cancelled": processor_cancelled,
        },
    }


@router.get("/{plugin_id}/subscription")
def get_plugin_subscription(plugin_id: str, owner_id: str = Depends(get_acting_user_id)):
    summary = get_subscription_summary(owner_id, plugin_id)
    return {"success": True, "data": summary.model_dump(mode="json")}
