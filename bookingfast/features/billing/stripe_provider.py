"""
bookingfast/features/billing/stripe_provider.py

Stripe implementation of BillingProvider.
Handles webhook signature verification and event parsing.
"""
import os
from typing import Dict, Any, Optional, Tuple
from datetime import datetime, timezone
import logging

import stripe

from bookingfast.core.config import settings
from bookingfast.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
)


logger = logging.getLogger(__name__)


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def split_client_reference(reference: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """`"owner|plugin"` -> (owner_id, plugin_id)."""
    if not reference or "|" not in reference:
        return None, None
    owner_id, plugin_id = reference.split("|", 1)
    return owner_id or None, plugin_id or None


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY") or settings.STRIPE_SECRET_KEY
        self.webhook_secret = (
            webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET") or settings.STRIPE_WEBHOOK_SECRET
        )

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def ensure_customer(self, owner_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """Create or retrieve the Stripe customer for an owner."""
        try:
            customers = stripe.Customer.list(limit=1, metadata={"owner_id": owner_id})
            if customers.data:
                return customers.data[0].id

            customer_data: Dict[str, Any] = {"metadata": {"owner_id": owner_id}}
            if email:
                customer_data["email"] = email
            if name:
                customer_data["name"] = name

            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
        client_reference_id: Optional[str] = None,
    ) -> str:
        """Create a subscription-mode Stripe checkout session."""
        metadata = metadata or {}
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=client_reference_id,
                metadata=metadata,
                # Copied onto the subscription so customer.subscription.* events carry it too
                subscription_data={"metadata": metadata},
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def cancel_subscription(self, subscription_id: str) -> None:
        try:
            stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e}")

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        try:
            sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
            if not sig_header:
                raise BillingWebhookError("Missing stripe-signature header")

            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    def _subscription_period_end(self, data: Dict[str, Any]) -> Optional[datetime]:
        # Newer API versions moved the period onto subscription items
        period_end = data.get("current_period_end")
        if not period_end:
            items = (data.get("items") or {}).get("data") or []
            if items:
                period_end = items[0].get("current_period_end")
        return _timestamp(period_end)

    def _retrieve_period_end(self, subscription_id: str) -> Optional[datetime]:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError:
            logger.warning(
                "[billing] could not retrieve subscription period",
                exc_info=True,
                extra={"subscription_id": subscription_id},
            )
            return None
        return self._subscription_period_end(subscription)

    def _parse_event(self, event: Dict[str, Any]) -> BillingWebhookResult:
        """Parse Stripe event into normalized BillingWebhookResult."""
        event_type = event["type"]
        data = event.get("data", {}).get("object", {})
        metadata = dict(data.get("metadata") or {})

        result = BillingWebhookResult(
            event_id=event["id"],
            event_type=event_type,
            owner_id=metadata.get("owner_id") or metadata.get("user_id"),
            plugin_id=metadata.get("plugin_id"),
            payment_type=metadata.get("payment_type"),
            metadata=metadata,
        )

        if event_type.startswith("customer.subscription"):
            result.subscription_id = data.get("id")
            result.status = data.get("status")
            result.current_period_end = self._subscription_period_end(data)
            result.cancel_at_period_end = bool(data.get("cancel_at_period_end", False))

        elif event_type == "checkout.session.completed":
            result.subscription_id = data.get("subscription")
            result.payment_status = data.get("payment_status")
            if not (result.owner_id and result.plugin_id):
                owner_id, plugin_id = split_client_reference(data.get("client_reference_id"))
                result.owner_id = result.owner_id or owner_id
                result.plugin_id = result.plugin_id or plugin_id
            if result.subscription_id:
                result.current_period_end = self._retrieve_period_end(result.subscription_id)

        return result
