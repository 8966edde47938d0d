"""
bookingfast/features/billing/provider.py

Billing provider protocol.

The engine never captures payments itself. A provider issues checkout intents
and reports confirmed payments back through verified webhooks.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime


# Stamped on every checkout so webhooks can tell plugin purchases apart
PLUGIN_PAYMENT_TYPE = "plugin_subscription"


@dataclass
class BillingWebhookResult:
    """Provider event normalized to what the subscription engine needs."""
    event_id: str
    event_type: str
    owner_id: Optional[str] = None
    plugin_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[str] = None  # provider subscription status: active, canceled, past_due...
    payment_status: Optional[str] = None  # checkout sessions only: paid, unpaid
    payment_type: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Implementations must handle:
    - Customer creation
    - Checkout session creation for one plugin
    - Cancelling a processor subscription at period end
    - Webhook signature verification and parsing
    """

    def ensure_customer(self, owner_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Returns:
            Provider customer ID

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
        client_reference_id: Optional[str] = None,
    ) -> str:
        """
        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def cancel_subscription(self, subscription_id: str) -> None:
        """
        Stop renewal; the subscription runs to the end of its paid period.

        Raises:
            BillingProviderError: If the provider rejects the call
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
