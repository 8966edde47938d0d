"""
bookingfast/features/billing/service.py

Checkout intent boundary between the subscription engine and Stripe.

Coordinates:
- Customer management
- Checkout sessions for one plugin (no state change until payment is confirmed)
- Webhook processing (idempotent per Stripe event id)
- Processor-side cancellation

All Stripe-specific code is in stripe_provider.py.
"""
import os
import hashlib
from typing import Optional, Dict
from datetime import datetime, timezone
import logging

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from bookingfast.core.config import settings
from bookingfast.core.database import get_db_session, billing_customers, billing_events, users
from bookingfast.core.logging import log_event
from bookingfast.core.errors import NoActiveSubscription, ValidationError
from bookingfast.features.billing.provider import (
    PLUGIN_PAYMENT_TYPE,
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
)
from bookingfast.features.billing.stripe_provider import StripeProvider
from bookingfast.features.plugins.service import require_plugin
from bookingfast.features.subscriptions.service import (
    cancel,
    confirm_paid_activation,
    get_subscription,
    with_cas_retry,
)
from bookingfast.models.subscription import SubscriptionStatus


logger = logging.getLogger(__name__)

_ENDED_STATUSES = frozenset({"canceled", "unpaid", "incomplete_expired"})


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY") or settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def client_reference(owner_id: str, plugin_id: str) -> str:
    return f"{owner_id}|{plugin_id}"


def ensure_customer_for_owner(owner_id: str) -> Optional[str]:
    """
    Ensure a Stripe customer exists for the owner.

    Returns:
        Stripe customer ID, or None if billing disabled

    Raises:
        BillingProviderError: If customer creation fails
    """
    provider = get_provider()
    if not provider:
        return None

    with get_db_session() as session:
        result = session.execute(
            select(billing_customers.c.stripe_customer_id).where(
                billing_customers.c.owner_id == owner_id
            )
        ).fetchone()

        if result:
            return result[0]

        owner = session.execute(
            select(users.c.email, users.c.full_name).where(users.c.user_id == owner_id)
        ).fetchone()
        stripe_customer_id = provider.ensure_customer(
            owner_id,
            owner.email if owner else None,
            owner.full_name if owner else None,
        )

        session.execute(
            insert(billing_customers).values(
                owner_id=owner_id,
                stripe_customer_id=stripe_customer_id,
                created_at=datetime.now(timezone.utc),
            )
        )
        return stripe_customer_id


def request_checkout(
    owner_id: str,
    plugin_id: str,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Optional[str]:
    """
    Create a checkout session for one plugin.

    Only issues the intent: the subscription changes when Stripe confirms the
    payment through the webhook. Abandoned checkouts leave no trace.

    Returns:
        Checkout URL, or None if billing disabled

    Raises:
        PluginNotFound: unknown or inactive plugin
        ValidationError: plugin has no Stripe price
        BillingProviderError: Stripe call failed
    """
    plugin = require_plugin(plugin_id)

    provider = get_provider()
    if not provider:
        return None

    if not plugin.stripe_price_id:
        raise ValidationError(f"No Stripe price configured for plugin: {plugin.slug}")

    stripe_customer_id = ensure_customer_for_owner(owner_id)
    if not stripe_customer_id:
        raise BillingProviderError("Failed to ensure customer")

    base = settings.APP_BASE_URL.rstrip("/")
    checkout_url = provider.create_checkout_session(
        customer_id=stripe_customer_id,
        price_id=plugin.stripe_price_id,
        success_url=success_url or f"{base}/plugins?success=true&plugin={plugin.slug}",
        cancel_url=cancel_url or f"{base}/plugins?canceled=true",
        metadata={
            "owner_id": owner_id,
            "plugin_id": plugin.id,
            "payment_type": PLUGIN_PAYMENT_TYPE,
        },
        client_reference_id=client_reference(owner_id, plugin.id),
    )

    logger.info(
        "[billing] checkout created",
        extra={"owner_id": owner_id, "plugin_id": plugin.id},
    )
    return checkout_url


def cancel_processor_subscription(processor_ref: Optional[str]) -> bool:
    """
    Ask Stripe to stop renewing. Best effort: failures are logged, not raised.

    Returns True when Stripe accepted the cancellation.
    """
    if not processor_ref:
        return False
    provider = get_provider()
    if not provider:
        return False
    try:
        provider.cancel_subscription(processor_ref)
    except BillingProviderError:
        logger.warning(
            "[billing] processor cancellation failed",
            exc_info=True,
            extra={"processor_ref": processor_ref},
        )
        return False
    return True


def _is_plugin_event(result: BillingWebhookResult) -> bool:
    if not (result.owner_id and result.plugin_id and result.subscription_id):
        return False
    return result.payment_type in (None, PLUGIN_PAYMENT_TYPE)


def _apply_processor_cancellation(result: BillingWebhookResult) -> None:
    record = get_subscription(result.owner_id, result.plugin_id)
    if record is None or record.processor_ref != result.subscription_id:
        return
    if record.status != SubscriptionStatus.ACTIVE:
        return
    try:
        with_cas_retry(cancel, result.owner_id, result.plugin_id)
    except NoActiveSubscription:
        pass


def _activate(result: BillingWebhookResult) -> None:
    if result.current_period_end is None:
        # Left unprocessed so the redelivery can pick up the period
        raise BillingWebhookError(
            f"No current_period_end for subscription {result.subscription_id}; cannot activate"
        )
    with_cas_retry(
        confirm_paid_activation,
        result.owner_id,
        result.plugin_id,
        result.subscription_id,
        result.current_period_end,
    )


def apply_webhook_result(result: BillingWebhookResult) -> bool:
    """
    Route a verified event into the subscription state machine.

    Returns True if the event was relevant to a plugin subscription.
    """
    if not _is_plugin_event(result):
        return False

    if result.event_type == "checkout.session.completed":
        if result.payment_status not in ("paid", "no_payment_required"):
            return False
        _activate(result)
        return True

    if result.event_type.startswith("customer.subscription"):
        if result.event_type == "customer.subscription.deleted" or result.status in _ENDED_STATUSES:
            _apply_processor_cancellation(result)
            return True
        if result.status == "active":
            _activate(result)
            if result.cancel_at_period_end:
                _apply_processor_cancellation(result)
            return True

    return False


def process_webhook_event(headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
    """
    Process billing webhook event (idempotent).

    1. Verify signature
    2. Check idempotency (skip if already processed)
    3. Apply state changes
    4. Mark as processed

    Raises:
        BillingWebhookError: If signature invalid or processing fails
    """
    provider = get_provider()
    if not provider:
        raise BillingWebhookError("Billing not enabled")

    result = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.processed).where(
                billing_events.c.stripe_event_id == result.event_id
            )
        ).fetchone()

        if existing and existing.processed:
            logger.info("[billing] duplicate webhook skipped", extra={"event_id": result.event_id})
            return result

        if not existing:
            try:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=result.event_id,
                        event_type=result.event_type,
                        payload_hash=payload_hash,
                        processed=False,
                        received_at=datetime.now(timezone.utc),
                    )
                )
                session.flush()
            except IntegrityError:
                # Another delivery of the same event got here first
                session.rollback()
                logger.info("[billing] concurrent webhook delivery skipped", extra={"event_id": result.event_id})
                return result

    try:
        applied = apply_webhook_result(result)

        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(processed=True, processed_at=datetime.now(timezone.utc), error=None)
            )
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(error=str(e))
            )
        logger.error(
            "[billing] webhook processing failed",
            exc_info=True,
            extra={"event_id": result.event_id, "event_type": result.event_type},
        )
        raise

    log_event(
        "info",
        "[billing] webhook processed",
        owner_id=result.owner_id,
        plugin_id=result.plugin_id,
        event_type=result.event_type,
        extra={"event_id": result.event_id, "applied": applied},
    )
    return result
