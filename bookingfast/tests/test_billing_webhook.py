"""
Test Stripe webhook processing: idempotency, routing into the subscription
state machine, and Stripe event parsing.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import stripe
from sqlalchemy import select

from bookingfast.core.database import get_db_session, billing_events
from bookingfast.features.billing.provider import BillingWebhookError, BillingWebhookResult
from bookingfast.features.billing.service import process_webhook_event
from bookingfast.features.billing.stripe_provider import StripeProvider, split_client_reference
from bookingfast.features.subscriptions.service import get_subscription, start_trial
from bookingfast.models.subscription import SubscriptionStatus


PERIOD_END = datetime(2026, 4, 2, 9, 0, tzinfo=timezone.utc)


def _checkout_completed(owner_id, plugin_id, event_id="evt_1", payment_status="paid", subscription_id="sub_abc"):
    return BillingWebhookResult(
        event_id=event_id,
        event_type="checkout.session.completed",
        owner_id=owner_id,
        plugin_id=plugin_id,
        subscription_id=subscription_id,
        payment_status=payment_status,
        payment_type="plugin_subscription",
        current_period_end=PERIOD_END,
    )


def _subscription_event(owner_id, plugin_id, event_type, status, event_id, cancel_at_period_end=False):
    return BillingWebhookResult(
        event_id=event_id,
        event_type=event_type,
        owner_id=owner_id,
        plugin_id=plugin_id,
        subscription_id="sub_abc",
        status=status,
        payment_type="plugin_subscription",
        current_period_end=PERIOD_END,
        cancel_at_period_end=cancel_at_period_end,
    )


def _events():
    with get_db_session() as session:
        return session.execute(select(billing_events)).all()


def test_paid_checkout_activates_subscription(mock_stripe_provider, clock, owner_id, pos_plugin):
    mock_stripe_provider.handle_webhook.return_value = _checkout_completed(owner_id, pos_plugin)

    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    record = get_subscription(owner_id, pos_plugin)
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.processor_ref == "sub_abc"
    assert record.current_period_end == PERIOD_END
    events = _events()
    assert len(events) == 1
    assert events[0].processed is True


def test_trial_converts_on_payment(mock_stripe_provider, clock, owner_id, reports_plugin):
    start_trial(owner_id, reports_plugin)
    mock_stripe_provider.handle_webhook.return_value = _checkout_completed(owner_id, reports_plugin)

    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    record = get_subscription(owner_id, reports_plugin)
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.trial_used is True


def test_duplicate_event_is_skipped(mock_stripe_provider, clock, owner_id, pos_plugin):
    mock_stripe_provider.handle_webhook.return_value = _checkout_completed(owner_id, pos_plugin)

    process_webhook_event({"stripe-signature": "sig"}, b"{}")
    first = get_subscription(owner_id, pos_plugin)
    clock.advance(hours=1)
    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    assert get_subscription(owner_id, pos_plugin).version == first.version
    assert len(_events()) == 1


def test_unpaid_checkout_does_not_activate(mock_stripe_provider, clock, owner_id, pos_plugin):
    mock_stripe_provider.handle_webhook.return_value = _checkout_completed(
        owner_id, pos_plugin, payment_status="unpaid"
    )

    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    assert get_subscription(owner_id, pos_plugin) is None
    assert _events()[0].processed is True


def test_non_plugin_checkout_is_ignored(mock_stripe_provider, clock, owner_id, pos_plugin):
    result = _checkout_completed(owner_id, pos_plugin)
    result.payment_type = "booking_deposit"
    mock_stripe_provider.handle_webhook.return_value = result

    process_webhook_event({"stripe-signature": "sig"}, b"{}")
    assert get_subscription(owner_id, pos_plugin) is None


def test_subscription_active_event_activates(mock_stripe_provider, clock, owner_id, pos_plugin):
    mock_stripe_provider.handle_webhook.return_value = _subscription_event(
        owner_id, pos_plugin, "customer.subscription.created", "active", "evt_created"
    )
    process_webhook_event({"stripe-signature": "sig"}, b"{}")
    assert get_subscription(owner_id, pos_plugin).status == SubscriptionStatus.ACTIVE


def test_processor_cancellation_starts_grace(mock_stripe_provider, clock, owner_id, pos_plugin):
    mock_stripe_provider.handle_webhook.return_value = _checkout_completed(owner_id, pos_plugin)
    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    mock_stripe_provider.handle_webhook.return_value = _subscription_event(
        owner_id, pos_plugin, "customer.subscription.updated", "active", "evt_upd", cancel_at_period_end=True
    )
    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    record = get_subscription(owner_id, pos_plugin)
    assert record.status == SubscriptionStatus.CANCELLED
    assert record.current_period_end == PERIOD_END


def test_subscription_deleted_cancels(mock_stripe_provider, clock, owner_id, pos_plugin):
    mock_stripe_provider.handle_webhook.return_value = _checkout_completed(owner_id, pos_plugin)
    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    mock_stripe_provider.handle_webhook.return_value = _subscription_event(
        owner_id, pos_plugin, "customer.subscription.deleted", "canceled", "evt_del"
    )
    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    assert get_subscription(owner_id, pos_plugin).status == SubscriptionStatus.CANCELLED


def test_failed_processing_is_recorded_and_retried(mock_stripe_provider, clock, owner_id, pos_plugin):
    mock_stripe_provider.handle_webhook.return_value = _checkout_completed(owner_id, pos_plugin)

    with patch(
        "bookingfast.features.billing.service.confirm_paid_activation",
        side_effect=RuntimeError("db hiccup"),
    ):
        with pytest.raises(RuntimeError):
            process_webhook_event({"stripe-signature": "sig"}, b"{}")

    event = _events()[0]
    assert event.processed is False
    assert "db hiccup" in event.error

    # Stripe redelivers the same event
    process_webhook_event({"stripe-signature": "sig"}, b"{}")
    assert get_subscription(owner_id, pos_plugin).status == SubscriptionStatus.ACTIVE
    assert _events()[0].processed is True


def test_invalid_signature_propagates(mock_stripe_provider):
    mock_stripe_provider.handle_webhook.side_effect = BillingWebhookError("Invalid signature")
    with pytest.raises(BillingWebhookError):
        process_webhook_event({"stripe-signature": "bad"}, b"{}")
    assert _events() == []


# StripeProvider parsing

@pytest.fixture
def provider():
    return StripeProvider(secret_key="sk_test_123", webhook_secret="whsec_test_123")


def test_split_client_reference():
    assert split_client_reference("owner-1|plugin-pos") == ("owner-1", "plugin-pos")
    assert split_client_reference("garbage") == (None, None)
    assert split_client_reference(None) == (None, None)


def test_parse_checkout_completed(provider):
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "subscription": "sub_abc",
                "payment_status": "paid",
                "client_reference_id": "owner-1|plugin-pos",
                "metadata": {"payment_type": "plugin_subscription"},
            }
        },
    }
    period_end = int(PERIOD_END.timestamp())
    with patch.object(stripe.Webhook, "construct_event", return_value=event), \
            patch.object(stripe.Subscription, "retrieve", return_value={"current_period_end": period_end}):
        result = provider.handle_webhook({"stripe-signature": "sig"}, b"{}")

    assert result.owner_id == "owner-1"
    assert result.plugin_id == "plugin-pos"
    assert result.subscription_id == "sub_abc"
    assert result.payment_status == "paid"
    assert result.current_period_end == PERIOD_END


def test_parse_subscription_event_reads_item_period(provider):
    period_end = int((PERIOD_END + timedelta(days=1)).timestamp())
    event = {
        "id": "evt_2",
        "type": "customer.subscription.updated",
        "data": {
            "object": {
                "id": "sub_abc",
                "status": "active",
                "cancel_at_period_end": True,
                "metadata": {"owner_id": "owner-1", "plugin_id": "plugin-pos"},
                "items": {"data": [{"current_period_end": period_end}]},
            }
        },
    }
    with patch.object(stripe.Webhook, "construct_event", return_value=event):
        result = provider.handle_webhook({"Stripe-Signature": "sig"}, b"{}")

    assert result.status == "active"
    assert result.cancel_at_period_end is True
    assert result.current_period_end == PERIOD_END + timedelta(days=1)


def test_missing_signature_header(provider):
    with pytest.raises(BillingWebhookError, match="Missing stripe-signature"):
        provider.handle_webhook({}, b"{}")


def test_bad_signature(provider):
    error = stripe.SignatureVerificationError("bad signature", "sig")
    with patch.object(stripe.Webhook, "construct_event", side_effect=error):
        with pytest.raises(BillingWebhookError, match="Invalid signature"):
            provider.handle_webhook({"stripe-signature": "sig"}, b"{}")


def test_checkout_without_period_end_stays_unprocessed(mock_stripe_provider, clock, owner_id, pos_plugin):
    result = _checkout_completed(owner_id, pos_plugin)
    result.current_period_end = None
    mock_stripe_provider.handle_webhook.return_value = result

    with pytest.raises(BillingWebhookError, match="current_period_end"):
        process_webhook_event({"stripe-signature": "sig"}, b"{}")

    assert get_subscription(owner_id, pos_plugin) is None
    event = _events()[0]
    assert event.processed is False
    assert "current_period_end" in event.error

    # Redelivery once Stripe returns the period
    mock_stripe_provider.handle_webhook.return_value = _checkout_completed(owner_id, pos_plugin)
    process_webhook_event({"stripe-signature": "sig"}, b"{}")
    assert get_subscription(owner_id, pos_plugin).current_period_end == PERIOD_END
    assert _events()[0].processed is True
