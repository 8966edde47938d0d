"""
Test plugin checkout and processor cancellation.

Tests with mocked Stripe provider (no real API calls).
"""

import pytest
from sqlalchemy import select

from bookingfast.core.database import get_db_session, billing_customers
from bookingfast.core.errors import PluginNotFound, ValidationError
from bookingfast.features.billing.provider import BillingProviderError
from bookingfast.features.billing.service import (
    cancel_processor_subscription,
    ensure_customer_for_owner,
    request_checkout,
)
from bookingfast.features.subscriptions.service import get_subscription


def test_ensure_customer_creates_new_customer(mock_stripe_provider, owner_id):
    mock_stripe_provider.ensure_customer.return_value = "cus_test123"

    result = ensure_customer_for_owner(owner_id)

    assert result == "cus_test123"
    mock_stripe_provider.ensure_customer.assert_called_once_with(owner_id, "owner@salon.example", "Salon Owner")
    with get_db_session() as session:
        row = session.execute(
            select(billing_customers).where(billing_customers.c.owner_id == owner_id)
        ).fetchone()
    assert row.stripe_customer_id == "cus_test123"


def test_ensure_customer_returns_existing_customer(mock_stripe_provider, owner_id):
    mock_stripe_provider.ensure_customer.return_value = "cus_test123"
    first = ensure_customer_for_owner(owner_id)

    mock_stripe_provider.ensure_customer.reset_mock()
    second = ensure_customer_for_owner(owner_id)

    assert first == second
    mock_stripe_provider.ensure_customer.assert_not_called()


def test_checkout_carries_owner_and_plugin(mock_stripe_provider, priced_plugins, owner_id, pos_plugin):
    mock_stripe_provider.ensure_customer.return_value = "cus_test123"
    mock_stripe_provider.create_checkout_session.return_value = "https://checkout.stripe.com/c/pay_123"

    url = request_checkout(owner_id, pos_plugin, "https://app.example/ok", "https://app.example/ko")

    assert url == "https://checkout.stripe.com/c/pay_123"
    mock_stripe_provider.create_checkout_session.assert_called_once_with(
        customer_id="cus_test123",
        price_id="price_pos",
        success_url="https://app.example/ok",
        cancel_url="https://app.example/ko",
        metadata={"owner_id": owner_id, "plugin_id": pos_plugin, "payment_type": "plugin_subscription"},
        client_reference_id=f"{owner_id}|{pos_plugin}",
    )


def test_checkout_default_redirects(mock_stripe_provider, priced_plugins, owner_id, pos_plugin, monkeypatch):
    from bookingfast.core.config import settings

    monkeypatch.setattr(settings, "APP_BASE_URL", "https://app.example/")
    mock_stripe_provider.ensure_customer.return_value = "cus_test123"
    mock_stripe_provider.create_checkout_session.return_value = "https://checkout.stripe.com/x"

    request_checkout(owner_id, pos_plugin)

    kwargs = mock_stripe_provider.create_checkout_session.call_args.kwargs
    assert kwargs["success_url"] == "https://app.example/plugins?success=true&plugin=pos"
    assert kwargs["cancel_url"] == "https://app.example/plugins?canceled=true"


def test_checkout_does_not_touch_subscription(mock_stripe_provider, priced_plugins, owner_id, pos_plugin):
    mock_stripe_provider.ensure_customer.return_value = "cus_test123"
    mock_stripe_provider.create_checkout_session.return_value = "https://checkout.stripe.com/x"

    request_checkout(owner_id, pos_plugin)
    assert get_subscription(owner_id, pos_plugin) is None


def test_checkout_unknown_plugin(mock_stripe_provider, owner_id):
    with pytest.raises(PluginNotFound):
        request_checkout(owner_id, "plugin-nope")


def test_checkout_requires_stripe_price(mock_stripe_provider, owner_id, pos_plugin):
    with pytest.raises(ValidationError, match="No Stripe price configured"):
        request_checkout(owner_id, pos_plugin)


def test_checkout_provider_failure_propagates(mock_stripe_provider, priced_plugins, owner_id, pos_plugin):
    mock_stripe_provider.ensure_customer.return_value = "cus_test123"
    mock_stripe_provider.create_checkout_session.side_effect = BillingProviderError("card network down")

    with pytest.raises(BillingProviderError):
        request_checkout(owner_id, pos_plugin)


def test_cancel_processor_subscription(mock_stripe_provider):
    assert cancel_processor_subscription("sub_123") is True
    mock_stripe_provider.cancel_subscription.assert_called_once_with("sub_123")


def test_cancel_processor_subscription_failure_is_swallowed(mock_stripe_provider):
    mock_stripe_provider.cancel_subscription.side_effect = BillingProviderError("nope")
    assert cancel_processor_subscription("sub_123") is False


def test_cancel_processor_subscription_without_ref(mock_stripe_provider):
    assert cancel_processor_subscription(None) is False
    mock_stripe_provider.cancel_subscription.assert_not_called()
