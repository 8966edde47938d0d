# bookingfast/conftest.py
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import insert, update

from bookingfast.core.clock import FrozenClock, set_clock
from bookingfast.core.config import settings
from bookingfast.core.database import (
    create_all_tables,
    dispose_engine,
    drop_all_tables,
    get_db_session,
    init_engine,
    plugins,
    users,
)
from bookingfast.features.plugins.service import plugin_id_for_slug, seed_plugins
from bookingfast.features.team.service import invite_member
from bookingfast.models.team import InviteMemberRequest


START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

OWNER_ID = "owner-1"


@pytest.fixture(scope="function", autouse=True)
def database():
    """
    Fresh in-memory SQLite database per test, with the plugin catalog seeded.
    """
    init_engine("sqlite://")
    create_all_tables()
    seed_plugins()
    yield
    drop_all_tables()
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def billing_disabled_by_default(monkeypatch):
    """Tests opt in to billing by setting STRIPE_SECRET_KEY themselves."""
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)


@pytest.fixture
def clock():
    """Process-wide frozen clock; advance it to move through trials and periods."""
    frozen = FrozenClock(START)
    previous = set_clock(frozen)
    yield frozen
    set_clock(previous)


@pytest.fixture
def owner_id():
    with get_db_session() as session:
        session.execute(
            insert(users).values(
                user_id=OWNER_ID,
                email="owner@salon.example",
                full_name="Salon Owner",
                status="active",
                created_at=START,
            )
        )
    return OWNER_ID


@pytest.fixture
def pos_plugin():
    return plugin_id_for_slug("pos")


@pytest.fixture
def reports_plugin():
    return plugin_id_for_slug("reports")


@pytest.fixture
def enterprise_plugin():
    return plugin_id_for_slug("entreprisepack")


@pytest.fixture
def make_member(owner_id, clock):
    """Factory: invite a member into owner-1's team and return it."""
    counter = {"n": 0}

    def _make(role_name="employee", email=None, custom_permissions=None, owner=None):
        counter["n"] += 1
        request = InviteMemberRequest(
            email=email or f"member{counter['n']}@salon.example",
            role_name=role_name,
            custom_permissions=custom_permissions,
        )
        return invite_member(owner or owner_id, request)

    return _make


@pytest.fixture
def priced_plugins():
    """Give every seeded plugin a Stripe price."""
    with get_db_session() as session:
        for slug in ("multi-user", "pos", "reports", "entreprisepack"):
            session.execute(
                update(plugins)
                .where(plugins.c.slug == slug)
                .values(stripe_price_id=f"price_{slug.replace('-', '_')}")
            )


@pytest.fixture
def mock_stripe_provider(monkeypatch):
    """Mock Stripe provider for testing (no real API calls)."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test_123")
    with patch("bookingfast.features.billing.service.StripeProvider") as mock:
        instance = Mock()
        mock.return_value = instance
        yield instance
