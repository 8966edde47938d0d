"""
One-time trial guard: durable ledger, sticky flag, conditional insert.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import insert, select

from bookingfast.core.database import get_db_session, plugin_subscriptions, plugin_trial_history
from bookingfast.core.errors import TrialAlreadyUsed
from bookingfast.features.subscriptions import trial_guard
from bookingfast.features.subscriptions.service import delete_subscription, start_trial
from bookingfast.features.subscriptions.trial_guard import claim_trial, has_used_trial


def test_unused_before_any_trial(clock, owner_id, reports_plugin):
    assert has_used_trial(owner_id, reports_plugin) is False


def test_used_after_trial_start(clock, owner_id, reports_plugin):
    start_trial(owner_id, reports_plugin)
    assert has_used_trial(owner_id, reports_plugin) is True


def test_ledger_survives_subscription_delete(clock, owner_id, reports_plugin):
    start_trial(owner_id, reports_plugin)
    delete_subscription(owner_id, reports_plugin)

    assert has_used_trial(owner_id, reports_plugin) is True
    with get_db_session() as session:
        rows = session.execute(
            select(plugin_trial_history).where(plugin_trial_history.c.owner_id == owner_id)
        ).all()
    assert len(rows) == 1
    assert rows[0].plugin_id == reports_plugin


def test_sticky_flag_on_live_row_counts_as_used(clock, owner_id, reports_plugin):
    start_trial(owner_id, reports_plugin)
    # Row predating the ledger: only the flag remains
    with get_db_session() as session:
        session.execute(plugin_trial_history.delete())

    assert has_used_trial(owner_id, reports_plugin) is True


def test_other_owner_unaffected(clock, owner_id, reports_plugin):
    start_trial(owner_id, reports_plugin)
    assert has_used_trial("owner-2", reports_plugin) is False


def test_claim_refuses_existing_entry(clock, owner_id, reports_plugin):
    now = clock.now()
    with get_db_session() as session:
        claim_trial(session, owner_id, reports_plugin, now, now + timedelta(days=7))

    with pytest.raises(TrialAlreadyUsed):
        with get_db_session() as session:
            claim_trial(session, owner_id, reports_plugin, now, now + timedelta(days=7))


def test_concurrent_claim_loses_on_unique_constraint(clock, owner_id, reports_plugin):
    """The second writer passes the read check but the insert itself is refused."""
    now = clock.now()
    with get_db_session() as session:
        session.execute(
            insert(plugin_trial_history).values(
                owner_id=owner_id,
                plugin_id=reports_plugin,
                started_at=now,
                trial_ends_at=now + timedelta(days=7),
            )
        )

    with patch.object(trial_guard, "_has_used_trial", return_value=False):
        with pytest.raises(TrialAlreadyUsed):
            with get_db_session() as session:
                claim_trial(session, owner_id, reports_plugin, now, now + timedelta(days=7))


def test_losing_start_leaves_no_live_row(clock, owner_id, reports_plugin):
    now = clock.now()
    with get_db_session() as session:
        session.execute(
            insert(plugin_trial_history).values(
                owner_id=owner_id,
                plugin_id=reports_plugin,
                started_at=now,
                trial_ends_at=now + timedelta(days=7),
            )
        )

    with patch("bookingfast.features.subscriptions.service._has_used_trial", return_value=False), \
            patch.object(trial_guard, "_has_used_trial", return_value=False):
        with pytest.raises(TrialAlreadyUsed):
            start_trial(owner_id, reports_plugin)

    with get_db_session() as session:
        live = session.execute(
            select(plugin_subscriptions).where(plugin_subscriptions.c.owner_id == owner_id)
        ).first()
    assert live is None

