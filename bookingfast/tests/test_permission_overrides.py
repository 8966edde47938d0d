"""
Per-member plugin overrides: single upsert, atomic bulk updates, permissions screen.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from bookingfast.core.database import get_db_session, team_member_plugin_permissions
from bookingfast.core.errors import MemberInactive, MemberNotFound, PluginNotFound, ValidationError
from bookingfast.features.access.service import (
    bulk_set_permission_overrides,
    can_access,
    get_member_plugin_access,
    set_permission_override,
)
from bookingfast.features.subscriptions.service import confirm_paid_activation, delete_subscription, start_trial
from bookingfast.features.team.service import remove_member
from bookingfast.models.team import OverrideChange


def _override_rows(member_id):
    with get_db_session() as session:
        return session.execute(
            select(team_member_plugin_permissions).where(team_member_plugin_permissions.c.member_id == member_id)
        ).all()


def test_set_override_upserts_single_row(clock, owner_id, pos_plugin, make_member):
    member = make_member()
    set_permission_override(member.id, pos_plugin, True)
    result = set_permission_override(member.id, pos_plugin, False)

    rows = _override_rows(member.id)
    assert len(rows) == 1
    assert rows[0].can_access is False
    assert result.can_access is False
    assert result.owner_id == owner_id


def test_set_override_unknown_member(clock, pos_plugin):
    with pytest.raises(MemberNotFound):
        set_permission_override("missing", pos_plugin, True)


def test_set_override_other_owners_member(clock, owner_id, pos_plugin, make_member):
    member = make_member(owner="owner-2")
    with pytest.raises(MemberNotFound):
        set_permission_override(member.id, pos_plugin, True, owner_id=owner_id)


def test_set_override_inactive_member(clock, owner_id, pos_plugin, make_member):
    member = make_member()
    remove_member(owner_id, member.id)
    with pytest.raises(MemberInactive):
        set_permission_override(member.id, pos_plugin, True)


def test_set_override_unknown_plugin(clock, owner_id, make_member):
    member = make_member()
    with pytest.raises(PluginNotFound):
        set_permission_override(member.id, "plugin-nope", True)


def test_bulk_applies_every_change(clock, owner_id, pos_plugin, reports_plugin, make_member):
    member = make_member()
    result = bulk_set_permission_overrides(
        member.id,
        [OverrideChange(plugin_id=pos_plugin, can_access=True), {"plugin_id": reports_plugin, "can_access": False}],
    )

    assert {(o.plugin_id, o.can_access) for o in result} == {(pos_plugin, True), (reports_plugin, False)}
    assert {(r.plugin_id, r.can_access) for r in _override_rows(member.id)} == {
        (pos_plugin, True),
        (reports_plugin, False),
    }


def test_bulk_with_unknown_plugin_writes_nothing(clock, owner_id, pos_plugin, make_member):
    member = make_member()
    with pytest.raises(PluginNotFound):
        bulk_set_permission_overrides(
            member.id,
            [
                {"plugin_id": pos_plugin, "can_access": True},
                {"plugin_id": "plugin-nope", "can_access": True},
            ],
        )
    assert _override_rows(member.id) == []


def test_bulk_rolls_back_on_write_failure(clock, owner_id, pos_plugin, reports_plugin, make_member, monkeypatch):
    from bookingfast.features.access import service as access_service

    member = make_member()
    real_upsert = access_service._upsert_override
    calls = []

    def failing_upsert(session, member_id, owner, plugin_id, allowed, now):
        calls.append(plugin_id)
        if len(calls) == 2:
            raise RuntimeError("disk full")
        real_upsert(session, member_id, owner, plugin_id, allowed, now)

    monkeypatch.setattr(access_service, "_upsert_override", failing_upsert)
    with pytest.raises(RuntimeError):
        bulk_set_permission_overrides(
            member.id,
            [{"plugin_id": pos_plugin, "can_access": True}, {"plugin_id": reports_plugin, "can_access": True}],
        )
    assert _override_rows(member.id) == []


def test_bulk_conflicting_duplicates_rejected(clock, owner_id, pos_plugin, make_member):
    member = make_member()
    with pytest.raises(ValidationError):
        bulk_set_permission_overrides(
            member.id,
            [{"plugin_id": pos_plugin, "can_access": True}, {"plugin_id": pos_plugin, "can_access": False}],
        )


def test_member_plugin_access_lists_usable_subscriptions(clock, owner_id, pos_plugin, reports_plugin, make_member):
    member = make_member()
    confirm_paid_activation(owner_id, pos_plugin, "sub_1", clock.now() + timedelta(days=30))
    start_trial(owner_id, reports_plugin)
    set_permission_override(member.id, reports_plugin, True)

    rows = get_member_plugin_access(member.id, owner_id=owner_id)
    assert [(r.plugin_id, r.can_access) for r in rows] == [(pos_plugin, False), (reports_plugin, True)]
    assert rows[0].plugin_slug == "pos"


def test_member_plugin_access_hides_expired(clock, owner_id, reports_plugin, make_member):
    member = make_member()
    start_trial(owner_id, reports_plugin)
    clock.advance(days=8)
    assert get_member_plugin_access(member.id) == []


def test_subscription_delete_removes_pairing_overrides(clock, owner_id, pos_plugin, make_member):
    member = make_member()
    confirm_paid_activation(owner_id, pos_plugin, "sub_1", clock.now() + timedelta(days=30))
    set_permission_override(member.id, pos_plugin, True)

    delete_subscription(owner_id, pos_plugin)
    assert _override_rows(member.id) == []

    # A fresh subscription starts closed for members
    confirm_paid_activation(owner_id, pos_plugin, "sub_2", clock.now() + timedelta(days=30))
    assert can_access(member.user_id, owner_id, pos_plugin) is False


def test_reinvited_member_starts_closed(clock, owner_id, pos_plugin, make_member):
    member = make_member(email="back@salon.example")
    confirm_paid_activation(owner_id, pos_plugin, "sub_1", clock.now() + timedelta(days=30))
    set_permission_override(member.id, pos_plugin, True)
    remove_member(owner_id, member.id)

    again = make_member(email="back@salon.example")
    assert again.id == member.id
    assert can_access(again.user_id, owner_id, pos_plugin) is False
