"""
bookingfast/features/access/service.py

"Can user U, acting for owner O, use plugin P right now?"

Owners get access while their subscription is effectively trial or active.
Team members additionally need an explicit per-plugin override granting
access; a missing override means closed. Overrides only ever restrict: they
never grant access the owner does not have.

Resolver reads never raise. Any failure resolves to "no access" and is logged.
"""

from datetime import datetime, timedelta
from math import ceil
from typing import Iterable, List, Optional, Union
import logging

from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from bookingfast.core.clock import Clock, FrozenClock, resolve_clock, ensure_utc
from bookingfast.core.database import get_db_session, team_member_plugin_permissions
from bookingfast.core.errors import PluginNotFound, ValidationError
from bookingfast.features.plugins.service import get_plugin, list_plugins, require_plugin
from bookingfast.features.subscriptions.service import (
    compute_effective_status,
    get_subscription,
    is_usable,
    list_subscriptions,
)
from bookingfast.features.subscriptions.trial_guard import has_used_trial
from bookingfast.features.team.service import get_membership, list_memberships, require_member
from bookingfast.models.plugin import Plugin
from bookingfast.models.subscription import (
    PluginSubscription,
    SubscriptionStatus,
    SubscriptionSummary,
)
from bookingfast.models.team import MemberPluginAccess, OverrideChange, PluginPermissionOverride


logger = logging.getLogger(__name__)

_DAY = timedelta(days=1)


def trial_days_remaining(subscription: Optional[PluginSubscription], now: datetime) -> int:
    """Whole days left in a trial, rounded up. 0 once ended or when not a trial."""
    if subscription is None or subscription.trial_ends_at is None:
        return 0
    remaining = ensure_utc(subscription.trial_ends_at) - ensure_utc(now)
    if remaining <= timedelta(0):
        return 0
    return ceil(remaining / _DAY)


def _override_allows(session: Session, member_id: str, owner_id: str, plugin_id: str) -> bool:
    row = session.execute(
        select(team_member_plugin_permissions.c.can_access)
        .where(team_member_plugin_permissions.c.member_id == member_id)
        .where(team_member_plugin_permissions.c.owner_id == owner_id)
        .where(team_member_plugin_permissions.c.plugin_id == plugin_id)
    ).first()
    return bool(row and row.can_access)


def _resolve(acting_user_id: str, owner_id: str, plugin_id: str, now: datetime) -> bool:
    plugin = get_plugin(plugin_id)
    if plugin is None or not plugin.is_active:
        return False

    if not is_usable(get_subscription(owner_id, plugin_id), now):
        return False

    if acting_user_id == owner_id:
        return True

    member = get_membership(owner_id, acting_user_id)
    if member is None or not member.is_active:
        return False

    with get_db_session() as session:
        return _override_allows(session, member.id, owner_id, plugin_id)


def can_access(acting_user_id: str, owner_id: str, plugin_id: str, *, clock: Optional[Clock] = None) -> bool:
    """
    Whether `acting_user_id` may use `plugin_id` for `owner_id` right now.

    Never raises.
    """
    try:
        now = resolve_clock(clock).now()
        return _resolve(acting_user_id, owner_id, plugin_id, now)
    except Exception:
        logger.error(
            "[access] resolution failed, denying",
            exc_info=True,
            extra={"user_id": acting_user_id, "owner_id": owner_id, "plugin_id": plugin_id},
        )
        return False


def list_accessible_plugins(acting_user_id: str, owner_id: str, *, clock: Optional[Clock] = None) -> List[Plugin]:
    """Active catalog filtered by can_access, featured first then by name. Never raises."""
    try:
        now = resolve_clock(clock).now()
        catalog = list_plugins()
    except Exception:
        logger.error(
            "[access] catalog read failed",
            exc_info=True,
            extra={"user_id": acting_user_id, "owner_id": owner_id},
        )
        return []
    # One clock read for the whole list so every plugin is judged at the same instant
    frozen = FrozenClock(now)
    return [p for p in catalog if can_access(acting_user_id, owner_id, p.id, clock=frozen)]


def get_subscription_summary(owner_id: str, plugin_id: str, *, clock: Optional[Clock] = None) -> SubscriptionSummary:
    """UI-facing view: effective status, days left, grace period and upsell flag."""
    now = resolve_clock(clock).now()
    record = get_subscription(owner_id, plugin_id)
    effective = compute_effective_status(record, now) if record else None
    is_trial = effective == SubscriptionStatus.TRIAL
    in_grace = (
        record is not None
        and record.status == SubscriptionStatus.CANCELLED
        and effective == SubscriptionStatus.ACTIVE
    )
    return SubscriptionSummary(
        owner_id=owner_id,
        plugin_id=plugin_id,
        effective_status=effective,
        is_trial=is_trial,
        trial_days_remaining=trial_days_remaining(record, now) if is_trial else 0,
        in_grace_period=in_grace,
        has_used_trial=has_used_trial(owner_id, plugin_id),
        show_upsell=effective not in (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE) or is_trial,
        current_period_end=record.current_period_end if record else None,
    )


def _upsert_override(session: Session, member_id: str, owner_id: str, plugin_id: str, allowed: bool, now: datetime) -> None:
    existing = session.execute(
        select(team_member_plugin_permissions.c.id)
        .where(team_member_plugin_permissions.c.member_id == member_id)
        .where(team_member_plugin_permissions.c.owner_id == owner_id)
        .where(team_member_plugin_permissions.c.plugin_id == plugin_id)
    ).first()
    if existing:
        session.execute(
            update(team_member_plugin_permissions)
            .where(team_member_plugin_permissions.c.id == existing.id)
            .values(can_access=allowed, updated_at=now)
        )
    else:
        session.execute(
            insert(team_member_plugin_permissions).values(
                member_id=member_id,
                owner_id=owner_id,
                plugin_id=plugin_id,
                can_access=allowed,
                created_at=now,
                updated_at=now,
            )
        )


def set_permission_override(
    member_id: str,
    plugin_id: str,
    allowed: bool,
    *,
    owner_id: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> PluginPermissionOverride:
    """
    Open or close one plugin for one member.

    Raises:
        MemberNotFound: unknown member (or another owner's member)
        MemberInactive: removed member
        PluginNotFound: unknown or inactive plugin
    """
    member = require_member(member_id, owner_id=owner_id)
    require_plugin(plugin_id)
    now = resolve_clock(clock).now()
    with get_db_session() as session:
        _upsert_override(session, member.id, member.owner_id, plugin_id, bool(allowed), now)

    logger.info(
        "[access] override set",
        extra={"owner_id": member.owner_id, "member_id": member.id, "plugin_id": plugin_id, "can_access": bool(allowed)},
    )
    return PluginPermissionOverride(
        member_id=member.id, owner_id=member.owner_id, plugin_id=plugin_id, can_access=bool(allowed)
    )


def bulk_set_permission_overrides(
    member_id: str,
    changes: Iterable[Union[OverrideChange, dict]],
    *,
    owner_id: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> List[PluginPermissionOverride]:
    """
    Apply several overrides for one member, all or nothing.

    Every plugin is validated before anything is written; the writes share a
    single transaction.

    Raises:
        MemberNotFound / MemberInactive: unknown or removed member
        PluginNotFound: any plugin in the batch is unknown (nothing is written)
        ValidationError: the same plugin appears twice with conflicting values
    """
    member = require_member(member_id, owner_id=owner_id)
    batch = [c if isinstance(c, OverrideChange) else OverrideChange(**c) for c in changes]

    seen = {}
    for change in batch:
        if change.plugin_id in seen and seen[change.plugin_id] != change.can_access:
            raise ValidationError(f"Conflicting overrides for plugin {change.plugin_id}")
        seen[change.plugin_id] = change.can_access

    missing = [plugin_id for plugin_id in seen if _inactive_or_missing(plugin_id)]
    if missing:
        raise PluginNotFound(f"Plugin {missing[0]} not found")

    now = resolve_clock(clock).now()
    with get_db_session() as session:
        for plugin_id, allowed in seen.items():
            _upsert_override(session, member.id, member.owner_id, plugin_id, allowed, now)

    logger.info(
        "[access] overrides updated",
        extra={"owner_id": member.owner_id, "member_id": member.id, "count": len(seen)},
    )
    return [
        PluginPermissionOverride(member_id=member.id, owner_id=member.owner_id, plugin_id=plugin_id, can_access=allowed)
        for plugin_id, allowed in seen.items()
    ]


def _inactive_or_missing(plugin_id: str) -> bool:
    plugin = get_plugin(plugin_id)
    return plugin is None or not plugin.is_active


def get_member_plugin_access(member_id: str, *, owner_id: Optional[str] = None, clock: Optional[Clock] = None) -> List[MemberPluginAccess]:
    """
    One row per plugin the owner can currently use, with the member's override.

    Backs the member permissions screen.
    """
    member = require_member(member_id, owner_id=owner_id)
    now = resolve_clock(clock).now()
    usable_ids = {s.plugin_id for s in list_subscriptions(member.owner_id) if is_usable(s, now)}

    with get_db_session() as session:
        rows = []
        for plugin in list_plugins():
            if plugin.id not in usable_ids:
                continue
            rows.append(
                MemberPluginAccess(
                    plugin_id=plugin.id,
                    plugin_name=plugin.name,
                    plugin_slug=plugin.slug,
                    plugin_icon=plugin.icon,
                    can_access=_override_allows(session, member.id, member.owner_id, plugin.id),
                )
            )
    return rows


def list_member_accessible_plugins(user_id: str, *, clock: Optional[Clock] = None) -> List[Plugin]:
    """Plugins `user_id` can reach through any team they belong to. Never raises."""
    try:
        now = resolve_clock(clock).now()
        memberships = list_memberships(user_id)
    except Exception:
        logger.error("[access] membership read failed", exc_info=True, extra={"user_id": user_id})
        return []

    frozen = FrozenClock(now)
    found = {}
    for member in memberships:
        for plugin in list_accessible_plugins(user_id, member.owner_id, clock=frozen):
            found.setdefault(plugin.id, plugin)
    return sorted(found.values(), key=lambda p: (not p.is_featured, p.name))
