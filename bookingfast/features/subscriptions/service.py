"""
bookingfast/features/subscriptions/service.py

Per-owner, per-plugin subscription state machine.

    no-subscription -> trial -> active | expired
    active -> cancelled -> expired (once current_period_end passes)
    any -> active (paid confirmation from the payment processor)

Handles:
- One-time 7-day trials (guarded by the durable trial ledger)
- Paid activation (idempotent per processor reference)
- Cancellation with a grace period until current_period_end
- Effective status derivation (pure, time-dependent)

Every write after the initial read is a compare-and-swap on `version`.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional, TypeVar
from uuid import uuid4
import logging

from sqlalchemy import select, insert, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookingfast.core.clock import Clock, resolve_clock, ensure_utc
from bookingfast.core.config import settings
from bookingfast.core.database import (
    get_db_session,
    plugin_subscriptions,
    team_member_plugin_permissions,
)
from bookingfast.core.errors import (
    ConcurrentModification,
    NoActiveSubscription,
    SubscriptionAlreadyActive,
    TrialAlreadyUsed,
    ValidationError,
)
from bookingfast.features.plugins.service import require_plugin
from bookingfast.features.subscriptions.trial_guard import claim_trial, _has_used_trial
from bookingfast.models.plugin import Plugin
from bookingfast.models.subscription import (
    PluginSubscription,
    SubscriptionStatus,
    USABLE_STATUSES,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_effective_status(record: PluginSubscription, now: datetime) -> SubscriptionStatus:
    """
    Status for access decisions at instant `now`.

    Pure: depends only on (record, now). The stored status is never used for
    access directly.
    """
    now = ensure_utc(now)
    status = record.status

    if status == SubscriptionStatus.TRIAL:
        trial_ends_at = ensure_utc(record.trial_ends_at)
        if trial_ends_at is not None and now < trial_ends_at:
            return SubscriptionStatus.TRIAL
        return SubscriptionStatus.EXPIRED

    if status == SubscriptionStatus.ACTIVE:
        return SubscriptionStatus.ACTIVE

    if status == SubscriptionStatus.CANCELLED:
        period_end = ensure_utc(record.current_period_end)
        if period_end is not None and now < period_end:
            return SubscriptionStatus.ACTIVE
        return SubscriptionStatus.EXPIRED

    return SubscriptionStatus.EXPIRED


def included_feature_ids(plugin: Plugin) -> List[str]:
    """Features that come with the plugin price (paid add-ons excluded)."""
    return [feature.id for feature in plugin.features if feature.included]


def is_usable(record: Optional[PluginSubscription], now: datetime) -> bool:
    if record is None:
        return False
    return compute_effective_status(record, now) in USABLE_STATUSES


def _row_to_subscription(row) -> PluginSubscription:
    return PluginSubscription(
        id=row.id,
        owner_id=row.owner_id,
        plugin_id=row.plugin_id,
        status=SubscriptionStatus(row.status),
        is_trial=bool(row.is_trial),
        trial_ends_at=ensure_utc(row.trial_ends_at),
        trial_used=bool(row.trial_used),
        current_period_start=ensure_utc(row.current_period_start),
        current_period_end=ensure_utc(row.current_period_end),
        processor_ref=row.processor_ref,
        activated_features=list(row.activated_features or []),
        version=row.version,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _select_subscription(session: Session, owner_id: str, plugin_id: str) -> Optional[PluginSubscription]:
    row = session.execute(
        select(plugin_subscriptions)
        .where(plugin_subscriptions.c.owner_id == owner_id)
        .where(plugin_subscriptions.c.plugin_id == plugin_id)
    ).first()
    return _row_to_subscription(row) if row else None


def _cas_update(session: Session, record: PluginSubscription, now: datetime, **values) -> PluginSubscription:
    result = session.execute(
        update(plugin_subscriptions)
        .where(plugin_subscriptions.c.id == record.id)
        .where(plugin_subscriptions.c.version == record.version)
        .values(version=record.version + 1, updated_at=now, **values)
    )
    if result.rowcount == 0:
        raise ConcurrentModification(
            f"Subscription {record.id} changed concurrently (version {record.version})"
        )
    refreshed = _select_subscription(session, record.owner_id, record.plugin_id)
    if refreshed is None:
        raise ConcurrentModification(f"Subscription {record.id} was deleted concurrently")
    return refreshed


def _insert_subscription(session: Session, owner_id: str, plugin_id: str, now: datetime, **values) -> PluginSubscription:
    try:
        session.execute(
            insert(plugin_subscriptions).values(
                id=str(uuid4()),
                owner_id=owner_id,
                plugin_id=plugin_id,
                version=1,
                created_at=now,
                updated_at=now,
                **values,
            )
        )
        session.flush()
    except IntegrityError:
        # Another request created the live row first
        raise ConcurrentModification(f"Subscription for plugin {plugin_id} created concurrently")
    return _select_subscription(session, owner_id, plugin_id)


def with_cas_retry(operation: Callable[..., T], *args, **kwargs) -> T:
    """Run a mutating operation, re-reading and retrying once on a lost CAS race."""
    try:
        return operation(*args, **kwargs)
    except ConcurrentModification:
        logger.info(
            "[subscriptions] retrying after concurrent modification",
            extra={"operation": getattr(operation, "__name__", str(operation))},
        )
        return operation(*args, **kwargs)


def start_trial(owner_id: str, plugin_id: str, *, clock: Optional[Clock] = None) -> PluginSubscription:
    """
    Start the one-time trial for (owner, plugin).

    trial_used is set immediately, not at trial end, and the grant is recorded
    in the durable trial ledger in the same transaction.

    Raises:
        PluginNotFound: unknown or inactive plugin
        TrialAlreadyUsed: a trial was ever granted for this pair
        SubscriptionAlreadyActive: a paid subscription is still usable
        ConcurrentModification: lost a race on the live row
    """
    plugin = require_plugin(plugin_id)
    now = resolve_clock(clock).now()
    trial_ends_at = now + timedelta(days=settings.TRIAL_PERIOD_DAYS)

    with get_db_session() as session:
        existing = _select_subscription(session, owner_id, plugin_id)

        if _has_used_trial(session, owner_id, plugin_id):
            logger.warning(
                "[subscriptions] trial refused",
                extra={"owner_id": owner_id, "plugin_id": plugin_id, "reason": "trial_already_used"},
            )
            raise TrialAlreadyUsed(f"Trial already used for plugin {plugin_id}")

        if existing is not None and is_usable(existing, now):
            raise SubscriptionAlreadyActive(
                f"Plugin {plugin_id} already has a {existing.status.value} subscription"
            )

        claim_trial(session, owner_id, plugin_id, now, trial_ends_at)

        trial_values = dict(
            status=SubscriptionStatus.TRIAL.value,
            is_trial=True,
            trial_used=True,
            trial_ends_at=trial_ends_at,
            current_period_start=now,
            current_period_end=None,
            activated_features=included_feature_ids(plugin),
        )
        if existing is not None:
            record = _cas_update(session, existing, now, **trial_values)
        else:
            record = _insert_subscription(session, owner_id, plugin_id, now, **trial_values)

    logger.info(
        "[subscriptions] trial started",
        extra={"owner_id": owner_id, "plugin_id": plugin_id, "trial_ends_at": trial_ends_at.isoformat()},
    )
    return record


def confirm_paid_activation(
    owner_id: str,
    plugin_id: str,
    processor_ref: str,
    period_end: datetime,
    *,
    clock: Optional[Clock] = None,
) -> PluginSubscription:
    """
    Apply a confirmed payment: any state -> active.

    Idempotent: an active row already carrying `processor_ref` is returned
    unchanged, unless `period_end` moves the paid period forward (renewal).
    trial_used is preserved.

    Raises:
        ValidationError: empty processor reference or missing period end
        PluginNotFound: unknown plugin
        ConcurrentModification: lost a race on the live row
    """
    if not processor_ref:
        raise ValidationError("processor_ref is required to activate a subscription")
    if period_end is None:
        # Without an end date a later cancel would have no grace period
        raise ValidationError("period_end is required to activate a subscription")
    plugin = require_plugin(plugin_id, active_only=False)
    now = resolve_clock(clock).now()
    period_end = ensure_utc(period_end)

    with get_db_session() as session:
        existing = _select_subscription(session, owner_id, plugin_id)

        if (
            existing is not None
            and existing.status == SubscriptionStatus.ACTIVE
            and existing.processor_ref == processor_ref
        ):
            stored_end = existing.current_period_end
            if stored_end is None or period_end > stored_end:
                # Renewal of the same processor subscription
                record = _cas_update(session, existing, now, current_period_end=period_end)
                logger.info(
                    "[subscriptions] period extended",
                    extra={"owner_id": owner_id, "plugin_id": plugin_id, "current_period_end": period_end.isoformat()},
                )
                return record
            logger.info(
                "[subscriptions] activation already applied",
                extra={"owner_id": owner_id, "plugin_id": plugin_id, "processor_ref": processor_ref},
            )
            return existing

        active_values = dict(
            status=SubscriptionStatus.ACTIVE.value,
            is_trial=False,
            processor_ref=processor_ref,
            current_period_start=now,
            current_period_end=period_end,
            activated_features=included_feature_ids(plugin),
        )
        if existing is not None:
            previous = existing.status.value
            record = _cas_update(session, existing, now, **active_values)
        else:
            previous = None
            record = _insert_subscription(
                session, owner_id, plugin_id, now, trial_used=False, trial_ends_at=None, **active_values
            )

    logger.info(
        "[subscriptions] activated",
        extra={
            "owner_id": owner_id,
            "plugin_id": plugin_id,
            "previous_status": previous,
            "processor_ref": processor_ref,
            "current_period_end": period_end.isoformat(),
        },
    )
    return record


def cancel(owner_id: str, plugin_id: str, *, clock: Optional[Clock] = None) -> PluginSubscription:
    """
    Cancel a paid subscription. Access continues until current_period_end.

    Raises:
        NoActiveSubscription: no row, or the row is not in stored status active
        ConcurrentModification: lost a race on the live row
    """
    now = resolve_clock(clock).now()
    with get_db_session() as session:
        existing = _select_subscription(session, owner_id, plugin_id)
        if existing is None or existing.status != SubscriptionStatus.ACTIVE:
            raise NoActiveSubscription(f"No active subscription for plugin {plugin_id}")
        record = _cas_update(session, existing, now, status=SubscriptionStatus.CANCELLED.value)

    logger.info(
        "[subscriptions] cancelled",
        extra={
            "owner_id": owner_id,
            "plugin_id": plugin_id,
            "access_until": record.current_period_end.isoformat() if record.current_period_end else None,
        },
    )
    return record


def get_subscription(owner_id: str, plugin_id: str) -> Optional[PluginSubscription]:
    with get_db_session() as session:
        return _select_subscription(session, owner_id, plugin_id)


def list_subscriptions(owner_id: str) -> List[PluginSubscription]:
    """All subscription rows of an owner, newest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(plugin_subscriptions)
            .where(plugin_subscriptions.c.owner_id == owner_id)
            .order_by(plugin_subscriptions.c.created_at.desc())
        ).all()
        return [_row_to_subscription(row) for row in rows]


def get_subscription_by_processor_ref(processor_ref: str) -> Optional[PluginSubscription]:
    with get_db_session() as session:
        row = session.execute(
            select(plugin_subscriptions).where(plugin_subscriptions.c.processor_ref == processor_ref)
        ).first()
        return _row_to_subscription(row) if row else None


def delete_subscription(owner_id: str, plugin_id: str) -> bool:
    """
    Delete the live row and the pairing's member overrides.

    The trial ledger is untouched, so a deleted subscription never frees a
    second trial. Returns True if a row was deleted.
    """
    with get_db_session() as session:
        session.execute(
            delete(team_member_plugin_permissions)
            .where(team_member_plugin_permissions.c.owner_id == owner_id)
            .where(team_member_plugin_permissions.c.plugin_id == plugin_id)
        )
        result = session.execute(
            delete(plugin_subscriptions)
            .where(plugin_subscriptions.c.owner_id == owner_id)
            .where(plugin_subscriptions.c.plugin_id == plugin_id)
        )
        deleted = result.rowcount > 0

    if deleted:
        logger.info("[subscriptions] deleted", extra={"owner_id": owner_id, "plugin_id": plugin_id})
    return deleted
