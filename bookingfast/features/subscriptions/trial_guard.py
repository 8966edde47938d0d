"""
bookingfast/features/subscriptions/trial_guard.py

One-time trial eligibility.

The guard reads the append-only `plugin_trial_history` ledger, not the live
subscription row: deleting or recreating a subscription must never give an
owner a second trial. Granting a trial is a single conditional insert into the
ledger, so two concurrent starts cannot both win.
"""

from datetime import datetime
import logging

from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookingfast.core.database import get_db_session, plugin_trial_history, plugin_subscriptions
from bookingfast.core.errors import TrialAlreadyUsed


logger = logging.getLogger(__name__)


def has_used_trial(owner_id: str, plugin_id: str) -> bool:
    """True if any trial was ever granted for this (owner, plugin) pair."""
    with get_db_session() as session:
        return _has_used_trial(session, owner_id, plugin_id)


def _has_used_trial(session: Session, owner_id: str, plugin_id: str) -> bool:
    ledger = session.execute(
        select(plugin_trial_history.c.id)
        .where(plugin_trial_history.c.owner_id == owner_id)
        .where(plugin_trial_history.c.plugin_id == plugin_id)
    ).first()
    if ledger:
        return True
    # Rows written before the ledger existed still carry the sticky flag
    live = session.execute(
        select(plugin_subscriptions.c.id)
        .where(plugin_subscriptions.c.owner_id == owner_id)
        .where(plugin_subscriptions.c.plugin_id == plugin_id)
        .where(plugin_subscriptions.c.trial_used == True)  # noqa: E712
    ).first()
    return live is not None


def claim_trial(
    session: Session,
    owner_id: str,
    plugin_id: str,
    started_at: datetime,
    ends_at: datetime,
) -> None:
    """
    Record the trial grant inside the caller's transaction.

    Raises:
        TrialAlreadyUsed: if the pair already has a ledger entry, including
            when a concurrent request inserted it first.
    """
    if _has_used_trial(session, owner_id, plugin_id):
        raise TrialAlreadyUsed(f"Trial already used for plugin {plugin_id}")
    try:
        session.execute(
            insert(plugin_trial_history).values(
                owner_id=owner_id,
                plugin_id=plugin_id,
                started_at=started_at,
                trial_ends_at=ends_at,
            )
        )
        session.flush()
    except IntegrityError:
        # The enclosing get_db_session() rolls the whole start back
        logger.warning(
            "[trial_guard] concurrent trial claim rejected",
            extra={"owner_id": owner_id, "plugin_id": plugin_id},
        )
        raise TrialAlreadyUsed(f"Trial already used for plugin {plugin_id}")
