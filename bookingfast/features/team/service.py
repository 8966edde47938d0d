"""
bookingfast/features/team/service.py

Team membership under an owner account.

Handles:
- Invitations (email normalized, duplicates rejected, deactivated members revived)
- Removal (soft: members are deactivated, never deleted)
- Team size cap (raised while the enterprise pack plugin is usable)
- Role changes, gated by the role hierarchy
"""

from datetime import datetime
from typing import List, Optional, Union
from uuid import uuid4
import logging

from sqlalchemy import select, insert, update, delete, func
from sqlalchemy.orm import Session

from bookingfast.core.clock import Clock, resolve_clock, ensure_utc
from bookingfast.core.config import settings
from bookingfast.core.database import (
    get_db_session,
    users,
    team_members,
    team_member_plugin_permissions,
)
from bookingfast.core.errors import (
    MemberInactive,
    MemberNotFound,
    PermissionError,
    TeamLimitReached,
    ValidationError,
)
from bookingfast.features.plugins.service import get_plugin_by_slug
from bookingfast.features.subscriptions.service import get_subscription, is_usable
from bookingfast.features.team.roles import (
    ASSIGNABLE_ROLES,
    RoleName,
    can_manage,
    validate_permissions,
)
from bookingfast.models.team import InviteMemberRequest, TeamLimitStats, TeamMember


logger = logging.getLogger(__name__)

# Default for update_member_role: leave the stored custom permissions alone
KEEP_CUSTOM_PERMISSIONS = object()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _row_to_member(row) -> TeamMember:
    return TeamMember(
        id=row.id,
        owner_id=row.owner_id,
        user_id=row.user_id,
        email=row.email,
        full_name=row.full_name,
        role_name=row.role_name,
        custom_permissions=list(row.custom_permissions) if row.custom_permissions is not None else None,
        is_active=bool(row.is_active),
        invited_by=row.invited_by,
        invited_at=ensure_utc(row.invited_at),
        joined_at=ensure_utc(row.joined_at),
    )


def _get_or_create_user(session: Session, email: str, full_name: Optional[str], now: datetime) -> str:
    row = session.execute(select(users.c.user_id).where(users.c.email == email)).first()
    if row:
        return row.user_id
    user_id = str(uuid4())
    session.execute(
        insert(users).values(
            user_id=user_id,
            email=email,
            full_name=full_name,
            status="active",
            created_at=now,
        )
    )
    return user_id


def get_or_create_user_by_email(email: str, full_name: Optional[str] = None, *, clock: Optional[Clock] = None) -> str:
    """Resolve an email to a user id, creating a placeholder account if needed."""
    normalized = normalize_email(email)
    if "@" not in normalized:
        raise ValidationError(f"Invalid email: {email!r}")
    now = resolve_clock(clock).now()
    with get_db_session() as session:
        return _get_or_create_user(session, normalized, full_name, now)


def _count_active_members(session: Session, owner_id: str) -> int:
    return session.execute(
        select(func.count())
        .select_from(team_members)
        .where(team_members.c.owner_id == owner_id)
        .where(team_members.c.is_active == True)  # noqa: E712
    ).scalar_one()


def has_enterprise_pack(owner_id: str, *, clock: Optional[Clock] = None) -> bool:
    plugin = get_plugin_by_slug(settings.ENTERPRISE_PLUGIN_SLUG)
    if plugin is None:
        return False
    return is_usable(get_subscription(owner_id, plugin.id), resolve_clock(clock).now())


def get_team_limit_stats(owner_id: str, *, clock: Optional[Clock] = None) -> TeamLimitStats:
    """
    Team size against the cap.

    The enterprise pack raises the cap while it is trial or active. Lapsing
    never deactivates existing members; it only blocks new invitations.
    """
    enterprise = has_enterprise_pack(owner_id, clock=clock)
    with get_db_session() as session:
        return _limit_stats(session, owner_id, enterprise)


def _limit_stats(session: Session, owner_id: str, enterprise: bool) -> TeamLimitStats:
    limit = settings.TEAM_MEMBER_LIMIT_ENTERPRISE if enterprise else settings.TEAM_MEMBER_LIMIT
    current = _count_active_members(session, owner_id)
    return TeamLimitStats(
        current_members=current,
        member_limit=limit,
        available_slots=max(0, limit - current),
        has_enterprise_pack=enterprise,
        needs_upgrade=not enterprise and current >= settings.TEAM_UPSELL_THRESHOLD,
    )


def _validate_role(role_name: str) -> str:
    role = (role_name or "").strip().lower()
    if role not in ASSIGNABLE_ROLES:
        raise ValidationError(f"Role {role_name!r} cannot be assigned to a team member")
    return role


def invite_member(
    owner_id: str,
    request: InviteMemberRequest,
    *,
    invited_by: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> TeamMember:
    """
    Add a user to an owner's team.

    Raises:
        ValidationError: bad email or role, unknown permissions, self-invite,
            or the user is already an active member
        TeamLimitReached: no free slot under the current cap
    """
    email = normalize_email(request.email)
    if "@" not in email:
        raise ValidationError(f"Invalid email: {request.email!r}")
    role_name = _validate_role(request.role_name)
    custom = validate_permissions(request.custom_permissions) if request.custom_permissions is not None else None

    enterprise = has_enterprise_pack(owner_id, clock=clock)
    now = resolve_clock(clock).now()

    with get_db_session() as session:
        # Owner row lock: one invitation per team at a time
        session.execute(select(users.c.user_id).where(users.c.user_id == owner_id).with_for_update())
        stats = _limit_stats(session, owner_id, enterprise)

        user_id = _get_or_create_user(session, email, request.full_name, now)
        if user_id == owner_id:
            raise ValidationError("Owners cannot invite themselves")

        existing = session.execute(
            select(team_members)
            .where(team_members.c.owner_id == owner_id)
            .where(team_members.c.user_id == user_id)
        ).first()
        if existing and existing.is_active:
            raise ValidationError(f"{email} is already a member of this team")

        if stats.available_slots <= 0:
            logger.warning(
                "[team] member limit reached",
                extra={"owner_id": owner_id, "member_limit": stats.member_limit},
            )
            raise TeamLimitReached(
                f"Team member limit reached ({stats.current_members}/{stats.member_limit})"
            )

        values = dict(
            email=email,
            full_name=request.full_name,
            role_name=role_name,
            custom_permissions=custom,
            is_active=True,
            invited_by=invited_by or owner_id,
            invited_at=now,
            updated_at=now,
        )
        if existing:
            member_id = existing.id
            # A revived member starts with every plugin closed again
            session.execute(
                delete(team_member_plugin_permissions)
                .where(team_member_plugin_permissions.c.member_id == member_id)
            )
            session.execute(update(team_members).where(team_members.c.id == member_id).values(**values))
        else:
            member_id = str(uuid4())
            session.execute(
                insert(team_members).values(id=member_id, owner_id=owner_id, user_id=user_id, joined_at=None, **values)
            )

        row = session.execute(select(team_members).where(team_members.c.id == member_id)).first()
        member = _row_to_member(row)

    logger.info(
        "[team] member invited",
        extra={"owner_id": owner_id, "member_id": member.id, "role": role_name, "reactivated": bool(existing)},
    )
    return member


def get_member(member_id: str) -> Optional[TeamMember]:
    with get_db_session() as session:
        row = session.execute(select(team_members).where(team_members.c.id == member_id)).first()
        return _row_to_member(row) if row else None


def require_member(member_id: str, *, owner_id: Optional[str] = None, active_only: bool = True) -> TeamMember:
    """
    Fetch a member, optionally scoped to one owner.

    Raises:
        MemberNotFound: unknown id, or the member belongs to another owner
        MemberInactive: the member was removed (when active_only)
    """
    member = get_member(member_id)
    if member is None or (owner_id is not None and member.owner_id != owner_id):
        raise MemberNotFound(f"Team member {member_id} not found")
    if active_only and not member.is_active:
        raise MemberInactive(f"Team member {member_id} is inactive")
    return member


def get_membership(owner_id: str, user_id: str) -> Optional[TeamMember]:
    """Membership of `user_id` in `owner_id`'s team, active or not."""
    with get_db_session() as session:
        row = session.execute(
            select(team_members)
            .where(team_members.c.owner_id == owner_id)
            .where(team_members.c.user_id == user_id)
        ).first()
        return _row_to_member(row) if row else None


def list_members(owner_id: str, *, include_inactive: bool = False) -> List[TeamMember]:
    query = select(team_members).where(team_members.c.owner_id == owner_id)
    if not include_inactive:
        query = query.where(team_members.c.is_active == True)  # noqa: E712
    with get_db_session() as session:
        rows = session.execute(query.order_by(team_members.c.invited_at)).all()
        return [_row_to_member(row) for row in rows]


def list_memberships(user_id: str) -> List[TeamMember]:
    """Active memberships of a user across every owner."""
    with get_db_session() as session:
        rows = session.execute(
            select(team_members)
            .where(team_members.c.user_id == user_id)
            .where(team_members.c.is_active == True)  # noqa: E712
        ).all()
        return [_row_to_member(row) for row in rows]


def remove_member(owner_id: str, member_id: str, *, clock: Optional[Clock] = None) -> TeamMember:
    """Deactivate a member. Idempotent for already inactive members."""
    member = require_member(member_id, owner_id=owner_id, active_only=False)
    if not member.is_active:
        return member
    now = resolve_clock(clock).now()
    with get_db_session() as session:
        session.execute(
            update(team_members)
            .where(team_members.c.id == member_id)
            .values(is_active=False, updated_at=now)
        )
        row = session.execute(select(team_members).where(team_members.c.id == member_id)).first()
        removed = _row_to_member(row)

    logger.info("[team] member removed", extra={"owner_id": owner_id, "member_id": member_id})
    return removed


def update_member_role(
    owner_id: str,
    member_id: str,
    role_name: str,
    *,
    actor_role: str = RoleName.OWNER.value,
    custom_permissions: Union[List[str], None, object] = KEEP_CUSTOM_PERMISSIONS,
    clock: Optional[Clock] = None,
) -> TeamMember:
    """
    Change a member's role and, optionally, their custom permission list.

    The stored custom list is kept unless `custom_permissions` is passed;
    passing None reverts the member to the role defaults.

    The actor must outrank both the member's current role and the new role.

    Raises:
        MemberNotFound / MemberInactive: unknown or removed member
        ValidationError: role not assignable or unknown permissions
        PermissionError: actor does not outrank the member or the new role
    """
    member = require_member(member_id, owner_id=owner_id)
    new_role = _validate_role(role_name)
    if not (can_manage(actor_role, member.role_name) and can_manage(actor_role, new_role)):
        raise PermissionError(f"Role {actor_role!r} cannot assign {new_role!r} to a {member.role_name!r}")
    values = dict(role_name=new_role)
    if custom_permissions is not KEEP_CUSTOM_PERMISSIONS:
        values["custom_permissions"] = (
            validate_permissions(custom_permissions) if custom_permissions is not None else None
        )
    now = resolve_clock(clock).now()

    with get_db_session() as session:
        session.execute(
            update(team_members)
            .where(team_members.c.id == member_id)
            .values(updated_at=now, **values)
        )
        row = session.execute(select(team_members).where(team_members.c.id == member_id)).first()
        updated = _row_to_member(row)

    logger.info(
        "[team] role changed",
        extra={"owner_id": owner_id, "member_id": member_id, "from_role": member.role_name, "to_role": new_role},
    )
    return updated
