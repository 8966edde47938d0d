"""
bookingfast/api/team.py
FastAPI routes for an owner's team: membership, roles and per-plugin access.

The acting user (x-user-id) is the owner of the team being managed.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from bookingfast.api.deps import get_acting_user_id
from bookingfast.features.access.service import (
    bulk_set_permission_overrides,
    get_member_plugin_access,
    set_permission_override,
)
from bookingfast.features.team.roles import AVAILABLE_PERMISSIONS, ROLES, resolve_permissions
from bookingfast.features.team.service import (
    get_team_limit_stats,
    invite_member,
    list_members,
    remove_member,
    update_member_role,
)
from bookingfast.models.team import InviteMemberRequest, OverrideChange


router = APIRouter(prefix="/api/team", tags=["team"])


class OverrideRequest(BaseModel):
    can_access: bool


class BulkOverrideRequest(BaseModel):
    changes: List[OverrideChange]


class RoleUpdateRequest(BaseModel):
    role_name: str
    custom_permissions: Optional[List[str]] = None


def _member_payload(member) -> dict:
    data = member.model_dump(mode="json")
    data["permissions"] = sorted(resolve_permissions(member))
    return data


@router.get("/roles")
def get_roles():
    """Role catalog with levels and default permissions."""
    return {
        "success": True,
        "data": {
            "roles": [
                {
                    "name": role.name.value,
                    "display_name": role.display_name,
                    "level": role.level,
                    "permissions": sorted(role.permissions),
                }
                for role in sorted(ROLES.values(), key=lambda r: -r.level)
            ],
            "permissions": [p.model_dump(mode="json") for p in AVAILABLE_PERMISSIONS],
        },
    }


@router.get("/limit")
def get_limit(owner_id: str = Depends(get_acting_user_id)):
    stats = get_team_limit_stats(owner_id)
    return {"success": True, "data": stats.model_dump(mode="json")}


@router.get("/members")
def get_members(include_inactive: bool = False, owner_id: str = Depends(get_acting_user_id)):
    members = list_members(owner_id, include_inactive=include_inactive)
    return {"success": True, "data": [_member_payload(m) for m in members]}


@router.post("/members", status_code=201)
def post_member(request: InviteMemberRequest, owner_id: str = Depends(get_acting_user_id)):
    """
    Invite a member.

    Errors:
        400: validation_error (bad role, duplicate member, self-invite)
        403: team_limit_reached
    """
    member = invite_member(owner_id, request, invited_by=owner_id)
    return {"success": True, "data": _member_payload(member)}


@router.patch("/members/{member_id}")
def patch_member(member_id: str, request: RoleUpdateRequest, owner_id: str = Depends(get_acting_user_id)):
    """Omitting custom_permissions keeps the stored list; null resets to role defaults."""
    changes = {}
    if "custom_permissions" in request.model_fields_set:
        changes["custom_permissions"] = request.custom_permissions
    member = update_member_role(owner_id, member_id, request.role_name, **changes)
    return {"success": True, "data": _member_payload(member)}


@router.delete("/members/{member_id}")
def delete_member(member_id: str, owner_id: str = Depends(get_acting_user_id)):
    member = remove_member(owner_id, member_id)
    return {"success": True, "data": _member_payload(member)}


@router.get("/members/{member_id}/plugins")
def get_member_plugins(member_id: str, owner_id: str = Depends(get_acting_user_id)):
    rows = get_member_plugin_access(member_id, owner_id=owner_id)
    return {"success": True, "data": [r.model_dump(mode="json") for r in rows]}


@router.put("/members/{member_id}/plugins/{plugin_id}")
def put_member_plugin(
    member_id: str,
    plugin_id: str,
    request: OverrideRequest,
    owner_id: str = Depends(get_acting_user_id),
):
    override = set_permission_override(member_id, plugin_id, request.can_access, owner_id=owner_id)
    return {"success": True, "data": override.model_dump(mode="json")}


@router.put("/members/{member_id}/plugins")
def put_member_plugins(
    member_id: str,
    request: BulkOverrideRequest,
    owner_id: str = Depends(get_acting_user_id),
):
    """All-or-nothing: one unknown plugin rejects the whole batch."""
    overrides = bulk_set_permission_overrides(member_id, request.changes, owner_id=owner_id)
    return {"success": True, "data": [o.model_dump(mode="json") for o in overrides]}
