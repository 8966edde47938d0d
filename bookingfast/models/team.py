"""
bookingfast/models/team.py

Team members and per-plugin permission overrides.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class TeamMember(BaseModel):
    """
    Delegated user acting under an owner's account.

    custom_permissions=None means "use the role defaults"; an empty list is an
    explicit, empty custom set.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    user_id: str
    email: str
    full_name: Optional[str] = None
    role_name: str
    custom_permissions: Optional[List[str]] = None
    is_active: bool = True
    invited_by: Optional[str] = None
    invited_at: datetime
    joined_at: Optional[datetime] = None


class PluginPermissionOverride(BaseModel):
    model_config = ConfigDict(frozen=True)

    member_id: str
    owner_id: str
    plugin_id: str
    can_access: bool


class OverrideChange(BaseModel):
    """One entry of a bulk override update."""
    plugin_id: str
    can_access: bool


class MemberPluginAccess(BaseModel):
    """Row of the member permissions screen: one subscribed plugin of the owner."""
    model_config = ConfigDict(frozen=True)

    plugin_id: str
    plugin_name: str
    plugin_slug: str
    plugin_icon: Optional[str] = None
    can_access: bool


class InviteMemberRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    role_name: str = "employee"
    full_name: Optional[str] = None
    custom_permissions: Optional[List[str]] = None


class TeamLimitStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_members: int
    member_limit: int
    available_slots: int
    has_enterprise_pack: bool
    needs_upgrade: bool
