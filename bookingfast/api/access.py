"""
bookingfast/api/access.py
Read-only access checks used to gate plugin views.
"""

from fastapi import APIRouter, Depends

from bookingfast.api.deps import get_acting_user_id
from bookingfast.features.access.service import (
    can_access,
    list_accessible_plugins,
    list_member_accessible_plugins,
)


router = APIRouter(prefix="/api/access", tags=["access"])


@router.get("/me/shared-plugins")
def get_shared_plugins(user_id: str = Depends(get_acting_user_id)):
    """Plugins the caller can use through every team they belong to."""
    plugins = list_member_accessible_plugins(user_id)
    return {"success": True, "data": [p.model_dump(mode="json") for p in plugins]}


@router.get("/{owner_id}/plugins")
def get_accessible_plugins(owner_id: str, user_id: str = Depends(get_acting_user_id)):
    plugins = list_accessible_plugins(user_id, owner_id)
    return {"success": True, "data": [p.model_dump(mode="json") for p in plugins]}


@router.get("/{owner_id}/plugins/{plugin_id}")
def get_plugin_access(owner_id: str, plugin_id: str, user_id: str = Depends(get_acting_user_id)):
    return {
        "success": True,
        "data": {
            "owner_id": owner_id,
            "plugin_id": plugin_id,
            "can_access": can_access(user_id, owner_id, plugin_id),
        },
    }
