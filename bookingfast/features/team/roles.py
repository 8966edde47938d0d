"""
bookingfast/features/team/roles.py

Static role catalog and permission resolution for team members.

Roles form a closed hierarchy with numeric levels:

    owner (4) > admin (3) > manager (2) > employee (1) > viewer (0)

Owners hold the wildcard "*". Non-owner permission sets are fixed; only a
member's custom permission list is editable.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional
from pydantic import BaseModel, ConfigDict

from bookingfast.core.errors import ValidationError


WILDCARD = "*"


class RoleName(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"
    VIEWER = "viewer"


class PermissionLevel(str, Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


class Permission(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: str
    level: PermissionLevel


class Role(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: RoleName
    display_name: str
    level: int
    permissions: FrozenSet[str]


def _perm(perm_id: str, name: str, category: str, level: PermissionLevel) -> Permission:
    return Permission(id=perm_id, name=name, category=category, level=level)


R, W, A = PermissionLevel.READ, PermissionLevel.WRITE, PermissionLevel.ADMIN

AVAILABLE_PERMISSIONS: List[Permission] = [
    # Dashboard
    _perm("view_dashboard", "View dashboard", "dashboard", R),
    _perm("view_stats", "View statistics", "dashboard", R),
    _perm("view_revenue", "View revenue", "dashboard", R),
    # Calendar
    _perm("view_calendar", "View calendar", "calendar", R),
    _perm("create_booking", "Create bookings", "calendar", W),
    _perm("edit_own_bookings", "Edit own bookings", "calendar", W),
    _perm("edit_all_bookings", "Edit all bookings", "calendar", W),
    _perm("delete_booking", "Delete bookings", "calendar", A),
    _perm("assign_bookings", "Assign bookings", "calendar", W),
    # Services
    _perm("view_services", "View services", "services", R),
    _perm("create_service", "Create services", "services", W),
    _perm("edit_service", "Edit services", "services", W),
    _perm("delete_service", "Delete services", "services", A),
    # Clients
    _perm("view_clients", "View clients", "clients", R),
    _perm("create_client", "Create clients", "clients", W),
    _perm("edit_client", "Edit clients", "clients", W),
    _perm("delete_client", "Delete clients", "clients", A),
    _perm("view_client_details", "View client details", "clients", R),
    # Emails
    _perm("view_emails", "View emails", "emails", R),
    _perm("send_manual_email", "Send manual emails", "emails", W),
    _perm("create_workflow", "Create workflows", "emails", W),
    _perm("edit_workflow", "Edit workflows", "emails", W),
    _perm("delete_workflow", "Delete workflows", "emails", A),
    # Payments
    _perm("view_payments", "View payments", "payments", R),
    _perm("create_payment_link", "Create payment links", "payments", W),
    _perm("manage_transactions", "Manage transactions", "payments", W),
    _perm("view_financial_reports", "View financial reports", "payments", R),
    # Admin
    _perm("view_admin", "View administration", "admin", R),
    _perm("edit_business_settings", "Edit business settings", "admin", A),
    _perm("manage_team", "Manage team", "admin", A),
    _perm("view_team_stats", "View team statistics", "admin", R),
]

PERMISSION_IDS: FrozenSet[str] = frozenset(p.id for p in AVAILABLE_PERMISSIONS)

_MANAGER_PERMISSIONS = frozenset({
    "view_dashboard", "view_stats", "view_calendar", "create_booking",
    "edit_all_bookings", "assign_bookings", "view_services", "create_service",
    "edit_service", "view_clients", "create_client", "edit_client",
    "view_client_details", "view_emails", "send_manual_email", "create_workflow",
    "view_payments", "create_payment_link", "manage_transactions",
})

_EMPLOYEE_PERMISSIONS = frozenset({
    "view_dashboard", "view_stats", "view_calendar", "create_booking",
    "edit_own_bookings", "view_services", "view_clients", "create_client",
    "edit_client", "view_client_details", "view_emails", "send_manual_email",
    "view_payments", "create_payment_link", "manage_transactions",
})

_VIEWER_PERMISSIONS = frozenset({
    "view_dashboard", "view_calendar", "view_services", "view_clients",
    "view_client_details", "view_emails", "view_payments",
})

ROLES: Dict[str, Role] = {
    RoleName.OWNER.value: Role(
        name=RoleName.OWNER, display_name="Owner", level=4, permissions=frozenset({WILDCARD}),
    ),
    RoleName.ADMIN.value: Role(
        name=RoleName.ADMIN, display_name="Administrator", level=3,
        permissions=PERMISSION_IDS - {"manage_team"},
    ),
    RoleName.MANAGER.value: Role(
        name=RoleName.MANAGER, display_name="Manager", level=2, permissions=_MANAGER_PERMISSIONS,
    ),
    RoleName.EMPLOYEE.value: Role(
        name=RoleName.EMPLOYEE, display_name="Employee", level=1, permissions=_EMPLOYEE_PERMISSIONS,
    ),
    RoleName.VIEWER.value: Role(
        name=RoleName.VIEWER, display_name="Viewer", level=0, permissions=_VIEWER_PERMISSIONS,
    ),
}

# Roles an owner may hand out
ASSIGNABLE_ROLES = frozenset(name for name in ROLES if name != RoleName.OWNER.value)


def get_role(name: Optional[str]) -> Optional[Role]:
    if name is None:
        return None
    key = getattr(name, "value", name)
    return ROLES.get(str(key).lower())


def role_level(name: Optional[str]) -> Optional[int]:
    """Numeric level of a role, or None for unknown roles."""
    role = get_role(name)
    return role.level if role else None


def resolve_permissions(member) -> FrozenSet[str]:
    """
    Effective permission set of a team member.

    A custom list, when present, replaces the role defaults entirely (an empty
    custom list grants nothing). Inactive members and unknown roles resolve to
    the empty set.
    """
    if not getattr(member, "is_active", True):
        return frozenset()
    custom = getattr(member, "custom_permissions", None)
    if custom is not None:
        return frozenset(custom)
    role = get_role(getattr(member, "role_name", None))
    return role.permissions if role else frozenset()


def has_permission(permissions: Iterable[str], action: str) -> bool:
    """
    True if `permissions` grants `action`.

    Matches the exact id, the global wildcard "*", or a resource wildcard
    ("clients:*" grants "clients:edit").
    """
    granted = permissions if isinstance(permissions, (set, frozenset)) else set(permissions)
    if WILDCARD in granted or action in granted:
        return True
    if ":" in action:
        resource = action.split(":", 1)[0]
        return f"{resource}:{WILDCARD}" in granted
    return False


def has_all_permissions(permissions: Iterable[str], actions: Iterable[str]) -> bool:
    granted = frozenset(permissions)
    return all(has_permission(granted, action) for action in actions)


def has_any_permission(permissions: Iterable[str], actions: Iterable[str]) -> bool:
    granted = frozenset(permissions)
    return any(has_permission(granted, action) for action in actions)


def can_manage(actor_role: Optional[str], target_role: Optional[str]) -> bool:
    """Strictly higher level only; peers cannot manage each other."""
    actor = role_level(actor_role)
    target = role_level(target_role)
    if actor is None or target is None:
        return False
    return actor > target


def permissions_by_category(category: str) -> List[Permission]:
    return [p for p in AVAILABLE_PERMISSIONS if p.category == category]


def validate_permissions(permissions: Iterable[str]) -> List[str]:
    """
    Check a custom permission list against the catalog.

    Returns the de-duplicated list in catalog order.

    Raises:
        ValidationError: if any id is not a known permission
    """
    requested = list(permissions)
    unknown = sorted(set(requested) - PERMISSION_IDS)
    if unknown:
        raise ValidationError(f"Unknown permissions: {', '.join(unknown)}")
    wanted = set(requested)
    return [p.id for p in AVAILABLE_PERMISSIONS if p.id in wanted]
