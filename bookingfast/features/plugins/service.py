"""
bookingfast/features/plugins/service.py

Plugin catalog access.

Handles:
- Catalog seeding (idempotent)
- Lookup by id or slug
- Listing in display order (featured first, then name)
"""

from decimal import Decimal
from typing import Dict, List, Optional, Any
from sqlalchemy import select, insert

from bookingfast.core.database import get_db_session, plugins
from bookingfast.core.errors import PluginNotFound
from bookingfast.models.plugin import Plugin, PluginFeature


# Default catalog shipped with the product
DEFAULT_PLUGINS: Dict[str, Dict[str, Any]] = {
    "multi-user": {
        "name": "Multi-utilisateurs",
        "description": "Invite team members and share the booking calendar",
        "icon": "Users",
        "category": "team",
        "base_price": Decimal("9.99"),
        "is_featured": True,
        "features": [
            {"id": "team-calendar", "name": "Shared calendar", "included": True},
            {"id": "member-roles", "name": "Member roles", "included": True},
        ],
    },
    "pos": {
        "name": "Point de vente",
        "description": "Take in-person payments and track sales",
        "icon": "CreditCard",
        "category": "financial",
        "base_price": Decimal("14.99"),
        "is_featured": True,
        "features": [
            {"id": "pos-checkout", "name": "Counter checkout", "included": True},
            {"id": "pos-inventory", "name": "Inventory", "included": False, "price": Decimal("4.99")},
        ],
    },
    "reports": {
        "name": "Rapports",
        "description": "Revenue and activity reports",
        "icon": "BarChart",
        "category": "analytics",
        "base_price": Decimal("7.99"),
        "is_featured": False,
        "features": [
            {"id": "revenue-report", "name": "Revenue report", "included": True},
            {"id": "csv-export", "name": "CSV export", "included": True},
        ],
    },
    "entreprisepack": {
        "name": "Pack Entreprise",
        "description": "Raises the team size cap for large businesses",
        "icon": "Building",
        "category": "team",
        "base_price": Decimal("29.99"),
        "is_featured": False,
        "features": [
            {"id": "team-50", "name": "Up to 50 team members", "included": True},
        ],
    },
}


def plugin_id_for_slug(slug: str) -> str:
    """Stable primary key used for seeded catalog entries."""
    return f"plugin-{slug}"


def _row_to_plugin(row) -> Plugin:
    return Plugin(
        id=row.id,
        slug=row.slug,
        name=row.name,
        description=row.description,
        icon=row.icon,
        category=row.category,
        base_price=Decimal(str(row.base_price or 0)),
        features=[PluginFeature(**feature) for feature in (row.features or [])],
        is_active=bool(row.is_active),
        is_featured=bool(row.is_featured),
        stripe_price_id=row.stripe_price_id,
    )


def _serialize_features(features: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    serialized = []
    for feature in features:
        item = dict(feature)
        item.setdefault("description", "")
        if item.get("price") is not None:
            item["price"] = str(item["price"])
        serialized.append(item)
    return serialized


def seed_plugins(catalog: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
    """
    Seed the plugin catalog (idempotent).

    Existing slugs are left untouched. Safe to call multiple times.
    """
    catalog = catalog if catalog is not None else DEFAULT_PLUGINS
    with get_db_session() as session:
        for slug, config in catalog.items():
            existing = session.execute(
                select(plugins.c.id).where(plugins.c.slug == slug)
            ).first()
            if existing:
                continue
            session.execute(
                insert(plugins).values(
                    id=config.get("id", plugin_id_for_slug(slug)),
                    slug=slug,
                    name=config["name"],
                    description=config.get("description"),
                    icon=config.get("icon"),
                    category=config["category"],
                    base_price=config.get("base_price", Decimal("0")),
                    features=_serialize_features(config.get("features", [])),
                    is_active=config.get("is_active", True),
                    is_featured=config.get("is_featured", False),
                    stripe_price_id=config.get("stripe_price_id"),
                )
            )


def get_plugin(plugin_id: str) -> Optional[Plugin]:
    with get_db_session() as session:
        row = session.execute(
            select(plugins).where(plugins.c.id == plugin_id)
        ).first()
        return _row_to_plugin(row) if row else None


def get_plugin_by_slug(slug: str) -> Optional[Plugin]:
    with get_db_session() as session:
        row = session.execute(
            select(plugins).where(plugins.c.slug == slug)
        ).first()
        return _row_to_plugin(row) if row else None


def require_plugin(plugin_id: str, *, active_only: bool = True) -> Plugin:
    """Fetch a plugin or raise PluginNotFound (inactive plugins count as missing)."""
    plugin = get_plugin(plugin_id)
    if plugin is None or (active_only and not plugin.is_active):
        raise PluginNotFound(f"Plugin {plugin_id} not found")
    return plugin


def list_plugins(include_inactive: bool = False) -> List[Plugin]:
    """Catalog in display order: featured first, then by name."""
    query = select(plugins)
    if not include_inactive:
        query = query.where(plugins.c.is_active == True)  # noqa: E712
    query = query.order_by(plugins.c.is_featured.desc(), plugins.c.name)
    with get_db_session() as session:
        rows = session.execute(query).all()
        return [_row_to_plugin(row) for row in rows]
