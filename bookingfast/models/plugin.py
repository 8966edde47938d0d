"""
bookingfast/models/plugin.py

Plugin catalog entries. Plugins are paid optional feature modules, identified
externally by a stable slug. The engine never mutates them.
"""

from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class PluginFeature(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    included: bool = True
    price: Optional[Decimal] = Field(default=None, description="Extra monthly price when not included")


class Plugin(BaseModel):
    """
    Catalog entry.

    base_price is the monthly price. stripe_price_id is only needed to start a
    checkout; plugins without one can still be trialled.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    slug: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    category: str
    base_price: Decimal = Decimal("0")
    features: List[PluginFeature] = Field(default_factory=list)
    is_active: bool = True
    is_featured: bool = False
    stripe_price_id: Optional[str] = None
