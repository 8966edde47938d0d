"""
bookingfast/models/subscription.py

Per-owner, per-plugin subscription record.

Stored `status` is a fact recorded at the last transition. What an owner can
actually do right now is the *effective* status, derived from the record and
the current time (see features/subscriptions/service.compute_effective_status).
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


USABLE_STATUSES = frozenset({SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE})


class PluginSubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    plugin_id: str
    status: SubscriptionStatus
    is_trial: bool = False
    trial_ends_at: Optional[datetime] = None
    trial_used: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    processor_ref: Optional[str] = Field(default=None, description="Stripe subscription id, set once active")
    activated_features: List[str] = Field(default_factory=list)
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SubscriptionSummary(BaseModel):
    """UI-facing view of a subscription at a given instant."""
    model_config = ConfigDict(frozen=True)

    owner_id: str
    plugin_id: str
    effective_status: Optional[SubscriptionStatus]
    is_trial: bool
    trial_days_remaining: int
    in_grace_period: bool
    has_used_trial: bool
    show_upsell: bool
    current_period_end: Optional[datetime] = None
