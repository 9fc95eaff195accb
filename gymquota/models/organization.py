"""
gymquota/models/organization.py

Organization (gym) record: the aggregate that owns a plan tier and usage.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from gymquota.features.plans.catalog import PlanTier


class Organization(BaseModel):
    """
    A subscribing organization.

    `plan_tier` only changes through change_plan_tier(). `usage_anchor_day`
    is fixed at creation and sets the day of month billing periods start on.
    """
    model_config = ConfigDict(frozen=True)

    organization_id: str
    name: str
    plan_tier: PlanTier = PlanTier.FREE
    usage_anchor_day: int = 1
    created_at: datetime
    plan_changed_at: Optional[datetime] = None
