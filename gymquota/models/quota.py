"""
gymquota/models/quota.py

Results returned by the quota service.

LimitCheck is what request handlers see before performing a gated action;
ConsumeResult is what they see after recording it. `limit` and `remaining`
use -1 for unlimited. A fail-closed LimitCheck reports `limit=None` when the
tier is unknown and `reset_date=None` when the billing period is unknown.
"""

from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict

from gymquota.features.plans.catalog import PlanTier, ResourceKind
from gymquota.features.quota.evaluator import LimitStatus


class LimitCheck(BaseModel):
    """
    Outcome of check_limit for one resource.

    `allowed` already includes the composite check for `requested` units.
    `message` is only set when denied. `retryable` marks a fail-closed denial
    (usage could not be read), which callers present as "try again" rather
    than as an upgrade prompt.
    """
    model_config = ConfigDict(frozen=True)

    allowed: bool
    current: int
    limit: Optional[int]  # None only when the plan tier could not be resolved
    remaining: int
    percentage: int = 0
    reset_date: Optional[str] = None  # ISO date the period ends (exclusive)
    message: Optional[str] = None
    resource: ResourceKind
    plan_tier: Optional[PlanTier] = None
    status: LimitStatus
    requested: int = 1
    retryable: bool = False
    upgrade_tier: Optional[PlanTier] = None


class ConsumeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    remaining: int
    current: Optional[int] = None
    limit: Optional[int] = None
    consumed: int = 0
    resource: ResourceKind
    plan_tier: Optional[PlanTier] = None
    reset_date: Optional[str] = None
    message: Optional[str] = None


class UsageSummary(BaseModel):
    """Every resource's standing for the current period (dashboard widgets)."""
    model_config = ConfigDict(frozen=True)

    organization_id: str
    plan_tier: PlanTier
    period_start: Optional[str] = None
    reset_date: Optional[str] = None
    features: Dict[str, bool]
    resources: List[LimitCheck]
