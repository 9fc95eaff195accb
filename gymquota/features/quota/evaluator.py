"""
gymquota/features/quota/evaluator.py

Pure limit arithmetic. Every allow/deny decision in the service goes
through evaluate(); nothing else compares usage to limits.

Rules:
- UNLIMITED (-1) is always allowed, remaining reported as UNLIMITED
- limit 0 means the feature is disabled on the tier (always denied)
- allowed = used < limit
- percentage is rounded half-up with integer math and is NOT capped at 100
"""

from dataclasses import dataclass
from enum import Enum

from gymquota.features.plans.catalog import UNLIMITED


DEFAULT_APPROACHING_THRESHOLD = 80


@dataclass(frozen=True)
class QuotaEvaluation:
    allowed: bool
    remaining: int
    percentage: int

    @property
    def unlimited(self) -> bool:
        return self.remaining == UNLIMITED


class LimitStatus(str, Enum):
    """Coarse state of a counter, as shown on usage widgets."""
    OK = "ok"
    APPROACHING_LIMIT = "approaching_limit"
    AT_LIMIT = "at_limit"
    DISABLED = "disabled"
    UNLIMITED = "unlimited"
    # Usage could not be verified; never produced by usage_status()
    UNAVAILABLE = "unavailable"


def percentage_used(limit: int, used: int) -> int:
    if limit == UNLIMITED:
        return 0
    if limit <= 0:
        return 100
    # round(100 * used / limit) with halves rounded up
    return (200 * used + limit) // (2 * limit)


def evaluate(limit: int, used: int) -> QuotaEvaluation:
    """
    Decide whether one more unit fits under `limit` given `used`.

    Args:
        limit: Plan limit (UNLIMITED or >= 0)
        used: Units already consumed this period (>= 0)

    Returns:
        QuotaEvaluation(allowed, remaining, percentage)
    """
    if limit == UNLIMITED:
        return QuotaEvaluation(allowed=True, remaining=UNLIMITED, percentage=0)

    return QuotaEvaluation(
        allowed=used < limit,
        remaining=max(0, limit - used),
        percentage=percentage_used(limit, used),
    )


def covers(evaluation: QuotaEvaluation, amount: int) -> bool:
    """True when `amount` units fit in what is left (composite operations)."""
    if evaluation.unlimited:
        return True
    return evaluation.remaining >= amount


def usage_status(limit: int, used: int, approaching_threshold: int = DEFAULT_APPROACHING_THRESHOLD) -> LimitStatus:
    if limit == UNLIMITED:
        return LimitStatus.UNLIMITED
    if limit == 0:
        return LimitStatus.DISABLED
    if used >= limit:
        return LimitStatus.AT_LIMIT
    if percentage_used(limit, used) >= approaching_threshold:
        return LimitStatus.APPROACHING_LIMIT
    return LimitStatus.OK
