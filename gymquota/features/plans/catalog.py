"""
gymquota/features/plans/catalog.py

Plan catalog: (tier, resource) -> monthly limit.

Handles:
- Plan tier and resource enums (wire strings match the database values)
- Default limits per tier
- Totality validation at construction (fails at import, not per request)
- Upgrade suggestions and derived feature flags
"""

from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from gymquota.core.errors import ValidationError


# Sentinel for "no cap". Distinct from 0, which means the feature is disabled.
UNLIMITED = -1

GIB = 1024 ** 3


class PlanTier(str, Enum):
    """Subscription tier, lowest to highest."""
    FREE = "free"
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value) -> "PlanTier":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown plan tier: {value!r}") from None

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)

    @property
    def label(self) -> str:
        return self.value.capitalize()


class ResourceKind(str, Enum):
    """Quota-governed resources. Each has its own limit and counter."""
    AI_GENERAL_REQUEST = "ai_general_request"
    AI_ROUTINE_GENERATION = "ai_routine_generation"
    AI_EXERCISE_ALTERNATIVE = "ai_exercise_alternative"
    PUSH_NOTIFICATION = "push_notification"
    STORAGE_BYTES = "storage_bytes"
    EMAIL_SEND = "email_send"

    @classmethod
    def parse(cls, value) -> "ResourceKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown resource kind: {value!r}") from None


TIER_ORDER = (
    PlanTier.FREE,
    PlanTier.STARTER,
    PlanTier.GROWTH,
    PlanTier.PRO,
    PlanTier.ENTERPRISE,
)

RESOURCE_LABELS = {
    ResourceKind.AI_GENERAL_REQUEST: "AI requests",
    ResourceKind.AI_ROUTINE_GENERATION: "routine generations",
    ResourceKind.AI_EXERCISE_ALTERNATIVE: "exercise alternatives",
    ResourceKind.PUSH_NOTIFICATION: "push notifications",
    ResourceKind.STORAGE_BYTES: "storage",
    ResourceKind.EMAIL_SEND: "emails",
}


# Default plan limits (per billing month)
DEFAULT_PLAN_LIMITS: Dict[PlanTier, Dict[ResourceKind, int]] = {
    PlanTier.FREE: {
        ResourceKind.AI_GENERAL_REQUEST: 10,
        ResourceKind.AI_ROUTINE_GENERATION: 5,
        ResourceKind.AI_EXERCISE_ALTERNATIVE: 10,
        ResourceKind.PUSH_NOTIFICATION: 100,
        ResourceKind.STORAGE_BYTES: GIB // 2,
        ResourceKind.EMAIL_SEND: 100,
    },
    PlanTier.STARTER: {
        ResourceKind.AI_GENERAL_REQUEST: 100,
        ResourceKind.AI_ROUTINE_GENERATION: 20,
        ResourceKind.AI_EXERCISE_ALTERNATIVE: 50,
        ResourceKind.PUSH_NOTIFICATION: 500,
        ResourceKind.STORAGE_BYTES: 2 * GIB,
        ResourceKind.EMAIL_SEND: 500,
    },
    PlanTier.GROWTH: {
        ResourceKind.AI_GENERAL_REQUEST: 300,
        ResourceKind.AI_ROUTINE_GENERATION: 50,
        ResourceKind.AI_EXERCISE_ALTERNATIVE: 150,
        ResourceKind.PUSH_NOTIFICATION: 2000,
        ResourceKind.STORAGE_BYTES: 5 * GIB,
        ResourceKind.EMAIL_SEND: 2000,
    },
    PlanTier.PRO: {
        ResourceKind.AI_GENERAL_REQUEST: 1000,
        ResourceKind.AI_ROUTINE_GENERATION: 200,
        ResourceKind.AI_EXERCISE_ALTERNATIVE: 500,
        ResourceKind.PUSH_NOTIFICATION: 5000,
        ResourceKind.STORAGE_BYTES: 15 * GIB,
        ResourceKind.EMAIL_SEND: 5000,
    },
    PlanTier.ENTERPRISE: {
        ResourceKind.AI_GENERAL_REQUEST: UNLIMITED,
        ResourceKind.AI_ROUTINE_GENERATION: UNLIMITED,
        ResourceKind.AI_EXERCISE_ALTERNATIVE: UNLIMITED,
        ResourceKind.PUSH_NOTIFICATION: UNLIMITED,
        ResourceKind.STORAGE_BYTES: 100 * GIB,
        ResourceKind.EMAIL_SEND: UNLIMITED,
    },
}


class PlanCatalogError(RuntimeError):
    """Plan catalog is incomplete or malformed. Not recoverable at request time."""


def _is_more_generous(candidate: int, current: int) -> bool:
    if current == UNLIMITED:
        return False
    if candidate == UNLIMITED:
        return True
    return candidate > current


class PlanCatalog:
    """
    Immutable lookup table of plan limits.

    Every (tier, resource) pair must be present with either UNLIMITED or a
    non-negative int; anything else raises PlanCatalogError on construction.
    """

    def __init__(self, limits: Mapping):
        self._limits = MappingProxyType(self._validate(limits))

    @staticmethod
    def _validate(limits: Mapping) -> Dict[PlanTier, Mapping[ResourceKind, int]]:
        validated: Dict[PlanTier, Mapping[ResourceKind, int]] = {}
        problems = []

        for raw_tier, table in limits.items():
            try:
                tier = PlanTier(raw_tier)
            except ValueError:
                problems.append(f"unknown tier {raw_tier!r}")
                continue
            row: Dict[ResourceKind, int] = {}
            for raw_resource, value in (table or {}).items():
                try:
                    resource = ResourceKind(raw_resource)
                except ValueError:
                    problems.append(f"{tier.value}: unknown resource {raw_resource!r}")
                    continue
                if isinstance(value, bool) or not isinstance(value, int):
                    problems.append(f"{tier.value}.{resource.value}: limit must be an int, got {value!r}")
                    continue
                if value < 0 and value != UNLIMITED:
                    problems.append(f"{tier.value}.{resource.value}: negative limit {value}")
                    continue
                row[resource] = value
            validated[tier] = MappingProxyType(row)

        for tier in PlanTier:
            if tier not in validated:
                problems.append(f"missing tier {tier.value!r}")
                continue
            for resource in ResourceKind:
                if resource not in validated[tier]:
                    problems.append(f"{tier.value}: missing limit for {resource.value!r}")

        if problems:
            raise PlanCatalogError("Invalid plan catalog: " + "; ".join(problems))
        return validated

    def limit_for(self, tier: PlanTier, resource: ResourceKind) -> int:
        """Return the monthly limit (UNLIMITED or >= 0) for a tier/resource pair."""
        return self._limits[PlanTier(tier)][ResourceKind(resource)]

    def limits_for(self, tier: PlanTier) -> Dict[ResourceKind, int]:
        return dict(self._limits[PlanTier(tier)])

    def upgrade_tier(self, tier: PlanTier, resource: ResourceKind) -> Optional[PlanTier]:
        """Next tier up whose limit for `resource` is strictly more generous."""
        tier = PlanTier(tier)
        current = self.limit_for(tier, resource)
        for candidate in TIER_ORDER[tier.rank + 1:]:
            if _is_more_generous(self.limit_for(candidate, resource), current):
                return candidate
        return None

    def feature_flags(self, tier: PlanTier) -> Dict[str, bool]:
        """Derived on demand; a resource is enabled unless its limit is 0."""
        return {
            resource.value: limit != 0
            for resource, limit in self._limits[PlanTier(tier)].items()
        }


def format_quantity(resource: ResourceKind, value: int) -> str:
    """Human-readable limit or usage value ("Unlimited", "2 GB", "500")."""
    if value == UNLIMITED:
        return "Unlimited"
    if ResourceKind(resource) is ResourceKind.STORAGE_BYTES:
        gigabytes = value / GIB
        if gigabytes >= 1:
            return f"{gigabytes:g} GB"
        return f"{value / (1024 ** 2):g} MB"
    return str(value)


# Built at import so an incomplete table aborts startup
DEFAULT_CATALOG = PlanCatalog(DEFAULT_PLAN_LIMITS)
