"""
gymquota/features/organizations/service.py

Organization service.

Handles:
- Organization creation with a fixed billing anchor day
- Plan tier lookup (the quota service's plan resolver)
- Explicit plan changes
- A TTL cache in front of plan lookups
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from gymquota.core.config import settings
from gymquota.core.database import get_db_session, organizations
from gymquota.core.errors import ConflictError, NotFoundError, UsageStoreError, ValidationError
from gymquota.features.plans.catalog import PlanTier
from gymquota.features.usage.periods import anchor_day_for, normalize_now
from gymquota.models.organization import Organization


logger = logging.getLogger(__name__)

MAX_ORGANIZATION_ID_LENGTH = 100


def _row_to_organization(row) -> Organization:
    return Organization(
        organization_id=row.organization_id,
        name=row.name,
        plan_tier=PlanTier.parse(row.plan_tier),
        usage_anchor_day=row.usage_anchor_day,
        created_at=normalize_now(row.created_at),
        plan_changed_at=normalize_now(row.plan_changed_at) if row.plan_changed_at else None,
    )


def _validate_organization_id(organization_id: str) -> str:
    value = (organization_id or "").strip()
    if not value:
        raise ValidationError("organization_id is required")
    if len(value) > MAX_ORGANIZATION_ID_LENGTH:
        raise ValidationError(f"organization_id must be at most {MAX_ORGANIZATION_ID_LENGTH} characters")
    return value


def create_organization(
    organization_id: str,
    name: str,
    plan_tier: PlanTier = PlanTier.FREE,
    *,
    now: Optional[datetime] = None,
    anchor_mode: Optional[str] = None,
) -> Organization:
    """
    Register an organization.

    The anchor day is derived from QUOTA_PERIOD_ANCHOR ("calendar" -> 1,
    "signup" -> day of month of `now`) and never changes afterwards.

    Raises:
        ValidationError: empty id/name or unknown tier
        ConflictError: organization already exists
    """
    organization_id = _validate_organization_id(organization_id)
    if not (name or "").strip():
        raise ValidationError("name is required")
    tier = PlanTier.parse(plan_tier)
    created_at = normalize_now(now)
    anchor_day = anchor_day_for(created_at, anchor_mode or settings.QUOTA_PERIOD_ANCHOR)

    try:
        with get_db_session() as session:
            session.execute(
                insert(organizations).values(
                    organization_id=organization_id,
                    name=name.strip(),
                    plan_tier=tier.value,
                    usage_anchor_day=anchor_day,
                    created_at=created_at,
                )
            )
    except IntegrityError:
        raise ConflictError(f"Organization {organization_id} already exists") from None

    logger.info(
        "[organizations] created",
        extra={"organization_id": organization_id, "plan_tier": tier.value},
    )
    return Organization(
        organization_id=organization_id,
        name=name.strip(),
        plan_tier=tier,
        usage_anchor_day=anchor_day,
        created_at=created_at,
    )


def get_organization(organization_id: str) -> Optional[Organization]:
    with get_db_session() as session:
        row = session.execute(
            select(organizations).where(organizations.c.organization_id == organization_id)
        ).first()
    return _row_to_organization(row) if row else None


def list_organizations(plan_tier: Optional[PlanTier] = None) -> List[Organization]:
    query = select(organizations).order_by(organizations.c.created_at, organizations.c.organization_id)
    if plan_tier is not None:
        query = query.where(organizations.c.plan_tier == PlanTier.parse(plan_tier).value)
    with get_db_session() as session:
        rows = session.execute(query).all()
    return [_row_to_organization(row) for row in rows]


def get_plan_tier(organization_id: str) -> PlanTier:
    """
    Current plan tier for an organization.

    Raises:
        NotFoundError: organization does not exist
        UsageStoreError: database round trip failed
    """
    try:
        with get_db_session() as session:
            value = session.execute(
                select(organizations.c.plan_tier)
                .where(organizations.c.organization_id == organization_id)
            ).scalar()
    except SQLAlchemyError as exc:
        raise UsageStoreError(f"Failed to resolve plan tier for {organization_id}") from exc

    if value is None:
        raise NotFoundError(f"Organization {organization_id} not found")
    return PlanTier.parse(value)


def change_plan_tier(
    organization_id: str,
    plan_tier: PlanTier,
    *,
    now: Optional[datetime] = None,
) -> Organization:
    """
    Move an organization to another tier. Usage counters are kept; the new
    limits apply to the current period immediately.
    """
    tier = PlanTier.parse(plan_tier)
    changed_at = normalize_now(now)

    with get_db_session() as session:
        result = session.execute(
            update(organizations)
            .where(organizations.c.organization_id == organization_id)
            .values(plan_tier=tier.value, plan_changed_at=changed_at)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Organization {organization_id} not found")

    logger.info(
        "[organizations] plan changed",
        extra={"organization_id": organization_id, "plan_tier": tier.value},
    )
    organization = get_organization(organization_id)
    if organization is None:
        raise NotFoundError(f"Organization {organization_id} not found")
    return organization


class CachedPlanResolver:
    """
    get_plan_tier with a per-organization TTL cache.

    A plan change can be served stale for up to `ttl_seconds` unless
    invalidate() is called. Only successful lookups are cached.
    """

    def __init__(
        self,
        loader: Callable[[str], PlanTier] = get_plan_tier,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, Tuple[PlanTier, float]] = {}
        self._lock = threading.Lock()

    def __call__(self, organization_id: str) -> PlanTier:
        return self.get_plan_tier(organization_id)

    def get_plan_tier(self, organization_id: str) -> PlanTier:
        now = self._clock()
        with self._lock:
            cached = self._cache.get(organization_id)
        if cached is not None and now < cached[1]:
            return cached[0]

        tier = PlanTier.parse(self._loader(organization_id))
        if self._ttl > 0:
            with self._lock:
                self._cache[organization_id] = (tier, now + self._ttl)
        return tier

    def invalidate(self, organization_id: Optional[str] = None) -> None:
        with self._lock:
            if organization_id is None:
                self._cache.clear()
            else:
                self._cache.pop(organization_id, None)
