"""
gymquota/features/quota/service.py

Usage enforcement facade: the only quota entry point request handlers call.

Handles:
- check_limit: side-effect free allow/deny for `amount` units
- consume: atomic usage recording after the gated action
- enforce: check_limit that raises for request handlers
- usage_summary: every resource for the current period

Failure policy: if the plan tier or usage cannot be read, check_limit fails
closed (denied, retryable) and consume reports success=False. Neither ever
reports a quota it could not verify.

Known gap: check_limit and consume are separate calls, so N concurrent
callers that all pass check_limit with one unit left overshoot the limit by
up to N - 1. consume records usage unconditionally and logs the overshoot.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from gymquota.core.config import settings
from gymquota.core.errors import NotFoundError, QuotaExceededError, QuotaUnavailableError, ValidationError
from gymquota.core.logging import log_event
from gymquota.features.organizations import service as organization_service
from gymquota.features.organizations.service import CachedPlanResolver
from gymquota.features.plans.catalog import (
    DEFAULT_CATALOG,
    RESOURCE_LABELS,
    PlanCatalog,
    PlanTier,
    ResourceKind,
    format_quantity,
)
from gymquota.features.quota.evaluator import (
    DEFAULT_APPROACHING_THRESHOLD,
    LimitStatus,
    covers,
    evaluate,
    usage_status,
)
from gymquota.features.usage.periods import UsagePeriod, normalize_now
from gymquota.features.usage.store import UsageStore, get_usage_store
from gymquota.models.organization import Organization
from gymquota.models.quota import ConsumeResult, LimitCheck, UsageSummary


logger = logging.getLogger(__name__)

PlanResolver = Callable[[str], PlanTier]


def _validate_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
        raise ValidationError(f"amount must be a positive integer, got {amount!r}")
    return amount


def unavailable_message(resource: ResourceKind) -> str:
    return (
        f"We couldn't verify your {RESOURCE_LABELS[resource]} usage right now. "
        "Please try again in a moment."
    )


class QuotaService:
    """
    Composes the plan catalog, usage store and plan resolver.

    Args:
        catalog: Plan limits (validated at construction)
        store: Usage counters
        plan_resolver: organization_id -> PlanTier; may be cached/stale
        clock: Returns "now" when callers do not pass one
        approaching_threshold: Percent at which status becomes approaching_limit
    """

    def __init__(
        self,
        catalog: PlanCatalog,
        store: UsageStore,
        plan_resolver: PlanResolver,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        approaching_threshold: int = DEFAULT_APPROACHING_THRESHOLD,
    ):
        self.catalog = catalog
        self.store = store
        self.plan_resolver = plan_resolver
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.approaching_threshold = approaching_threshold

    def _now(self, now: Optional[datetime]) -> datetime:
        return normalize_now(now if now is not None else self._clock())

    def _resolve_tier(self, organization_id: str) -> PlanTier:
        return PlanTier.parse(self.plan_resolver(organization_id))

    # ---- messages ---------------------------------------------------------

    def _upgrade_suffix(self, tier: PlanTier, resource: ResourceKind) -> str:
        upgrade = self.catalog.upgrade_tier(tier, resource)
        if upgrade is None:
            return ""
        new_limit = self.catalog.limit_for(upgrade, resource)
        if new_limit < 0:
            return f" Upgrade to {upgrade.label} for unlimited {RESOURCE_LABELS[resource]}."
        return (
            f" Upgrade to {upgrade.label} for {format_quantity(resource, new_limit)} "
            f"{RESOURCE_LABELS[resource]} per month."
        )

    def _denial_message(
        self,
        tier: PlanTier,
        resource: ResourceKind,
        limit: int,
        remaining: int,
        amount: int,
        reset_date: str,
    ) -> str:
        label = RESOURCE_LABELS[resource]
        if limit == 0:
            text = f"Your {tier.label} plan does not include {label}. Usage resets on {reset_date}."
        elif remaining > 0:
            text = (
                f"This needs {format_quantity(resource, amount)} {label} but only "
                f"{format_quantity(resource, remaining)} remain this period. "
                f"Your quota resets on {reset_date}."
            )
        else:
            text = (
                f"You've used all {format_quantity(resource, limit)} {label} included in "
                f"your {tier.label} plan this period. Your quota resets on {reset_date}."
            )
        return text + self._upgrade_suffix(tier, resource)

    # ---- checks -----------------------------------------------------------

    def _build_check(
        self,
        resource: ResourceKind,
        tier: PlanTier,
        limit: int,
        used: int,
        period: UsagePeriod,
        amount: int,
    ) -> LimitCheck:
        evaluation = evaluate(limit, used)
        allowed = evaluation.allowed and covers(evaluation, amount)
        reset_date = period.reset_date

        message = None
        upgrade = None
        if not allowed:
            message = self._denial_message(tier, resource, limit, evaluation.remaining, amount, reset_date)
            upgrade = self.catalog.upgrade_tier(tier, resource)

        return LimitCheck(
            allowed=allowed,
            current=used,
            limit=limit,
            remaining=evaluation.remaining,
            percentage=evaluation.percentage,
            reset_date=reset_date,
            message=message,
            resource=resource,
            plan_tier=tier,
            status=usage_status(limit, used, self.approaching_threshold),
            requested=amount,
            upgrade_tier=upgrade,
        )

    def _unavailable_check(
        self,
        resource: ResourceKind,
        tier: Optional[PlanTier],
        limit: Optional[int],
        amount: int,
        period: Optional[UsagePeriod] = None,
    ) -> LimitCheck:
        return LimitCheck(
            allowed=False,
            current=0,
            limit=limit,
            remaining=0,
            percentage=0,
            reset_date=period.reset_date if period else None,
            message=unavailable_message(resource),
            resource=resource,
            plan_tier=tier,
            status=LimitStatus.UNAVAILABLE,
            requested=amount,
            retryable=True,
        )

    def _check_for_tier(
        self,
        resource: ResourceKind,
        organization_id: str,
        tier: PlanTier,
        moment: datetime,
        amount: int,
    ) -> LimitCheck:
        limit = self.catalog.limit_for(tier, resource)
        period = None
        try:
            period = self.store.current_period(organization_id, resource, moment)
            used = self.store.get_usage(organization_id, resource, period)
        except NotFoundError:
            raise
        except Exception:
            logger.exception(
                "[quota] usage read failed, denying",
                extra={"organization_id": organization_id, "resource": resource.value, "plan_tier": tier.value},
            )
            return self._unavailable_check(resource, tier, limit, amount, period)
        return self._build_check(resource, tier, limit, used, period, amount)

    def _period_or_none(
        self,
        organization_id: str,
        resource: ResourceKind,
        moment: datetime,
    ) -> Optional[UsagePeriod]:
        try:
            return self.store.current_period(organization_id, resource, moment)
        except NotFoundError:
            raise
        except Exception:
            return None

    def check_limit(
        self,
        resource: ResourceKind,
        organization_id: str,
        *,
        amount: int = 1,
        now: Optional[datetime] = None,
    ) -> LimitCheck:
        """
        Would `amount` more units of `resource` fit in the current period?

        Reads only; calling it repeatedly with the same `now` returns equal
        results.

        Raises:
            NotFoundError: organization does not exist
            ValidationError: unknown resource or non-positive amount
        """
        resource = ResourceKind.parse(resource)
        amount = _validate_amount(amount)
        moment = self._now(now)

        try:
            tier = self._resolve_tier(organization_id)
        except NotFoundError:
            raise
        except Exception:
            logger.exception(
                "[quota] plan lookup failed, denying",
                extra={"organization_id": organization_id, "resource": resource.value},
            )
            period = self._period_or_none(organization_id, resource, moment)
            return self._unavailable_check(resource, None, None, amount, period)

        check = self._check_for_tier(resource, organization_id, tier, moment, amount)
        if not check.allowed and not check.retryable:
            logger.info(
                "[quota] denied",
                extra={
                    "organization_id": organization_id,
                    "resource": resource.value,
                    "plan_tier": tier.value,
                    "current": check.current,
                    "limit": check.limit,
                    "requested": amount,
                },
            )
        return check

    def enforce(
        self,
        resource: ResourceKind,
        organization_id: str,
        amount: int = 1,
        *,
        now: Optional[datetime] = None,
    ) -> LimitCheck:
        """check_limit for request handlers: returns the check if allowed, raises otherwise.

        Raises:
            QuotaExceededError: quota exhausted (403)
            QuotaUnavailableError: usage could not be verified (503)
        """
        check = self.check_limit(resource, organization_id, amount=amount, now=now)
        if check.allowed:
            return check

        details = check.model_dump(mode="json", exclude={"message"})
        if check.retryable:
            raise QuotaUnavailableError(check.message, details=details)
        raise QuotaExceededError(check.message, details=details)

    # ---- recording --------------------------------------------------------

    def consume(
        self,
        resource: ResourceKind,
        organization_id: str,
        amount: int = 1,
        *,
        now: Optional[datetime] = None,
    ) -> ConsumeResult:
        """
        Record `amount` units for the current period.

        Does not check the limit; call check_limit (or enforce) first.
        success=False means nothing can be assumed about the counter and the
        gated action should not be treated as billed.
        """
        resource = ResourceKind.parse(resource)
        amount = _validate_amount(amount)
        moment = self._now(now)

        tier = None
        try:
            tier = self._resolve_tier(organization_id)
            limit = self.catalog.limit_for(tier, resource)
            period = self.store.current_period(organization_id, resource, moment)
            current = self.store.increment_usage(organization_id, resource, period, amount)
        except NotFoundError:
            raise
        except Exception:
            logger.exception(
                "[quota] usage increment failed",
                extra={"organization_id": organization_id, "resource": resource.value, "requested": amount},
            )
            return ConsumeResult(
                success=False,
                remaining=0,
                resource=resource,
                plan_tier=tier,
                message=unavailable_message(resource),
            )

        evaluation = evaluate(limit, current)
        if limit >= 0 and current > limit:
            log_event(
                "warning",
                "[quota] usage recorded past limit",
                organization_id=organization_id,
                resource=resource.value,
                event_type="quota.overshoot",
                extra={"plan_tier": tier.value, "current": current, "limit": limit},
            )

        return ConsumeResult(
            success=True,
            remaining=evaluation.remaining,
            current=current,
            limit=limit,
            consumed=amount,
            resource=resource,
            plan_tier=tier,
            reset_date=period.reset_date,
        )

    # ---- reporting --------------------------------------------------------

    def usage_summary(self, organization_id: str, *, now: Optional[datetime] = None) -> UsageSummary:
        """
        Standing of every resource this period.

        Raises:
            NotFoundError: organization does not exist
            QuotaUnavailableError: plan tier could not be resolved
        """
        moment = self._now(now)
        try:
            tier = self._resolve_tier(organization_id)
        except NotFoundError:
            raise
        except Exception as exc:
            logger.exception("[quota] plan lookup failed", extra={"organization_id": organization_id})
            raise QuotaUnavailableError("Usage is temporarily unavailable. Please try again.") from exc

        period_start = reset_date = None
        try:
            period = self.store.current_period(organization_id, ResourceKind.AI_GENERAL_REQUEST, moment)
            period_start, reset_date = period.start_date.isoformat(), period.reset_date
        except NotFoundError:
            raise
        except Exception:
            logger.exception("[quota] billing period lookup failed", extra={"organization_id": organization_id})

        checks = [
            self._check_for_tier(resource, organization_id, tier, moment, 1)
            for resource in ResourceKind
        ]

        return UsageSummary(
            organization_id=organization_id,
            plan_tier=tier,
            period_start=period_start,
            reset_date=reset_date,
            features=self.catalog.feature_flags(tier),
            resources=checks,
        )

    # ---- plan changes -----------------------------------------------------

    def change_plan_tier(self, organization_id: str, plan_tier: PlanTier) -> Organization:
        """Change tier and drop any cached tier so new limits apply at once."""
        organization = organization_service.change_plan_tier(organization_id, plan_tier)
        invalidate = getattr(self.plan_resolver, "invalidate", None)
        if invalidate is not None:
            invalidate(organization_id)
        return organization


# Global service instance (lazy initialization)
_service_instance: Optional[QuotaService] = None
_service_lock = threading.Lock()


def get_quota_service() -> QuotaService:
    """Process-wide QuotaService wired from settings."""
    global _service_instance
    with _service_lock:
        if _service_instance is None:
            _service_instance = QuotaService(
                DEFAULT_CATALOG,
                get_usage_store(),
                CachedPlanResolver(
                    organization_service.get_plan_tier,
                    ttl_seconds=settings.QUOTA_PLAN_CACHE_TTL_SECONDS,
                ),
                approaching_threshold=settings.QUOTA_APPROACHING_THRESHOLD,
            )
        return _service_instance


def reset_quota_service() -> None:
    """FOR TESTING ONLY - forces re-initialization on next get_quota_service() call."""
    global _service_instance
    with _service_lock:
        _service_instance = None
