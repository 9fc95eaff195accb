"""
gymquota/features/usage/store.py

Usage store: per-organization, per-resource counters for each billing period.

Contract:
- current_period(org, resource, now) is deterministic in `now` and the
  organization's anchor day
- get_usage() returns 0 when no counter exists for the period
- increment_usage() is atomic and returns the post-increment count

In-memory implementation here; SqlUsageStore lives in store_sql.py.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from gymquota.features.plans.catalog import ResourceKind
from gymquota.features.usage.periods import UsagePeriod, billing_period, validate_anchor_day


logger = logging.getLogger(__name__)


class UsageCounter(BaseModel):
    """Running total for one (organization, resource, period)."""
    model_config = ConfigDict(frozen=True)

    organization_id: str
    resource: ResourceKind
    period_start: datetime
    period_end: datetime
    count: int


class UsageStore(ABC):
    """Persistence boundary for usage counters."""

    def __init__(self):
        self._anchor_cache: Dict[str, int] = {}
        self._anchor_lock = threading.Lock()

    def current_period(
        self,
        organization_id: str,
        resource: ResourceKind,
        now: Optional[datetime] = None,
    ) -> UsagePeriod:
        """Billing period containing `now` for this organization.

        Every resource shares the organization's anchor, so `resource` does not
        move the boundaries; it stays in the signature for per-resource cycles.
        """
        return billing_period(now, self.period_anchor(organization_id))

    def period_anchor(self, organization_id: str) -> int:
        """Anchor day for an organization, looked up once and cached."""
        with self._anchor_lock:
            cached = self._anchor_cache.get(organization_id)
        if cached is not None:
            return cached
        anchor = validate_anchor_day(self._load_anchor_day(organization_id))
        with self._anchor_lock:
            self._anchor_cache[organization_id] = anchor
        return anchor

    def forget_anchor(self, organization_id: str) -> None:
        with self._anchor_lock:
            self._anchor_cache.pop(organization_id, None)

    def _load_anchor_day(self, organization_id: str) -> int:
        return 1

    @abstractmethod
    def get_usage(self, organization_id: str, resource: ResourceKind, period: UsagePeriod) -> int:
        """Counter value for the period (0 if it has not materialized yet)."""

    @abstractmethod
    def increment_usage(
        self,
        organization_id: str,
        resource: ResourceKind,
        period: UsagePeriod,
        amount: int,
    ) -> int:
        """Atomically add `amount` and return the post-increment value."""

    @abstractmethod
    def list_counters(
        self,
        organization_id: str,
        resource: Optional[ResourceKind] = None,
    ) -> List[UsageCounter]:
        """All counters for an organization, newest period first."""


class InMemoryUsageStore(UsageStore):
    """
    Process-local usage store.

    Counters live in a dict guarded by a lock, so increments from concurrent
    threads never interleave. Not durable and not shared between workers, so
    the service never selects it; it backs unit tests and embedded callers.
    """

    def __init__(self, anchors: Optional[Dict[str, int]] = None):
        super().__init__()
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, str, datetime], UsageCounter] = {}
        self._anchors: Dict[str, int] = dict(anchors or {})

    def set_anchor(self, organization_id: str, anchor_day: int) -> None:
        self._anchors[organization_id] = validate_anchor_day(anchor_day)
        self.forget_anchor(organization_id)

    def _load_anchor_day(self, organization_id: str) -> int:
        return self._anchors.get(organization_id, 1)

    def get_usage(self, organization_id: str, resource: ResourceKind, period: UsagePeriod) -> int:
        key = (organization_id, ResourceKind(resource).value, period.start)
        with self._lock:
            counter = self._counters.get(key)
        return counter.count if counter else 0

    def increment_usage(
        self,
        organization_id: str,
        resource: ResourceKind,
        period: UsagePeriod,
        amount: int,
    ) -> int:
        resource = ResourceKind(resource)
        key = (organization_id, resource.value, period.start)
        with self._lock:
            existing = self._counters.get(key)
            count = (existing.count if existing else 0) + amount
            self._counters[key] = UsageCounter(
                organization_id=organization_id,
                resource=resource,
                period_start=period.start,
                period_end=period.end,
                count=count,
            )
        return count

    def list_counters(
        self,
        organization_id: str,
        resource: Optional[ResourceKind] = None,
    ) -> List[UsageCounter]:
        with self._lock:
            counters = [
                c for c in self._counters.values()
                if c.organization_id == organization_id
                and (resource is None or c.resource == ResourceKind(resource))
            ]
        return sorted(counters, key=lambda c: (c.period_start, c.resource.value), reverse=True)


def get_default_usage_store() -> UsageStore:
    """
    Usage store for the running service: always SqlUsageStore.

    Counters are billable state shared by every worker, so there is no
    in-memory fallback. A database that is down at selection time still gets
    a SqlUsageStore; its round trips raise UsageStoreError until the database
    returns, which makes checks fail closed.

    Raises:
        RuntimeError: no DATABASE_URL (or TEST_DATABASE_URL) configured
    """
    from gymquota.core.database import get_database_url

    if not get_database_url():
        raise RuntimeError("DATABASE_URL is not configured; usage counters require a database")

    from gymquota.features.usage.store_sql import SqlUsageStore

    logger.info("[usage_store] using SQL usage counters")
    return SqlUsageStore()


# Global store instance (lazy initialization)
_store_instance: Optional[UsageStore] = None
_store_lock = threading.Lock()


def get_usage_store() -> UsageStore:
    """Singleton usage store used by the quota service."""
    global _store_instance
    with _store_lock:
        if _store_instance is None:
            _store_instance = get_default_usage_store()
        return _store_instance


def reset_usage_store() -> None:
    """FOR TESTING ONLY - forces re-initialization on next get_usage_store() call."""
    global _store_instance
    with _store_lock:
        _store_instance = None
