"""
Tests for the organization service and cached plan resolver.
"""
import pytest
from datetime import datetime, timezone
from uuid import uuid4

from gymquota.core.database import check_connection
from gymquota.core.errors import ConflictError, NotFoundError, ValidationError
from gymquota.features.organizations.service import (
    CachedPlanResolver,
    change_plan_tier,
    create_organization,
    get_organization,
    get_plan_tier,
    list_organizations,
)
from gymquota.features.plans.catalog import PlanTier


needs_db = pytest.mark.skipif(not check_connection(), reason="Database not available")


def _org_id():
    return f"gym-{uuid4()}"


@needs_db
def test_create_and_get_organization():
    organization_id = _org_id()
    created = create_organization(organization_id, "  Barbell Club  ", PlanTier.GROWTH)
    assert created.name == "Barbell Club"
    assert created.usage_anchor_day == 1

    loaded = get_organization(organization_id)
    assert loaded.organization_id == organization_id
    assert loaded.plan_tier is PlanTier.GROWTH
    assert loaded.plan_changed_at is None


@needs_db
def test_signup_anchor_mode_uses_creation_day():
    created = create_organization(
        _org_id(),
        "Late Month Gym",
        now=datetime(2026, 8, 27, 15, tzinfo=timezone.utc),
        anchor_mode="signup",
    )
    assert created.usage_anchor_day == 27


@needs_db
def test_duplicate_organization_conflicts():
    organization_id = _org_id()
    create_organization(organization_id, "First")
    with pytest.raises(ConflictError):
        create_organization(organization_id, "Second")


@pytest.mark.parametrize("organization_id,name", [("", "Gym"), ("gym-x", " "), ("g" * 101, "Gym")])
def test_create_validates_input(organization_id, name):
    with pytest.raises(ValidationError):
        create_organization(organization_id, name)


@needs_db
def test_get_plan_tier_and_change():
    organization_id = _org_id()
    create_organization(organization_id, "Upgrader")
    assert get_plan_tier(organization_id) is PlanTier.FREE

    changed = change_plan_tier(organization_id, "pro")
    assert changed.plan_tier is PlanTier.PRO
    assert changed.plan_changed_at is not None
    assert get_plan_tier(organization_id) is PlanTier.PRO


@needs_db
def test_unknown_organization():
    assert get_organization("gym-missing") is None
    with pytest.raises(NotFoundError):
        get_plan_tier("gym-missing")
    with pytest.raises(NotFoundError):
        change_plan_tier("gym-missing", PlanTier.PRO)


@needs_db
def test_list_organizations_by_tier():
    a, b = _org_id(), _org_id()
    create_organization(a, "A", PlanTier.STARTER)
    create_organization(b, "B", PlanTier.PRO)

    assert {o.organization_id for o in list_organizations()} == {a, b}
    assert [o.organization_id for o in list_organizations(PlanTier.PRO)] == [b]


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_resolver_caches_until_ttl_expires():
    calls = []
    tiers = {"gym-1": PlanTier.FREE}

    def loader(organization_id):
        calls.append(organization_id)
        return tiers[organization_id]

    clock = FakeClock()
    resolver = CachedPlanResolver(loader, ttl_seconds=60, clock=clock)

    assert resolver("gym-1") is PlanTier.FREE
    tiers["gym-1"] = PlanTier.PRO
    clock.now += 59
    # Stale within one TTL is accepted
    assert resolver("gym-1") is PlanTier.FREE
    assert len(calls) == 1

    clock.now += 2
    assert resolver("gym-1") is PlanTier.PRO
    assert len(calls) == 2


def test_resolver_invalidate_and_zero_ttl():
    calls = []

    def loader(organization_id):
        calls.append(organization_id)
        return "starter"

    resolver = CachedPlanResolver(loader, ttl_seconds=60, clock=FakeClock())
    resolver("gym-1")
    resolver.invalidate("gym-1")
    assert resolver("gym-1") is PlanTier.STARTER
    assert len(calls) == 2

    uncached = CachedPlanResolver(loader, ttl_seconds=0, clock=FakeClock())
    uncached("gym-1")
    uncached("gym-1")
    assert len(calls) == 4


def test_resolver_does_not_cache_failures():
    attempts = []

    def loader(organization_id):
        attempts.append(organization_id)
        if len(attempts) == 1:
            raise ConnectionError("db down")
        return PlanTier.GROWTH

    resolver = CachedPlanResolver(loader, ttl_seconds=60, clock=FakeClock())
    with pytest.raises(ConnectionError):
        resolver("gym-1")
    assert resolver("gym-1") is PlanTier.GROWTH


def test_resolver_rejects_negative_ttl():
    with pytest.raises(ValueError):
        CachedPlanResolver(lambda _: PlanTier.FREE, ttl_seconds=-1)
