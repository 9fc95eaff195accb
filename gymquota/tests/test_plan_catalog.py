"""
Tests for the plan catalog.
"""
import pytest

from gymquota.core.errors import ValidationError
from gymquota.features.plans.catalog import (
    DEFAULT_CATALOG,
    DEFAULT_PLAN_LIMITS,
    GIB,
    UNLIMITED,
    PlanCatalog,
    PlanCatalogError,
    PlanTier,
    ResourceKind,
    format_quantity,
)


def _copy_limits():
    return {tier: dict(row) for tier, row in DEFAULT_PLAN_LIMITS.items()}


def test_default_catalog_defines_every_pair():
    for tier in PlanTier:
        for resource in ResourceKind:
            limit = DEFAULT_CATALOG.limit_for(tier, resource)
            assert limit == UNLIMITED or limit >= 0


def test_default_limits_match_pricing():
    assert DEFAULT_CATALOG.limit_for(PlanTier.FREE, ResourceKind.AI_GENERAL_REQUEST) == 10
    assert DEFAULT_CATALOG.limit_for(PlanTier.STARTER, ResourceKind.AI_ROUTINE_GENERATION) == 20
    assert DEFAULT_CATALOG.limit_for(PlanTier.GROWTH, ResourceKind.PUSH_NOTIFICATION) == 2000
    assert DEFAULT_CATALOG.limit_for(PlanTier.PRO, ResourceKind.STORAGE_BYTES) == 15 * GIB
    assert DEFAULT_CATALOG.limit_for(PlanTier.ENTERPRISE, ResourceKind.EMAIL_SEND) == UNLIMITED


def test_missing_pair_is_fatal():
    limits = _copy_limits()
    del limits[PlanTier.GROWTH][ResourceKind.EMAIL_SEND]

    with pytest.raises(PlanCatalogError) as exc:
        PlanCatalog(limits)
    assert "growth" in str(exc.value)
    assert "email_send" in str(exc.value)


def test_missing_tier_is_fatal():
    limits = _copy_limits()
    del limits[PlanTier.PRO]

    with pytest.raises(PlanCatalogError, match="missing tier 'pro'"):
        PlanCatalog(limits)


@pytest.mark.parametrize("bad_value", [-5, "10", 1.5, None, True])
def test_malformed_limit_is_fatal(bad_value):
    limits = _copy_limits()
    limits[PlanTier.FREE][ResourceKind.PUSH_NOTIFICATION] = bad_value

    with pytest.raises(PlanCatalogError):
        PlanCatalog(limits)


def test_catalog_accepts_string_keys():
    limits = {
        tier.value: {resource.value: value for resource, value in row.items()}
        for tier, row in DEFAULT_PLAN_LIMITS.items()
    }
    catalog = PlanCatalog(limits)
    assert catalog.limit_for(PlanTier.STARTER, ResourceKind.EMAIL_SEND) == 500


def test_catalog_is_not_mutable_through_limits_for():
    row = DEFAULT_CATALOG.limits_for(PlanTier.FREE)
    row[ResourceKind.AI_GENERAL_REQUEST] = 9999
    assert DEFAULT_CATALOG.limit_for(PlanTier.FREE, ResourceKind.AI_GENERAL_REQUEST) == 10


def test_upgrade_tier_is_next_more_generous_tier():
    assert DEFAULT_CATALOG.upgrade_tier(PlanTier.FREE, ResourceKind.AI_GENERAL_REQUEST) is PlanTier.STARTER
    assert DEFAULT_CATALOG.upgrade_tier(PlanTier.PRO, ResourceKind.AI_GENERAL_REQUEST) is PlanTier.ENTERPRISE
    assert DEFAULT_CATALOG.upgrade_tier(PlanTier.ENTERPRISE, ResourceKind.AI_GENERAL_REQUEST) is None


def test_upgrade_tier_skips_tiers_without_more_quota():
    limits = _copy_limits()
    limits[PlanTier.STARTER][ResourceKind.EMAIL_SEND] = 100  # same as free
    catalog = PlanCatalog(limits)
    assert catalog.upgrade_tier(PlanTier.FREE, ResourceKind.EMAIL_SEND) is PlanTier.GROWTH


def test_feature_flags_derive_from_limits():
    limits = _copy_limits()
    limits[PlanTier.FREE][ResourceKind.AI_EXERCISE_ALTERNATIVE] = 0
    catalog = PlanCatalog(limits)

    flags = catalog.feature_flags(PlanTier.FREE)
    assert flags["ai_exercise_alternative"] is False
    assert flags["ai_general_request"] is True
    assert all(DEFAULT_CATALOG.feature_flags(PlanTier.ENTERPRISE).values())


def test_parse_tier_and_resource():
    assert PlanTier.parse(" Starter ") is PlanTier.STARTER
    assert ResourceKind.parse("push_notification") is ResourceKind.PUSH_NOTIFICATION
    with pytest.raises(ValidationError):
        PlanTier.parse("platinum")
    with pytest.raises(ValidationError):
        ResourceKind.parse("sms_send")


def test_format_quantity():
    assert format_quantity(ResourceKind.EMAIL_SEND, UNLIMITED) == "Unlimited"
    assert format_quantity(ResourceKind.EMAIL_SEND, 500) == "500"
    assert format_quantity(ResourceKind.STORAGE_BYTES, 2 * GIB) == "2 GB"
    assert format_quantity(ResourceKind.STORAGE_BYTES, GIB // 2) == "512 MB"
