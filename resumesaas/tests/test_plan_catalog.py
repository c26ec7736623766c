"""Tests for the static plan catalog."""
import pytest

from resumesaas.core.errors import CatalogConfigurationError, PlanNotFoundError, ValidationError
from resumesaas.features.plans.catalog import (
    DEFAULT_PLANS,
    FEATURE_CREDIT_COSTS,
    PlanCatalog,
    get_catalog,
    get_plan,
    plan_for_price,
    price_for_plan,
)
from resumesaas.models.plan import Plan


def test_default_plans_are_ordered_by_price():
    plans = get_catalog().list_plans()
    assert [p.plan_id for p in plans] == ["free", "basic", "standard", "pro"]
    assert [p.monthly_credit_allowance for p in plans] == [3, 10, 50, 200]


def test_higher_tiers_include_lower_tier_features():
    catalog = get_catalog()
    free = catalog.get_plan("free").entitled_features
    basic = catalog.get_plan("basic").entitled_features
    standard = catalog.get_plan("standard").entitled_features
    pro = catalog.get_plan("pro").entitled_features
    assert free < basic < standard < pro
    assert "personal_brand_strategy" in pro
    assert "personal_brand_strategy" not in standard


def test_unknown_plan_raises_not_found():
    with pytest.raises(PlanNotFoundError):
        get_plan("enterprise")


def test_feature_costs():
    catalog = get_catalog()
    assert catalog.feature_cost("resume_generation") == 1
    assert catalog.feature_cost("linkedin_optimization") == 4
    assert catalog.feature_cost("ai_suggestions") == 0
    with pytest.raises(ValidationError):
        catalog.feature_cost("telepathy")


def test_price_mapping_uses_settings(test_settings):
    assert price_for_plan("pro") == "price_pro"
    assert price_for_plan("free") is None
    assert plan_for_price("price_standard") == "standard"
    assert plan_for_price("price_unknown") is None
    assert plan_for_price(None) is None


def test_validate_references_names_unknown_plans():
    catalog = get_catalog()
    catalog.validate_references(["free", "pro"])
    with pytest.raises(CatalogConfigurationError) as exc:
        catalog.validate_references(["pro", "legacy_gold", "creator"])
    assert "creator" in str(exc.value)
    assert "legacy_gold" in str(exc.value)


def test_catalog_requires_free_plan():
    with pytest.raises(CatalogConfigurationError):
        PlanCatalog([Plan(plan_id="pro", name="Pro", monthly_credit_allowance=10)], FEATURE_CREDIT_COSTS)


def test_catalog_rejects_features_without_cost():
    config = dict(DEFAULT_PLANS)
    config["free"] = {**DEFAULT_PLANS["free"], "entitled_features": ["resume_generation", "mystery"]}
    with pytest.raises(CatalogConfigurationError):
        PlanCatalog.from_config(config, FEATURE_CREDIT_COSTS)


def test_catalog_rejects_negative_costs():
    with pytest.raises(CatalogConfigurationError):
        PlanCatalog.from_config(DEFAULT_PLANS, {**FEATURE_CREDIT_COSTS, "resume_generation": -1})
