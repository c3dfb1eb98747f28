"""Tests for the tier catalog."""

from decimal import Decimal

import pytest

from creator_billing.config import FeatureLimits, load_tier_catalog
from creator_billing.config.tiers_loader import parse_tier_catalog


class TestBundledCatalog:
    """Tests for the shipped tiers.yaml."""

    def test_has_all_tiers_in_rank_order(self):
        catalog = load_tier_catalog()

        ranked = sorted(catalog.values(), key=lambda p: p.rank)
        assert [p.key for p in ranked] == ["starter", "pro", "elite", "agency_starter", "agency_pro"]

    @pytest.mark.parametrize(
        "tier, quarterly, monthly",
        [
            ("starter", "807", "299"),
            ("pro", "1887", "699"),
            ("elite", "3507", "1299"),
            ("agency_starter", "8097", "2999"),
            ("agency_pro", "18897", "6999"),
        ],
    )
    def test_prices(self, tier, quarterly, monthly):
        plan = load_tier_catalog()[tier]

        assert plan.quarterly_price == Decimal(quarterly)
        assert plan.monthly_price == Decimal(monthly)

    def test_agency_limits(self):
        plan = load_tier_catalog()["agency_starter"]
        assert plan.limits.max_creators == 8

    def test_catalog_is_cached(self):
        assert load_tier_catalog() is load_tier_catalog()


class TestFeatureLimits:
    def test_limit_is_exclusive(self):
        limits = FeatureLimits(max_active_deals=10)

        assert limits.allows("max_active_deals", 9)
        assert not limits.allows("max_active_deals", 10)

    def test_unlimited(self):
        assert FeatureLimits(max_invoices_per_month=-1).allows("max_invoices_per_month", 10_000)

    def test_unset_creator_limit(self):
        assert FeatureLimits().allows("max_creators", 500)


class TestParseCatalog:
    """Tests for parsing raw YAML data."""

    def test_minimal_entry(self):
        catalog = parse_tier_catalog({"solo": {"rank": 1, "monthly_price": 100, "quarterly_price": 270}})

        plan = catalog["solo"]
        assert plan.display_name == "solo"
        assert plan.quarterly_price == Decimal("270")
        assert plan.limits.max_active_deals == -1
        assert plan.features == ()

    def test_entry_must_be_mapping(self):
        with pytest.raises(ValueError):
            parse_tier_catalog({"solo": "cheap"})

    def test_missing_price(self):
        with pytest.raises(KeyError):
            parse_tier_catalog({"solo": {"rank": 1, "monthly_price": 100}})

    def test_custom_file(self, tmp_path):
        path = tmp_path / "tiers.yaml"
        path.write_text("solo:\n  rank: 1\n  monthly_price: 100\n  quarterly_price: 270\n", encoding="utf-8")

        assert list(load_tier_catalog(str(path))) == ["solo"]
