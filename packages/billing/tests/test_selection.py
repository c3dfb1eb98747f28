"""Tests for deal selection by consolidation criterion."""

from datetime import UTC, date, datetime

import pytest

from creator_billing.errors import (
    NotFoundError,
    OwnershipError,
    StateConflictError,
    ValidationError,
)
from creator_billing.invoicing.models import ConsolidationCriterion as CC
from creator_billing.invoicing.selection import (
    DealSelector,
    SelectionRequest,
    day_window,
    month_window,
)


@pytest.fixture
def selector(deal_store, settings):
    return DealSelector(deal_store, settings)


class TestWindows:
    def test_month_window_wraps_december(self):
        start, end = month_window(2024, 12)
        assert start == datetime(2024, 12, 1, tzinfo=UTC)
        assert end == datetime(2025, 1, 1, tzinfo=UTC)

    def test_day_window_includes_end_day(self):
        start, end = day_window(date(2025, 2, 1), date(2025, 2, 28))
        assert start == datetime(2025, 2, 1, tzinfo=UTC)
        assert end == datetime(2025, 3, 1, tzinfo=UTC)


class TestMonthly:
    """Tests for monthly consolidation."""

    def test_selects_eligible_deals_in_month(self, selector):
        selection = selector.select("creator-1", SelectionRequest(CC.MONTHLY, month=2, year=2025))

        assert selection.deal_ids == ["deal-1", "deal-2", "deal-3"]
        assert selection.period_start == datetime(2025, 2, 1, tzinfo=UTC)

    def test_requires_month_and_year(self, selector):
        with pytest.raises(ValidationError) as exc:
            selector.select("creator-1", SelectionRequest(CC.MONTHLY, year=2025))
        assert exc.value.rule == "required"

    def test_rejects_out_of_range_month(self, selector):
        with pytest.raises(ValidationError):
            selector.select("creator-1", SelectionRequest(CC.MONTHLY, month=13, year=2025))

    def test_empty_month_is_not_found(self, selector):
        with pytest.raises(NotFoundError) as exc:
            selector.select("creator-1", SelectionRequest(CC.MONTHLY, month=6, year=2025))
        assert exc.value.rule == "eligible_work_items"

    def test_excludes_invoiced_deals(self, selector, deal_store):
        deal_store.mark_invoiced(["deal-1"], "inv-existing")

        selection = selector.select("creator-1", SelectionRequest(CC.MONTHLY, month=2, year=2025))

        assert "deal-1" not in selection.deal_ids


class TestBrandAndAgency:
    def test_brand_wise(self, selector):
        selection = selector.select("creator-1", SelectionRequest(CC.BRAND_WISE, brand_id="brand-nike"))

        assert selection.deal_ids == ["deal-1", "deal-2", "deal-6"]
        assert selection.brand_id == "brand-nike"

    def test_brand_wise_requires_brand(self, selector):
        with pytest.raises(ValidationError):
            selector.select("creator-1", SelectionRequest(CC.BRAND_WISE))

    def test_agency_payout_uses_narrow_statuses(self, selector):
        """Only settled deals (completed/paid) qualify for agency payouts."""
        selection = selector.select("creator-1", SelectionRequest(CC.AGENCY_PAYOUT, agency_id="agency-1"))

        assert selection.deal_ids == ["deal-3"]

    def test_agency_payout_with_window(self, selector):
        selection = selector.select(
            "creator-1",
            SelectionRequest(
                CC.AGENCY_PAYOUT,
                start_date=date(2025, 2, 1),
                end_date=date(2025, 2, 10),
            ),
        )

        assert selection.deal_ids == ["deal-1"]


class TestDateRange:
    def test_date_range_is_inclusive(self, selector):
        selection = selector.select(
            "creator-1",
            SelectionRequest(CC.DATE_RANGE, start_date=date(2025, 1, 15), end_date=date(2025, 2, 5)),
        )

        assert selection.deal_ids == ["deal-1", "deal-6"]

    def test_date_range_must_be_ordered(self, selector):
        with pytest.raises(ValidationError) as exc:
            selector.select(
                "creator-1",
                SelectionRequest(CC.DATE_RANGE, start_date=date(2025, 3, 1), end_date=date(2025, 2, 1)),
            )
        assert exc.value.rule == "ordered_range"


class TestCustomSelection:
    """Tests for explicit deal lists."""

    def test_needs_two_distinct_deals(self, selector):
        with pytest.raises(ValidationError) as exc:
            selector.select("creator-1", SelectionRequest(CC.CUSTOM_SELECTION, deal_ids=("deal-1", "deal-1")))
        assert exc.value.rule == "min_items"

    def test_selects_in_requested_order(self, selector):
        selection = selector.select(
            "creator-1", SelectionRequest(CC.CUSTOM_SELECTION, deal_ids=("deal-3", "deal-1"))
        )
        assert selection.deal_ids == ["deal-3", "deal-1"]

    def test_foreign_deal_is_ownership_error(self, selector):
        with pytest.raises(OwnershipError):
            selector.select("creator-1", SelectionRequest(CC.CUSTOM_SELECTION, deal_ids=("deal-1", "deal-5")))

    def test_unknown_deal_is_not_found(self, selector):
        with pytest.raises(NotFoundError):
            selector.select("creator-1", SelectionRequest(CC.CUSTOM_SELECTION, deal_ids=("deal-1", "nope")))

    def test_invoiced_deal_is_state_conflict(self, selector, deal_store):
        deal_store.mark_invoiced(["deal-2"], "inv-existing")

        with pytest.raises(StateConflictError) as exc:
            selector.select("creator-1", SelectionRequest(CC.CUSTOM_SELECTION, deal_ids=("deal-1", "deal-2")))
        assert exc.value.rule == "single_active_invoice"

    def test_ineligible_status_is_validation_error(self, selector):
        with pytest.raises(ValidationError) as exc:
            selector.select("creator-1", SelectionRequest(CC.CUSTOM_SELECTION, deal_ids=("deal-1", "deal-4")))
        assert exc.value.rule == "eligible_status"
