"""Select eligible deals for an invoice."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta

import structlog

from creator_billing.config import BillingSettings, get_settings
from creator_billing.errors import (
    NotFoundError,
    OwnershipError,
    StateConflictError,
    ValidationError,
)
from creator_billing.invoicing.models import ConsolidationCriterion, WorkItem
from creator_billing.ports import DealQuery, DealStore

logger = structlog.get_logger(__name__)

MIN_CUSTOM_SELECTION = 2


@dataclass(frozen=True)
class SelectionRequest:
    """Parameters for one consolidation criterion.

    Only the fields relevant to ``criterion`` are read.
    """

    criterion: ConsolidationCriterion
    month: int | None = None
    year: int | None = None
    brand_id: str | None = None
    agency_id: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    deal_ids: tuple[str, ...] = ()


@dataclass
class Selection:
    criterion: ConsolidationCriterion
    deals: list[WorkItem] = field(default_factory=list)
    period_start: datetime | None = None
    period_end: datetime | None = None
    brand_id: str | None = None
    agency_id: str | None = None

    @property
    def deal_ids(self) -> list[str]:
        return [d.deal_id for d in self.deals]


def month_window(year: int, month: int) -> tuple[datetime, datetime]:
    """Return ``[first day of month, first day of next month)`` in UTC."""
    start = datetime(year, month, 1, tzinfo=UTC)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=UTC)
    else:
        end = datetime(year, month + 1, 1, tzinfo=UTC)
    return start, end


def day_window(start: date, end: date) -> tuple[datetime, datetime]:
    """Return a window covering both ``start`` and ``end`` days in full."""
    return (
        datetime.combine(start, time.min, tzinfo=UTC),
        datetime.combine(end + timedelta(days=1), time.min, tzinfo=UTC),
    )


class DealSelector:
    """Retrieve and eligibility-check deals from the deal store."""

    def __init__(self, deal_store: DealStore, settings: BillingSettings | None = None):
        self._deals = deal_store
        self._settings = settings or get_settings()
        self._logger = logger.bind(component="deal_selector")

    @property
    def eligible_statuses(self) -> tuple[str, ...]:
        return tuple(self._settings.eligible_deal_statuses)

    @property
    def payout_statuses(self) -> tuple[str, ...]:
        return tuple(self._settings.agency_payout_statuses)

    def select(self, creator_id: str, request: SelectionRequest) -> Selection:
        """Select deals for ``request.criterion``.

        Raises:
            ValidationError: Missing or inconsistent request parameters.
            NotFoundError: No eligible deal matched.
        """
        handlers = {
            ConsolidationCriterion.MONTHLY: self._monthly,
            ConsolidationCriterion.BRAND_WISE: self._brand_wise,
            ConsolidationCriterion.AGENCY_PAYOUT: self._agency_payout,
            ConsolidationCriterion.DATE_RANGE: self._date_range,
            ConsolidationCriterion.CUSTOM_SELECTION: self._custom,
        }
        selection = handlers[request.criterion](creator_id, request)

        if not selection.deals:
            raise NotFoundError(
                "No eligible deals found for consolidation",
                entity="Deal",
                rule="eligible_work_items",
                details={"criterion": request.criterion.value, "creator_id": creator_id},
            )

        self._logger.info(
            "deals_selected",
            creator_id=creator_id,
            criterion=request.criterion.value,
            deal_count=len(selection.deals),
        )
        return selection

    def _monthly(self, creator_id: str, request: SelectionRequest) -> Selection:
        if request.month is None or request.year is None:
            raise ValidationError(
                "Month and year are required for monthly consolidation",
                field="month",
                rule="required",
            )
        if not 1 <= request.month <= 12:
            raise ValidationError(
                f"Month must be between 1 and 12, got {request.month}",
                field="month",
                rule="range",
            )
        start, end = month_window(request.year, request.month)
        deals = self._deals.find(
            DealQuery(
                creator_id=creator_id,
                statuses=self.eligible_statuses,
                completed_from=start,
                completed_to=end,
            )
        )
        return Selection(request.criterion, deals, period_start=start, period_end=end)

    def _brand_wise(self, creator_id: str, request: SelectionRequest) -> Selection:
        if not request.brand_id:
            raise ValidationError(
                "Brand is required for brand-wise consolidation",
                field="brand_id",
                rule="required",
            )
        deals = self._deals.find(
            DealQuery(
                creator_id=creator_id,
                statuses=self.eligible_statuses,
                brand_id=request.brand_id,
            )
        )
        return Selection(request.criterion, deals, brand_id=request.brand_id)

    def _agency_payout(self, creator_id: str, request: SelectionRequest) -> Selection:
        start = end = None
        if request.start_date or request.end_date:
            start, end = self._window(request)
        deals = self._deals.find(
            DealQuery(
                creator_id=creator_id,
                statuses=self.payout_statuses,
                agency_id=request.agency_id,
                completed_from=start,
                completed_to=end,
            )
        )
        return Selection(
            request.criterion,
            deals,
            period_start=start,
            period_end=end,
            agency_id=request.agency_id,
        )

    def _date_range(self, creator_id: str, request: SelectionRequest) -> Selection:
        start, end = self._window(request)
        deals = self._deals.find(
            DealQuery(
                creator_id=creator_id,
                statuses=self.eligible_statuses,
                completed_from=start,
                completed_to=end,
            )
        )
        return Selection(request.criterion, deals, period_start=start, period_end=end)

    def _custom(self, creator_id: str, request: SelectionRequest) -> Selection:
        deal_ids = list(dict.fromkeys(request.deal_ids))
        if len(deal_ids) < MIN_CUSTOM_SELECTION:
            raise ValidationError(
                f"Custom selection needs at least {MIN_CUSTOM_SELECTION} deals",
                field="deal_ids",
                rule="min_items",
                details={"received": len(deal_ids)},
            )
        deals = [self._checked(creator_id, deal_id, self.eligible_statuses) for deal_id in deal_ids]
        return Selection(request.criterion, deals)

    def for_individual(self, creator_id: str, deal_id: str) -> WorkItem:
        """Fetch one deal for an individual invoice, enforcing every eligibility rule."""
        return self._checked(creator_id, deal_id, self.eligible_statuses)

    def _checked(self, creator_id: str, deal_id: str, statuses: tuple[str, ...]) -> WorkItem:
        deal = self._deals.get(deal_id)
        if deal is None:
            raise NotFoundError(f"Deal {deal_id} not found", entity=f"Deal:{deal_id}")
        if deal.creator_id != creator_id:
            raise OwnershipError(
                f"Deal {deal_id} does not belong to creator {creator_id}",
                field="creator_id",
                entity=f"Deal:{deal_id}",
                rule="owner_matches",
            )
        if deal.has_invoice:
            raise StateConflictError(
                f"Deal {deal_id} is already invoiced",
                field="has_invoice",
                entity=f"Deal:{deal_id}",
                rule="single_active_invoice",
                details={"invoice_id": deal.invoice_id},
            )
        if deal.status not in statuses:
            raise ValidationError(
                f"Deal {deal_id} has status {deal.status!r}, which cannot be invoiced",
                field="status",
                entity=f"Deal:{deal_id}",
                rule="eligible_status",
                details={"eligible": list(statuses)},
            )
        return deal

    @staticmethod
    def _window(request: SelectionRequest) -> tuple[datetime, datetime]:
        if request.start_date is None or request.end_date is None:
            raise ValidationError(
                "Both start_date and end_date are required",
                field="start_date" if request.start_date is None else "end_date",
                rule="required",
            )
        if request.start_date > request.end_date:
            raise ValidationError(
                "start_date must not be after end_date",
                field="start_date",
                rule="ordered_range",
            )
        return day_window(request.start_date, request.end_date)
