"""Build invoices from deals.

The assembler turns selected deals into line items, resolves who the invoice
is addressed to, derives tax settings from the creator's preferences, prices
everything through :mod:`creator_billing.invoicing.tax` and then persists the
invoice and flags the deals in a single unit of work.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TypeVar
from uuid import uuid4

import structlog

from creator_billing.config import BillingSettings, get_settings
from creator_billing.errors import (
    BillingError,
    NotFoundError,
    StateConflictError,
    UpstreamError,
    ValidationError,
)
from creator_billing.identifiers import IdentifierFactory, utc_now
from creator_billing.invoicing.models import (
    Address,
    BankDetails,
    BrandProfile,
    ClientDetails,
    ClientType,
    ConsolidationCriterion,
    ConsolidationDescriptor,
    CreatorProfile,
    DealsSummary,
    Discount,
    ExemptionCertificate,
    GSTSettings,
    GSTType,
    Invoice,
    InvoiceMetadata,
    InvoiceSettings,
    InvoiceType,
    LineItem,
    TaxPreferences,
    TaxSettings,
    TDSSettings,
    ValueSource,
    WorkItem,
)
from creator_billing.invoicing.selection import DealSelector, Selection, SelectionRequest
from creator_billing.invoicing.tax import recalculate_invoice
from creator_billing.money import HUNDRED, ZERO, to_decimal, to_paise
from creator_billing.ports import BillingStore, Clock, CreatorProfileStore, DealStore
from creator_billing.secrets import SecretString

logger = structlog.get_logger(__name__)

T = TypeVar("T")

MAX_NUMBER_ATTEMPTS = 10

DEFAULT_TERMS = (
    "1. Payment is due within 30 days of invoice date.\n"
    "2. Late payments may incur additional charges.\n"
    "3. All content rights as per signed agreement.\n"
    "4. Invoice amount is inclusive of all applicable taxes.\n"
    "5. Please quote invoice number in all correspondence."
)

INVOICE_TYPE_BY_CRITERION = {
    ConsolidationCriterion.MONTHLY: InvoiceType.MONTHLY_SUMMARY,
    ConsolidationCriterion.AGENCY_PAYOUT: InvoiceType.AGENCY_PAYOUT,
    ConsolidationCriterion.BRAND_WISE: InvoiceType.CONSOLIDATED,
    ConsolidationCriterion.DATE_RANGE: InvoiceType.CONSOLIDATED,
    ConsolidationCriterion.CUSTOM_SELECTION: InvoiceType.CONSOLIDATED,
}


@dataclass(frozen=True)
class ClientOverride:
    """Caller-supplied client fields. Each set field wins over the profile."""

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: Address | None = None
    state: str | None = None
    gst_number: SecretString | None = None
    pan_number: SecretString | None = None
    is_interstate: bool | None = None
    client_type: ClientType | None = None


@dataclass(frozen=True)
class TaxOverride:
    """Per-field overrides of the creator's tax preferences."""

    apply_gst: bool | None = None
    gst_rate: Decimal | None = None
    gst_type: GSTType | None = None
    gst_exemption_reason: str | None = None
    apply_tds: bool | None = None
    tds_rate: Decimal | None = None
    entity_type: str | None = None
    has_tds_exemption: bool | None = None
    exemption_certificate: ExemptionCertificate | None = None


@dataclass(frozen=True)
class InvoiceOptions:
    currency: str | None = None
    payment_terms_days: int | None = None
    overall_discount: Discount | None = None
    notes: str | None = None
    terms_and_conditions: str | None = None


def _pick(override: T | None, fallback: T) -> T:
    return override if override is not None else fallback


def split_evenly(total: Decimal, parts: int) -> list[Decimal]:
    """Split ``total`` into ``parts`` paise amounts that add up to ``total`` exactly."""
    share = to_paise(total / parts)
    shares = [share] * (parts - 1)
    shares.append(total - share * (parts - 1))
    return shares


def summarize_deals(deals: Sequence[WorkItem]) -> DealsSummary:
    brands = {d.brand.brand_id for d in deals if d.brand is not None}
    platforms = list(dict.fromkeys(d.platform for d in deals if d.platform))
    return DealsSummary(
        total_deals=len(deals),
        total_brands=len(brands),
        total_deliverables=sum(len(d.deliverables) or 1 for d in deals),
        platforms=tuple(platforms),
    )


def group_line_items(items: Sequence[LineItem]) -> list[LineItem]:
    """Merge items sharing platform, deliverable type and rate.

    Quantities and amounts are summed and descriptions joined. A group that
    contains any fallback-valued item stays flagged as fallback.
    """
    grouped: dict[tuple[str | None, str | None, Decimal], LineItem] = {}
    for item in items:
        key = (item.platform, item.deliverable_type, item.rate)
        existing = grouped.get(key)
        if existing is None:
            grouped[key] = replace(item)
            continue
        existing.quantity += item.quantity
        existing.amount += item.amount
        existing.description = f"{existing.description} + {item.description}"
        if existing.work_item_id != item.work_item_id:
            existing.work_item_id = None
        if item.value_source == ValueSource.FALLBACK:
            existing.value_source = ValueSource.FALLBACK
    return list(grouped.values())


class InvoiceAssembler:
    """Create individual and consolidated invoices."""

    def __init__(
        self,
        store: BillingStore,
        deal_store: DealStore,
        profiles: CreatorProfileStore,
        settings: BillingSettings | None = None,
        clock: Clock = utc_now,
        identifiers: IdentifierFactory | None = None,
    ):
        self._store = store
        self._deals = deal_store
        self._profiles = profiles
        self._settings = settings or get_settings()
        self._clock = clock
        self._ids = identifiers or IdentifierFactory(clock=clock)
        self._selector = DealSelector(deal_store, self._settings)
        self._logger = logger.bind(component="invoice_assembler")

    # === Public API ===

    def create_individual_invoice(
        self,
        creator_id: str,
        deal_id: str,
        *,
        client: ClientOverride | None = None,
        tax: TaxOverride | None = None,
        options: InvoiceOptions | None = None,
        bank_details: BankDetails | None = None,
        created_by: str | None = None,
    ) -> Invoice:
        """Invoice a single deal."""
        with self._store.lock(f"creator:{creator_id}"):
            creator = self._load_creator(creator_id)
            deal = self._selector.for_individual(creator_id, deal_id)
            line_items = self.build_line_items(deal)
            client_details = self.resolve_client(
                creator, [deal], ConsolidationCriterion.CUSTOM_SELECTION, client, None
            )
            selection = Selection(ConsolidationCriterion.CUSTOM_SELECTION, [deal])
            return self._persist(
                creator=creator,
                invoice_type=InvoiceType.INDIVIDUAL,
                selection=selection,
                line_items=line_items,
                client_details=client_details,
                tax=tax,
                options=options,
                bank_details=bank_details,
                created_by=created_by,
            )

    def create_consolidated_invoice(
        self,
        creator_id: str,
        request: SelectionRequest,
        *,
        client: ClientOverride | None = None,
        agency: BrandProfile | None = None,
        tax: TaxOverride | None = None,
        options: InvoiceOptions | None = None,
        bank_details: BankDetails | None = None,
        created_by: str | None = None,
    ) -> Invoice:
        """Invoice every deal matching a consolidation criterion.

        Raises:
            NotFoundError: Unknown creator, or no eligible deals.
            ValidationError: Bad criterion parameters, or an agency payout
                without agency details.
            OwnershipError / StateConflictError: A custom selection names a
                foreign or already-invoiced deal.
        """
        if request.criterion == ConsolidationCriterion.AGENCY_PAYOUT and agency is None:
            raise ValidationError(
                "Agency details are required for agency payout invoices",
                field="agency",
                rule="required",
            )

        with self._store.lock(f"creator:{creator_id}"):
            creator = self._load_creator(creator_id)
            selection = self._selector.select(creator_id, request)
            line_items: list[LineItem] = []
            for deal in selection.deals:
                line_items.extend(self.build_line_items(deal))
            client_details = self.resolve_client(
                creator, selection.deals, request.criterion, client, agency
            )
            return self._persist(
                creator=creator,
                invoice_type=INVOICE_TYPE_BY_CRITERION[request.criterion],
                selection=selection,
                line_items=group_line_items(line_items),
                client_details=client_details,
                tax=tax,
                options=options,
                bank_details=bank_details,
                created_by=created_by,
            )

    # === Building blocks ===

    def build_line_items(self, deal: WorkItem) -> list[LineItem]:
        """Line items for one deal.

        Deliverables with their own rate are billed at that rate. Deliverables
        without one share the deal value evenly. A deal without deliverables
        becomes a single campaign line.
        """
        value, source = self._deal_value(deal)
        hsn_code = self._settings.hsn_code

        if not deal.deliverables:
            brand_name = deal.brand.name if deal.brand else "Brand Campaign"
            return [
                LineItem(
                    description=f"{deal.platform} Campaign - {brand_name}",
                    quantity=Decimal("1"),
                    rate=value,
                    amount=value,
                    work_item_id=deal.deal_id,
                    platform=deal.platform,
                    hsn_code=hsn_code,
                    value_source=source,
                )
            ]

        shares = split_evenly(value, len(deal.deliverables))
        items = []
        for deliverable, share in zip(deal.deliverables, shares):
            description = f"{deliverable.deliverable_type} - {deliverable.description}".rstrip(" -")
            if deliverable.rate is not None:
                quantity = Decimal(deliverable.quantity or 1)
                rate = deliverable.rate
                item_source = ValueSource.EXPLICIT
            else:
                if deliverable.quantity and deliverable.quantity > 1:
                    description = f"{description} (x{deliverable.quantity})"
                quantity = Decimal("1")
                rate = share
                item_source = (
                    ValueSource.FALLBACK if source == ValueSource.FALLBACK
                    else ValueSource.DISTRIBUTED
                )
            items.append(
                LineItem(
                    description=description,
                    quantity=quantity,
                    rate=rate,
                    amount=quantity * rate,
                    work_item_id=deal.deal_id,
                    platform=deal.platform,
                    deliverable_type=deliverable.deliverable_type,
                    hsn_code=hsn_code,
                    value_source=item_source,
                )
            )
        return items

    def resolve_client(
        self,
        creator: CreatorProfile,
        deals: Sequence[WorkItem],
        criterion: ConsolidationCriterion,
        override: ClientOverride | None,
        agency: BrandProfile | None,
    ) -> ClientDetails:
        """Resolve the bill-to party: override, then brand or agency, then a placeholder."""
        override = override or ClientOverride()

        if criterion == ConsolidationCriterion.AGENCY_PAYOUT:
            if agency is None:
                raise ValidationError(
                    "Agency details are required for agency payout invoices",
                    field="agency",
                    rule="required",
                )
            base = self._client_from_profile(agency, ClientType.AGENCY)
        else:
            brands = {d.brand.brand_id: d.brand for d in deals if d.brand is not None}
            if len(brands) == 1:
                base = self._client_from_profile(next(iter(brands.values())), ClientType.BRAND)
            elif len(brands) > 1:
                base = ClientDetails(
                    name=f"Multiple Brands ({len(brands)})",
                    client_type=ClientType.MULTIPLE_BRANDS,
                )
            else:
                base = ClientDetails(name="Client", client_type=ClientType.BRAND)

        state = _pick(override.state, base.state)
        if override.is_interstate is not None:
            is_interstate = override.is_interstate
        else:
            is_interstate = bool(
                creator.state and state and creator.state.strip().lower() != state.strip().lower()
            )

        return ClientDetails(
            name=_pick(override.name, base.name),
            email=_pick(override.email, base.email),
            phone=_pick(override.phone, base.phone),
            address=_pick(override.address, base.address),
            gst_number=_pick(override.gst_number, base.gst_number),
            pan_number=_pick(override.pan_number, base.pan_number),
            state=state,
            is_interstate=is_interstate,
            client_type=_pick(override.client_type, base.client_type),
        )

    def build_tax_settings(
        self,
        preferences: TaxPreferences | None,
        override: TaxOverride | None,
        is_interstate: bool,
    ) -> TaxSettings:
        """Start from the creator's preferences and apply each set override field."""
        prefs = preferences or self._default_preferences()
        override = override or TaxOverride()

        if override.gst_type is not None:
            gst_type = override.gst_type
        elif is_interstate:
            gst_type = GSTType.IGST
        else:
            gst_type = prefs.gst_type

        gst = GSTSettings(
            apply_gst=_pick(override.apply_gst, prefs.apply_gst),
            gst_rate=to_decimal(_pick(override.gst_rate, prefs.gst_rate)),
            gst_type=gst_type,
            exemption_reason=_pick(override.gst_exemption_reason, prefs.gst_exemption_reason),
        )
        tds = TDSSettings(
            apply_tds=_pick(override.apply_tds, prefs.apply_tds),
            tds_rate=to_decimal(_pick(override.tds_rate, prefs.tds_rate)),
            entity_type=_pick(override.entity_type, prefs.entity_type),
            has_exemption=_pick(override.has_tds_exemption, prefs.has_tds_exemption),
            certificate=_pick(override.exemption_certificate, prefs.exemption_certificate),
        )
        check_percentage(gst.gst_rate, "gst_rate")
        check_percentage(tds.tds_rate, "tds_rate")
        return TaxSettings(gst=gst, tds=tds)

    def build_invoice_settings(
        self, options: InvoiceOptions | None, invoice_date: datetime
    ) -> InvoiceSettings:
        options = options or InvoiceOptions()
        terms_days = _pick(options.payment_terms_days, self._settings.payment_terms_days)
        if terms_days < 0:
            raise ValidationError(
                "Payment terms cannot be negative",
                field="payment_terms_days",
                rule="non_negative",
            )
        validate_discount(options.overall_discount, "overall_discount")
        return InvoiceSettings(
            invoice_date=invoice_date,
            due_date=invoice_date + timedelta(days=terms_days),
            currency=options.currency or self._settings.currency,
            payment_terms_days=terms_days,
            overall_discount=options.overall_discount,
            notes=options.notes,
            terms_and_conditions=options.terms_and_conditions or DEFAULT_TERMS,
        )

    # === Internals ===

    def _persist(
        self,
        *,
        creator: CreatorProfile,
        invoice_type: InvoiceType,
        selection: Selection,
        line_items: list[LineItem],
        client_details: ClientDetails,
        tax: TaxOverride | None,
        options: InvoiceOptions | None,
        bank_details: BankDetails | None,
        created_by: str | None,
    ) -> Invoice:
        now = self._clock()
        for item in line_items:
            validate_discount(item.discount, "line_items.discount")

        invoice = Invoice(
            invoice_id=str(uuid4()),
            invoice_number="",
            invoice_type=invoice_type,
            creator_id=creator.creator_id,
            deal_ids=selection.deal_ids,
            consolidation=ConsolidationDescriptor(
                criterion=selection.criterion,
                summary=summarize_deals(selection.deals),
                period_start=selection.period_start,
                period_end=selection.period_end,
                brand_id=selection.brand_id,
                agency_id=selection.agency_id,
            ),
            client=client_details,
            line_items=line_items,
            tax_settings=self.build_tax_settings(
                creator.tax_preferences, tax, client_details.is_interstate
            ),
            invoice_settings=self.build_invoice_settings(options, now),
            bank_details=bank_details or creator.bank_details,
            metadata=InvoiceMetadata(
                created_by=created_by or creator.creator_id,
                fallback_line_items=sum(
                    1 for item in line_items if item.value_source == ValueSource.FALLBACK
                ),
            ),
            created_at=now,
            updated_at=now,
        )
        recalculate_invoice(invoice)

        with self._store.unit_of_work():
            invoice.invoice_number = self._unique_invoice_number(now)
            self._store.save_invoice(invoice)
            self._mark_deals(invoice)

        self._logger.info(
            "invoice_created",
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            invoice_type=invoice.invoice_type.value,
            creator_id=invoice.creator_id,
            deal_count=len(invoice.deal_ids),
            final_amount=str(invoice.final_amount),
            fallback_line_items=invoice.metadata.fallback_line_items,
        )
        return invoice

    def _mark_deals(self, invoice: Invoice) -> None:
        try:
            self._deals.mark_invoiced(invoice.deal_ids, invoice.invoice_id)
        except BillingError:
            self._release_deals(invoice)
            raise
        except Exception as e:
            self._release_deals(invoice)
            raise UpstreamError(
                f"Deal store failed while flagging deals: {e}",
                collaborator="deal_store",
            ) from e

    def _release_deals(self, invoice: Invoice) -> None:
        try:
            self._deals.clear_invoice(invoice.deal_ids, invoice.invoice_id)
        except Exception as e:
            self._logger.error(
                "deal_flag_release_failed",
                invoice_id=invoice.invoice_id,
                deal_ids=invoice.deal_ids,
                error=str(e),
            )

    def _unique_invoice_number(self, at: datetime) -> str:
        for _ in range(MAX_NUMBER_ATTEMPTS):
            number = self._ids.invoice_number(at)
            if self._store.find_invoice_by_number(number) is None:
                return number
            self._logger.debug("invoice_number_collision", invoice_number=number)
        raise StateConflictError(
            "Could not allocate a unique invoice number",
            field="invoice_number",
            entity="Invoice",
            rule="unique_invoice_number",
        )

    def _load_creator(self, creator_id: str) -> CreatorProfile:
        creator = self._profiles.get(creator_id)
        if creator is None:
            raise NotFoundError(
                f"Creator {creator_id} not found", entity=f"Creator:{creator_id}"
            )
        return creator

    def _deal_value(self, deal: WorkItem) -> tuple[Decimal, ValueSource]:
        if deal.value is not None:
            if deal.value < ZERO:
                raise ValidationError(
                    f"Deal {deal.deal_id} has a negative value",
                    field="value",
                    entity=f"Deal:{deal.deal_id}",
                    rule="non_negative",
                )
            return deal.value, ValueSource.EXPLICIT
        fallback = to_decimal(self._settings.fallback_deal_value)
        self._logger.warning(
            "line_item_value_fallback",
            deal_id=deal.deal_id,
            creator_id=deal.creator_id,
            fallback_value=str(fallback),
        )
        return fallback, ValueSource.FALLBACK

    def _default_preferences(self) -> TaxPreferences:
        return TaxPreferences(
            gst_rate=to_decimal(self._settings.default_gst_rate),
            gst_type=GSTType(self._settings.default_gst_type),
            tds_rate=to_decimal(self._settings.default_tds_rate),
        )

    @staticmethod
    def _client_from_profile(profile: BrandProfile, client_type: ClientType) -> ClientDetails:
        return ClientDetails(
            name=profile.name,
            email=profile.email,
            phone=profile.phone,
            address=profile.address,
            gst_number=profile.gst_number,
            pan_number=profile.pan_number,
            state=profile.state,
            client_type=client_type,
        )


def check_percentage(rate: Decimal, field_name: str) -> None:
    if rate < ZERO or rate > HUNDRED:
        raise ValidationError(
            f"{field_name} must be between 0 and 100",
            field=field_name,
            rule="percentage_range",
            details={"value": str(rate)},
        )


def validate_discount(discount: Discount | None, field_name: str) -> None:
    if discount is None:
        return
    if discount.percentage is not None:
        check_percentage(discount.percentage, f"{field_name}.percentage")
    if discount.amount is not None and discount.amount < ZERO:
        raise ValidationError(
            "Discount amount cannot be negative",
            field=f"{field_name}.amount",
            rule="non_negative",
        )
