"""Domain types for deals, invoices, payments and payment reminders."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from creator_billing.money import ZERO
from creator_billing.secrets import SecretString


class InvoiceType(str, Enum):
    INDIVIDUAL = "individual"
    CONSOLIDATED = "consolidated"
    AGENCY_PAYOUT = "agency_payout"
    MONTHLY_SUMMARY = "monthly_summary"


class InvoiceStatus(str, Enum):
    """Invoice lifecycle states."""
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class ConsolidationCriterion(str, Enum):
    """Rule used to select which deals join one invoice."""
    MONTHLY = "monthly"
    BRAND_WISE = "brand_wise"
    AGENCY_PAYOUT = "agency_payout"
    DATE_RANGE = "date_range"
    CUSTOM_SELECTION = "custom_selection"


class GSTType(str, Enum):
    CGST_SGST = "cgst_sgst"  # intra-state, split evenly
    IGST = "igst"  # inter-state, single field


class PaymentType(str, Enum):
    ADVANCE = "advance"
    PARTIAL = "partial"
    FINAL = "final"


class PaymentMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    UPI = "upi"
    CHEQUE = "cheque"
    CASH = "cash"
    ONLINE = "online"
    WALLET = "wallet"
    OTHER = "other"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class ValueSource(str, Enum):
    """Where a line item's amount came from."""
    EXPLICIT = "explicit"
    DISTRIBUTED = "distributed"
    FALLBACK = "fallback"


class ClientType(str, Enum):
    BRAND = "brand"
    AGENCY = "agency"
    MULTIPLE_BRANDS = "multiple_brands"
    INDIVIDUAL = "individual"


class ReminderType(str, Enum):
    GENTLE = "gentle"
    STANDARD = "standard"
    URGENT = "urgent"
    FINAL_NOTICE = "final_notice"


class ReminderStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


# === Deals and profiles (read-only to billing) ===


@dataclass(frozen=True)
class Address:
    street: str | None = None
    city: str | None = None
    state: str | None = None
    pincode: str | None = None
    country: str = "India"


@dataclass(frozen=True)
class BrandProfile:
    """A brand or agency a creator works with."""
    brand_id: str
    name: str
    email: str | None = None
    phone: str | None = None
    address: Address | None = None
    state: str | None = None
    gst_number: SecretString | None = None
    pan_number: SecretString | None = None
    parent_agency_id: str | None = None


@dataclass(frozen=True)
class Deliverable:
    deliverable_type: str
    description: str = ""
    quantity: int | None = None
    rate: Decimal | None = None


@dataclass
class WorkItem:
    """A deal as exposed by the deal store."""
    deal_id: str
    creator_id: str
    status: str
    value: Decimal | None
    platform: str
    title: str = ""
    brand: BrandProfile | None = None
    deliverables: list[Deliverable] = field(default_factory=list)
    completed_at: datetime | None = None
    has_invoice: bool = False
    invoice_id: str | None = None


@dataclass(frozen=True)
class ExemptionCertificate:
    certificate_number: str | None = None
    valid_until: date | None = None


@dataclass(frozen=True)
class TaxPreferences:
    """A creator's stored tax defaults."""
    apply_gst: bool = True
    gst_rate: Decimal = Decimal("18")
    gst_type: GSTType = GSTType.CGST_SGST
    gst_exemption_reason: str | None = None
    apply_tds: bool = False
    tds_rate: Decimal = Decimal("10")
    entity_type: str = "individual"
    has_tds_exemption: bool = False
    exemption_certificate: ExemptionCertificate | None = None


@dataclass(frozen=True)
class BankDetails:
    account_holder: str
    account_number: SecretString | None = None
    ifsc_code: str | None = None
    bank_name: str | None = None
    upi_id: str | None = None


@dataclass(frozen=True)
class CreatorProfile:
    creator_id: str
    name: str
    email: str
    phone: str | None = None
    state: str | None = None
    address: Address | None = None
    pan_number: SecretString | None = None
    gst_number: SecretString | None = None
    tax_preferences: TaxPreferences | None = None
    bank_details: BankDetails | None = None


# === Invoice ===


@dataclass(frozen=True)
class Discount:
    """Percentage wins over a fixed amount when both are set."""
    percentage: Decimal | None = None
    amount: Decimal | None = None

    @classmethod
    def percent(cls, value: Decimal | int | str) -> Discount:
        return cls(percentage=Decimal(str(value)))

    @classmethod
    def fixed(cls, value: Decimal | int | str) -> Discount:
        return cls(amount=Decimal(str(value)))


@dataclass
class ClientDetails:
    name: str
    email: str | None = None
    phone: str | None = None
    address: Address | None = None
    gst_number: SecretString | None = None
    pan_number: SecretString | None = None
    state: str | None = None
    is_interstate: bool = False
    client_type: ClientType = ClientType.BRAND


@dataclass
class LineItem:
    description: str
    quantity: Decimal
    rate: Decimal
    amount: Decimal = ZERO
    discount: Discount | None = None
    work_item_id: str | None = None
    platform: str | None = None
    deliverable_type: str | None = None
    item_type: str = "content_creation"
    hsn_code: str = "998314"
    value_source: ValueSource = ValueSource.EXPLICIT


@dataclass
class GSTSettings:
    apply_gst: bool = True
    gst_rate: Decimal = Decimal("18")
    gst_type: GSTType = GSTType.CGST_SGST
    exemption_reason: str | None = None


@dataclass
class TDSSettings:
    apply_tds: bool = False
    tds_rate: Decimal = Decimal("10")
    entity_type: str = "individual"
    has_exemption: bool = False
    certificate: ExemptionCertificate | None = None


@dataclass(frozen=True)
class TaxCalculation:
    """Every intermediate figure of a tax computation, kept for audit."""
    subtotal: Decimal
    total_discount: Decimal
    taxable_amount: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    gst_amount: Decimal
    total_with_gst: Decimal
    tds_amount: Decimal
    final_amount: Decimal


@dataclass
class TaxSettings:
    gst: GSTSettings = field(default_factory=GSTSettings)
    tds: TDSSettings = field(default_factory=TDSSettings)
    calculation: TaxCalculation | None = None


@dataclass
class InvoiceSettings:
    invoice_date: datetime
    due_date: datetime
    currency: str = "INR"
    payment_terms_days: int = 30
    overall_discount: Discount | None = None
    notes: str | None = None
    terms_and_conditions: str | None = None


@dataclass(frozen=True)
class DealsSummary:
    total_deals: int
    total_brands: int
    total_deliverables: int
    platforms: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConsolidationDescriptor:
    criterion: ConsolidationCriterion
    summary: DealsSummary
    period_start: datetime | None = None
    period_end: datetime | None = None
    brand_id: str | None = None
    agency_id: str | None = None


@dataclass(frozen=True)
class Revision:
    version: int
    changed_by: str
    changed_at: datetime
    description: str


@dataclass
class InvoiceAnalytics:
    times_sent: int = 0
    times_viewed: int = 0
    downloads: int = 0
    last_sent_at: datetime | None = None
    first_viewed_at: datetime | None = None
    last_viewed_at: datetime | None = None


@dataclass
class InvoiceMetadata:
    created_by: str
    version: int = 1
    revisions: list[Revision] = field(default_factory=list)
    analytics: InvoiceAnalytics = field(default_factory=InvoiceAnalytics)
    pdf_url: str | None = None
    fallback_line_items: int = 0


@dataclass
class Invoice:
    invoice_id: str
    invoice_number: str
    invoice_type: InvoiceType
    creator_id: str
    deal_ids: list[str]
    client: ClientDetails
    line_items: list[LineItem]
    tax_settings: TaxSettings
    invoice_settings: InvoiceSettings
    metadata: InvoiceMetadata
    created_at: datetime
    updated_at: datetime
    status: InvoiceStatus = InvoiceStatus.DRAFT
    consolidation: ConsolidationDescriptor | None = None
    bank_details: BankDetails | None = None

    @property
    def final_amount(self) -> Decimal:
        if self.tax_settings.calculation is None:
            return ZERO
        return self.tax_settings.calculation.final_amount

    @property
    def due_date(self) -> datetime:
        return self.invoice_settings.due_date


# === Payments ===


@dataclass(frozen=True)
class Verification:
    verified_by: str
    verified_at: datetime
    notes: str | None = None


@dataclass(frozen=True)
class Receipt:
    receipt_number: str
    generated_at: datetime
    url: str | None = None


@dataclass
class Payment:
    payment_id: str
    invoice_id: str
    creator_id: str
    amount: Decimal
    remaining_balance: Decimal
    payment_type: PaymentType
    method: PaymentMethod
    payment_date: datetime
    recorded_by: str
    created_at: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_reference: str | None = None
    verification: Verification | None = None
    receipt: Receipt | None = None
    proof_url: str | None = None
    failure_reason: str | None = None

    @property
    def is_verified(self) -> bool:
        return self.verification is not None

    @property
    def counts_toward_balance(self) -> bool:
        return self.status not in (PaymentStatus.FAILED, PaymentStatus.REFUNDED)


@dataclass
class PaymentReminder:
    reminder_id: str
    invoice_id: str
    creator_id: str
    reminder_type: ReminderType
    scheduled_for: datetime
    days_past_due: int
    subject: str
    message: str
    recipient_email: str | None
    status: ReminderStatus = ReminderStatus.SCHEDULED
    sent_at: datetime | None = None
    failure_reason: str | None = None
