"""Domain types for subscribers, billing cycles and tier changes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from creator_billing.config.tiers_loader import FeatureLimits
from creator_billing.money import ZERO


class CycleType(str, Enum):
    TRIAL = "trial"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"
    CUSTOM = "custom"


class CycleStatus(str, Enum):
    """Billing cycle lifecycle states."""
    UPCOMING = "upcoming"
    ACTIVE = "active"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_OVERDUE = "payment_overdue"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class CyclePaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class UpgradeStatus(str, Enum):
    REQUESTED = "requested"
    PAYMENT_PENDING = "payment_pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class UpgradeType(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    PLAN_CHANGE = "plan_change"


class RenewalReminderType(str, Enum):
    SEVEN_DAYS_BEFORE = "7_days_before"
    THREE_DAYS_BEFORE = "3_days_before"
    ONE_DAY_BEFORE = "1_day_before"
    DUE_DATE = "due_date"
    OVERDUE = "overdue"


@dataclass
class Subscriber:
    subscriber_id: str
    name: str
    email: str
    tier: str
    phone: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    sms_notifications: bool = False


@dataclass
class UsageStats:
    deals_created: int = 0
    invoices_generated: int = 0
    ai_queries: int = 0
    storage_used_mb: Decimal = ZERO


@dataclass(frozen=True)
class RenewalReminderRecord:
    reminder_type: RenewalReminderType
    sent_at: datetime
    method: str = "email"


@dataclass(frozen=True)
class CancellationRequest:
    requested_at: datetime
    requested_by: str
    reason: str
    effective_date: datetime
    refund_eligible: bool
    refund_amount: Decimal


@dataclass
class BillingCycle:
    cycle_id: str
    subscriber_id: str
    cycle_number: int
    cycle_type: CycleType
    tier: str
    start_date: datetime
    end_date: datetime
    payment_due_date: datetime
    grace_period_end: datetime
    base_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    gst_amount: Decimal
    total_amount_with_gst: Decimal
    feature_limits: FeatureLimits
    status: CycleStatus = CycleStatus.UPCOMING
    payment_status: CyclePaymentStatus = CyclePaymentStatus.PENDING
    payment_date: datetime | None = None
    payment_reference: str | None = None
    auto_renewal: bool = True
    usage: UsageStats = field(default_factory=UsageStats)
    renewal_reminders: list[RenewalReminderRecord] = field(default_factory=list)
    cancellation: CancellationRequest | None = None

    def reminder_sent(self, reminder_type: RenewalReminderType) -> bool:
        return any(r.reminder_type == reminder_type for r in self.renewal_reminders)


@dataclass
class CyclePaymentSubmission:
    """A subscriber-reported payment for a cycle, waiting for manual verification."""

    submission_id: str
    cycle_id: str
    subscriber_id: str
    amount: Decimal
    expected_amount: Decimal
    proof_url: str
    submitted_at: datetime
    method: str = "upi"
    transaction_reference: str | None = None
    status: SubmissionStatus = SubmissionStatus.PENDING
    verified_by: str | None = None
    verified_at: datetime | None = None
    notes: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class ProrationDetails:
    remaining_days: int
    from_daily_rate: Decimal
    to_daily_rate: Decimal
    refund_amount: Decimal
    charge_amount: Decimal
    net_amount: Decimal

    @property
    def payment_required(self) -> bool:
        return self.net_amount > ZERO


@dataclass
class SubscriptionUpgrade:
    upgrade_id: str
    subscriber_id: str
    cycle_id: str
    from_tier: str
    to_tier: str
    upgrade_type: UpgradeType
    proration: ProrationDetails
    requested_at: datetime
    effective_date: datetime
    rollback_deadline: datetime
    status: UpgradeStatus = UpgradeStatus.REQUESTED
    reason: str | None = None
    payment_reference: str | None = None
    completed_at: datetime | None = None
    failure_reason: str | None = None

    @property
    def payment_required(self) -> bool:
        return self.proration.payment_required
