"""Subscription billing cycles.

Amounts for a cycle are fixed when it is created. Status refresh, rollover
and renewal reminders are driven by a periodic trigger and are safe to run
any number of times.
"""

from __future__ import annotations

import calendar
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import structlog

from creator_billing.config import BillingSettings, TierPlan, get_settings, load_tier_catalog
from creator_billing.errors import NotFoundError, StateConflictError, UpstreamError, ValidationError
from creator_billing.identifiers import utc_now
from creator_billing.money import ZERO, round_rupees, to_decimal
from creator_billing.ports import BillingStore, Clock, NotificationSender
from creator_billing.state import StateMachine
from creator_billing.subscriptions.models import (
    BillingCycle,
    CancellationRequest,
    CyclePaymentStatus,
    CyclePaymentSubmission,
    CycleStatus,
    CycleType,
    RenewalReminderRecord,
    RenewalReminderType,
    SubmissionStatus,
    Subscriber,
    SubscriptionStatus,
)

logger = structlog.get_logger(__name__)

C = CycleStatus

CYCLE_MACHINE: StateMachine[CycleStatus] = StateMachine(
    "BillingCycle",
    {
        C.UPCOMING: {C.ACTIVE, C.PAYMENT_PENDING, C.PAYMENT_OVERDUE, C.CANCELLED},
        C.ACTIVE: {C.PAYMENT_PENDING, C.PAYMENT_OVERDUE, C.COMPLETED, C.CANCELLED, C.REFUNDED},
        C.PAYMENT_PENDING: {C.ACTIVE, C.PAYMENT_OVERDUE, C.COMPLETED, C.CANCELLED},
        C.PAYMENT_OVERDUE: {C.ACTIVE, C.COMPLETED, C.CANCELLED},
        C.COMPLETED: set(),
        C.CANCELLED: set(),
        C.REFUNDED: set(),
    },
)

LIVE_STATUSES = (C.ACTIVE, C.PAYMENT_PENDING, C.PAYMENT_OVERDUE)
TERMINAL_STATUSES = (C.COMPLETED, C.CANCELLED, C.REFUNDED)

DAY = timedelta(days=1)

REMINDER_BY_DAYS = {
    7: RenewalReminderType.SEVEN_DAYS_BEFORE,
    3: RenewalReminderType.THREE_DAYS_BEFORE,
    1: RenewalReminderType.ONE_DAY_BEFORE,
    0: RenewalReminderType.DUE_DATE,
}


@dataclass(frozen=True)
class CycleAmounts:
    base_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    gst_amount: Decimal
    total_amount_with_gst: Decimal


@dataclass(frozen=True)
class RenewalRunResult:
    sent: int = 0
    failed: int = 0


def compute_cycle_amounts(
    base_amount: Decimal,
    cycle_type: CycleType,
    discount_rate: Decimal = Decimal("0.10"),
    gst_rate: Decimal = Decimal("0.18"),
) -> CycleAmounts:
    """Quarterly cycles get a discount; GST applies to the discounted amount.

    Discount and GST are each rounded half-up to whole rupees.
    """
    discount = round_rupees(base_amount * discount_rate) if cycle_type == CycleType.QUARTERLY else ZERO
    final = base_amount - discount
    gst = round_rupees(final * gst_rate)
    return CycleAmounts(
        base_amount=base_amount,
        discount_amount=discount,
        final_amount=final,
        gst_amount=gst,
        total_amount_with_gst=final + gst,
    )


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping to the last day of the target month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def days_until(target: datetime, now: datetime) -> int:
    """Whole days until ``target``, rounded up. Negative once it has passed."""
    return math.ceil((target - now).total_seconds() / DAY.total_seconds())


def reminder_type_for(payment_due_date: datetime, now: datetime) -> RenewalReminderType | None:
    diff = days_until(payment_due_date, now)
    if diff < 0:
        return RenewalReminderType.OVERDUE
    return REMINDER_BY_DAYS.get(diff)


def is_in_grace_period(cycle: BillingCycle, now: datetime) -> bool:
    return cycle.end_date < now <= cycle.grace_period_end


def is_overdue(cycle: BillingCycle, now: datetime) -> bool:
    return now > cycle.grace_period_end and cycle.payment_status != CyclePaymentStatus.COMPLETED


class BillingCycleEngine:
    """Create, collect payment for, refresh, roll over and cancel billing cycles."""

    def __init__(
        self,
        store: BillingStore,
        notifier: NotificationSender | None = None,
        catalog: dict[str, TierPlan] | None = None,
        settings: BillingSettings | None = None,
        clock: Clock = utc_now,
    ):
        self._store = store
        self._notifier = notifier
        self._catalog = catalog if catalog is not None else load_tier_catalog()
        self._settings = settings or get_settings()
        self._clock = clock
        self._logger = logger.bind(component="billing_cycle_engine")

    # === Creation ===

    def start_cycle(
        self,
        subscriber_id: str,
        *,
        cycle_type: CycleType = CycleType.QUARTERLY,
        start: datetime | None = None,
        end: datetime | None = None,
        base_amount: Decimal | None = None,
        auto_renewal: bool = True,
    ) -> BillingCycle:
        """Open the subscriber's next billing cycle.

        Raises:
            NotFoundError: Unknown subscriber.
            ValidationError: Unknown tier, or bad custom cycle dates.
            StateConflictError: A live cycle overlaps the requested start.
        """
        with self._store.lock(f"subscriber:{subscriber_id}"):
            subscriber = self._load_subscriber(subscriber_id)
            existing = self._store.cycles_for_subscriber(subscriber_id)
            start = start or self._clock()
            for cycle in existing:
                if cycle.status not in TERMINAL_STATUSES and cycle.end_date > start:
                    raise StateConflictError(
                        f"Cycle {cycle.cycle_number} is still open until {cycle.end_date:%Y-%m-%d}",
                        field="start",
                        entity=f"BillingCycle:{cycle.cycle_id}",
                        rule="no_overlapping_cycles",
                    )
            cycle = self._build_cycle(
                subscriber,
                cycle_number=max((c.cycle_number for c in existing), default=0) + 1,
                cycle_type=cycle_type,
                start=start,
                end=end,
                base_amount=base_amount,
                auto_renewal=auto_renewal,
            )
            with self._store.unit_of_work():
                self._store.save_cycle(cycle)
                if cycle_type == CycleType.TRIAL:
                    subscriber.status = SubscriptionStatus.TRIAL
                    self._store.save_subscriber(subscriber)

        self._log_cycle("billing_cycle_created", cycle)
        return cycle

    def _build_cycle(
        self,
        subscriber: Subscriber,
        *,
        cycle_number: int,
        cycle_type: CycleType,
        start: datetime,
        end: datetime | None,
        base_amount: Decimal | None,
        auto_renewal: bool,
    ) -> BillingCycle:
        plan = self._plan(subscriber.tier)
        s = self._settings

        if cycle_type == CycleType.CUSTOM:
            if end is None or end <= start:
                raise ValidationError(
                    "Custom cycles need an end date after the start date",
                    field="end",
                    rule="ordered_range",
                )
        elif cycle_type == CycleType.TRIAL:
            end = start + timedelta(days=s.trial_days)
        elif cycle_type == CycleType.ANNUAL:
            end = add_months(start, 12)
        else:
            end = add_months(start, 3)

        if base_amount is None:
            if cycle_type == CycleType.TRIAL:
                base_amount = ZERO
            elif cycle_type == CycleType.ANNUAL:
                base_amount = plan.monthly_price * 12
            else:
                base_amount = plan.quarterly_price
        base_amount = to_decimal(base_amount)
        if base_amount < ZERO:
            raise ValidationError("Base amount cannot be negative", field="base_amount", rule="non_negative")

        amounts = compute_cycle_amounts(
            base_amount,
            cycle_type,
            discount_rate=to_decimal(s.quarterly_discount_rate),
            gst_rate=to_decimal(s.subscription_gst_rate),
        )
        now = self._clock()
        payment_due = max(start, end - timedelta(days=s.payment_due_offset_days))
        free = amounts.total_amount_with_gst == ZERO

        return BillingCycle(
            cycle_id=str(uuid4()),
            subscriber_id=subscriber.subscriber_id,
            cycle_number=cycle_number,
            cycle_type=cycle_type,
            tier=plan.key,
            start_date=start,
            end_date=end,
            payment_due_date=payment_due,
            grace_period_end=end + timedelta(days=s.grace_period_days),
            base_amount=amounts.base_amount,
            discount_amount=amounts.discount_amount,
            final_amount=amounts.final_amount,
            gst_amount=amounts.gst_amount,
            total_amount_with_gst=amounts.total_amount_with_gst,
            feature_limits=plan.limits,
            status=C.ACTIVE if start <= now else C.UPCOMING,
            payment_status=CyclePaymentStatus.COMPLETED if free else CyclePaymentStatus.PENDING,
            payment_date=now if free else None,
            auto_renewal=auto_renewal,
        )

    # === Payments ===

    def submit_cycle_payment(
        self,
        cycle_id: str,
        *,
        amount: Decimal | int | str,
        proof_url: str,
        method: str = "upi",
        transaction_reference: str | None = None,
    ) -> CyclePaymentSubmission:
        """Record a subscriber-reported payment and hold the cycle for verification.

        The amount must be within ``cycle_payment_tolerance`` rupees of the
        cycle total. The cycle stays unpaid until the submission is approved.

        Raises:
            ValidationError: Missing proof, or an amount outside the tolerance.
            StateConflictError: The cycle is paid, closed, or already has a
                submission waiting for verification.
        """
        amount = to_decimal(amount)
        if not proof_url:
            raise ValidationError("Payment proof is required", field="proof_url", rule="required")

        cycle = self._load_cycle(cycle_id)
        with self._store.lock(f"subscriber:{cycle.subscriber_id}"):
            cycle = self._load_cycle(cycle_id)
            self._check_payable(cycle)
            pending = [
                s for s in self._store.submissions_for_cycle(cycle_id)
                if s.status == SubmissionStatus.PENDING
            ]
            if pending or cycle.payment_status == CyclePaymentStatus.PROCESSING:
                raise StateConflictError(
                    f"Cycle {cycle.cycle_number} already has a payment waiting for verification",
                    field="payment_status",
                    entity=f"BillingCycle:{cycle_id}",
                    rule="single_pending_submission",
                )
            tolerance = to_decimal(self._settings.cycle_payment_tolerance)
            if amount <= ZERO or abs(amount - cycle.total_amount_with_gst) > tolerance:
                raise ValidationError(
                    f"Payment of ₹{amount} does not match the cycle total of ₹{cycle.total_amount_with_gst}",
                    field="amount",
                    rule="amount_matches_cycle",
                    details={
                        "expected": str(cycle.total_amount_with_gst),
                        "tolerance": str(tolerance),
                    },
                )

            submission = CyclePaymentSubmission(
                submission_id=str(uuid4()),
                cycle_id=cycle_id,
                subscriber_id=cycle.subscriber_id,
                amount=amount,
                expected_amount=cycle.total_amount_with_gst,
                proof_url=proof_url,
                submitted_at=self._clock(),
                method=method,
                transaction_reference=transaction_reference,
            )
            if cycle.status == C.ACTIVE:
                cycle.status = CYCLE_MACHINE.transition(cycle.status, C.PAYMENT_PENDING, entity_id=cycle_id)
            cycle.payment_status = CyclePaymentStatus.PROCESSING
            cycle.payment_reference = submission.submission_id
            subscriber = self._load_subscriber(cycle.subscriber_id)
            with self._store.unit_of_work():
                self._store.save_cycle_submission(submission)
                self._store.save_cycle(cycle)

        self._log_cycle(
            "billing_cycle_payment_submitted",
            cycle,
            submission_id=submission.submission_id,
            amount=str(amount),
        )
        self._notify(
            subscriber,
            "Payment submitted",
            f"We received your payment of ₹{amount} for billing cycle {cycle.cycle_number}. "
            "It will be verified shortly.",
        )
        return submission

    def approve_cycle_payment(
        self,
        submission_id: str,
        *,
        verified_by: str,
        notes: str | None = None,
    ) -> BillingCycle:
        """Accept a submitted payment: the cycle is paid and the subscription active."""
        submission = self._load_submission(submission_id)
        with self._store.lock(f"subscriber:{submission.subscriber_id}"):
            submission = self._load_submission(submission_id)
            self._check_pending(submission)
            cycle = self._load_cycle(submission.cycle_id)
            self._check_payable(cycle)

            now = self._clock()
            submission.status = SubmissionStatus.VERIFIED
            submission.verified_by = verified_by
            submission.verified_at = now
            submission.notes = notes

            cycle.payment_status = CyclePaymentStatus.COMPLETED
            cycle.payment_date = now
            cycle.payment_reference = submission.transaction_reference or submission_id
            if cycle.status in LIVE_STATUSES:
                cycle.status = CYCLE_MACHINE.transition(cycle.status, C.ACTIVE, entity_id=cycle.cycle_id)

            subscriber = self._load_subscriber(cycle.subscriber_id)
            subscriber.status = SubscriptionStatus.ACTIVE
            with self._store.unit_of_work():
                self._store.save_cycle_submission(submission)
                self._store.save_cycle(cycle)
                self._store.save_subscriber(subscriber)

        self._log_cycle(
            "billing_cycle_paid",
            cycle,
            submission_id=submission_id,
            payment_reference=cycle.payment_reference,
            verified_by=verified_by,
        )
        self._notify(
            subscriber,
            "Payment received",
            f"We received ₹{submission.amount} for billing cycle {cycle.cycle_number}. "
            f"Your {cycle.tier} plan is active until {cycle.end_date:%d %b %Y}.",
        )
        return cycle

    def reject_cycle_payment(self, submission_id: str, *, verified_by: str, reason: str) -> BillingCycle:
        """Refuse a submitted payment and put the cycle into payment overdue."""
        submission = self._load_submission(submission_id)
        with self._store.lock(f"subscriber:{submission.subscriber_id}"):
            submission = self._load_submission(submission_id)
            self._check_pending(submission)
            submission.verified_by = verified_by
            submission.verified_at = self._clock()
            return self.fail_cycle_payment(submission.cycle_id, reason=reason, submission=submission)

    def fail_cycle_payment(
        self,
        cycle_id: str,
        *,
        reason: str,
        submission: CyclePaymentSubmission | None = None,
    ) -> BillingCycle:
        """Mark a cycle's payment as failed and the subscriber as past due.

        Any submission still waiting for verification fails with it.
        """
        cycle = self._load_cycle(cycle_id)
        with self._store.lock(f"subscriber:{cycle.subscriber_id}"):
            cycle = self._load_cycle(cycle_id)
            if cycle.payment_status == CyclePaymentStatus.COMPLETED:
                raise StateConflictError(
                    f"Cycle {cycle.cycle_number} is already paid",
                    field="payment_status",
                    entity=f"BillingCycle:{cycle_id}",
                    rule="pay_once",
                )
            cycle.status = CYCLE_MACHINE.transition(cycle.status, C.PAYMENT_OVERDUE, entity_id=cycle_id)
            cycle.payment_status = CyclePaymentStatus.FAILED

            pending = {
                s.submission_id: s for s in self._store.submissions_for_cycle(cycle_id)
                if s.status == SubmissionStatus.PENDING
            }
            if submission is not None:
                pending[submission.submission_id] = submission
            for failed in pending.values():
                failed.status = SubmissionStatus.FAILED
                failed.failure_reason = reason

            subscriber = self._load_subscriber(cycle.subscriber_id)
            subscriber.status = SubscriptionStatus.PAST_DUE
            with self._store.unit_of_work():
                for failed in pending.values():
                    self._store.save_cycle_submission(failed)
                self._store.save_cycle(cycle)
                self._store.save_subscriber(subscriber)

        self._logger.warning(
            "billing_cycle_payment_failed",
            cycle_id=cycle_id,
            subscriber_id=cycle.subscriber_id,
            submissions=sorted(pending),
            reason=reason,
        )
        self._notify(
            subscriber,
            "Payment failed",
            f"Your payment for billing cycle {cycle.cycle_number} could not be processed: {reason}. "
            f"Please pay before {cycle.grace_period_end:%d %b %Y} to keep your plan.",
        )
        return cycle

    def submissions_for_cycle(self, cycle_id: str) -> list[CyclePaymentSubmission]:
        return self._store.submissions_for_cycle(cycle_id)

    # === Periodic jobs ===

    def refresh_statuses(self, now: datetime | None = None) -> list[str]:
        """Activate started cycles and flag unpaid ones as pending or overdue."""
        now = now or self._clock()
        changed: list[str] = []
        for candidate in self._store.list_cycles():
            if candidate.status in TERMINAL_STATUSES:
                continue
            with self._store.lock(f"subscriber:{candidate.subscriber_id}"):
                cycle = self._store.get_cycle(candidate.cycle_id)
                if cycle is None:
                    continue
                target = self._expected_status(cycle, now)
                if target == cycle.status:
                    continue
                cycle.status = CYCLE_MACHINE.transition(cycle.status, target, entity_id=cycle.cycle_id)
                self._store.save_cycle(cycle)
                changed.append(cycle.cycle_id)
                self._log_cycle("billing_cycle_status_changed", cycle)
        return changed

    @staticmethod
    def _expected_status(cycle: BillingCycle, now: datetime) -> CycleStatus:
        if cycle.status in TERMINAL_STATUSES:
            return cycle.status
        if cycle.status == C.UPCOMING:
            if cycle.start_date > now:
                return cycle.status
            if cycle.payment_status == CyclePaymentStatus.COMPLETED or now < cycle.payment_due_date:
                return C.ACTIVE
        if cycle.payment_status == CyclePaymentStatus.COMPLETED:
            return C.ACTIVE if cycle.status == C.UPCOMING else cycle.status
        if now > cycle.grace_period_end:
            return C.PAYMENT_OVERDUE
        if now >= cycle.payment_due_date:
            # a failed payment keeps the cycle overdue until someone pays
            return C.PAYMENT_OVERDUE if cycle.status == C.PAYMENT_OVERDUE else C.PAYMENT_PENDING
        return C.ACTIVE if cycle.status == C.UPCOMING else cycle.status

    def roll_over(self, now: datetime | None = None) -> list[BillingCycle]:
        """Close paid cycles that have ended and open the next one.

        A next cycle is only created for auto-renewing subscriptions and
        only if the subscriber has no later cycle yet.
        """
        now = now or self._clock()
        created: list[BillingCycle] = []
        for candidate in self._store.list_cycles():
            if candidate.status not in LIVE_STATUSES or candidate.end_date > now:
                continue
            if candidate.payment_status != CyclePaymentStatus.COMPLETED:
                continue
            with self._store.lock(f"subscriber:{candidate.subscriber_id}"):
                cycle = self._store.get_cycle(candidate.cycle_id)
                if cycle is None or cycle.status not in LIVE_STATUSES:
                    continue
                subscriber = self._load_subscriber(cycle.subscriber_id)
                cycles = self._store.cycles_for_subscriber(cycle.subscriber_id)
                has_next = any(c.cycle_number > cycle.cycle_number for c in cycles)

                cycle.status = CYCLE_MACHINE.transition(cycle.status, C.COMPLETED, entity_id=cycle.cycle_id)
                next_cycle = None
                renew = (
                    cycle.auto_renewal
                    and not has_next
                    and subscriber.status != SubscriptionStatus.CANCELLED
                )
                if renew:
                    next_type = CycleType.ANNUAL if cycle.cycle_type == CycleType.ANNUAL else CycleType.QUARTERLY
                    next_cycle = self._build_cycle(
                        subscriber,
                        cycle_number=cycle.cycle_number + 1,
                        cycle_type=next_type,
                        start=cycle.end_date,
                        end=None,
                        base_amount=None,
                        auto_renewal=True,
                    )
                with self._store.unit_of_work():
                    self._store.save_cycle(cycle)
                    if next_cycle is not None:
                        self._store.save_cycle(next_cycle)

            self._log_cycle("billing_cycle_completed", cycle)
            if next_cycle is not None:
                created.append(next_cycle)
                self._log_cycle("billing_cycle_created", next_cycle)
        return created

    def send_renewal_reminders(self, now: datetime | None = None) -> RenewalRunResult:
        """Send the reminder matching each unpaid cycle's distance to its due date.

        A reminder type already recorded for a cycle is never sent again.
        Delivery failures are logged and retried on the next run.
        """
        now = now or self._clock()
        sent = failed = 0
        for candidate in self._store.list_cycles():
            if candidate.status in TERMINAL_STATUSES or not candidate.auto_renewal:
                continue
            if candidate.payment_status in (CyclePaymentStatus.COMPLETED, CyclePaymentStatus.PROCESSING):
                continue
            reminder_type = reminder_type_for(candidate.payment_due_date, now)
            if reminder_type is None or candidate.reminder_sent(reminder_type):
                continue

            with self._store.lock(f"subscriber:{candidate.subscriber_id}"):
                cycle = self._store.get_cycle(candidate.cycle_id)
                if cycle is None or cycle.reminder_sent(reminder_type):
                    continue
                subscriber = self._load_subscriber(cycle.subscriber_id)
                if not self._send_renewal_reminder(subscriber, cycle, reminder_type):
                    failed += 1
                    continue
                cycle.renewal_reminders.append(RenewalReminderRecord(reminder_type, sent_at=now))
                self._store.save_cycle(cycle)
                sent += 1

        self._logger.info("renewal_reminders_processed", sent=sent, failed=failed)
        return RenewalRunResult(sent=sent, failed=failed)

    # === Cancellation & usage ===

    def current_cycle(self, subscriber_id: str) -> BillingCycle | None:
        live = [c for c in self._store.cycles_for_subscriber(subscriber_id) if c.status in LIVE_STATUSES]
        return live[-1] if live else None

    def cancel_subscription(
        self,
        subscriber_id: str,
        *,
        requested_by: str,
        reason: str,
        request_refund: bool = True,
        effective_date: datetime | None = None,
    ) -> BillingCycle:
        """Cancel the live cycle, refunding the unused share if asked early enough.

        A refund is due when the cycle was paid and the request comes within
        the refund window (15 days by default) of the cycle start. The refund
        is the final amount prorated by whole remaining days.
        """
        with self._store.lock(f"subscriber:{subscriber_id}"):
            subscriber = self._load_subscriber(subscriber_id)
            cycle = self.current_cycle(subscriber_id)
            if cycle is None:
                raise NotFoundError(
                    f"No active subscription found for {subscriber_id}",
                    entity=f"Subscriber:{subscriber_id}",
                    rule="active_cycle",
                )

            now = self._clock()
            refund_eligible = (
                request_refund
                and cycle.payment_status == CyclePaymentStatus.COMPLETED
                and (now - cycle.start_date).days <= self._settings.refund_window_days
            )
            refund_amount = self.refund_amount(cycle, now) if refund_eligible else ZERO

            cycle.cancellation = CancellationRequest(
                requested_at=now,
                requested_by=requested_by,
                reason=reason,
                effective_date=effective_date or cycle.end_date,
                refund_eligible=refund_eligible,
                refund_amount=refund_amount,
            )
            target = C.REFUNDED if refund_amount > ZERO else C.CANCELLED
            cycle.status = CYCLE_MACHINE.transition(cycle.status, target, entity_id=cycle.cycle_id)
            if refund_amount > ZERO:
                cycle.payment_status = CyclePaymentStatus.REFUNDED
            cycle.auto_renewal = False
            subscriber.status = SubscriptionStatus.CANCELLED

            upcoming = [
                c for c in self._store.cycles_for_subscriber(subscriber_id)
                if c.status == C.UPCOMING
            ]
            with self._store.unit_of_work():
                self._store.save_cycle(cycle)
                self._store.save_subscriber(subscriber)
                for later in upcoming:
                    later.status = CYCLE_MACHINE.transition(later.status, C.CANCELLED, entity_id=later.cycle_id)
                    self._store.save_cycle(later)

        self._logger.info(
            "subscription_cancelled",
            subscriber_id=subscriber_id,
            cycle_id=cycle.cycle_id,
            refund_eligible=refund_eligible,
            refund_amount=str(refund_amount),
        )
        return cycle

    @staticmethod
    def refund_amount(cycle: BillingCycle, now: datetime) -> Decimal:
        total_days = (cycle.end_date - cycle.start_date).days
        remaining_days = max((cycle.end_date - now).days, 0)
        if total_days <= 0:
            return ZERO
        return round_rupees(cycle.final_amount * remaining_days / total_days)

    def record_usage(
        self,
        cycle_id: str,
        *,
        deals_created: int = 0,
        invoices_generated: int = 0,
        ai_queries: int = 0,
        storage_mb: Decimal | int = 0,
    ) -> BillingCycle:
        if min(deals_created, invoices_generated, ai_queries) < 0 or to_decimal(storage_mb) < ZERO:
            raise ValidationError("Usage increments cannot be negative", field="usage", rule="non_negative")
        cycle = self._load_cycle(cycle_id)
        with self._store.lock(f"subscriber:{cycle.subscriber_id}"):
            cycle = self._load_cycle(cycle_id)
            cycle.usage.deals_created += deals_created
            cycle.usage.invoices_generated += invoices_generated
            cycle.usage.ai_queries += ai_queries
            cycle.usage.storage_used_mb += to_decimal(storage_mb)
            self._store.save_cycle(cycle)
        return cycle

    # === Internals ===

    def _plan(self, tier: str) -> TierPlan:
        plan = self._catalog.get(tier)
        if plan is None:
            raise ValidationError(
                f"Unknown subscription tier {tier!r}",
                field="tier",
                rule="known_tier",
                details={"known": sorted(self._catalog)},
            )
        return plan

    def _load_subscriber(self, subscriber_id: str) -> Subscriber:
        subscriber = self._store.get_subscriber(subscriber_id)
        if subscriber is None:
            raise NotFoundError(f"Subscriber {subscriber_id} not found", entity=f"Subscriber:{subscriber_id}")
        return subscriber

    def _load_cycle(self, cycle_id: str) -> BillingCycle:
        cycle = self._store.get_cycle(cycle_id)
        if cycle is None:
            raise NotFoundError(f"Billing cycle {cycle_id} not found", entity=f"BillingCycle:{cycle_id}")
        return cycle

    def _load_submission(self, submission_id: str) -> CyclePaymentSubmission:
        submission = self._store.get_cycle_submission(submission_id)
        if submission is None:
            raise NotFoundError(
                f"Payment submission {submission_id} not found",
                entity=f"CyclePaymentSubmission:{submission_id}",
            )
        return submission

    @staticmethod
    def _check_payable(cycle: BillingCycle) -> None:
        if cycle.payment_status == CyclePaymentStatus.COMPLETED:
            raise StateConflictError(
                f"Cycle {cycle.cycle_number} is already paid",
                field="payment_status",
                entity=f"BillingCycle:{cycle.cycle_id}",
                rule="pay_once",
            )
        if cycle.status in TERMINAL_STATUSES:
            raise StateConflictError(
                f"Cycle {cycle.cycle_number} is {cycle.status.value}",
                field="status",
                entity=f"BillingCycle:{cycle.cycle_id}",
                rule="payable_status",
            )

    @staticmethod
    def _check_pending(submission: CyclePaymentSubmission) -> None:
        if submission.status != SubmissionStatus.PENDING:
            raise StateConflictError(
                f"Payment submission is already {submission.status.value}",
                field="status",
                entity=f"CyclePaymentSubmission:{submission.submission_id}",
                rule="verify_once",
            )

    def _send_renewal_reminder(
        self, subscriber: Subscriber, cycle: BillingCycle, reminder_type: RenewalReminderType
    ) -> bool:
        if reminder_type == RenewalReminderType.OVERDUE:
            subject = "Subscription payment overdue"
            body = (
                f"Your payment of ₹{cycle.total_amount_with_gst} for the {cycle.tier} plan was due on "
                f"{cycle.payment_due_date:%d %b %Y}. Pay before {cycle.grace_period_end:%d %b %Y} "
                "to avoid interruption."
            )
        else:
            subject = "Subscription renewal reminder"
            body = (
                f"Your {cycle.tier} plan renews soon. ₹{cycle.total_amount_with_gst} is due on "
                f"{cycle.payment_due_date:%d %b %Y}."
            )
        return self._notify(subscriber, subject, body)

    def _notify(self, subscriber: Subscriber, subject: str, body: str) -> bool:
        if self._notifier is None:
            return True
        try:
            self._notifier.send_email(subscriber.email, subject, body)
            if subscriber.sms_notifications and subscriber.phone:
                self._notifier.send_sms(subscriber.phone, f"{subject}: {body}")
        except UpstreamError as e:
            self._logger.warning(
                "subscriber_notification_failed",
                subscriber_id=subscriber.subscriber_id,
                subject=subject,
                error=str(e),
            )
            return False
        return True

    def _log_cycle(self, event: str, cycle: BillingCycle, **extra: object) -> None:
        self._logger.info(
            event,
            cycle_id=cycle.cycle_id,
            subscriber_id=cycle.subscriber_id,
            cycle_number=cycle.cycle_number,
            status=cycle.status.value,
            total_amount_with_gst=str(cycle.total_amount_with_gst),
            **extra,
        )
