"""Payment reminders for unpaid invoices.

Reminders are scheduled relative to the invoice due date and dispatched by a
periodic trigger calling :meth:`ReminderScheduler.process_due`. Both calls are
idempotent: scheduling twice keeps one reminder per type, and a reminder is
only ever sent from the ``scheduled`` state.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import structlog

from creator_billing.errors import UpstreamError
from creator_billing.identifiers import utc_now
from creator_billing.invoicing.models import (
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentReminder,
    ReminderStatus,
    ReminderType,
)
from creator_billing.money import ZERO, floor_at_zero, to_paise
from creator_billing.ports import BillingStore, Clock, NotificationSender

logger = structlog.get_logger(__name__)

# (days past due, reminder type)
REMINDER_SCHEDULE: tuple[tuple[int, ReminderType], ...] = (
    (0, ReminderType.GENTLE),
    (7, ReminderType.STANDARD),
    (14, ReminderType.URGENT),
    (30, ReminderType.FINAL_NOTICE),
)

SUBJECTS = {
    ReminderType.GENTLE: "Payment Due - Invoice #{number}",
    ReminderType.STANDARD: "Payment Reminder - Invoice #{number}",
    ReminderType.URGENT: "Urgent: Payment Overdue - Invoice #{number}",
    ReminderType.FINAL_NOTICE: "Final Notice - Invoice #{number}",
}

MESSAGES = {
    ReminderType.GENTLE: (
        "Dear {client},\n\n"
        "Payment for invoice {number} amounting to {amount} is due today.\n"
        "Please process it at your earliest convenience.\n\n"
        "Thank you for your business."
    ),
    ReminderType.STANDARD: (
        "Dear {client},\n\n"
        "Payment for invoice {number} ({amount}) is now 7 days overdue.\n"
        "Please arrange payment as soon as possible.\n\n"
        "Reach out if you have any questions."
    ),
    ReminderType.URGENT: (
        "Dear {client},\n\n"
        "Invoice {number} ({amount}) is now 14 days overdue and needs immediate payment.\n"
        "Let us know right away if something is blocking it."
    ),
    ReminderType.FINAL_NOTICE: (
        "Dear {client},\n\n"
        "FINAL NOTICE: invoice {number} ({amount}) is now 30 days overdue.\n"
        "Please contact us immediately to settle the outstanding balance."
    ),
}

SETTLED_STATUSES = (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)


def format_inr(amount: Decimal) -> str:
    return f"₹{to_paise(amount):,}"


def outstanding_balance(invoice: Invoice, payments: Iterable[Payment]) -> Decimal:
    """Final amount less every payment that still counts toward the balance."""
    paid = sum((p.amount for p in payments if p.counts_toward_balance), ZERO)
    return floor_at_zero(invoice.final_amount - paid)


@dataclass(frozen=True)
class ReminderRunResult:
    sent: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total_processed(self) -> int:
        return self.sent + self.failed + self.cancelled


class ReminderScheduler:
    """Schedule and dispatch invoice payment reminders."""

    def __init__(
        self,
        store: BillingStore,
        notifier: NotificationSender,
        clock: Clock = utc_now,
    ):
        self._store = store
        self._notifier = notifier
        self._clock = clock
        self._logger = logger.bind(component="reminder_scheduler")

    @staticmethod
    def compute_due_dates(due_date: datetime) -> list[tuple[ReminderType, datetime, int]]:
        """Return ``(type, send date, days past due)`` for each reminder."""
        return [
            (reminder_type, due_date + timedelta(days=days), days)
            for days, reminder_type in REMINDER_SCHEDULE
        ]

    def schedule(self, invoice: Invoice) -> list[PaymentReminder]:
        """Create any reminders the invoice does not have yet.

        Cancelled reminders do not count, so a type cancelled by
        :meth:`reschedule` is created again against the current due date.
        """
        if invoice.status in SETTLED_STATUSES:
            return []

        existing = {
            r.reminder_type
            for r in self._store.reminders_for_invoice(invoice.invoice_id)
            if r.status != ReminderStatus.CANCELLED
        }
        created: list[PaymentReminder] = []
        fields = self._message_fields(invoice)
        for reminder_type, send_at, days in self.compute_due_dates(invoice.due_date):
            if reminder_type in existing:
                continue
            reminder = PaymentReminder(
                reminder_id=str(uuid4()),
                invoice_id=invoice.invoice_id,
                creator_id=invoice.creator_id,
                reminder_type=reminder_type,
                scheduled_for=send_at,
                days_past_due=days,
                subject=SUBJECTS[reminder_type].format(**fields),
                message=MESSAGES[reminder_type].format(**fields),
                recipient_email=invoice.client.email,
            )
            self._store.save_reminder(reminder)
            created.append(reminder)

        if created:
            self._logger.info(
                "payment_reminders_scheduled",
                invoice_id=invoice.invoice_id,
                count=len(created),
            )
        return created

    def reschedule(self, invoice: Invoice) -> list[PaymentReminder]:
        """Replace the scheduled reminders of an edited invoice.

        Reminders already sent stay as they are.
        """
        self.cancel_for_invoice(invoice.invoice_id)
        return self.schedule(invoice)

    def cancel_for_invoice(self, invoice_id: str) -> int:
        """Cancel every still-scheduled reminder of an invoice."""
        cancelled = 0
        for reminder in self._store.reminders_for_invoice(invoice_id):
            if reminder.status == ReminderStatus.SCHEDULED:
                reminder.status = ReminderStatus.CANCELLED
                self._store.save_reminder(reminder)
                cancelled += 1
        if cancelled:
            self._logger.info("payment_reminders_cancelled", invoice_id=invoice_id, count=cancelled)
        return cancelled

    def process_due(self, now: datetime | None = None) -> ReminderRunResult:
        """Send every scheduled reminder whose date has passed.

        Subject and message are rendered again from the invoice as it is at
        send time, with the balance still owed. Reminders of settled invoices
        are cancelled instead. A delivery failure marks that reminder failed
        and moves on to the next one.
        """
        now = now or self._clock()
        sent = failed = cancelled = 0

        due = [
            r for r in self._store.list_reminders()
            if r.status == ReminderStatus.SCHEDULED and r.scheduled_for <= now
        ]
        for reminder in due:
            invoice = self._store.get_invoice(reminder.invoice_id)
            if invoice is None or invoice.status in SETTLED_STATUSES:
                reminder.status = ReminderStatus.CANCELLED
                self._store.save_reminder(reminder)
                cancelled += 1
                continue

            fields = self._message_fields(invoice)
            reminder.subject = SUBJECTS[reminder.reminder_type].format(**fields)
            reminder.message = MESSAGES[reminder.reminder_type].format(**fields)
            reminder.recipient_email = invoice.client.email
            if not reminder.recipient_email:
                reminder.status = ReminderStatus.FAILED
                reminder.failure_reason = "Client has no email address"
                self._store.save_reminder(reminder)
                failed += 1
                continue

            try:
                self._notifier.send_email(
                    reminder.recipient_email, reminder.subject, reminder.message
                )
            except UpstreamError as e:
                self._logger.warning(
                    "payment_reminder_failed",
                    reminder_id=reminder.reminder_id,
                    invoice_id=reminder.invoice_id,
                    error=str(e),
                )
                reminder.status = ReminderStatus.FAILED
                reminder.failure_reason = str(e)
                self._store.save_reminder(reminder)
                failed += 1
                continue

            reminder.status = ReminderStatus.SENT
            reminder.sent_at = now
            self._store.save_reminder(reminder)
            sent += 1

        result = ReminderRunResult(sent=sent, failed=failed, cancelled=cancelled)
        self._logger.info(
            "payment_reminders_processed",
            sent=result.sent,
            failed=result.failed,
            cancelled=result.cancelled,
        )
        return result

    def _message_fields(self, invoice: Invoice) -> dict[str, str]:
        payments = self._store.payments_for_invoice(invoice.invoice_id)
        return {
            "client": invoice.client.name,
            "number": invoice.invoice_number,
            "amount": format_inr(outstanding_balance(invoice, payments)),
        }
