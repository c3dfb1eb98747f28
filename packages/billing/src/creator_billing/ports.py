"""Interfaces of the collaborators the billing core depends on."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from creator_billing.invoicing.models import (
    CreatorProfile,
    Invoice,
    Payment,
    PaymentReminder,
    WorkItem,
)

if TYPE_CHECKING:
    from creator_billing.subscriptions.models import (
        BillingCycle,
        CyclePaymentSubmission,
        Subscriber,
        SubscriptionUpgrade,
    )

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class DealQuery:
    """Filter for deal lookups. ``completed_to`` is exclusive."""

    creator_id: str
    statuses: tuple[str, ...] = ()
    completed_from: datetime | None = None
    completed_to: datetime | None = None
    brand_id: str | None = None
    agency_id: str | None = None
    deal_ids: tuple[str, ...] = ()
    exclude_invoiced: bool = True


class DealStore(Protocol):
    def find(self, query: DealQuery) -> list[WorkItem]: ...

    def get(self, deal_id: str) -> WorkItem | None: ...

    def mark_invoiced(self, deal_ids: Sequence[str], invoice_id: str) -> None:
        """Flag deals as invoiced. Must fail without changes if any is already flagged."""
        ...

    def clear_invoice(self, deal_ids: Sequence[str], invoice_id: str) -> None:
        """Clear the flag on deals that reference ``invoice_id``."""
        ...


class CreatorProfileStore(Protocol):
    def get(self, creator_id: str) -> CreatorProfile | None: ...


class NotificationSender(Protocol):
    def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        attachments: Sequence[str] = (),
    ) -> None: ...

    def send_sms(self, to: str, message: str) -> None: ...


class DocumentRenderer(Protocol):
    def render_invoice(self, invoice: Invoice) -> str:
        """Render an invoice PDF and return its URL."""
        ...

    def render_receipt(self, payment: Payment, invoice: Invoice) -> str:
        """Render a payment receipt and return its URL."""
        ...


class ObjectStorage(Protocol):
    def upload(self, key: str, content: bytes, content_type: str) -> str:
        """Store a blob and return a reference URL."""
        ...


class BillingStore(Protocol):
    """Persistence for entities owned by the billing core."""

    def unit_of_work(self) -> AbstractContextManager[object]: ...

    def lock(self, key: str) -> AbstractContextManager[None]: ...

    def get_invoice(self, invoice_id: str) -> Invoice | None: ...

    def save_invoice(self, invoice: Invoice) -> None: ...

    def find_invoice_by_number(self, invoice_number: str) -> Invoice | None: ...

    def list_invoices(self, creator_id: str | None = None) -> list[Invoice]: ...

    def get_payment(self, payment_id: str) -> Payment | None: ...

    def save_payment(self, payment: Payment) -> None: ...

    def payments_for_invoice(self, invoice_id: str) -> list[Payment]: ...

    def save_reminder(self, reminder: PaymentReminder) -> None: ...

    def reminders_for_invoice(self, invoice_id: str) -> list[PaymentReminder]: ...

    def list_reminders(self) -> list[PaymentReminder]: ...

    def get_subscriber(self, subscriber_id: str) -> Subscriber | None: ...

    def save_subscriber(self, subscriber: Subscriber) -> None: ...

    def get_cycle(self, cycle_id: str) -> BillingCycle | None: ...

    def save_cycle(self, cycle: BillingCycle) -> None: ...

    def cycles_for_subscriber(self, subscriber_id: str) -> list[BillingCycle]: ...

    def list_cycles(self) -> list[BillingCycle]: ...

    def get_cycle_submission(self, submission_id: str) -> CyclePaymentSubmission | None: ...

    def save_cycle_submission(self, submission: CyclePaymentSubmission) -> None: ...

    def submissions_for_cycle(self, cycle_id: str) -> list[CyclePaymentSubmission]: ...

    def get_upgrade(self, upgrade_id: str) -> SubscriptionUpgrade | None: ...

    def save_upgrade(self, upgrade: SubscriptionUpgrade) -> None: ...

    def upgrades_for_subscriber(self, subscriber_id: str) -> list[SubscriptionUpgrade]: ...
