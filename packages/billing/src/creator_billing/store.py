"""In-memory stores.

``InMemoryBillingStore`` copies entities on every read and write, so callers
never share mutable state with the store. ``unit_of_work`` snapshots all
tables and restores them if the block raises. ``lock`` hands out one
re-entrant lock per key; services take it before opening a unit of work.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any, TypeVar

import structlog

from creator_billing.errors import NotFoundError, StateConflictError
from creator_billing.invoicing.models import (
    CreatorProfile,
    Invoice,
    Payment,
    PaymentReminder,
    WorkItem,
)
from creator_billing.ports import DealQuery
from creator_billing.subscriptions.models import (
    BillingCycle,
    CyclePaymentSubmission,
    Subscriber,
    SubscriptionUpgrade,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TABLES = (
    "invoices",
    "payments",
    "reminders",
    "subscribers",
    "cycles",
    "cycle_payments",
    "upgrades",
)


class _KeyedLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            key_lock = self._locks.setdefault(key, threading.RLock())
        with key_lock:
            yield


class InMemoryBillingStore:
    """Dictionary-backed billing store."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, Any]] = {name: {} for name in TABLES}
        self._write_lock = threading.RLock()
        self._locks = _KeyedLocks()
        self._depth = 0
        self._logger = logger.bind(component="billing_store")

    # === Concurrency ===

    def lock(self, key: str):
        """Single-writer lock for one entity, e.g. ``invoice:<id>``."""
        return self._locks.hold(key)

    @contextmanager
    def unit_of_work(self) -> Iterator[InMemoryBillingStore]:
        """Commit every write in the block, or none of them.

        Nested units join the outermost one.
        """
        with self._write_lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            snapshot = copy.deepcopy(self._tables)
            self._depth = 1
            try:
                yield self
            except BaseException as e:
                self._tables = snapshot
                self._logger.warning("unit_of_work_rolled_back", error=str(e))
                raise
            finally:
                self._depth = 0

    # === Generic access ===

    def _get(self, table: str, key: str) -> Any:
        with self._write_lock:
            value = self._tables[table].get(key)
            return copy.deepcopy(value)

    def _put(self, table: str, key: str, value: Any) -> None:
        with self._write_lock:
            self._tables[table][key] = copy.deepcopy(value)

    def _select(
        self, table: str, predicate: Callable[[Any], bool] | None = None
    ) -> list[Any]:
        with self._write_lock:
            rows = [
                row for row in self._tables[table].values()
                if predicate is None or predicate(row)
            ]
            return copy.deepcopy(rows)

    # === Invoices ===

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        return self._get("invoices", invoice_id)

    def save_invoice(self, invoice: Invoice) -> None:
        existing = self.find_invoice_by_number(invoice.invoice_number)
        if existing is not None and existing.invoice_id != invoice.invoice_id:
            raise StateConflictError(
                f"Invoice number {invoice.invoice_number} is already in use",
                field="invoice_number",
                entity="Invoice",
                rule="unique_invoice_number",
            )
        self._put("invoices", invoice.invoice_id, invoice)

    def find_invoice_by_number(self, invoice_number: str) -> Invoice | None:
        matches = self._select("invoices", lambda i: i.invoice_number == invoice_number)
        return matches[0] if matches else None

    def list_invoices(self, creator_id: str | None = None) -> list[Invoice]:
        return self._select(
            "invoices", lambda i: creator_id is None or i.creator_id == creator_id
        )

    # === Payments ===

    def get_payment(self, payment_id: str) -> Payment | None:
        return self._get("payments", payment_id)

    def save_payment(self, payment: Payment) -> None:
        self._put("payments", payment.payment_id, payment)

    def payments_for_invoice(self, invoice_id: str) -> list[Payment]:
        payments = self._select("payments", lambda p: p.invoice_id == invoice_id)
        return sorted(payments, key=lambda p: p.created_at)

    # === Reminders ===

    def save_reminder(self, reminder: PaymentReminder) -> None:
        self._put("reminders", reminder.reminder_id, reminder)

    def reminders_for_invoice(self, invoice_id: str) -> list[PaymentReminder]:
        reminders = self._select("reminders", lambda r: r.invoice_id == invoice_id)
        return sorted(reminders, key=lambda r: r.scheduled_for)

    def list_reminders(self) -> list[PaymentReminder]:
        return sorted(self._select("reminders"), key=lambda r: r.scheduled_for)

    # === Subscriptions ===

    def get_subscriber(self, subscriber_id: str) -> Subscriber | None:
        return self._get("subscribers", subscriber_id)

    def save_subscriber(self, subscriber: Subscriber) -> None:
        self._put("subscribers", subscriber.subscriber_id, subscriber)

    def get_cycle(self, cycle_id: str) -> BillingCycle | None:
        return self._get("cycles", cycle_id)

    def save_cycle(self, cycle: BillingCycle) -> None:
        self._put("cycles", cycle.cycle_id, cycle)

    def cycles_for_subscriber(self, subscriber_id: str) -> list[BillingCycle]:
        cycles = self._select("cycles", lambda c: c.subscriber_id == subscriber_id)
        return sorted(cycles, key=lambda c: c.cycle_number)

    def list_cycles(self) -> list[BillingCycle]:
        return sorted(
            self._select("cycles"), key=lambda c: (c.subscriber_id, c.cycle_number)
        )

    def get_cycle_submission(self, submission_id: str) -> CyclePaymentSubmission | None:
        return self._get("cycle_payments", submission_id)

    def save_cycle_submission(self, submission: CyclePaymentSubmission) -> None:
        self._put("cycle_payments", submission.submission_id, submission)

    def submissions_for_cycle(self, cycle_id: str) -> list[CyclePaymentSubmission]:
        submissions = self._select("cycle_payments", lambda s: s.cycle_id == cycle_id)
        return sorted(submissions, key=lambda s: s.submitted_at)

    def get_upgrade(self, upgrade_id: str) -> SubscriptionUpgrade | None:
        return self._get("upgrades", upgrade_id)

    def save_upgrade(self, upgrade: SubscriptionUpgrade) -> None:
        self._put("upgrades", upgrade.upgrade_id, upgrade)

    def upgrades_for_subscriber(self, subscriber_id: str) -> list[SubscriptionUpgrade]:
        upgrades = self._select("upgrades", lambda u: u.subscriber_id == subscriber_id)
        return sorted(upgrades, key=lambda u: u.requested_at)


class InMemoryDealStore:
    """Deal store used in tests and local runs."""

    def __init__(self, deals: Sequence[WorkItem] = ()):
        self._deals: dict[str, WorkItem] = {}
        self._lock = threading.Lock()
        for deal in deals:
            self.add(deal)

    def add(self, deal: WorkItem) -> None:
        with self._lock:
            self._deals[deal.deal_id] = copy.deepcopy(deal)

    def get(self, deal_id: str) -> WorkItem | None:
        with self._lock:
            return copy.deepcopy(self._deals.get(deal_id))

    def find(self, query: DealQuery) -> list[WorkItem]:
        with self._lock:
            matches = [d for d in self._deals.values() if _matches(d, query)]
            return copy.deepcopy(matches)

    def mark_invoiced(self, deal_ids: Sequence[str], invoice_id: str) -> None:
        with self._lock:
            for deal_id in deal_ids:
                deal = self._deals.get(deal_id)
                if deal is None:
                    raise NotFoundError(f"Deal {deal_id} not found", entity=f"Deal:{deal_id}")
                if deal.has_invoice and deal.invoice_id != invoice_id:
                    raise StateConflictError(
                        f"Deal {deal_id} is already invoiced",
                        field="has_invoice",
                        entity=f"Deal:{deal_id}",
                        rule="single_active_invoice",
                    )
            for deal_id in deal_ids:
                self._deals[deal_id].has_invoice = True
                self._deals[deal_id].invoice_id = invoice_id

    def clear_invoice(self, deal_ids: Sequence[str], invoice_id: str) -> None:
        with self._lock:
            for deal_id in deal_ids:
                deal = self._deals.get(deal_id)
                if deal is not None and deal.invoice_id == invoice_id:
                    deal.has_invoice = False
                    deal.invoice_id = None


def _matches(deal: WorkItem, query: DealQuery) -> bool:
    if deal.creator_id != query.creator_id:
        return False
    if query.deal_ids and deal.deal_id not in query.deal_ids:
        return False
    if query.statuses and deal.status not in query.statuses:
        return False
    if query.exclude_invoiced and deal.has_invoice:
        return False
    if query.brand_id and (deal.brand is None or deal.brand.brand_id != query.brand_id):
        return False
    if query.agency_id and (
        deal.brand is None or deal.brand.parent_agency_id != query.agency_id
    ):
        return False
    if query.completed_from or query.completed_to:
        if deal.completed_at is None:
            return False
        if query.completed_from and deal.completed_at < query.completed_from:
            return False
        if query.completed_to and deal.completed_at >= query.completed_to:
            return False
    return True


class InMemoryCreatorProfileStore:
    def __init__(self, profiles: Sequence[CreatorProfile] = ()):
        self._profiles = {p.creator_id: p for p in profiles}

    def add(self, profile: CreatorProfile) -> None:
        self._profiles[profile.creator_id] = profile

    def get(self, creator_id: str) -> CreatorProfile | None:
        return self._profiles.get(creator_id)
