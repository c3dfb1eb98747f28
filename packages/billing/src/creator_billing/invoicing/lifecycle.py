"""Invoice lifecycle: edits, sending, viewing, cancellation and overdue scans."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal

import structlog

from creator_billing.errors import (
    BillingError,
    NotFoundError,
    OwnershipError,
    StateConflictError,
    UpstreamError,
)
from creator_billing.identifiers import utc_now
from creator_billing.invoicing.assembler import (
    ClientOverride,
    TaxOverride,
    check_percentage,
    validate_discount,
)
from creator_billing.invoicing.models import (
    Discount,
    GSTType,
    Invoice,
    InvoiceStatus,
    LineItem,
    Payment,
    Revision,
)
from creator_billing.invoicing.reminders import ReminderScheduler
from creator_billing.invoicing.tax import recalculate_invoice
from creator_billing.money import ZERO, to_decimal
from creator_billing.ports import BillingStore, Clock, DealStore, DocumentRenderer, NotificationSender
from creator_billing.state import StateMachine

logger = structlog.get_logger(__name__)

S = InvoiceStatus

INVOICE_MACHINE: StateMachine[InvoiceStatus] = StateMachine(
    "Invoice",
    {
        S.DRAFT: {S.SENT, S.PARTIALLY_PAID, S.PAID, S.CANCELLED},
        S.SENT: {S.VIEWED, S.PARTIALLY_PAID, S.PAID, S.OVERDUE, S.CANCELLED},
        S.VIEWED: {S.PARTIALLY_PAID, S.PAID, S.OVERDUE, S.CANCELLED},
        # SENT and VIEWED are the way back when payments fail verification
        # or the due date moves out
        S.PARTIALLY_PAID: {S.PAID, S.OVERDUE, S.SENT, S.VIEWED},
        S.OVERDUE: {S.PARTIALLY_PAID, S.PAID, S.CANCELLED, S.SENT, S.VIEWED},
        S.PAID: set(),
        S.CANCELLED: set(),
    },
)

OPEN_STATUSES = (S.SENT, S.VIEWED, S.PARTIALLY_PAID)
LOCKED_FOR_EDIT = (S.PAID, S.CANCELLED)


def paid_total(payments: Iterable[Payment]) -> Decimal:
    return sum((p.amount for p in payments if p.counts_toward_balance), ZERO)


def derive_payment_status(invoice: Invoice, paid: Decimal, now: datetime) -> InvoiceStatus:
    """Status implied by the amount paid so far and the due date.

    A draft is never overdue, since it was never issued. An issued invoice
    with nothing paid and a due date still ahead goes back to ``sent``, or
    ``viewed`` if the client has opened it.
    """
    if paid > ZERO and paid >= invoice.final_amount:
        return S.PAID
    if now > invoice.due_date and invoice.status != S.DRAFT:
        return S.OVERDUE
    if paid > ZERO:
        return S.PARTIALLY_PAID
    if invoice.status in (S.PARTIALLY_PAID, S.OVERDUE):
        return S.VIEWED if invoice.metadata.analytics.times_viewed else S.SENT
    return invoice.status


def load_owned_invoice(store: BillingStore, invoice_id: str, creator_id: str) -> Invoice:
    invoice = store.get_invoice(invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found", entity=f"Invoice:{invoice_id}")
    if invoice.creator_id != creator_id:
        raise OwnershipError(
            f"Invoice {invoice_id} does not belong to creator {creator_id}",
            field="creator_id",
            entity=f"Invoice:{invoice_id}",
            rule="owner_matches",
        )
    return invoice


@dataclass(frozen=True)
class InvoiceUpdate:
    """Fields an edit may change. ``None`` leaves a field untouched."""

    client: ClientOverride | None = None
    line_items: list[LineItem] | None = None
    tax: TaxOverride | None = None
    overall_discount: Discount | None = None
    notes: str | None = None
    due_date: datetime | None = None

    @property
    def changes_schedule(self) -> bool:
        """Whether the edit can move reminder dates or the amount they quote."""
        return any(
            value is not None
            for value in (self.client, self.line_items, self.tax, self.overall_discount, self.due_date)
        )


class InvoiceService:
    """Operations on existing invoices."""

    def __init__(
        self,
        store: BillingStore,
        deal_store: DealStore,
        renderer: DocumentRenderer | None = None,
        notifier: NotificationSender | None = None,
        reminders: ReminderScheduler | None = None,
        clock: Clock = utc_now,
    ):
        self._store = store
        self._deals = deal_store
        self._renderer = renderer
        self._notifier = notifier
        self._reminders = reminders
        self._clock = clock
        self._logger = logger.bind(component="invoice_service")

    def get_invoice(self, invoice_id: str, creator_id: str) -> Invoice:
        return load_owned_invoice(self._store, invoice_id, creator_id)

    def update_invoice(
        self,
        invoice_id: str,
        creator_id: str,
        update: InvoiceUpdate,
        *,
        changed_by: str,
        description: str = "Invoice updated",
    ) -> Invoice:
        """Apply an edit, recompute taxes and record a revision.

        Raises:
            StateConflictError: The invoice is paid or cancelled, or the new
                total would fall below what has already been paid.
        """
        with self._store.lock(f"invoice:{invoice_id}"):
            invoice = load_owned_invoice(self._store, invoice_id, creator_id)
            if invoice.status in LOCKED_FOR_EDIT:
                raise StateConflictError(
                    f"Invoice {invoice.invoice_number} is {invoice.status.value} and cannot be edited",
                    field="status",
                    entity=f"Invoice:{invoice_id}",
                    rule="editable_status",
                )

            self._apply(invoice, update)
            recalculate_invoice(invoice)

            now = self._clock()
            paid = paid_total(self._store.payments_for_invoice(invoice_id))
            if invoice.final_amount < paid:
                raise StateConflictError(
                    "Edited total is below the amount already paid",
                    field="final_amount",
                    entity=f"Invoice:{invoice_id}",
                    rule="total_covers_payments",
                    details={"final_amount": str(invoice.final_amount), "paid": str(paid)},
                )
            invoice.status = INVOICE_MACHINE.transition(
                invoice.status, derive_payment_status(invoice, paid, now), entity_id=invoice_id
            )

            invoice.metadata.version += 1
            invoice.metadata.revisions.append(
                Revision(
                    version=invoice.metadata.version,
                    changed_by=changed_by,
                    changed_at=now,
                    description=description,
                )
            )
            invoice.updated_at = now

            with self._store.unit_of_work():
                self._store.save_invoice(invoice)
                if self._reminders and invoice.status == S.PAID:
                    self._reminders.cancel_for_invoice(invoice_id)
                elif self._reminders and invoice.status != S.DRAFT and update.changes_schedule:
                    self._reminders.reschedule(invoice)

        self._logger.info(
            "invoice_updated",
            invoice_id=invoice_id,
            version=invoice.metadata.version,
            final_amount=str(invoice.final_amount),
        )
        return invoice

    def mark_sent(self, invoice_id: str, creator_id: str, *, sent_by: str) -> Invoice:
        """Issue an invoice to the client.

        A draft moves to ``sent``. Re-sending an issued invoice only repeats
        the delivery. PDF rendering, email and reminder scheduling run after
        the state change and never undo it.
        """
        with self._store.lock(f"invoice:{invoice_id}"):
            invoice = load_owned_invoice(self._store, invoice_id, creator_id)
            if invoice.status == S.CANCELLED:
                raise StateConflictError(
                    f"Invoice {invoice.invoice_number} is cancelled",
                    field="status",
                    entity=f"Invoice:{invoice_id}",
                    rule="sendable_status",
                )
            if invoice.status == S.DRAFT:
                invoice.status = INVOICE_MACHINE.transition(invoice.status, S.SENT, entity_id=invoice_id)

            now = self._clock()
            invoice.metadata.analytics.times_sent += 1
            invoice.metadata.analytics.last_sent_at = now
            invoice.updated_at = now
            with self._store.unit_of_work():
                self._store.save_invoice(invoice)

            self._logger.info(
                "invoice_sent",
                invoice_id=invoice_id,
                invoice_number=invoice.invoice_number,
                sent_by=sent_by,
            )

            pdf_url = self._render(invoice)
            if pdf_url:
                invoice.metadata.pdf_url = pdf_url
                self._store.save_invoice(invoice)
            self._email_client(invoice, pdf_url)
            if self._reminders:
                self._reminders.schedule(invoice)
        return invoice

    def record_view(self, invoice_id: str) -> Invoice:
        """Track that the client opened the invoice."""
        with self._store.lock(f"invoice:{invoice_id}"):
            invoice = self._store.get_invoice(invoice_id)
            if invoice is None:
                raise NotFoundError(f"Invoice {invoice_id} not found", entity=f"Invoice:{invoice_id}")
            now = self._clock()
            if invoice.status == S.SENT:
                invoice.status = INVOICE_MACHINE.transition(invoice.status, S.VIEWED, entity_id=invoice_id)
            analytics = invoice.metadata.analytics
            analytics.times_viewed += 1
            analytics.first_viewed_at = analytics.first_viewed_at or now
            analytics.last_viewed_at = now
            self._store.save_invoice(invoice)
        return invoice

    def record_download(self, invoice_id: str) -> Invoice:
        with self._store.lock(f"invoice:{invoice_id}"):
            invoice = self._store.get_invoice(invoice_id)
            if invoice is None:
                raise NotFoundError(f"Invoice {invoice_id} not found", entity=f"Invoice:{invoice_id}")
            invoice.metadata.analytics.downloads += 1
            self._store.save_invoice(invoice)
        return invoice

    def cancel_invoice(
        self,
        invoice_id: str,
        creator_id: str,
        *,
        cancelled_by: str,
        reason: str = "",
    ) -> Invoice:
        """Cancel an invoice that has no payments and release its deals.

        Raises:
            StateConflictError: The invoice is paid, partially paid, or has
                any recorded payment that did not fail.
            UpstreamError: The deal store could not release the deals; the
                invoice stays as it was.
        """
        with self._store.lock(f"invoice:{invoice_id}"):
            invoice = load_owned_invoice(self._store, invoice_id, creator_id)
            if invoice.status in (S.PAID, S.PARTIALLY_PAID):
                raise StateConflictError(
                    f"Invoice {invoice.invoice_number} has payments and cannot be cancelled",
                    field="status",
                    entity=f"Invoice:{invoice_id}",
                    rule="cancel_without_payments",
                )
            payments = [p for p in self._store.payments_for_invoice(invoice_id) if p.counts_toward_balance]
            if payments:
                raise StateConflictError(
                    f"Invoice {invoice.invoice_number} has {len(payments)} recorded payment(s)",
                    field="payments",
                    entity=f"Invoice:{invoice_id}",
                    rule="cancel_without_payments",
                )

            now = self._clock()
            invoice.status = INVOICE_MACHINE.transition(invoice.status, S.CANCELLED, entity_id=invoice_id)
            invoice.metadata.version += 1
            invoice.metadata.revisions.append(
                Revision(
                    version=invoice.metadata.version,
                    changed_by=cancelled_by,
                    changed_at=now,
                    description=f"Cancelled: {reason}" if reason else "Cancelled",
                )
            )
            invoice.updated_at = now

            with self._store.unit_of_work():
                self._store.save_invoice(invoice)
                if self._reminders:
                    self._reminders.cancel_for_invoice(invoice_id)
                try:
                    self._deals.clear_invoice(invoice.deal_ids, invoice_id)
                except BillingError:
                    raise
                except Exception as e:
                    raise UpstreamError(
                        f"Deal store failed while releasing deals: {e}",
                        collaborator="deal_store",
                    ) from e

        self._logger.info(
            "invoice_cancelled",
            invoice_id=invoice_id,
            invoice_number=invoice.invoice_number,
            cancelled_by=cancelled_by,
        )
        return invoice

    def mark_overdue_invoices(self, now: datetime | None = None) -> list[str]:
        """Move issued, unpaid invoices past their due date to ``overdue``.

        Safe to run repeatedly; already-overdue invoices are skipped.
        """
        now = now or self._clock()
        marked: list[str] = []
        for candidate in self._store.list_invoices():
            if candidate.status not in OPEN_STATUSES or candidate.due_date >= now:
                continue
            with self._store.lock(f"invoice:{candidate.invoice_id}"):
                invoice = self._store.get_invoice(candidate.invoice_id)
                if invoice is None or invoice.status not in OPEN_STATUSES:
                    continue
                invoice.status = INVOICE_MACHINE.transition(
                    invoice.status, S.OVERDUE, entity_id=invoice.invoice_id
                )
                invoice.updated_at = now
                self._store.save_invoice(invoice)
                marked.append(invoice.invoice_id)

        if marked:
            self._logger.info("invoices_marked_overdue", count=len(marked))
        return marked

    # === Internals ===

    @staticmethod
    def _apply(invoice: Invoice, update: InvoiceUpdate) -> None:
        if update.client is not None:
            o = update.client
            client = invoice.client
            invoice.client = replace(
                client,
                name=o.name if o.name is not None else client.name,
                email=o.email if o.email is not None else client.email,
                phone=o.phone if o.phone is not None else client.phone,
                address=o.address if o.address is not None else client.address,
                state=o.state if o.state is not None else client.state,
                gst_number=o.gst_number if o.gst_number is not None else client.gst_number,
                pan_number=o.pan_number if o.pan_number is not None else client.pan_number,
                is_interstate=(
                    o.is_interstate if o.is_interstate is not None else client.is_interstate
                ),
                client_type=o.client_type if o.client_type is not None else client.client_type,
            )
            if o.is_interstate is not None and (update.tax is None or update.tax.gst_type is None):
                invoice.tax_settings.gst.gst_type = (
                    GSTType.IGST if o.is_interstate else GSTType.CGST_SGST
                )

        if update.line_items is not None:
            for item in update.line_items:
                validate_discount(item.discount, "line_items.discount")
            invoice.line_items = list(update.line_items)

        if update.tax is not None:
            t = update.tax
            gst = invoice.tax_settings.gst
            tds = invoice.tax_settings.tds
            if t.apply_gst is not None:
                gst.apply_gst = t.apply_gst
            if t.gst_rate is not None:
                gst.gst_rate = to_decimal(t.gst_rate)
            if t.gst_type is not None:
                gst.gst_type = t.gst_type
            if t.gst_exemption_reason is not None:
                gst.exemption_reason = t.gst_exemption_reason
            if t.apply_tds is not None:
                tds.apply_tds = t.apply_tds
            if t.tds_rate is not None:
                tds.tds_rate = to_decimal(t.tds_rate)
            if t.entity_type is not None:
                tds.entity_type = t.entity_type
            if t.has_tds_exemption is not None:
                tds.has_exemption = t.has_tds_exemption
            if t.exemption_certificate is not None:
                tds.certificate = t.exemption_certificate
            check_percentage(gst.gst_rate, "gst_rate")
            check_percentage(tds.tds_rate, "tds_rate")

        settings = invoice.invoice_settings
        if update.overall_discount is not None:
            validate_discount(update.overall_discount, "overall_discount")
            settings.overall_discount = update.overall_discount
        if update.notes is not None:
            settings.notes = update.notes
        if update.due_date is not None:
            settings.due_date = update.due_date

    def _render(self, invoice: Invoice) -> str | None:
        if self._renderer is None:
            return None
        try:
            return self._renderer.render_invoice(invoice)
        except UpstreamError as e:
            self._logger.warning(
                "invoice_pdf_render_failed", invoice_id=invoice.invoice_id, error=str(e)
            )
            return None

    def _email_client(self, invoice: Invoice, pdf_url: str | None) -> None:
        if self._notifier is None or not invoice.client.email:
            return
        try:
            self._notifier.send_email(
                invoice.client.email,
                f"Invoice {invoice.invoice_number}",
                (
                    f"Dear {invoice.client.name},\n\n"
                    f"Please find invoice {invoice.invoice_number} for "
                    f"{invoice.invoice_settings.currency} {invoice.final_amount:.2f}, "
                    f"due on {invoice.due_date:%d %b %Y}."
                ),
                attachments=[pdf_url] if pdf_url else [],
            )
        except UpstreamError as e:
            self._logger.warning(
                "invoice_email_failed", invoice_id=invoice.invoice_id, error=str(e)
            )
