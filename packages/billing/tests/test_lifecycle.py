"""Tests for the invoice state machine and invoice operations."""

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from creator_billing.errors import NotFoundError, OwnershipError, StateConflictError, UpstreamError
from creator_billing.invoicing import INVOICE_MACHINE, ClientOverride, InvoiceUpdate, TaxOverride
from creator_billing.invoicing.lifecycle import derive_payment_status
from creator_billing.invoicing.models import (
    Discount,
    InvoiceStatus as S,
    LineItem,
    ReminderStatus,
)


@pytest.fixture
def invoice(assembler):
    return assembler.create_individual_invoice("creator-1", "deal-1")


class TestInvoiceMachine:
    """Tests for the legal transition table."""

    @pytest.mark.parametrize(
        "current, target",
        [
            (S.DRAFT, S.SENT),
            (S.SENT, S.VIEWED),
            (S.VIEWED, S.PARTIALLY_PAID),
            (S.PARTIALLY_PAID, S.PAID),
            (S.SENT, S.OVERDUE),
            (S.PARTIALLY_PAID, S.OVERDUE),
            (S.OVERDUE, S.PAID),
            (S.DRAFT, S.CANCELLED),
            (S.OVERDUE, S.CANCELLED),
            (S.OVERDUE, S.SENT),
            (S.OVERDUE, S.VIEWED),
        ],
    )
    def test_legal(self, current, target):
        assert INVOICE_MACHINE.transition(current, target) == target

    @pytest.mark.parametrize(
        "current, target",
        [
            (S.PAID, S.CANCELLED),
            (S.PAID, S.SENT),
            (S.CANCELLED, S.DRAFT),
            (S.PARTIALLY_PAID, S.CANCELLED),
            (S.VIEWED, S.SENT),
        ],
    )
    def test_illegal(self, current, target):
        with pytest.raises(StateConflictError) as exc:
            INVOICE_MACHINE.transition(current, target, entity_id="inv-1")
        assert exc.value.rule == "legal_transition"
        assert exc.value.entity == "Invoice:inv-1"

    def test_paid_and_cancelled_are_terminal(self):
        assert INVOICE_MACHINE.is_terminal(S.PAID)
        assert INVOICE_MACHINE.is_terminal(S.CANCELLED)


class TestDerivePaymentStatus:
    def test_paid_when_covered(self, invoice, clock):
        assert derive_payment_status(invoice, Decimal("11800"), clock.now) == S.PAID

    def test_draft_is_never_overdue(self, invoice, clock):
        later = clock.now + timedelta(days=60)
        assert derive_payment_status(invoice, Decimal("100"), later) == S.PARTIALLY_PAID

    def test_issued_past_due_is_overdue(self, invoice, clock):
        invoice.status = S.SENT
        later = clock.now + timedelta(days=60)
        assert derive_payment_status(invoice, Decimal("100"), later) == S.OVERDUE

    def test_overdue_with_due_date_ahead_goes_back(self, invoice, clock):
        invoice.status = S.OVERDUE
        assert derive_payment_status(invoice, Decimal("0"), clock.now) == S.SENT

        invoice.metadata.analytics.times_viewed = 1
        assert derive_payment_status(invoice, Decimal("0"), clock.now) == S.VIEWED

    def test_zero_paid_is_never_paid(self, invoice, clock):
        invoice.status = S.SENT
        invoice.tax_settings.calculation = replace(invoice.tax_settings.calculation, final_amount=Decimal("0"))
        assert derive_payment_status(invoice, Decimal("0"), clock.now) == S.SENT


class TestUpdateInvoice:
    """Tests for edits and revisions."""

    def test_edit_recomputes_and_records_revision(self, invoice_service, invoice, clock):
        updated = invoice_service.update_invoice(
            invoice.invoice_id,
            "creator-1",
            InvoiceUpdate(
                line_items=[LineItem("Extended campaign", Decimal("1"), Decimal("20000"))],
                overall_discount=Discount.fixed(2000),
            ),
            changed_by="creator-1",
            description="Extended scope",
        )

        assert updated.tax_settings.calculation.subtotal == Decimal("20000")
        assert updated.tax_settings.calculation.taxable_amount == Decimal("18000")
        assert updated.final_amount == Decimal("21240")
        assert updated.metadata.version == 2
        revision = updated.metadata.revisions[-1]
        assert revision.changed_by == "creator-1"
        assert revision.description == "Extended scope"
        assert revision.changed_at == clock.now

    def test_interstate_client_switches_gst_type(self, invoice_service, invoice):
        updated = invoice_service.update_invoice(
            invoice.invoice_id,
            "creator-1",
            InvoiceUpdate(client=ClientOverride(is_interstate=True)),
            changed_by="creator-1",
        )
        assert updated.tax_settings.calculation.igst_amount == Decimal("1800")

    def test_paid_invoice_cannot_be_edited(self, invoice_service, ledger, invoice):
        ledger.record_payment(invoice.invoice_id, "creator-1", Decimal("11800"), recorded_by="creator-1")

        with pytest.raises(StateConflictError) as exc:
            invoice_service.update_invoice(
                invoice.invoice_id, "creator-1", InvoiceUpdate(notes="late"), changed_by="creator-1"
            )
        assert exc.value.rule == "editable_status"

    def test_total_cannot_drop_below_paid(self, invoice_service, ledger, invoice, store):
        ledger.record_payment(invoice.invoice_id, "creator-1", Decimal("8000"), recorded_by="creator-1")

        with pytest.raises(StateConflictError) as exc:
            invoice_service.update_invoice(
                invoice.invoice_id,
                "creator-1",
                InvoiceUpdate(tax=TaxOverride(apply_gst=False), overall_discount=Discount.percent(50)),
                changed_by="creator-1",
            )
        assert exc.value.rule == "total_covers_payments"
        assert store.get_invoice(invoice.invoice_id).final_amount == Decimal("11800")

    def test_other_creator_cannot_edit(self, invoice_service, invoice):
        with pytest.raises(OwnershipError):
            invoice_service.update_invoice(
                invoice.invoice_id, "creator-2", InvoiceUpdate(notes="x"), changed_by="creator-2"
            )

    def test_moving_due_date_out_clears_overdue(self, invoice_service, invoice, clock, store):
        invoice_service.mark_sent(invoice.invoice_id, "creator-1", sent_by="creator-1")
        clock.advance(days=31)
        invoice_service.mark_overdue_invoices()
        assert store.get_invoice(invoice.invoice_id).status == S.OVERDUE

        updated = invoice_service.update_invoice(
            invoice.invoice_id,
            "creator-1",
            InvoiceUpdate(due_date=clock.now + timedelta(days=30)),
            changed_by="creator-1",
        )

        assert updated.status == S.SENT
        assert store.get_invoice(invoice.invoice_id).status == S.SENT

    def test_viewed_invoice_returns_to_viewed(self, invoice_service, invoice, clock):
        invoice_service.mark_sent(invoice.invoice_id, "creator-1", sent_by="creator-1")
        invoice_service.record_view(invoice.invoice_id)
        clock.advance(days=31)
        invoice_service.mark_overdue_invoices()

        updated = invoice_service.update_invoice(
            invoice.invoice_id,
            "creator-1",
            InvoiceUpdate(due_date=clock.now + timedelta(days=7)),
            changed_by="creator-1",
        )

        assert updated.status == S.VIEWED

    def test_moving_due_date_reschedules_reminders(self, invoice_service, reminders, invoice, notifier, store):
        sent = invoice_service.mark_sent(invoice.invoice_id, "creator-1", sent_by="creator-1")
        old_due = sent.due_date
        new_due = old_due + timedelta(days=60)
        notifier.send_email.reset_mock()

        invoice_service.update_invoice(
            invoice.invoice_id, "creator-1", InvoiceUpdate(due_date=new_due), changed_by="creator-1"
        )
        result = reminders.process_due(old_due + timedelta(hours=1))

        assert result.sent == 0
        notifier.send_email.assert_not_called()
        scheduled = {
            r.reminder_type: r.scheduled_for
            for r in store.reminders_for_invoice(invoice.invoice_id)
            if r.status == ReminderStatus.SCHEDULED
        }
        assert len(scheduled) == 4
        assert min(scheduled.values()) == new_due

    def test_notes_edit_keeps_reminders(self, invoice_service, invoice, store):
        invoice_service.mark_sent(invoice.invoice_id, "creator-1", sent_by="creator-1")
        before = {r.reminder_id for r in store.reminders_for_invoice(invoice.invoice_id)}

        invoice_service.update_invoice(
            invoice.invoice_id, "creator-1", InvoiceUpdate(notes="Thanks!"), changed_by="creator-1"
        )

        assert {r.reminder_id for r in store.reminders_for_invoice(invoice.invoice_id)} == before


class TestSendAndTrack:
    """Tests for sending, viewing and downloading."""

    def test_mark_sent(self, invoice_service, invoice, renderer, notifier, store):
        sent = invoice_service.mark_sent(invoice.invoice_id, "creator-1", sent_by="creator-1")

        assert sent.status == S.SENT
        assert sent.metadata.analytics.times_sent == 1
        assert sent.metadata.pdf_url == "https://docs.example/invoice.pdf"
        renderer.render_invoice.assert_called_once()
        notifier.send_email.assert_called_once()
        assert notifier.send_email.call_args.args[0] == "billing@nike.example"
        assert len(store.reminders_for_invoice(invoice.invoice_id)) == 4

    def test_resend_keeps_status(self, invoice_service, invoice, store):
        invoice_service.mark_sent(invoice.invoice_id, "creator-1", sent_by="creator-1")
        invoice_service.record_view(invoice.invoice_id)

        again = invoice_service.mark_sent(invoice.invoice_id, "creator-1", sent_by="creator-1")

        assert again.status == S.VIEWED
        assert again.metadata.analytics.times_sent == 2
        assert len(store.reminders_for_invoice(invoice.invoice_id)) == 4

    def test_render_failure_does_not_undo_send(self, invoice_service, invoice, renderer, store):
        renderer.render_invoice.side_effect = UpstreamError("renderer down", collaborator="document_renderer")

        sent = invoice_service.mark_sent(invoice.invoice_id, "creator-1", sent_by="creator-1")

        assert sent.status == S.SENT
        assert store.get_invoice(invoice.invoice_id).status == S.SENT
        assert sent.metadata.pdf_url is None

    def test_record_view(self, invoice_service, invoice, clock):
        invoice_service.mark_sent(invoice.invoice_id, "creator-1", sent_by="creator-1")

        viewed = invoice_service.record_view(invoice.invoice_id)
        viewed = invoice_service.record_view(invoice.invoice_id)

        assert viewed.status == S.VIEWED
        assert viewed.metadata.analytics.times_viewed == 2
        assert viewed.metadata.analytics.first_viewed_at == clock.now

    def test_record_download(self, invoice_service, invoice):
        assert invoice_service.record_download(invoice.invoice_id).metadata.analytics.downloads == 1

    def test_unknown_invoice(self, invoice_service):
        with pytest.raises(NotFoundError):
            invoice_service.record_view("missing")


class TestCancelInvoice:
    """Tests for cancellation."""

    def test_cancel_releases_deals(self, invoice_service, invoice, deal_store, assembler):
        cancelled = invoice_service.cancel_invoice(
            invoice.invoice_id, "creator-1", cancelled_by="creator-1", reason="Duplicate"
        )

        assert cancelled.status == S.CANCELLED
        assert cancelled.metadata.revisions[-1].description == "Cancelled: Duplicate"
        assert deal_store.get("deal-1").has_invoice is False
        # the deal can be invoiced again
        assert assembler.create_individual_invoice("creator-1", "deal-1").deal_ids == ["deal-1"]

    def test_cancel_drops_scheduled_reminders(self, invoice_service, invoice, store):
        invoice_service.mark_sent(invoice.invoice_id, "creator-1", sent_by="creator-1")
        invoice_service.cancel_invoice(invoice.invoice_id, "creator-1", cancelled_by="creator-1")

        statuses = {r.status for r in store.reminders_for_invoice(invoice.invoice_id)}
        assert statuses == {ReminderStatus.CANCELLED}

    def test_cannot_cancel_with_payments(self, invoice_service, ledger, invoice, deal_store):
        ledger.record_payment(invoice.invoice_id, "creator-1", Decimal("1000"), recorded_by="creator-1")

        with pytest.raises(StateConflictError) as exc:
            invoice_service.cancel_invoice(invoice.invoice_id, "creator-1", cancelled_by="creator-1")
        assert exc.value.rule == "cancel_without_payments"
        assert deal_store.get("deal-1").has_invoice is True

    def test_cannot_cancel_paid(self, invoice_service, ledger, invoice):
        ledger.record_payment(invoice.invoice_id, "creator-1", Decimal("11800"), recorded_by="creator-1")

        with pytest.raises(StateConflictError):
            invoice_service.cancel_invoice(invoice.invoice_id, "creator-1", cancelled_by="creator-1")


class TestOverdueScan:
    def test_marks_issued_invoices_past_due(self, invoice_service, invoice, clock):
        invoice_service.mark_sent(invoice.invoice_id, "creator-1", sent_by="creator-1")

        marked = invoice_service.mark_overdue_invoices(clock.now + timedelta(days=31))
        again = invoice_service.mark_overdue_invoices(clock.now + timedelta(days=32))

        assert marked == [invoice.invoice_id]
        assert again == []

    def test_skips_drafts(self, invoice_service, invoice, clock):
        assert invoice_service.mark_overdue_invoices(clock.now + timedelta(days=31)) == []
