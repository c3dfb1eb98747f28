"""Payment ledger: record payments against invoices and keep balances straight.

Recording a payment reads the prior payments and writes the new one while
holding the invoice's single-writer lock, so concurrent submissions cannot
both pass the overpayment check.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog

from creator_billing.errors import (
    NotFoundError,
    OwnershipError,
    StateConflictError,
    UpstreamError,
    ValidationError,
)
from creator_billing.identifiers import IdentifierFactory, utc_now
from creator_billing.invoicing.lifecycle import (
    INVOICE_MACHINE,
    derive_payment_status,
    load_owned_invoice,
    paid_total,
)
from creator_billing.invoicing.models import (
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    Receipt,
    Verification,
)
from creator_billing.invoicing.reminders import ReminderScheduler
from creator_billing.money import HUNDRED, ZERO, to_decimal, to_paise
from creator_billing.ports import BillingStore, Clock, DocumentRenderer, ObjectStorage

logger = structlog.get_logger(__name__)

ADVANCE_THRESHOLD = Decimal("0.5")


@dataclass(frozen=True)
class PaymentSummary:
    total_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    percentage_paid: Decimal
    payment_count: int


def classify_payment(
    amount: Decimal, invoice_total: Decimal, remaining: Decimal, is_first: bool
) -> PaymentType:
    """Advance if a first payment covers half or more, final if it clears the balance."""
    if is_first and amount >= invoice_total * ADVANCE_THRESHOLD:
        return PaymentType.ADVANCE
    if amount == remaining:
        return PaymentType.FINAL
    return PaymentType.PARTIAL


class PaymentLedger:
    """Record, verify and fail payments."""

    def __init__(
        self,
        store: BillingStore,
        renderer: DocumentRenderer | None = None,
        storage: ObjectStorage | None = None,
        reminders: ReminderScheduler | None = None,
        clock: Clock = utc_now,
        identifiers: IdentifierFactory | None = None,
    ):
        self._store = store
        self._renderer = renderer
        self._storage = storage
        self._reminders = reminders
        self._clock = clock
        self._ids = identifiers or IdentifierFactory(clock=clock)
        self._logger = logger.bind(component="payment_ledger")

    def record_payment(
        self,
        invoice_id: str,
        creator_id: str,
        amount: Decimal | int | str,
        *,
        method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
        recorded_by: str,
        payment_date: datetime | None = None,
        transaction_reference: str | None = None,
    ) -> Payment:
        """Record a payment and move the invoice to the status it implies.

        Raises:
            ValidationError: Non-positive amount.
            StateConflictError: The invoice is paid or cancelled, or the
                amount exceeds the remaining balance.
        """
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise ValidationError(
                "Payment amount must be positive",
                field="amount",
                rule="positive",
                details={"amount": str(amount)},
            )

        with self._store.lock(f"invoice:{invoice_id}"):
            invoice = load_owned_invoice(self._store, invoice_id, creator_id)
            if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
                raise StateConflictError(
                    f"Invoice {invoice.invoice_number} is {invoice.status.value}",
                    field="status",
                    entity=f"Invoice:{invoice_id}",
                    rule="payable_status",
                )

            prior = [p for p in self._store.payments_for_invoice(invoice_id) if p.counts_toward_balance]
            paid_so_far = paid_total(prior)
            remaining = invoice.final_amount - paid_so_far
            if amount > remaining:
                raise StateConflictError(
                    "Payment exceeds the remaining balance",
                    field="amount",
                    entity=f"Invoice:{invoice_id}",
                    rule="no_overpayment",
                    details={"amount": str(amount), "remaining": str(remaining)},
                )

            now = self._clock()
            payment = Payment(
                payment_id=self._ids.payment_id(),
                invoice_id=invoice_id,
                creator_id=creator_id,
                amount=amount,
                remaining_balance=remaining - amount,
                payment_type=classify_payment(amount, invoice.final_amount, remaining, not prior),
                method=method,
                payment_date=payment_date or now,
                recorded_by=recorded_by,
                created_at=now,
                transaction_reference=transaction_reference,
            )

            target = derive_payment_status(invoice, paid_so_far + amount, now)
            invoice.status = INVOICE_MACHINE.transition(invoice.status, target, entity_id=invoice_id)
            invoice.updated_at = now

            with self._store.unit_of_work():
                self._store.save_payment(payment)
                self._store.save_invoice(invoice)
                if invoice.status == InvoiceStatus.PAID and self._reminders:
                    self._reminders.cancel_for_invoice(invoice_id)

        self._logger.info(
            "payment_recorded",
            payment_id=payment.payment_id,
            invoice_id=invoice_id,
            amount=str(amount),
            payment_type=payment.payment_type.value,
            remaining_balance=str(payment.remaining_balance),
            invoice_status=invoice.status.value,
        )
        return payment

    def verify_payment(
        self,
        payment_id: str,
        creator_id: str,
        *,
        verified_by: str,
        notes: str | None = None,
    ) -> Payment:
        """Mark a payment verified and generate its receipt.

        Amounts are not touched. Receipt rendering failures are logged and
        leave the receipt without a URL.
        """
        payment = self._load_payment(payment_id, creator_id)
        with self._store.lock(f"invoice:{payment.invoice_id}"):
            payment = self._load_payment(payment_id, creator_id)
            if payment.status == PaymentStatus.FAILED:
                raise StateConflictError(
                    f"Payment {payment_id} has failed and cannot be verified",
                    field="status",
                    entity=f"Payment:{payment_id}",
                    rule="verifiable_status",
                )
            if payment.is_verified:
                raise StateConflictError(
                    f"Payment {payment_id} is already verified",
                    field="verification",
                    entity=f"Payment:{payment_id}",
                    rule="verify_once",
                )

            now = self._clock()
            payment.verification = Verification(verified_by=verified_by, verified_at=now, notes=notes)
            payment.status = PaymentStatus.COMPLETED
            with self._store.unit_of_work():
                self._store.save_payment(payment)

            invoice = self._store.get_invoice(payment.invoice_id)
            payment.receipt = Receipt(
                receipt_number=self._ids.receipt_number(),
                generated_at=now,
                url=self._render_receipt(payment, invoice),
            )
            self._store.save_payment(payment)

        self._logger.info(
            "payment_verified",
            payment_id=payment_id,
            invoice_id=payment.invoice_id,
            verified_by=verified_by,
            receipt_number=payment.receipt.receipt_number,
        )
        return payment

    def mark_payment_failed(self, payment_id: str, creator_id: str, *, reason: str) -> Payment:
        """Fail an unverified payment and give its amount back to the balance.

        Raises:
            StateConflictError: The payment is verified or already failed, or
                the invoice is already settled.
        """
        payment = self._load_payment(payment_id, creator_id)
        with self._store.lock(f"invoice:{payment.invoice_id}"):
            payment = self._load_payment(payment_id, creator_id)
            if payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
                raise StateConflictError(
                    f"Payment {payment_id} is {payment.status.value} and cannot be failed",
                    field="status",
                    entity=f"Payment:{payment_id}",
                    rule="failable_status",
                )
            invoice = load_owned_invoice(self._store, payment.invoice_id, creator_id)
            if invoice.status == InvoiceStatus.PAID:
                raise StateConflictError(
                    f"Invoice {invoice.invoice_number} is paid; reverse it instead",
                    field="status",
                    entity=f"Invoice:{invoice.invoice_id}",
                    rule="paid_is_terminal",
                )

            now = self._clock()
            payment.status = PaymentStatus.FAILED
            payment.failure_reason = reason
            remaining_payments = [
                p for p in self._store.payments_for_invoice(invoice.invoice_id)
                if p.payment_id != payment_id
            ]
            target = derive_payment_status(invoice, paid_total(remaining_payments), now)
            invoice.status = INVOICE_MACHINE.transition(
                invoice.status, target, entity_id=invoice.invoice_id
            )
            invoice.updated_at = now

            with self._store.unit_of_work():
                self._store.save_payment(payment)
                self._store.save_invoice(invoice)

        self._logger.warning(
            "payment_failed",
            payment_id=payment_id,
            invoice_id=invoice.invoice_id,
            reason=reason,
            invoice_status=invoice.status.value,
        )
        return payment

    def attach_proof(
        self,
        payment_id: str,
        creator_id: str,
        content: bytes,
        *,
        filename: str,
        content_type: str = "image/png",
    ) -> Payment:
        """Upload a payment screenshot or slip and keep its reference."""
        if self._storage is None:
            raise UpstreamError("No object storage configured", collaborator="object_storage")
        if not content:
            raise ValidationError("Proof file is empty", field="content", rule="non_empty")

        payment = self._load_payment(payment_id, creator_id)
        url = self._storage.upload(
            f"payments/{payment.invoice_id}/{payment_id}/{filename}", content, content_type
        )
        with self._store.lock(f"invoice:{payment.invoice_id}"):
            payment = self._load_payment(payment_id, creator_id)
            payment.proof_url = url
            self._store.save_payment(payment)
        return payment

    def list_payments(self, invoice_id: str, creator_id: str) -> list[Payment]:
        load_owned_invoice(self._store, invoice_id, creator_id)
        return self._store.payments_for_invoice(invoice_id)

    def payment_summary(self, invoice_id: str, creator_id: str) -> PaymentSummary:
        invoice = load_owned_invoice(self._store, invoice_id, creator_id)
        payments = [p for p in self._store.payments_for_invoice(invoice_id) if p.counts_toward_balance]
        paid = paid_total(payments)
        total = invoice.final_amount
        percentage = to_paise(paid / total * HUNDRED) if total > ZERO else ZERO
        return PaymentSummary(
            total_amount=total,
            paid_amount=paid,
            remaining_amount=total - paid,
            percentage_paid=percentage,
            payment_count=len(payments),
        )

    # === Internals ===

    def _load_payment(self, payment_id: str, creator_id: str) -> Payment:
        payment = self._store.get_payment(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found", entity=f"Payment:{payment_id}")
        if payment.creator_id != creator_id:
            raise OwnershipError(
                f"Payment {payment_id} does not belong to creator {creator_id}",
                field="creator_id",
                entity=f"Payment:{payment_id}",
                rule="owner_matches",
            )
        return payment

    def _render_receipt(self, payment: Payment, invoice: Invoice | None) -> str | None:
        if self._renderer is None or invoice is None:
            return None
        try:
            return self._renderer.render_receipt(payment, invoice)
        except UpstreamError as e:
            self._logger.warning(
                "receipt_render_failed", payment_id=payment.payment_id, error=str(e)
            )
            return None
