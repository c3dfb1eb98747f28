"""Invoicing: tax calculation, consolidation, lifecycle and payments."""

from creator_billing.invoicing.assembler import (
    ClientOverride,
    InvoiceAssembler,
    InvoiceOptions,
    TaxOverride,
)
from creator_billing.invoicing.ledger import PaymentLedger, PaymentSummary
from creator_billing.invoicing.lifecycle import INVOICE_MACHINE, InvoiceService, InvoiceUpdate
from creator_billing.invoicing.reminders import ReminderRunResult, ReminderScheduler
from creator_billing.invoicing.selection import DealSelector, SelectionRequest
from creator_billing.invoicing.tax import calculate_tax, recalculate_invoice

__all__ = [
    # Assembly
    "InvoiceAssembler",
    "ClientOverride",
    "TaxOverride",
    "InvoiceOptions",
    "DealSelector",
    "SelectionRequest",
    # Tax
    "calculate_tax",
    "recalculate_invoice",
    # Lifecycle & payments
    "INVOICE_MACHINE",
    "InvoiceService",
    "InvoiceUpdate",
    "PaymentLedger",
    "PaymentSummary",
    "ReminderScheduler",
    "ReminderRunResult",
]
