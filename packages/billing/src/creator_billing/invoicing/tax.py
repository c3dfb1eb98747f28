"""GST/TDS tax calculation.

All functions here are pure. Amounts are carried as exact Decimals, so a
recomputation over unchanged inputs yields identical figures and the
CGST/SGST halves always add up to the GST amount.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from datetime import date
from decimal import Decimal

from creator_billing.invoicing.models import (
    Discount,
    GSTSettings,
    GSTType,
    Invoice,
    LineItem,
    TaxCalculation,
    TDSSettings,
)
from creator_billing.money import ZERO, floor_at_zero, percent_of

TWO = Decimal("2")


def apply_discount(amount: Decimal, discount: Discount | None) -> Decimal:
    """Reduce ``amount`` by a discount, never going below zero.

    A percentage discount takes precedence over a fixed amount.
    """
    if discount is None:
        return amount
    if discount.percentage is not None:
        return floor_at_zero(amount - percent_of(amount, discount.percentage))
    if discount.amount is not None:
        return floor_at_zero(amount - discount.amount)
    return amount


def line_item_amount(item: LineItem) -> Decimal:
    return apply_discount(item.quantity * item.rate, item.discount)


def price_line_items(items: Iterable[LineItem]) -> list[LineItem]:
    """Return copies of ``items`` with ``amount`` set from quantity, rate and discount."""
    return [replace(item, amount=line_item_amount(item)) for item in items]


def exemption_is_valid(tds: TDSSettings, as_of: date) -> bool:
    """A TDS exemption needs a certificate number and an expiry on or after ``as_of``."""
    certificate = tds.certificate
    if not tds.has_exemption or certificate is None:
        return False
    if not certificate.certificate_number or certificate.valid_until is None:
        return False
    return certificate.valid_until >= as_of


def calculate_tax(
    line_items: Iterable[LineItem],
    overall_discount: Discount | None,
    gst: GSTSettings,
    tds: TDSSettings,
    as_of: date,
) -> TaxCalculation:
    """Compute the full tax breakdown for a set of line items.

    Args:
        line_items: Items to price. Their stored ``amount`` is ignored and
            recomputed from quantity, rate and discount.
        overall_discount: Discount applied to the subtotal.
        gst: GST configuration.
        tds: TDS configuration, including any exemption certificate.
        as_of: Date against which exemption certificates are checked.

    Returns:
        Every intermediate amount of the derivation.
    """
    subtotal = sum((line_item_amount(item) for item in line_items), ZERO)
    taxable_amount = apply_discount(subtotal, overall_discount)
    total_discount = subtotal - taxable_amount

    cgst_amount = sgst_amount = igst_amount = gst_amount = ZERO
    if gst.apply_gst:
        gst_amount = percent_of(taxable_amount, gst.gst_rate)
        if gst.gst_type == GSTType.CGST_SGST:
            cgst_amount = sgst_amount = gst_amount / TWO
        else:
            igst_amount = gst_amount
    total_with_gst = taxable_amount + gst_amount

    tds_amount = ZERO
    if tds.apply_tds and not exemption_is_valid(tds, as_of):
        tds_amount = percent_of(total_with_gst, tds.tds_rate)

    return TaxCalculation(
        subtotal=subtotal,
        total_discount=total_discount,
        taxable_amount=taxable_amount,
        cgst_amount=cgst_amount,
        sgst_amount=sgst_amount,
        igst_amount=igst_amount,
        gst_amount=gst_amount,
        total_with_gst=total_with_gst,
        tds_amount=tds_amount,
        final_amount=total_with_gst - tds_amount,
    )


def recalculate_invoice(invoice: Invoice) -> TaxCalculation:
    """Reprice an invoice's line items and overwrite its tax snapshot.

    Exemptions are evaluated as of the invoice date, so the result depends
    only on the invoice itself.
    """
    invoice.line_items = price_line_items(invoice.line_items)
    calculation = calculate_tax(
        invoice.line_items,
        invoice.invoice_settings.overall_discount,
        invoice.tax_settings.gst,
        invoice.tax_settings.tds,
        as_of=invoice.invoice_settings.invoice_date.date(),
    )
    invoice.tax_settings.calculation = calculation
    return calculation
