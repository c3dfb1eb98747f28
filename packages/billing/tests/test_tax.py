"""Tests for GST/TDS tax calculation."""

from dataclasses import replace
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest

from creator_billing.invoicing.models import (
    ClientDetails,
    Discount,
    ExemptionCertificate,
    GSTSettings,
    GSTType,
    Invoice,
    InvoiceMetadata,
    InvoiceSettings,
    InvoiceType,
    LineItem,
    TaxSettings,
    TDSSettings,
)
from creator_billing.invoicing.tax import (
    apply_discount,
    calculate_tax,
    exemption_is_valid,
    price_line_items,
    recalculate_invoice,
)

TODAY = date(2025, 3, 10)


def item(quantity, rate, discount=None):
    return LineItem(
        description="Sponsored post",
        quantity=Decimal(str(quantity)),
        rate=Decimal(str(rate)),
        discount=discount,
    )


def split_gst(rate="18"):
    return GSTSettings(apply_gst=True, gst_rate=Decimal(rate), gst_type=GSTType.CGST_SGST)


class TestScenarios:
    """Worked examples."""

    def test_single_item_split_gst_no_tds(self):
        """10000 with 18% split GST and no TDS."""
        calc = calculate_tax([item(1, 10000)], None, split_gst(), TDSSettings(), TODAY)

        assert calc.subtotal == Decimal("10000")
        assert calc.gst_amount == Decimal("1800")
        assert calc.cgst_amount == Decimal("900")
        assert calc.sgst_amount == Decimal("900")
        assert calc.igst_amount == Decimal("0")
        assert calc.final_amount == Decimal("11800")

    def test_single_item_with_tds(self):
        """Same as above with 10% TDS on the GST-inclusive total."""
        tds = TDSSettings(apply_tds=True, tds_rate=Decimal("10"))
        calc = calculate_tax([item(1, 10000)], None, split_gst(), tds, TODAY)

        assert calc.total_with_gst == Decimal("11800")
        assert calc.tds_amount == Decimal("1180")
        assert calc.final_amount == Decimal("10620")


class TestDiscounts:
    """Tests for per-item and overall discounts."""

    def test_percentage_wins_over_fixed(self):
        discount = Discount(percentage=Decimal("10"), amount=Decimal("5000"))
        assert apply_discount(Decimal("1000"), discount) == Decimal("900")

    def test_zero_percentage_still_wins_over_fixed(self):
        discount = Discount(percentage=Decimal("0"), amount=Decimal("500"))
        assert apply_discount(Decimal("1000"), discount) == Decimal("1000")

    def test_zero_fixed_amount(self):
        assert apply_discount(Decimal("1000"), Discount(amount=Decimal("0"))) == Decimal("1000")

    def test_fixed_discount_floors_at_zero(self):
        assert apply_discount(Decimal("1000"), Discount.fixed(5000)) == Decimal("0")

    def test_no_discount_is_identity(self):
        assert apply_discount(Decimal("1234.56"), None) == Decimal("1234.56")

    def test_overall_discount_reduces_taxable_amount(self):
        calc = calculate_tax(
            [item(2, 5000), item(1, 2000, Discount.percent(50))],
            Discount.fixed(1000),
            split_gst(),
            TDSSettings(),
            TODAY,
        )

        assert calc.subtotal == Decimal("11000")
        assert calc.taxable_amount == Decimal("10000")
        assert calc.total_discount == Decimal("1000")
        assert calc.gst_amount == Decimal("1800")

    def test_overall_discount_cannot_go_negative(self):
        calc = calculate_tax([item(1, 500)], Discount.fixed(800), split_gst(), TDSSettings(), TODAY)

        assert calc.taxable_amount == Decimal("0")
        assert calc.total_discount == Decimal("500")
        assert calc.final_amount == Decimal("0")


class TestGST:
    """Tests for GST variants."""

    def test_igst_takes_full_amount(self):
        gst = GSTSettings(apply_gst=True, gst_rate=Decimal("18"), gst_type=GSTType.IGST)
        calc = calculate_tax([item(1, 10000)], None, gst, TDSSettings(), TODAY)

        assert calc.igst_amount == Decimal("1800")
        assert calc.cgst_amount == Decimal("0")
        assert calc.sgst_amount == Decimal("0")

    def test_gst_not_applied(self):
        calc = calculate_tax([item(1, 10000)], None, GSTSettings(apply_gst=False), TDSSettings(), TODAY)

        assert calc.gst_amount == Decimal("0")
        assert calc.total_with_gst == calc.taxable_amount

    def test_split_halves_are_exact_for_odd_amounts(self):
        calc = calculate_tax([item(1, "333.33")], None, split_gst(), TDSSettings(), TODAY)

        assert calc.cgst_amount == calc.sgst_amount
        assert calc.cgst_amount + calc.sgst_amount == calc.gst_amount


class TestTDSExemption:
    """Tests for TDS exemption certificates."""

    def tds(self, certificate):
        return TDSSettings(apply_tds=True, tds_rate=Decimal("10"), has_exemption=True, certificate=certificate)

    def test_valid_certificate_waives_tds(self):
        tds = self.tds(ExemptionCertificate("CERT-1", valid_until=TODAY + timedelta(days=30)))
        calc = calculate_tax([item(1, 10000)], None, split_gst(), tds, TODAY)

        assert calc.tds_amount == Decimal("0")
        assert calc.final_amount == Decimal("11800")

    def test_certificate_valid_through_its_last_day(self):
        tds = self.tds(ExemptionCertificate("CERT-1", valid_until=TODAY))
        assert exemption_is_valid(tds, TODAY) is True

    def test_expired_certificate_is_ignored(self):
        tds = self.tds(ExemptionCertificate("CERT-1", valid_until=TODAY - timedelta(days=1)))
        calc = calculate_tax([item(1, 10000)], None, split_gst(), tds, TODAY)

        assert calc.tds_amount == Decimal("1180")

    def test_certificate_without_expiry_is_ignored(self):
        tds = self.tds(ExemptionCertificate("CERT-1", valid_until=None))
        assert exemption_is_valid(tds, TODAY) is False

    def test_exemption_flag_without_certificate_is_ignored(self):
        tds = self.tds(None)
        assert exemption_is_valid(tds, TODAY) is False


class TestProperties:
    """Invariants that hold for any input."""

    @pytest.mark.parametrize(
        "items, discount",
        [
            ([item(1, 10000)], None),
            ([item(3, "499.99"), item(1, "0.01")], Discount.percent("12.5")),
            ([item(2, 750, Discount.fixed(100)), item(5, 120)], Discount.fixed(250)),
            ([item(7, "1234.57", Discount.percent(3))], None),
        ],
    )
    def test_breakdown_is_consistent(self, items, discount):
        tds = TDSSettings(apply_tds=True, tds_rate=Decimal("10"))
        calc = calculate_tax(items, discount, split_gst(), tds, TODAY)
        priced = price_line_items(items)

        assert sum(i.amount for i in priced) == calc.subtotal
        assert calc.cgst_amount == calc.sgst_amount == calc.gst_amount / 2
        assert calc.igst_amount == 0
        assert calc.final_amount == calc.taxable_amount + calc.gst_amount - calc.tds_amount

    def test_recalculation_is_idempotent(self):
        now = datetime(2025, 3, 10, tzinfo=UTC)
        invoice = Invoice(
            invoice_id="inv-1",
            invoice_number="INV/2025/03/0001",
            invoice_type=InvoiceType.INDIVIDUAL,
            creator_id="creator-1",
            deal_ids=["deal-1"],
            client=ClientDetails(name="Nike India"),
            line_items=[item(3, "333.33", Discount.percent(7)), item(1, 999)],
            tax_settings=TaxSettings(
                gst=split_gst(), tds=TDSSettings(apply_tds=True, tds_rate=Decimal("2"))
            ),
            invoice_settings=InvoiceSettings(
                invoice_date=now,
                due_date=now + timedelta(days=30),
                overall_discount=Discount.percent(5),
            ),
            metadata=InvoiceMetadata(created_by="creator-1"),
            created_at=now,
            updated_at=now,
        )

        first = recalculate_invoice(invoice)
        second = recalculate_invoice(replace(invoice))

        assert first == second
        assert invoice.final_amount == first.final_amount
