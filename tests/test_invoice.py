"""
Unit tests for amounts, the Invoice entity and its AFIP rendering.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from afipsync.domain.amounts import VatRate, calculate_invoice_amounts, round2
from afipsync.domain.invoice import Invoice, InvoiceOptions
from afipsync.domain.models import (
    DocumentType,
    InvoiceConcept,
    InvoiceType,
    InvoicingPolicy,
)
from afipsync.domain.validation import CUIT
from afipsync.errors import DomainError, ValidationError

from conftest import TODAY, make_order


class TestCalculateAmounts:
    def test_without_vat(self):
        amounts = calculate_invoice_amounts(Decimal("1000.55"))
        assert (amounts.net, amounts.vat, amounts.total) == (Decimal("1000.55"), Decimal("0"), Decimal("1000.55"))

    def test_whole_unit_rounding(self):
        amounts = calculate_invoice_amounts(Decimal("120675.50"), round_to_whole_units=True)
        assert amounts.total == Decimal("120676")

    @pytest.mark.parametrize("rate", list(VatRate))
    @pytest.mark.parametrize("total", ["0.01", "1.00", "99.99", "1210.00", "120675.38", "999999.99"])
    def test_vat_split_is_consistent(self, rate, total):
        amounts = calculate_invoice_amounts(Decimal(total), include_vat=True, vat_rate=rate)
        assert amounts.is_consistent
        assert amounts.total == Decimal(total)
        assert amounts.vat >= 0

    def test_standard_rate(self):
        amounts = calculate_invoice_amounts(Decimal("1210.00"), include_vat=True)
        assert amounts.net == Decimal("1000.00")
        assert amounts.vat == Decimal("210.00")

    def test_rounding_to_zero_is_rejected(self):
        with pytest.raises(ValidationError):
            calculate_invoice_amounts(Decimal("0.40"), round_to_whole_units=True)

    def test_vat_rate_lookup(self):
        assert VatRate.from_rate("0.105") is VatRate.REDUCED
        assert VatRate.from_rate(0.21).afip_id == 5
        with pytest.raises(ValidationError):
            VatRate.from_rate("0.19")


class TestInvoiceFromOrder:
    def test_scenario_a_no_vat_whole_units(self):
        order = make_order("A1", days_ago=3, total="120675.38")

        invoice = Invoice.from_order(order, InvoicingPolicy(), today=TODAY)

        assert invoice.invoice_date == order.order_date
        assert invoice.net_amount == Decimal("120675")
        assert invoice.vat_amount == Decimal("0")
        assert invoice.total_amount == Decimal("120675")
        assert invoice.invoice_type is InvoiceType.TYPE_C
        assert invoice.doc_type is DocumentType.UNIDENTIFIED

    def test_vat_itemized_is_type_b(self):
        order = make_order("B1", total="1210.00")
        invoice = Invoice.from_order(
            order, InvoicingPolicy(), InvoiceOptions(include_vat=True), today=TODAY
        )
        assert invoice.invoice_type is InvoiceType.TYPE_B
        assert invoice.net_amount == Decimal("1000.00")
        assert invoice.vat_rate is VatRate.STANDARD
        assert round2(invoice.net_amount + invoice.vat_amount) == invoice.total_amount

    def test_buyer_cuit(self):
        order = make_order("C1")
        invoice = Invoice.from_order(
            order,
            InvoicingPolicy(),
            InvoiceOptions(buyer_cuit=CUIT.parse("20-12345678-6")),
            today=TODAY,
        )
        assert invoice.doc_type is DocumentType.CUIT
        assert invoice.doc_number == "20123456786"
        assert not invoice.is_final_consumer

    def test_date_outside_window(self):
        order = make_order("D1", days_ago=12)
        late = order.order_date + timedelta(days=11)
        with pytest.raises(DomainError):
            Invoice.from_order(order, InvoicingPolicy(), InvoiceOptions(invoice_date=late), today=TODAY)

    def test_future_date(self):
        order = make_order("D2", days_ago=1)
        with pytest.raises(DomainError):
            Invoice.from_order(
                order, InvoicingPolicy(), InvoiceOptions(invoice_date=TODAY + timedelta(days=1)), today=TODAY
            )

    def test_products_have_no_service_dates(self):
        order = make_order("E1", days_ago=2)
        policy = InvoicingPolicy(concept=InvoiceConcept.PRODUCTS)
        invoice = Invoice.from_order(order, policy, today=TODAY)
        assert invoice.service_from is None
        assert "FchServDesde" not in invoice.to_authority_format(sales_point=2)

    def test_inconsistent_amounts_are_rejected(self):
        with pytest.raises(ValidationError):
            Invoice(
                order_number="X",
                net_amount=Decimal("100.00"),
                vat_amount=Decimal("21.00"),
                total_amount=Decimal("120.00"),
                currency="ARS",
                invoice_date=TODAY,
                concept=InvoiceConcept.PRODUCTS,
                invoice_type=InvoiceType.TYPE_B,
                vat_rate=VatRate.STANDARD,
            )


class TestAuthorityFormat:
    def test_type_c_services(self):
        order = make_order("F1", days_ago=3, total="120675.38")
        invoice = Invoice.from_order(order, InvoicingPolicy(), today=TODAY)

        payload = invoice.to_authority_format(sales_point=2)
        expected_date = (TODAY - timedelta(days=3)).strftime("%Y%m%d")

        assert payload["PtoVta"] == 2
        assert payload["CbteTipo"] == 11
        assert payload["Concepto"] == 2
        assert payload["DocTipo"] == 99
        assert payload["DocNro"] == 0
        assert payload["CbteDesde"] == payload["CbteHasta"] == 0
        assert payload["CbteFch"] == expected_date
        assert payload["ImpTotal"] == 120675.0
        assert payload["ImpNeto"] == 120675.0
        assert payload["ImpIVA"] == 0.0
        assert payload["MonId"] == "PES"
        assert payload["MonCotiz"] == 1
        assert payload["CondicionIVAReceptorId"] == 5
        assert payload["FchServDesde"] == payload["FchServHasta"] == payload["FchVtoPago"] == expected_date
        assert "Iva" not in payload

    def test_type_b_has_iva_block(self):
        order = make_order("G1", total="1210.00")
        invoice = Invoice.from_order(
            order,
            InvoicingPolicy(),
            InvoiceOptions(include_vat=True, vat_rate=VatRate.STANDARD),
            today=TODAY,
        )
        payload = invoice.to_authority_format(sales_point=3, voucher_number=42)

        assert payload["CbteTipo"] == 6
        assert payload["CbteDesde"] == 42
        assert payload["Iva"] == [{"Id": 5, "BaseImp": 1000.0, "Importe": 210.0}]

    def test_compact_date(self):
        order = make_order("H1", days_ago=0)
        invoice = Invoice.from_order(order, InvoicingPolicy(), today=TODAY)
        assert invoice.to_authority_format(2)["CbteFch"] == date(2025, 3, 20).strftime("%Y%m%d") == "20250320"
