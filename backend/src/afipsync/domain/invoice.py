"""
Invoice entity and its AFIP rendering.

An Invoice is derived from exactly one Order and lives only for the
duration of one processing attempt; the ledger persists the outcome,
never the invoice itself.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from afipsync.errors import ValidationError

from .amounts import VatRate, calculate_invoice_amounts, round2
from .dates import validate_invoice_date
from .models import (
    CURRENCY_CODES,
    BuyerVatCondition,
    DocumentType,
    InvoiceConcept,
    InvoiceType,
    InvoicingPolicy,
    Order,
)
from .validation import CUIT


@dataclass(frozen=True)
class InvoiceOptions:
    """
    Per-order overrides of the invoicing policy.

    ``None`` means "use the policy default".
    """
    invoice_date: date | None = None
    include_vat: bool | None = None
    vat_rate: VatRate | None = None
    buyer_cuit: CUIT | None = None


@dataclass(frozen=True)
class Invoice:
    """
    A voucher ready to be submitted to AFIP.

    Invariant: ``round2(net_amount + vat_amount) == total_amount``.
    """
    order_number: str
    net_amount: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    currency: str
    invoice_date: date
    concept: InvoiceConcept
    invoice_type: InvoiceType
    doc_type: DocumentType = DocumentType.UNIDENTIFIED
    doc_number: str | None = None
    vat_rate: VatRate | None = None
    service_from: date | None = None
    service_to: date | None = None
    due_date: date | None = None

    def __post_init__(self) -> None:
        errors: list[str] = []

        if self.net_amount <= 0:
            errors.append("net amount must be positive")
        if self.vat_amount < 0:
            errors.append("VAT amount cannot be negative")
        if self.total_amount <= 0:
            errors.append("total amount must be positive")
        if round2(self.net_amount + self.vat_amount) != self.total_amount:
            errors.append("total amount must equal net amount plus VAT amount")
        if self.currency not in CURRENCY_CODES:
            errors.append(f"unsupported currency {self.currency}")
        if self.invoice_type is InvoiceType.TYPE_B and self.vat_rate is None:
            errors.append("Type B invoices need a VAT rate")
        if self.concept.includes_services and not (
            self.service_from and self.service_to and self.due_date
        ):
            errors.append("service dates are required for service invoices")

        if errors:
            raise ValidationError.for_field("invoice", ", ".join(errors))

    @classmethod
    def from_order(
        cls,
        order: Order,
        policy: InvoicingPolicy,
        options: InvoiceOptions | None = None,
        today: date | None = None,
    ) -> "Invoice":
        """
        Build the invoice for an order.

        Amounts follow the policy's VAT settings unless overridden; the
        invoice date defaults to the trade date and must satisfy the lag
        rule as of ``today``.

        Raises:
            DomainError: the invoice date breaks the lag rule.
            ValidationError: the resulting amounts are inconsistent.
        """
        options = options or InvoiceOptions()
        include_vat = policy.include_vat if options.include_vat is None else options.include_vat
        vat_rate = options.vat_rate or policy.vat_rate

        amounts = calculate_invoice_amounts(
            order.total_price,
            include_vat=include_vat,
            vat_rate=vat_rate,
            # Whole-unit rounding only applies to vouchers without a VAT breakdown
            round_to_whole_units=policy.round_to_whole_units and not include_vat,
        )

        invoice_date = validate_invoice_date(
            order.order_date,
            options.invoice_date or order.order_date,
            reference_date=today,
            max_lag_days=policy.lag_days,
        )

        buyer = options.buyer_cuit or order.buyer_cuit
        service_day = order.order_date if policy.concept.includes_services else None

        return cls(
            order_number=order.order_number,
            net_amount=amounts.net,
            vat_amount=amounts.vat,
            total_amount=amounts.total,
            currency=order.currency,
            invoice_date=invoice_date,
            concept=policy.concept,
            invoice_type=InvoiceType.TYPE_B if include_vat else InvoiceType.TYPE_C,
            doc_type=DocumentType.CUIT if buyer else DocumentType.UNIDENTIFIED,
            doc_number=buyer.value if buyer else None,
            vat_rate=vat_rate if include_vat else None,
            service_from=service_day,
            service_to=service_day,
            due_date=service_day,
        )

    @property
    def has_vat(self) -> bool:
        return self.invoice_type is InvoiceType.TYPE_B

    @property
    def is_final_consumer(self) -> bool:
        return self.doc_type is DocumentType.UNIDENTIFIED

    def to_authority_format(self, sales_point: int, voucher_number: int = 0) -> dict[str, Any]:
        """
        Render the FECAESolicitar detail for this invoice.

        ``voucher_number`` is a placeholder; the gateway fills in the next
        number right before submission.
        """
        payload: dict[str, Any] = {
            "CantReg": 1,
            "PtoVta": sales_point,
            "CbteTipo": int(self.invoice_type),
            "Concepto": int(self.concept),
            "DocTipo": int(self.doc_type),
            "DocNro": int(self.doc_number) if self.doc_number else 0,
            "CbteDesde": voucher_number,
            "CbteHasta": voucher_number,
            "CbteFch": _compact(self.invoice_date),
            "ImpTotal": float(self.total_amount),
            "ImpTotConc": 0,
            "ImpNeto": float(self.net_amount),
            "ImpOpEx": 0,
            "ImpIVA": float(self.vat_amount),
            "ImpTrib": 0,
            "MonId": CURRENCY_CODES[self.currency],
            "MonCotiz": 1,
            "CondicionIVAReceptorId": int(
                BuyerVatCondition.FINAL_CONSUMER if self.is_final_consumer
                else BuyerVatCondition.REGISTERED
            ),
        }

        if self.concept.includes_services:
            payload["FchServDesde"] = _compact(self.service_from)
            payload["FchServHasta"] = _compact(self.service_to)
            payload["FchVtoPago"] = _compact(self.due_date)

        if self.has_vat:
            payload["Iva"] = [{
                "Id": self.vat_rate.afip_id,
                "BaseImp": float(self.net_amount),
                "Importe": float(self.vat_amount),
            }]

        return payload


def _compact(value: date) -> str:
    """AFIP date format: YYYYMMDD."""
    return value.strftime("%Y%m%d")
