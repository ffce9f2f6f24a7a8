"""
Invoice amount calculation.

All arithmetic is Decimal with ROUND_HALF_UP to cents. VAT is derived
as ``total - net`` after rounding the net, so ``net + vat == total``
holds exactly for every split.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from afipsync.errors import ValidationError


CENTS = Decimal("0.01")
UNITS = Decimal("1")
ZERO = Decimal("0.00")


class VatRate(Enum):
    """
    Argentine VAT rates with their AFIP alícuota ids.

    The id goes in the ``Iva`` block of a Type B voucher.
    """
    STANDARD = ("0.21", 5)
    REDUCED = ("0.105", 4)
    MINIMUM = ("0.025", 9)
    ZERO = ("0", 3)

    def __init__(self, rate: str, afip_id: int) -> None:
        self.rate = Decimal(rate)
        self.afip_id = afip_id

    @classmethod
    def from_rate(cls, rate: Decimal | float | str) -> "VatRate":
        wanted = Decimal(str(rate))
        for member in cls:
            if member.rate == wanted:
                return member
        raise ValidationError.for_field("vat_rate", f"Unsupported VAT rate: {rate}")


def round2(amount: Decimal) -> Decimal:
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def round_units(amount: Decimal) -> Decimal:
    """Round to whole currency units, keeping two decimal places."""
    return amount.quantize(UNITS, rounding=ROUND_HALF_UP).quantize(CENTS)


@dataclass(frozen=True)
class InvoiceAmounts:
    net: Decimal
    vat: Decimal
    total: Decimal

    @property
    def is_consistent(self) -> bool:
        return round2(self.net + self.vat) == self.total


def should_apply_vat(is_monotributista: bool = True, is_final_consumer: bool = True) -> bool:
    """
    Whether VAT is itemized for a seller/buyer VAT condition pair.

    A Monotributo seller invoicing a final consumer issues Type C vouchers
    with no VAT breakdown; every other pairing itemizes it.
    """
    return not (is_monotributista and is_final_consumer)


def calculate_invoice_amounts(
    total: Decimal,
    include_vat: bool = False,
    vat_rate: VatRate = VatRate.STANDARD,
    round_to_whole_units: bool = False,
) -> InvoiceAmounts:
    """
    Split a gross total into net and VAT.

    Args:
        total: Gross amount paid by the buyer.
        include_vat: Itemize VAT out of the total.
        vat_rate: Rate used when ``include_vat`` is set.
        round_to_whole_units: Round the total to whole currency units first.
    """
    gross = round_units(total) if round_to_whole_units else round2(total)

    if gross <= 0:
        raise ValidationError.for_field("total_amount", "must be greater than 0")

    if not include_vat:
        return InvoiceAmounts(net=gross, vat=ZERO, total=gross)

    net = round2(gross / (Decimal(1) + vat_rate.rate))
    return InvoiceAmounts(net=net, vat=gross - net, total=gross)
