"""
Input validators for tax IDs, monetary amounts and order numbers.

Pure functions and immutable values, no I/O. Every validator either
returns the normalized value or raises ``ValidationError`` naming the
offending field.

CUIT checksum (AFIP algorithm):
    multiply the first 10 digits by 5,4,3,2,7,6,5,4,3,2 and sum them,
    r = sum mod 11, check digit = 0 if r == 0, 9 if r == 1, else 11 - r.
"""

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from afipsync.errors import ValidationError


CUIT_WEIGHTS = (5, 4, 3, 2, 7, 6, 5, 4, 3, 2)

# Separators accepted in user-entered CUITs: 20-12345678-6, 20.12345678.6
_CUIT_SEPARATORS = re.compile(r"[-\s./]")

# Display labels by prefix; not used for any correctness decision
CUIT_KINDS = {
    "20": "Male Individual",
    "23": "Self-employed Male",
    "24": "Self-employed Male (Monotributo)",
    "27": "Female Individual / Self-employed Female",
    "30": "Legal Entity",
    "33": "Self-employed Foreign",
    "34": "Foreign Company",
}
_COMPANY_PREFIXES = frozenset({"30", "33", "34"})

# AFIP maximum amount for a single voucher
MAX_INVOICE_AMOUNT = Decimal("999999999")

_ORDER_NUMBER_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
ORDER_NUMBER_MAX_LENGTH = 255


def cuit_check_digit(first_ten: str) -> int:
    """Compute the expected check digit for the first 10 CUIT digits."""
    total = sum(int(digit) * weight for digit, weight in zip(first_ten, CUIT_WEIGHTS))
    remainder = total % 11
    if remainder == 0:
        return 0
    if remainder == 1:
        return 9
    return 11 - remainder


def normalize_cuit(raw: str | int) -> str:
    """
    Normalize a CUIT to its 11 bare digits.

    Raises:
        ValidationError: wrong length, non-numeric characters or bad checksum.
    """
    digits = _CUIT_SEPARATORS.sub("", str(raw).strip())

    if len(digits) != 11:
        raise ValidationError.for_field("cuit", f"CUIT must be 11 digits (got {len(digits)})")
    if not (digits.isascii() and digits.isdigit()):
        raise ValidationError.for_field("cuit", "CUIT must contain only numbers")
    if cuit_check_digit(digits[:10]) != int(digits[10]):
        raise ValidationError.for_field("cuit", "CUIT checksum is invalid")

    return digits


def format_cuit(raw: str | int) -> str:
    """Render a valid CUIT as XX-XXXXXXXX-X."""
    digits = normalize_cuit(raw)
    return f"{digits[:2]}-{digits[2:10]}-{digits[10]}"


@dataclass(frozen=True)
class CUIT:
    """
    Argentine tax ID (Clave Única de Identificación Tributaria).

    Holds the normalized 11-digit string. Use ``CUIT.parse`` for raw
    user input with separators; the constructor only accepts digits.
    """
    value: str

    def __post_init__(self) -> None:
        if normalize_cuit(self.value) != self.value:
            raise ValidationError.for_field("cuit", "CUIT must be given as 11 bare digits")

    @classmethod
    def parse(cls, raw: str | int) -> "CUIT":
        return cls(normalize_cuit(raw))

    @staticmethod
    def is_valid(raw: str | int) -> bool:
        try:
            normalize_cuit(raw)
        except ValidationError:
            return False
        return True

    @property
    def formatted(self) -> str:
        return f"{self.value[:2]}-{self.value[2:10]}-{self.value[10]}"

    @property
    def kind(self) -> str:
        """Human readable taxpayer category, for display only."""
        return CUIT_KINDS.get(self.value[:2], "Unknown")

    def is_company(self) -> bool:
        return self.value[:2] in _COMPANY_PREFIXES

    def is_individual(self) -> bool:
        return not self.is_company()

    def __str__(self) -> str:
        return self.formatted


def to_decimal(value: Decimal | int | float | str, field: str = "amount") -> Decimal:
    """Convert a numeric input to Decimal without binary float artifacts."""
    if isinstance(value, bool):
        raise ValidationError.for_field(field, "must be a valid number")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # str() yields the shortest repr, so 0.1 stays 0.1
        value = str(value)
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError.for_field(field, "must be a valid number") from None


def validate_amount(
    value: Decimal | int | float | str,
    field: str = "amount",
    minimum: Decimal = Decimal("0"),
    maximum: Decimal = MAX_INVOICE_AMOUNT,
    allow_zero: bool = False,
) -> Decimal:
    """
    Validate a monetary magnitude.

    Accepts values in ``(minimum, maximum]``, or ``[minimum, maximum]`` when
    ``allow_zero`` is set, with at most 2 decimal digits.

    Returns:
        The amount as a Decimal.
    """
    amount = to_decimal(value, field)

    if amount.is_nan():
        raise ValidationError.for_field(field, "must be a valid number")
    if not amount.is_finite():
        raise ValidationError.for_field(field, "must be a finite number")

    if allow_zero:
        if amount < minimum:
            raise ValidationError.for_field(field, f"must be at least {minimum}")
    elif amount <= minimum:
        raise ValidationError.for_field(field, f"must be greater than {minimum}")

    if amount > maximum:
        raise ValidationError.for_field(field, f"cannot exceed {maximum:,}")

    # 120.50 and 120.500 are the same amount; count significant decimals only
    exponent = amount.normalize().as_tuple().exponent
    if isinstance(exponent, int) and exponent < -2:
        raise ValidationError.for_field(field, "cannot have more than 2 decimal places")

    return amount


def validate_order_number(value: str | int) -> str:
    """Exchange order numbers: 1-255 chars of letters, digits, '_' or '-'."""
    text = str(value).strip()
    if not text:
        raise ValidationError.for_field("order_number", "cannot be empty")
    if len(text) > ORDER_NUMBER_MAX_LENGTH:
        raise ValidationError.for_field(
            "order_number", f"cannot exceed {ORDER_NUMBER_MAX_LENGTH} characters"
        )
    if not _ORDER_NUMBER_PATTERN.fullmatch(text):
        raise ValidationError.for_field(
            "order_number", "may only contain letters, digits, '_' and '-'"
        )
    return text
