"""
Domain models for P2P order invoicing.

These models represent exchange orders, the authority's authorization
codes and the ledger's view of each order. They carry no I/O.

Design Decisions:
- Frozen dataclasses: an Order only changes by producing a new Order
  with its processing outcome (``with_outcome``)
- Decimal for all monetary values
- AFIP codes are IntEnums so they render straight into the wire format
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any

from afipsync.errors import DomainError, ValidationError

from .amounts import VatRate
from .dates import MAX_LAG_DAYS, parse_date
from .validation import CUIT, to_decimal, validate_amount, validate_order_number


class TradeType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class ProcessingMethod(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class InvoiceConcept(IntEnum):
    """AFIP Concepto: what is being invoiced."""
    PRODUCTS = 1
    SERVICES = 2
    PRODUCTS_AND_SERVICES = 3

    @property
    def includes_services(self) -> bool:
        return self is not InvoiceConcept.PRODUCTS


class InvoiceType(IntEnum):
    """AFIP CbteTipo for the vouchers this system issues."""
    TYPE_B = 6   # VAT itemized
    TYPE_C = 11  # Monotributo, no VAT breakdown


class DocumentType(IntEnum):
    """AFIP DocTipo: how the buyer is identified."""
    CUIT = 80
    CUIL = 86
    DNI = 96
    UNIDENTIFIED = 99


class BuyerVatCondition(IntEnum):
    """AFIP CondicionIVAReceptorId."""
    REGISTERED = 1
    EXEMPT = 4
    FINAL_CONSUMER = 5
    MONOTAX = 6


# Exchange fiat code -> AFIP MonId
CURRENCY_CODES = {
    "ARS": "PES",
    "USD": "DOL",
}


@dataclass(frozen=True)
class InvoicingPolicy:
    """
    Explicit invoicing configuration handed to the domain services.

    Built from settings once at startup; tests construct it directly.
    """
    sales_point: int = 2
    concept: InvoiceConcept = InvoiceConcept.SERVICES
    max_lag_days: int = MAX_LAG_DAYS
    products_max_lag_days: int = 5
    include_vat: bool = False
    vat_rate: VatRate = VatRate.STANDARD
    round_to_whole_units: bool = True

    def __post_init__(self) -> None:
        if self.sales_point < 1:
            raise ValidationError.for_field("sales_point", "must be a positive number")
        if self.max_lag_days < 0 or self.products_max_lag_days < 0:
            raise ValidationError.for_field("max_lag_days", "cannot be negative")

    @property
    def lag_days(self) -> int:
        """Invoicing window for the configured concept."""
        if self.concept is InvoiceConcept.PRODUCTS:
            return self.products_max_lag_days
        return self.max_lag_days


@dataclass(frozen=True)
class CAE:
    """
    Código de Autorización Electrónico issued by AFIP for an accepted voucher.

    Stored as 14 digits; shorter codes are left-padded with zeros.
    """
    value: str
    expiration: date | None = None

    def __post_init__(self) -> None:
        digits = str(self.value).replace("-", "").strip()
        if not (digits.isascii() and digits.isdigit()) or len(digits) > 14:
            raise ValidationError.for_field("cae", "CAE must be up to 14 digits")
        object.__setattr__(self, "value", digits.zfill(14))
        if self.expiration is not None:
            object.__setattr__(
                self, "expiration", parse_date(self.expiration, "cae_expiration")
            )

    @property
    def formatted(self) -> str:
        return f"{self.value[:5]}-{self.value[5:10]}-{self.value[10:]}"

    def is_expired(self, today: date) -> bool:
        if self.expiration is None:
            return False
        return today > self.expiration

    def days_until_expiration(self, today: date) -> int | None:
        if self.expiration is None:
            return None
        return (self.expiration - today).days

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Order:
    """
    A P2P trade fetched from the exchange.

    Identity is ``order_number``. Only the processing outcome fields may
    differ between two snapshots of the same order.
    """
    order_number: str
    amount: Decimal
    price: Decimal
    total_price: Decimal
    asset: str
    fiat: str
    trade_type: TradeType
    create_time: datetime
    buyer_nickname: str | None = None
    seller_nickname: str | None = None
    buyer_cuit: CUIT | None = None

    # Processing outcome
    processed_at: datetime | None = None
    success: bool | None = None
    cae: CAE | None = None
    voucher_number: int | None = None
    invoice_date: date | None = None
    processing_method: ProcessingMethod | None = None
    error_message: str | None = None
    notes: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "order_number", validate_order_number(self.order_number))
        object.__setattr__(self, "trade_type", TradeType(self.trade_type))
        object.__setattr__(self, "total_price", validate_amount(self.total_price, "total_price"))

        amount = to_decimal(self.amount, "amount")
        price = to_decimal(self.price, "price")
        if amount <= 0:
            raise ValidationError.for_field("amount", "must be greater than 0")
        if price <= 0:
            raise ValidationError.for_field("price", "must be greater than 0")
        object.__setattr__(self, "amount", amount)
        object.__setattr__(self, "price", price)

        if self.create_time.tzinfo is None:
            object.__setattr__(self, "create_time", self.create_time.replace(tzinfo=timezone.utc))
        if self.processing_method is not None:
            object.__setattr__(self, "processing_method", ProcessingMethod(self.processing_method))

    @classmethod
    def from_exchange(cls, payload: dict[str, Any]) -> "Order":
        """
        Build an Order from the exchange's C2C order history payload.

        ``createTime`` is epoch milliseconds as returned by the exchange.
        """
        try:
            created = datetime.fromtimestamp(int(payload["createTime"]) / 1000, tz=timezone.utc)
            return cls(
                order_number=str(payload["orderNumber"]),
                amount=payload["amount"],
                price=payload.get("unitPrice") or payload["price"],
                total_price=payload["totalPrice"],
                asset=payload["asset"],
                fiat=payload["fiat"],
                trade_type=payload["tradeType"],
                create_time=created,
                buyer_nickname=payload.get("buyerNickname") or payload.get("counterPartNickName"),
                seller_nickname=payload.get("sellerNickname"),
            )
        except KeyError as e:
            raise ValidationError.for_field(str(e.args[0]), "missing from exchange payload") from None

    @property
    def order_date(self) -> date:
        """Calendar day of the trade (UTC)."""
        return self.create_time.astimezone(timezone.utc).date()

    @property
    def create_time_ms(self) -> int:
        return int(self.create_time.timestamp() * 1000)

    @property
    def currency(self) -> str:
        return "ARS" if self.fiat == "ARS" else "USD"

    def is_sell(self) -> bool:
        return self.trade_type is TradeType.SELL

    def is_terminal(self) -> bool:
        return self.success is not None

    def is_successful(self) -> bool:
        return self.success is True

    def is_failed(self) -> bool:
        return self.success is False

    def with_outcome(
        self,
        success: bool,
        method: ProcessingMethod = ProcessingMethod.AUTOMATIC,
        cae: CAE | None = None,
        voucher_number: int | None = None,
        invoice_date: date | None = None,
        error_message: str | None = None,
        processed_at: datetime | None = None,
    ) -> "Order":
        """Return this order moved to a terminal state."""
        if self.is_terminal():
            raise DomainError(
                "Order already processed",
                {"order_number": self.order_number, "success": self.success},
            )
        return replace(
            self,
            processed_at=processed_at or datetime.now(timezone.utc),
            success=success,
            cae=cae,
            voucher_number=voucher_number,
            invoice_date=invoice_date,
            processing_method=method,
            error_message=error_message,
        )


@dataclass(frozen=True)
class SubmissionResult:
    """What the tax authority gateway answered for one voucher."""
    success: bool
    cae: str | None = None
    cae_expiration: date | None = None
    voucher_number: int | None = None
    error_message: str | None = None

    def __post_init__(self) -> None:
        if self.success and (not self.cae or self.voucher_number is None):
            raise ValidationError.for_field(
                "submission", "successful submission must carry a CAE and voucher number"
            )


@dataclass(frozen=True)
class LedgerRecord:
    """
    One ledger row: the order snapshot plus its processing state.

    ``success`` is tri-state: None pending, True invoiced, False failed.
    Rows recorded manually for orders never fetched have no order data.
    """
    order_number: str
    amount: Decimal | None = None
    price: Decimal | None = None
    total_price: Decimal | None = None
    asset: str | None = None
    fiat: str | None = None
    trade_type: str | None = None
    create_time: datetime | None = None
    buyer_nickname: str | None = None
    seller_nickname: str | None = None
    processed_at: datetime | None = None
    success: bool | None = None
    cae: str | None = None
    cae_expiration: date | None = None
    voucher_number: int | None = None
    invoice_date: date | None = None
    processing_method: str | None = None
    error_message: str | None = None
    notes: str | None = None
    sales_point: int | None = None
    invoice_type: int | None = None
    attempted_at: datetime | None = None
    expected_voucher: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.success is not None

    @property
    def has_unconfirmed_attempt(self) -> bool:
        """A submission started but its outcome was never recorded."""
        return not self.is_terminal and self.attempted_at is not None

    def outcome(self) -> dict[str, Any]:
        """Prior outcome summary, used when reporting duplicates."""
        return {
            "order_number": self.order_number,
            "success": self.success,
            "cae": self.cae,
            "voucher_number": self.voucher_number,
            "processing_method": self.processing_method,
            "error_message": self.error_message,
        }

    def to_order(self) -> Order:
        if None in (self.create_time, self.total_price, self.trade_type, self.amount, self.price):
            raise DomainError(
                "Ledger row has no order data",
                {"order_number": self.order_number},
            )
        return Order(
            order_number=self.order_number,
            amount=self.amount,
            price=self.price,
            total_price=self.total_price,
            asset=self.asset or "",
            fiat=self.fiat or "",
            trade_type=TradeType(self.trade_type),
            create_time=self.create_time,
            buyer_nickname=self.buyer_nickname,
            seller_nickname=self.seller_nickname,
            processed_at=self.processed_at,
            success=self.success,
            cae=CAE(self.cae, self.cae_expiration) if self.cae else None,
            voucher_number=self.voucher_number,
            invoice_date=self.invoice_date,
            processing_method=self.processing_method,
            error_message=self.error_message,
            notes=self.notes,
        )


@dataclass(frozen=True)
class Duplicate:
    """An incoming order the ledger already knows, with its prior outcome."""
    order: Order
    record: LedgerRecord


@dataclass
class Eligibility:
    """
    Result of checking whether an order can be invoiced.

    Mutable because reasons are collected incrementally.
    """
    eligible: bool = True
    reasons: list[str] = field(default_factory=list)

    def reject(self, reason: str) -> None:
        self.eligible = False
        self.reasons.append(reason)


@dataclass(frozen=True)
class ProcessingOutcome:
    """Terminal result to write to the ledger for one order."""
    success: bool
    cae: str | None = None
    cae_expiration: date | None = None
    voucher_number: int | None = None
    invoice_date: date | None = None
    error_message: str | None = None
    sales_point: int | None = None
    invoice_type: int | None = None

    @classmethod
    def from_submission(
        cls,
        result: SubmissionResult,
        invoice_date: date,
        sales_point: int,
        invoice_type: int,
    ) -> "ProcessingOutcome":
        return cls(
            success=result.success,
            cae=CAE(result.cae).value if result.success else None,
            cae_expiration=result.cae_expiration if result.success else None,
            voucher_number=result.voucher_number if result.success else None,
            invoice_date=invoice_date if result.success else None,
            error_message=None if result.success else (result.error_message or "Rejected by AFIP"),
            sales_point=sales_point,
            invoice_type=invoice_type,
        )
