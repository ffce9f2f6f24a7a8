"""
Pydantic schemas for API request/response validation.

All monetary values use strings to avoid floating point issues.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from afipsync.domain.models import LedgerRecord


class TradeTypeEnum(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OutcomeStatusEnum(str, Enum):
    """Per-order status in a batch report."""
    SUCCESS = "success"
    FAILED = "failed"
    DEFERRED = "deferred"
    UNCONFIRMED = "unconfirmed"
    SKIPPED = "skipped"


# =============================================================================
# Request Schemas
# =============================================================================

class ProcessOrdersRequest(BaseModel):
    """Request to run the invoicing batch."""
    limit: int | None = Field(
        default=None,
        ge=1,
        description="Process at most this many pending orders",
    )
    trade_type: TradeTypeEnum | None = Field(
        default=None,
        description="Only process orders of this trade type",
    )


class ManualInvoiceRequest(BaseModel):
    """Invoice issued outside the system, e.g. through the AFIP portal."""
    cae: str = Field(
        ...,
        description="CAE printed on the voucher",
        pattern=r"^[0-9-]{1,20}$",
    )
    voucher_number: int = Field(..., ge=1)
    invoice_date: date | None = None
    notes: str | None = Field(default=None, max_length=2000)


# =============================================================================
# Response Schemas
# =============================================================================

class OrderOutcomeResponse(BaseModel):
    order_number: str
    status: OutcomeStatusEnum
    cae: str | None = None
    voucher_number: int | None = None
    invoice_date: date | None = None
    error: str | None = None


class BatchResponse(BaseModel):
    """Aggregate result of a processing run."""
    processed: int
    successful: int
    failed: int
    skipped: int = 0
    deferred: int = 0
    unconfirmed: int = 0
    cancelled: bool = False
    results: list[OrderOutcomeResponse] = []


class LedgerRecordResponse(BaseModel):
    """One ledger row."""
    order_number: str
    amount: str | None = None
    total_price: str | None = None
    asset: str | None = None
    fiat: str | None = None
    trade_type: str | None = None
    create_time: datetime | None = None
    processed_at: datetime | None = None
    success: bool | None = None
    cae: str | None = None
    cae_expiration: date | None = None
    voucher_number: int | None = None
    invoice_date: date | None = None
    processing_method: str | None = None
    error_message: str | None = None
    notes: str | None = None

    @classmethod
    def from_record(cls, record: LedgerRecord) -> "LedgerRecordResponse":
        return cls(
            order_number=record.order_number,
            amount=str(record.amount) if record.amount is not None else None,
            total_price=str(record.total_price) if record.total_price is not None else None,
            asset=record.asset,
            fiat=record.fiat,
            trade_type=record.trade_type,
            create_time=record.create_time,
            processed_at=record.processed_at,
            success=record.success,
            cae=record.cae,
            cae_expiration=record.cae_expiration,
            voucher_number=record.voucher_number,
            invoice_date=record.invoice_date,
            processing_method=record.processing_method,
            error_message=record.error_message,
            notes=record.notes,
        )


class LedgerStatusResponse(BaseModel):
    """Ledger aggregates."""
    total: int
    pending: int
    successful: int
    failed: int
    manual: int
    automatic: int
    invoiced_amount: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    version: str
    database: str = "connected"
    sales_point: int


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    code: str
    message: str
    details: dict[str, Any] = {}
