"""
Order invoicing endpoints.

Thin wrappers over the ledger and the reconciliation orchestrator.
Application errors propagate to the handlers registered in ``main``.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Body, Depends

from afipsync.api.schemas import (
    BatchResponse,
    LedgerRecordResponse,
    LedgerStatusResponse,
    ManualInvoiceRequest,
    OrderOutcomeResponse,
    ProcessOrdersRequest,
)
from afipsync.config import get_settings
from afipsync.domain.models import TradeType
from afipsync.domain.processor import OrderProcessor
from afipsync.errors import InfrastructureError, NotFoundError
from afipsync.infrastructure.database import get_session_factory
from afipsync.infrastructure.gateways import (
    OrderSourceGateway,
    TaxAuthorityGateway,
    load_gateways,
)
from afipsync.infrastructure.ledger import Ledger
from afipsync.services.reconciliation import ReconciliationOrchestrator, SalesPointLocks

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


# Shared by every request so submissions for a sales point never overlap
_locks = SalesPointLocks()
_gateways: tuple[OrderSourceGateway | None, TaxAuthorityGateway] | None = None


def get_ledger() -> Ledger:
    return Ledger(get_session_factory())


def get_orchestrator(ledger: Annotated[Ledger, Depends(get_ledger)]) -> ReconciliationOrchestrator:
    """Build the orchestrator from the configured gateway factory."""
    global _gateways
    settings = get_settings()
    if _gateways is None:
        if not settings.gateway_factory:
            raise InfrastructureError(
                "No gateways configured; set AFIPSYNC_GATEWAY_FACTORY",
                subsystem="gateways",
                retryable=False,
            )
        _gateways = load_gateways(settings.gateway_factory)

    order_source, tax_authority = _gateways
    return ReconciliationOrchestrator(
        ledger=ledger,
        tax_authority=tax_authority,
        processor=OrderProcessor(settings.invoicing_policy()),
        order_source=order_source,
        locks=_locks,
    )


@router.post("/process", response_model=BatchResponse)
async def process_orders(
    orchestrator: Annotated[ReconciliationOrchestrator, Depends(get_orchestrator)],
    request: Annotated[ProcessOrdersRequest | None, Body()] = None,
) -> BatchResponse:
    """
    Invoice every pending order, oldest first.

    Per-order failures are reported in ``results``; the request itself
    only fails when the ledger cannot be read.
    """
    request = request or ProcessOrdersRequest()
    trade_type = TradeType(request.trade_type.value) if request.trade_type else None

    result = await orchestrator.process_unprocessed_orders(limit=request.limit, trade_type=trade_type)

    return BatchResponse(
        processed=result.processed,
        successful=result.successful,
        failed=result.failed,
        skipped=result.skipped,
        deferred=result.deferred,
        unconfirmed=result.unconfirmed,
        cancelled=result.cancelled,
        results=[OrderOutcomeResponse(**r.to_dict()) for r in result.results],
    )


@router.get("/status", response_model=LedgerStatusResponse)
async def ledger_status(ledger: Annotated[Ledger, Depends(get_ledger)]) -> LedgerStatusResponse:
    stats = await ledger.statistics()
    return LedgerStatusResponse(
        total=stats.total,
        pending=stats.pending,
        successful=stats.successful,
        failed=stats.failed,
        manual=stats.manual,
        automatic=stats.automatic,
        invoiced_amount=str(stats.invoiced_amount),
    )


@router.get("/{order_number}", response_model=LedgerRecordResponse)
async def get_order(
    order_number: str,
    ledger: Annotated[Ledger, Depends(get_ledger)],
) -> LedgerRecordResponse:
    record = await ledger.record_of(order_number)
    if record is None:
        raise NotFoundError.order(order_number)
    return LedgerRecordResponse.from_record(record)


@router.post("/{order_number}/manual", response_model=LedgerRecordResponse)
async def mark_manual(
    order_number: str,
    request: ManualInvoiceRequest,
    ledger: Annotated[Ledger, Depends(get_ledger)],
) -> LedgerRecordResponse:
    """Record an invoice created directly in the AFIP portal."""
    record = await ledger.mark_manual(
        order_number,
        cae=request.cae,
        voucher_number=request.voucher_number,
        notes=request.notes,
        invoice_date=request.invoice_date,
    )
    logger.info(f"Manual invoice recorded for order {order_number} via API")
    return LedgerRecordResponse.from_record(record)
