"""
Reconciliation orchestrator.

Coordinates one invoicing run:
1. Sync: fetch recent orders from the exchange and record new ones
2. Load pending ledger rows, oldest trade first
3. Build each invoice and submit it to AFIP, one voucher at a time per
   sales point
4. Write every definitive outcome to the ledger

AFIP hands out voucher numbers sequentially and offers no reservation,
so submissions for one sales point are serialized through
``SalesPointLocks``. Different sales points run independently.

Failure isolation: one order's error never aborts the batch.
- AFIP rejection, ineligible order, invalid invoice: terminal failure
- transport error, ledger write error: order stays pending (deferred)
- attempt with unknown outcome whose voucher AFIP already issued:
  left pending for a human (unconfirmed), never resubmitted
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from afipsync.domain.invoice import Invoice
from afipsync.domain.models import (
    InvoiceType,
    LedgerRecord,
    Order,
    ProcessingMethod,
    ProcessingOutcome,
    TradeType,
)
from afipsync.domain.processor import OrderProcessor
from afipsync.errors import (
    AuthorityRejectionError,
    DomainError,
    InfrastructureError,
    ValidationError,
)
from afipsync.infrastructure.gateways import OrderSourceGateway, TaxAuthorityGateway
from afipsync.infrastructure.ledger import Ledger

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    DEFERRED = "deferred"        # retryable, still pending
    UNCONFIRMED = "unconfirmed"  # prior attempt may have issued a voucher
    SKIPPED = "skipped"


class SalesPointLocks:
    """
    One ``asyncio.Lock`` per sales point.

    Share a single instance between every orchestrator in the process.
    Horizontally scaled workers need an external lock instead.
    """

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}

    def for_sales_point(self, sales_point: int) -> asyncio.Lock:
        if sales_point not in self._locks:
            self._locks[sales_point] = asyncio.Lock()
        return self._locks[sales_point]


@dataclass
class OrderOutcome:
    """Per-order line of a batch report."""
    order_number: str
    status: OutcomeStatus
    cae: str | None = None
    voucher_number: int | None = None
    invoice_date: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_number": self.order_number,
            "status": self.status.value,
            "cae": self.cae,
            "voucher_number": self.voucher_number,
            "invoice_date": self.invoice_date,
            "error": self.error,
        }


@dataclass
class BatchResult:
    """
    Aggregate result of ``process_unprocessed_orders``.

    ``processed == successful + failed``. Deferred and unconfirmed orders
    count as failed for the run and are also reported on their own.
    Skipped orders are not counted as processed.
    """
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    unconfirmed: int = 0
    cancelled: bool = False
    results: list[OrderOutcome] = field(default_factory=list)

    def add(self, outcome: OrderOutcome) -> None:
        self.results.append(outcome)
        if outcome.status is OutcomeStatus.SKIPPED:
            self.skipped += 1
            return

        self.processed += 1
        if outcome.status is OutcomeStatus.SUCCESS:
            self.successful += 1
            return

        self.failed += 1
        if outcome.status is OutcomeStatus.DEFERRED:
            self.deferred += 1
        elif outcome.status is OutcomeStatus.UNCONFIRMED:
            self.unconfirmed += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "unconfirmed": self.unconfirmed,
            "cancelled": self.cancelled,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class SyncResult:
    fetched: int = 0
    new: int = 0
    duplicates: int = 0
    duplicate_orders: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fetched": self.fetched,
            "new": self.new,
            "duplicates": self.duplicates,
            "duplicate_orders": self.duplicate_orders,
        }


class ReconciliationOrchestrator:
    """
    Drives pending ledger orders through AFIP.

    Example:
        orchestrator = ReconciliationOrchestrator(
            ledger=Ledger(get_session_factory()),
            tax_authority=wsfe_gateway,
            processor=OrderProcessor(settings.invoicing_policy()),
            order_source=exchange_gateway,
        )

        await orchestrator.sync_orders(days=7)
        result = await orchestrator.process_unprocessed_orders()
    """

    def __init__(
        self,
        ledger: Ledger,
        tax_authority: TaxAuthorityGateway,
        processor: OrderProcessor,
        order_source: OrderSourceGateway | None = None,
        locks: SalesPointLocks | None = None,
    ) -> None:
        self.ledger = ledger
        self.tax_authority = tax_authority
        self.processor = processor
        self.order_source = order_source
        self.locks = locks or SalesPointLocks()

    @property
    def sales_point(self) -> int:
        return self.processor.policy.sales_point

    async def sync_orders(self, days: int = 7, trade_type: TradeType = TradeType.SELL) -> SyncResult:
        """Fetch recent exchange orders and record the ones the ledger lacks."""
        if self.order_source is None:
            raise DomainError("No order source configured")
        if days < 1:
            raise ValidationError.for_field("days", "must be a positive number")

        logger.info(f"Fetching {trade_type.value} orders from the last {days} days")
        orders = await self.order_source.fetch_orders(days, trade_type)

        batch = await self.ledger.filter_new(orders)
        inserted = await self.ledger.record_orders(batch.new_orders)

        for dup in batch.duplicates:
            logger.debug(
                f"Order {dup.order.order_number} already in ledger "
                f"(success={dup.record.success})"
            )

        result = SyncResult(
            fetched=len(orders),
            new=inserted,
            duplicates=len(batch.duplicates),
            duplicate_orders=[d.order.order_number for d in batch.duplicates],
        )
        logger.info(f"Sync complete: {result.fetched} fetched, {result.new} new, {result.duplicates} duplicates")
        return result

    async def process_unprocessed_orders(
        self,
        limit: int | None = None,
        trade_type: TradeType | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchResult:
        """
        Invoice every pending order, oldest trade first.

        Args:
            limit: Handle at most this many pending orders.
            trade_type: Only load orders of this trade type.
            cancel_event: Checked between orders; an in-flight submission
                always finishes and is recorded.
        """
        if limit is not None and limit < 1:
            raise ValidationError.for_field("limit", "must be a positive number")

        pending = await self.ledger.unprocessed(trade_type)
        if limit is not None:
            pending = pending[:limit]

        logger.info(f"Processing {len(pending)} pending orders on sales point {self.sales_point}")
        result = BatchResult()

        for record in pending:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.warning(
                    f"Run cancelled after {len(result.results)} of {len(pending)} orders"
                )
                break

            outcome = await self._process_record(record)
            result.add(outcome)

        logger.info(
            f"Batch complete: processed={result.processed} successful={result.successful} "
            f"failed={result.failed} deferred={result.deferred} "
            f"unconfirmed={result.unconfirmed} skipped={result.skipped}"
        )
        return result

    async def _process_record(self, record: LedgerRecord) -> OrderOutcome:
        number = record.order_number

        try:
            order = record.to_order()
        except (DomainError, ValidationError) as e:
            return await self._fail(number, f"Invalid ledger row: {e.message}")

        if not order.is_sell():
            logger.info(f"Order {number} skipped: {order.trade_type.value} trades are not invoiced")
            return OrderOutcome(number, OutcomeStatus.SKIPPED, error="Only SELL trades are invoiced")

        try:
            invoice = self.processor.create_invoice_from_order(order)
        except (DomainError, ValidationError) as e:
            return await self._fail(number, e.message)

        async with self.locks.for_sales_point(self.sales_point):
            return await self._submit(order, invoice)

    async def _submit(self, order: Order, invoice: Invoice) -> OrderOutcome:
        """Query, mark, submit, record. Caller holds the sales point lock."""
        number = order.order_number
        sales_point = self.sales_point

        try:
            # Another worker may have finished this order since it was loaded
            current = await self.ledger.record_of(number)
            if current is not None and current.is_terminal:
                logger.info(f"Order {number} already terminal; not resubmitting")
                return OrderOutcome(
                    number,
                    OutcomeStatus.SKIPPED,
                    cae=current.cae,
                    voucher_number=current.voucher_number,
                    error="Order has already been processed",
                )

            if current is not None and await self._attempt_was_issued(current):
                logger.error(
                    f"Order {number}: previous attempt expected voucher "
                    f"{current.expected_voucher} and AFIP already issued it; "
                    f"verify in the AFIP portal and record it with 'manual'"
                )
                return OrderOutcome(
                    number,
                    OutcomeStatus.UNCONFIRMED,
                    voucher_number=current.expected_voucher,
                    error="Previous submission outcome unknown; voucher may already exist",
                )

            last = await self.tax_authority.get_last_invoice_number(sales_point, invoice.invoice_type)
            await self.ledger.mark_attempt(number, sales_point, int(invoice.invoice_type), last + 1)
        except InfrastructureError as e:
            return self._defer(number, e)
        except Exception as e:
            logger.exception(f"Unexpected error preparing order {number}")
            return self._defer(number, e)

        try:
            submission = await self.tax_authority.create_invoice(invoice, sales_point)
        except AuthorityRejectionError as e:
            return await self._fail(number, e.message, invoice)
        except InfrastructureError as e:
            return self._defer(number, e)
        except Exception as e:
            logger.exception(f"Unexpected error submitting order {number}")
            return self._defer(number, e)

        try:
            outcome = ProcessingOutcome.from_submission(
                submission, invoice.invoice_date, sales_point, int(invoice.invoice_type)
            )
        except ValidationError as e:
            # AFIP may have issued the voucher; the attempt marker stays for the next run
            logger.error(f"Order {number}: unreadable AFIP answer: {e.message}")
            return self._defer(number, e)

        try:
            record = await self.ledger.mark_processed(number, outcome, ProcessingMethod.AUTOMATIC)
        except InfrastructureError as e:
            # Submission happened but is not recorded; the attempt marker remains
            logger.error(f"Order {number}: AFIP answered but ledger write failed: {e.message}")
            return self._defer(number, e)

        if record.success:
            logger.info(f"Order {number} invoiced: voucher {record.voucher_number}, CAE {record.cae}")
            return OrderOutcome(
                number,
                OutcomeStatus.SUCCESS,
                cae=record.cae,
                voucher_number=record.voucher_number,
                invoice_date=record.invoice_date.isoformat() if record.invoice_date else None,
            )

        logger.warning(f"Order {number} rejected by AFIP: {record.error_message}")
        return OrderOutcome(number, OutcomeStatus.FAILED, error=record.error_message)

    async def _attempt_was_issued(self, record: LedgerRecord) -> bool:
        """
        True when an unrecorded earlier attempt may have produced a voucher.

        That is the case once AFIP's last voucher reached the number the
        attempt expected and no other order in the ledger owns it.
        """
        if not record.has_unconfirmed_attempt or record.expected_voucher is None:
            return False

        sales_point = record.sales_point or self.sales_point
        invoice_type = InvoiceType(record.invoice_type) if record.invoice_type else InvoiceType.TYPE_C

        last = await self.tax_authority.get_last_invoice_number(sales_point, invoice_type)
        if last < record.expected_voucher:
            return False

        owner = await self.ledger.voucher_owner(sales_point, int(invoice_type), record.expected_voucher)
        return owner is None or owner == record.order_number

    async def _fail(self, order_number: str, message: str, invoice: Invoice | None = None) -> OrderOutcome:
        """Record a terminal failure; a failing ledger write defers instead."""
        logger.warning(f"Order {order_number} failed: {message}")
        outcome = ProcessingOutcome(
            success=False,
            error_message=message,
            sales_point=self.sales_point if invoice else None,
            invoice_type=int(invoice.invoice_type) if invoice else None,
        )
        try:
            await self.ledger.mark_processed(order_number, outcome, ProcessingMethod.AUTOMATIC)
        except InfrastructureError as e:
            return self._defer(order_number, e)
        return OrderOutcome(order_number, OutcomeStatus.FAILED, error=message)

    @staticmethod
    def _defer(order_number: str, error: Exception) -> OrderOutcome:
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        logger.warning(f"Order {order_number} deferred, will retry on next run: {message}")
        return OrderOutcome(order_number, OutcomeStatus.DEFERRED, error=message)
