"""
Order ledger - the single source of truth for "has this order been invoiced".

Every state change is one INSERT ... ON CONFLICT statement against the
``orders`` table, so the ``order_number`` primary key decides the
outcome of concurrent or repeated writes:

- ``record_orders`` inserts newly fetched orders and ignores known ones.
- ``mark_processed`` moves a pending row (or a missing one) to a terminal
  state. The conflict branch only updates rows whose ``success`` is still
  NULL, so a second writer converges on the first terminal outcome.
- ``mark_manual`` may also supersede an automatic *failure* (a failed
  submission never carries a CAE), never a success.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from afipsync.domain.amounts import round2
from afipsync.domain.models import (
    CAE,
    Duplicate,
    LedgerRecord,
    Order,
    ProcessingMethod,
    ProcessingOutcome,
    TradeType,
)
from afipsync.errors import DomainError, InfrastructureError, NotFoundError, ValidationError

from .database import OrderRow, utcnow

logger = logging.getLogger(__name__)


@dataclass
class FilterResult:
    """A fetched batch split by ledger membership."""
    new_orders: list[Order] = field(default_factory=list)
    duplicates: list[Duplicate] = field(default_factory=list)


@dataclass(frozen=True)
class LedgerStatistics:
    total: int = 0
    pending: int = 0
    successful: int = 0
    failed: int = 0
    manual: int = 0
    automatic: int = 0
    invoiced_amount: Decimal = Decimal("0")


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(row: OrderRow) -> LedgerRecord:
    return LedgerRecord(
        order_number=row.order_number,
        amount=row.amount,
        price=row.price,
        total_price=row.total_price,
        asset=row.asset,
        fiat=row.fiat,
        trade_type=row.trade_type,
        create_time=_aware(row.create_time),
        buyer_nickname=row.buyer_nickname,
        seller_nickname=row.seller_nickname,
        processed_at=_aware(row.processed_at),
        success=row.success,
        cae=row.cae,
        cae_expiration=row.cae_expiration,
        voucher_number=row.voucher_number,
        invoice_date=row.invoice_date,
        processing_method=row.processing_method,
        error_message=row.error_message,
        notes=row.notes,
        sales_point=row.sales_point,
        invoice_type=row.invoice_type,
        attempted_at=_aware(row.attempted_at),
        expected_voucher=row.expected_voucher,
    )


class Ledger:
    """
    Persistent idempotency store for order invoicing.

    Example:
        ledger = Ledger(make_session_factory(engine))

        batch = await ledger.filter_new(fetched)
        await ledger.record_orders(batch.new_orders)

        await ledger.mark_processed(
            "2051234", ProcessingOutcome(success=True, cae="7412...", voucher_number=88)
        )
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def record_of(self, order_number: str) -> LedgerRecord | None:
        async with self._session_factory() as session:
            row = await self._get(session, order_number)
            return _to_record(row) if row else None

    async def is_processed(self, order_number: str) -> bool:
        """True once the order reached a terminal state (success or failure)."""
        record = await self.record_of(order_number)
        return record is not None and record.is_terminal

    async def filter_new(self, orders: Iterable[Order]) -> FilterResult:
        """
        Split a fetched batch into unseen orders and ones already in the ledger.

        Repeats of the same order inside one batch are collapsed to the
        first occurrence.
        """
        unique: dict[str, Order] = {}
        for order in orders:
            if order.order_number in unique:
                logger.debug(f"Order {order.order_number} repeated within batch")
                continue
            unique[order.order_number] = order

        result = FilterResult()
        if not unique:
            return result

        async with self._session_factory() as session:
            rows = await self._execute(
                session,
                select(OrderRow).where(OrderRow.order_number.in_(list(unique))),
            )
            known = {row.order_number: _to_record(row) for row in rows.scalars()}

        for number, order in unique.items():
            if number in known:
                result.duplicates.append(Duplicate(order=order, record=known[number]))
            else:
                result.new_orders.append(order)

        logger.info(
            f"Filtered {len(unique)} orders: {len(result.new_orders)} new, "
            f"{len(result.duplicates)} already in ledger"
        )
        return result

    async def unprocessed(self, trade_type: TradeType | None = None) -> list[LedgerRecord]:
        """Pending rows in ascending creation-time order."""
        stmt = (
            select(OrderRow)
            .where(OrderRow.success.is_(None))
            .order_by(OrderRow.create_time.asc(), OrderRow.order_number.asc())
        )
        if trade_type is not None:
            stmt = stmt.where(OrderRow.trade_type == TradeType(trade_type).value)

        async with self._session_factory() as session:
            rows = await self._execute(session, stmt)
            return [_to_record(row) for row in rows.scalars()]

    async def records(self, success: bool | None = None) -> list[LedgerRecord]:
        """All rows, optionally filtered by outcome, newest trades first."""
        stmt = select(OrderRow).order_by(OrderRow.create_time.desc())
        if success is not None:
            stmt = stmt.where(OrderRow.success.is_(success))

        async with self._session_factory() as session:
            rows = await self._execute(session, stmt)
            return [_to_record(row) for row in rows.scalars()]

    async def voucher_owner(self, sales_point: int, invoice_type: int, voucher_number: int) -> str | None:
        """Order number recorded for a voucher, if any."""
        stmt = select(OrderRow.order_number).where(
            OrderRow.sales_point == sales_point,
            OrderRow.invoice_type == invoice_type,
            OrderRow.voucher_number == voucher_number,
            OrderRow.success.is_(True),
        )
        async with self._session_factory() as session:
            result = await self._execute(session, stmt)
            return result.scalars().first()

    async def statistics(self) -> LedgerStatistics:
        stmt = select(
            func.count(OrderRow.order_number),
            func.sum(case((OrderRow.success.is_(None), 1), else_=0)),
            func.sum(case((OrderRow.success.is_(True), 1), else_=0)),
            func.sum(case((OrderRow.success.is_(False), 1), else_=0)),
            func.sum(case((OrderRow.processing_method == ProcessingMethod.MANUAL.value, 1), else_=0)),
            func.sum(case((OrderRow.processing_method == ProcessingMethod.AUTOMATIC.value, 1), else_=0)),
            func.sum(case((OrderRow.success.is_(True), OrderRow.total_price), else_=0)),
        )
        async with self._session_factory() as session:
            result = await self._execute(session, stmt)
            total, pending, ok, failed, manual, automatic, invoiced = result.one()

        return LedgerStatistics(
            total=total or 0,
            pending=pending or 0,
            successful=ok or 0,
            failed=failed or 0,
            manual=manual or 0,
            automatic=automatic or 0,
            invoiced_amount=round2(Decimal(str(invoiced or 0))),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def record_orders(self, orders: Iterable[Order]) -> int:
        """
        Insert fetched orders as pending rows; known order numbers are ignored.

        Returns:
            Number of rows actually inserted.
        """
        inserted = 0
        async with self._session_factory() as session:
            insert = self._insert(session)
            for order in orders:
                stmt = (
                    insert(OrderRow)
                    .values(**self._order_values(order))
                    .on_conflict_do_nothing(index_elements=[OrderRow.order_number])
                    .returning(OrderRow.order_number)
                )
                result = await self._execute(session, stmt)
                inserted += len(result.scalars().all())
            await self._commit(session)

        if inserted:
            logger.info(f"Recorded {inserted} new orders in ledger")
        return inserted

    async def mark_attempt(
        self,
        order_number: str,
        sales_point: int,
        invoice_type: int,
        expected_voucher: int,
    ) -> None:
        """
        Note that a submission is about to start for a pending order.

        The marker survives a crash or timeout between the authority call
        and the outcome write, so the next run can tell that a voucher may
        already exist for this order.
        """
        stmt = (
            update(OrderRow)
            .where(OrderRow.order_number == order_number, OrderRow.success.is_(None))
            .values(
                attempted_at=utcnow(),
                sales_point=sales_point,
                invoice_type=invoice_type,
                expected_voucher=expected_voucher,
                updated_at=utcnow(),
            )
        )
        async with self._session_factory() as session:
            result = await self._execute(session, stmt)
            await self._commit(session)

        if not result.rowcount:
            record = await self.record_of(order_number)
            if record is None:
                raise NotFoundError.order(order_number)
            raise DomainError(
                "Order has already been processed",
                {"order_number": order_number, "success": record.success},
            )

    async def mark_processed(
        self,
        order_number: str,
        outcome: ProcessingOutcome,
        method: ProcessingMethod = ProcessingMethod.AUTOMATIC,
    ) -> LedgerRecord:
        """
        Write a terminal outcome for an order.

        Idempotent: if the row is already terminal it is left untouched and
        the existing record is returned.
        """
        values = self._outcome_values(outcome, ProcessingMethod(method))
        values["order_number"] = order_number
        if outcome.sales_point is not None:
            values["sales_point"] = outcome.sales_point
        if outcome.invoice_type is not None:
            values["invoice_type"] = outcome.invoice_type

        async with self._session_factory() as session:
            insert = self._insert(session)
            stmt = insert(OrderRow).values(**values)
            update_cols = [c for c in values if c != "order_number"]
            stmt = stmt.on_conflict_do_update(
                index_elements=[OrderRow.order_number],
                set_={col: stmt.excluded[col] for col in update_cols},
                where=OrderRow.success.is_(None),
            )
            await self._execute(session, stmt)
            await self._commit(session)
            row = await self._get(session, order_number, refresh=True)

        record = _to_record(row)
        converged = (
            record.success != outcome.success
            or record.processing_method != values["processing_method"]
            or record.cae != values["cae"]
        )
        if converged:
            logger.warning(
                f"Order {order_number} was already terminal "
                f"(success={record.success}, method={record.processing_method}); kept existing outcome"
            )
        else:
            logger.info(
                f"Order {order_number} marked {'invoiced' if outcome.success else 'failed'} "
                f"({record.processing_method}, voucher={record.voucher_number})"
            )
        return record

    async def mark_manual(
        self,
        order_number: str,
        cae: str,
        voucher_number: int,
        notes: str | None = None,
        invoice_date: date | None = None,
    ) -> LedgerRecord:
        """
        Record an invoice issued outside this system (e.g. the AFIP portal).

        Raises:
            ValidationError: malformed CAE or voucher number.
            DomainError: the order was already invoiced with a different CAE.
        """
        try:
            voucher = int(voucher_number)
        except (TypeError, ValueError):
            raise ValidationError.for_field("voucher_number", "must be a whole number") from None
        if isinstance(voucher_number, bool) or voucher < 1:
            raise ValidationError.for_field("voucher_number", "must be a positive number")

        outcome = ProcessingOutcome(
            success=True,
            cae=CAE(cae).value,
            voucher_number=voucher,
            invoice_date=invoice_date,
        )
        values = self._outcome_values(outcome, ProcessingMethod.MANUAL)
        values["order_number"] = order_number
        values["notes"] = notes

        async with self._session_factory() as session:
            insert = self._insert(session)
            stmt = insert(OrderRow).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[OrderRow.order_number],
                set_={col: stmt.excluded[col] for col in values if col != "order_number"},
                # A failure carries no CAE, so a human may replace it
                where=or_(OrderRow.success.is_(None), OrderRow.success.is_(False)),
            )
            await self._execute(session, stmt)
            await self._commit(session)
            row = await self._get(session, order_number, refresh=True)

        record = _to_record(row)
        if record.cae != outcome.cae or record.voucher_number != outcome.voucher_number:
            raise DomainError(
                "Order has already been invoiced",
                {
                    "order_number": order_number,
                    "cae": record.cae,
                    "voucher_number": record.voucher_number,
                    "processing_method": record.processing_method,
                },
            )

        logger.info(f"Order {order_number} marked invoiced manually (CAE {record.cae})")
        return record

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _insert(session: AsyncSession):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        dialect = session.bind.dialect.name
        if dialect == "postgresql":
            return postgresql.insert
        if dialect == "sqlite":
            return sqlite.insert
        raise InfrastructureError.database(f"Unsupported ledger database: {dialect}")

    @staticmethod
    def _order_values(order: Order) -> dict[str, Any]:
        return {
            "order_number": order.order_number,
            "amount": order.amount,
            "price": order.price,
            "total_price": order.total_price,
            "asset": order.asset,
            "fiat": order.fiat,
            "trade_type": order.trade_type.value,
            "create_time": order.create_time,
            "buyer_nickname": order.buyer_nickname,
            "seller_nickname": order.seller_nickname,
        }

    @staticmethod
    def _outcome_values(outcome: ProcessingOutcome, method: ProcessingMethod) -> dict[str, Any]:
        now = utcnow()
        return {
            "processed_at": now,
            "success": outcome.success,
            "cae": CAE(outcome.cae).value if outcome.cae else None,
            "cae_expiration": outcome.cae_expiration,
            "voucher_number": outcome.voucher_number,
            "invoice_date": outcome.invoice_date,
            "processing_method": method.value,
            "error_message": outcome.error_message,
            "updated_at": now,
        }

    @staticmethod
    async def _get(session: AsyncSession, order_number: str, refresh: bool = False) -> OrderRow | None:
        stmt = select(OrderRow).where(OrderRow.order_number == order_number)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await Ledger._execute(session, stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _execute(session: AsyncSession, stmt):
        try:
            return await session.execute(stmt)
        except SQLAlchemyError as e:
            await session.rollback()
            raise InfrastructureError.database(f"Ledger query failed: {e}") from e

    @staticmethod
    async def _commit(session: AsyncSession) -> None:
        try:
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise InfrastructureError.database(f"Ledger commit failed: {e}") from e
