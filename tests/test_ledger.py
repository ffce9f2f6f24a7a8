"""
Ledger tests against a temporary SQLite database.

Verifies:
- Ingestion is insert-or-ignore
- Terminal writes converge on the first outcome
- Manual entries never overwrite a successful invoice
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from afipsync.domain.models import ProcessingMethod, ProcessingOutcome, TradeType
from afipsync.errors import DomainError, NotFoundError, ValidationError

from conftest import make_order

SUCCESS = ProcessingOutcome(
    success=True,
    cae="75000000000001",
    voucher_number=1,
    invoice_date=date(2025, 3, 17),
    sales_point=2,
    invoice_type=11,
)
FAILURE = ProcessingOutcome(success=False, error_message="10016: CbteFch fuera de rango")


class TestIngestion:
    def test_record_orders_is_insert_or_ignore(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                first = await ledger.record_orders([make_order("1"), make_order("2")])
                second = await ledger.record_orders([make_order("2"), make_order("3")])
                return first, second, await ledger.unprocessed()

        first, second, pending = asyncio.run(scenario())

        assert first == 2
        assert second == 1
        assert {r.order_number for r in pending} == {"1", "2", "3"}

    def test_filter_new_partitions_batch(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.record_orders([make_order("1")])
                await ledger.mark_processed("1", SUCCESS)
                return await ledger.filter_new([make_order("1"), make_order("2"), make_order("2")])

        result = asyncio.run(scenario())

        assert [o.order_number for o in result.new_orders] == ["2"]
        assert len(result.duplicates) == 1
        assert result.duplicates[0].record.success is True
        assert result.duplicates[0].record.outcome()["cae"] == "75000000000001"

    def test_round_trips_order_snapshot(self, open_ledger):
        order = make_order("7", total="120675.38")

        async def scenario():
            async with open_ledger() as ledger:
                await ledger.record_orders([order])
                return await ledger.record_of("7")

        record = asyncio.run(scenario())
        restored = record.to_order()

        assert restored.total_price == Decimal("120675.38")
        assert restored.create_time == order.create_time
        assert restored.trade_type is TradeType.SELL
        assert record.success is None

    def test_unprocessed_order_and_filter(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.record_orders([
                    make_order("late", days_ago=1),
                    make_order("early", days_ago=5),
                    make_order("buy", days_ago=3, trade_type=TradeType.BUY),
                ])
                return (
                    await ledger.unprocessed(),
                    await ledger.unprocessed(TradeType.SELL),
                )

        everything, sells = asyncio.run(scenario())

        assert [r.order_number for r in everything] == ["early", "buy", "late"]
        assert [r.order_number for r in sells] == ["early", "late"]


class TestMarkProcessed:
    def test_success_is_terminal(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.record_orders([make_order("1")])
                record = await ledger.mark_processed("1", SUCCESS)
                return record, await ledger.is_processed("1"), await ledger.unprocessed()

        record, processed, pending = asyncio.run(scenario())

        assert record.success is True
        assert record.cae == "75000000000001"
        assert record.voucher_number == 1
        assert record.processing_method == ProcessingMethod.AUTOMATIC.value
        assert record.processed_at is not None
        assert processed
        assert pending == []

    def test_second_write_converges_on_first(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.record_orders([make_order("1")])
                await ledger.mark_processed("1", SUCCESS)
                return await ledger.mark_processed("1", FAILURE)

        record = asyncio.run(scenario())

        assert record.success is True
        assert record.cae == "75000000000001"
        assert record.error_message is None

    def test_concurrent_writes_leave_one_row(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.record_orders([make_order("1")])
                await asyncio.gather(
                    ledger.mark_processed("1", SUCCESS),
                    ledger.mark_processed("1", FAILURE),
                )
                return await ledger.records()

        records = asyncio.run(scenario())

        assert len(records) == 1
        assert records[0].is_terminal

    def test_unknown_order_gets_a_row(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.mark_processed("ghost", FAILURE)
                return await ledger.record_of("ghost")

        record = asyncio.run(scenario())

        assert record.success is False
        assert record.error_message == FAILURE.error_message

    def test_voucher_owner(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.record_orders([make_order("1")])
                await ledger.mark_processed("1", SUCCESS)
                return (
                    await ledger.voucher_owner(2, 11, 1),
                    await ledger.voucher_owner(2, 11, 2),
                    await ledger.voucher_owner(3, 11, 1),
                )

        assert asyncio.run(scenario()) == ("1", None, None)


class TestMarkAttempt:
    def test_marks_pending_row(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.record_orders([make_order("1")])
                await ledger.mark_attempt("1", sales_point=2, invoice_type=11, expected_voucher=8)
                return await ledger.record_of("1")

        record = asyncio.run(scenario())

        assert record.has_unconfirmed_attempt
        assert record.expected_voucher == 8
        assert record.sales_point == 2
        assert record.invoice_type == 11

    def test_terminal_row(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.record_orders([make_order("1")])
                await ledger.mark_processed("1", SUCCESS)
                await ledger.mark_attempt("1", 2, 11, 2)

        with pytest.raises(DomainError):
            asyncio.run(scenario())

    def test_missing_row(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.mark_attempt("nope", 2, 11, 1)

        with pytest.raises(NotFoundError):
            asyncio.run(scenario())


class TestMarkManual:
    def test_records_manual_invoice(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.record_orders([make_order("1")])
                return await ledger.mark_manual("1", "75000000000099", 99, notes="portal")

        record = asyncio.run(scenario())

        assert record.success is True
        assert record.processing_method == "manual"
        assert record.voucher_number == 99
        assert record.notes == "portal"

    def test_supersedes_failure(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.record_orders([make_order("1")])
                await ledger.mark_processed("1", FAILURE)
                return await ledger.mark_manual("1", "75000000000005", 5)

        record = asyncio.run(scenario())

        assert record.success is True
        assert record.cae == "75000000000005"
        assert record.error_message is None

    def test_never_overwrites_success(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.record_orders([make_order("1")])
                await ledger.mark_processed("1", SUCCESS)
                with pytest.raises(DomainError):
                    await ledger.mark_manual("1", "75000000000077", 77)
                return await ledger.record_of("1")

        record = asyncio.run(scenario())

        assert record.cae == "75000000000001"
        assert record.processing_method == "automatic"

    def test_identical_repeat_converges(self, open_ledger):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.mark_manual("1", "75000000000005", 5)
                return await ledger.mark_manual("1", "75000000000005", 5)

        record = asyncio.run(scenario())
        assert record.voucher_number == 5

    @pytest.mark.parametrize(
        "cae,voucher",
        [("not-a-cae", 1), ("75000000000005", 0), ("75000000000005", "seven"), ("75000000000005", None)],
    )
    def test_invalid_input(self, open_ledger, cae, voucher):
        async def scenario():
            async with open_ledger() as ledger:
                await ledger.mark_manual("1", cae, voucher)

        with pytest.raises(ValidationError):
            asyncio.run(scenario())


def test_statistics(open_ledger):
    async def scenario():
        async with open_ledger() as ledger:
            await ledger.record_orders([
                make_order("1", total="1000.00"),
                make_order("2", total="500.00"),
                make_order("3"),
                make_order("4"),
            ])
            await ledger.mark_processed("1", SUCCESS)
            await ledger.mark_manual("2", "75000000000002", 2)
            await ledger.mark_processed("3", FAILURE)
            return await ledger.statistics(), await ledger.records(success=False)

    stats, failed = asyncio.run(scenario())

    assert stats.total == 4
    assert stats.pending == 1
    assert stats.successful == 2
    assert stats.failed == 1
    assert stats.manual == 1
    assert stats.automatic == 2
    assert stats.invoiced_amount == Decimal("1500")
    assert [r.order_number for r in failed] == ["3"]


def test_invoiced_amount_is_exact_to_the_cent(open_ledger):
    async def scenario():
        async with open_ledger() as ledger:
            await ledger.record_orders([
                make_order("1", total="0.10"),
                make_order("2", total="0.20"),
                make_order("3", total="1000.05"),
            ])
            for number in ("1", "2", "3"):
                await ledger.mark_manual(number, f"7500000000000{number}", int(number))
            return await ledger.statistics()

    stats = asyncio.run(scenario())

    assert stats.invoiced_amount == Decimal("1000.35")
    assert str(stats.invoiced_amount) == "1000.35"
