"""
Shared fixtures: a temporary SQLite ledger and in-memory gateways.

Async code is driven with ``asyncio.run`` inside plain test functions;
each scenario opens and disposes its own engine so connections never
cross event loops.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

import pytest

from afipsync.domain.invoice import Invoice
from afipsync.domain.models import InvoicingPolicy, Order, SubmissionResult, TradeType
from afipsync.domain.processor import OrderProcessor
from afipsync.errors import InfrastructureError
from afipsync.infrastructure.database import create_engine_for, init_db, make_session_factory
from afipsync.infrastructure.gateways import OrderSourceGateway, TaxAuthorityGateway
from afipsync.infrastructure.ledger import Ledger

TODAY = date(2025, 3, 20)


def make_order(
    order_number: str,
    days_ago: int = 3,
    total: str = "1000.00",
    trade_type: TradeType = TradeType.SELL,
    hour: int = 12,
) -> Order:
    created = datetime.combine(TODAY - timedelta(days=days_ago), time(hour), tzinfo=timezone.utc)
    total_price = Decimal(total)
    return Order(
        order_number=order_number,
        amount=Decimal("10"),
        price=total_price / 10,
        total_price=total_price,
        asset="USDT",
        fiat="ARS",
        trade_type=trade_type,
        create_time=created,
        buyer_nickname="buyer",
    )


def make_processor(policy: InvoicingPolicy | None = None) -> OrderProcessor:
    return OrderProcessor(policy or InvoicingPolicy(), clock=lambda: TODAY)


class FakeTaxAuthority(TaxAuthorityGateway):
    """
    In-memory WSFE: sequential vouchers per (sales point, type).

    ``rejections`` maps order numbers to AFIP error messages,
    ``transport_errors`` fail before anything is issued and
    ``lost_responses`` issue the voucher, then fail as a timeout would and
    ``garbled_caes`` issue the voucher but answer with an unreadable CAE.
    """

    def __init__(self) -> None:
        self.last: dict[tuple[int, int], int] = {}
        self.issued: dict[int, str] = {}
        self.submitted: list[str] = []
        self.rejections: dict[str, str] = {}
        self.transport_errors: set[str] = set()
        self.lost_responses: set[str] = set()
        self.garbled_caes: set[str] = set()
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_last_invoice_number(self, sales_point, invoice_type):
        await asyncio.sleep(0)
        return self.last.get((sales_point, int(invoice_type)), 0)

    async def create_invoice(self, invoice: Invoice, sales_point: int) -> SubmissionResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            number = invoice.order_number
            self.submitted.append(number)

            if number in self.transport_errors:
                raise InfrastructureError.external_api("wsfe", "Read timed out")
            if number in self.rejections:
                return SubmissionResult(success=False, error_message=self.rejections[number])

            key = (sales_point, int(invoice.invoice_type))
            voucher = self.last.get(key, 0) + 1
            self.last[key] = voucher
            self.issued[voucher] = number

            if number in self.lost_responses:
                raise InfrastructureError.external_api("wsfe", "Connection reset after send")

            return SubmissionResult(
                success=True,
                cae="7500000000000X" if number in self.garbled_caes else str(75000000000000 + voucher),
                cae_expiration=TODAY + timedelta(days=10),
                voucher_number=voucher,
            )
        finally:
            self.in_flight -= 1


class FakeOrderSource(OrderSourceGateway):
    def __init__(self, orders: list[Order] | None = None) -> None:
        self.orders = list(orders or [])
        self.calls: list[tuple[int, TradeType]] = []

    async def fetch_orders(self, days, trade_type=TradeType.SELL):
        self.calls.append((days, trade_type))
        return [o for o in self.orders if o.trade_type is trade_type]


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
def open_ledger(database_url):
    """Async context manager yielding a Ledger on a fresh database."""

    @asynccontextmanager
    async def _open():
        engine = create_engine_for(database_url)
        await init_db(engine)
        try:
            yield Ledger(make_session_factory(engine))
        finally:
            await engine.dispose()

    return _open


@pytest.fixture
def tax_authority():
    return FakeTaxAuthority()
