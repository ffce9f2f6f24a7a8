"""
Command line entry point.

    afipsync sync [--days N] [--trade-type SELL]
    afipsync process [--limit N] [--trade-type SELL]
    afipsync manual ORDER_NUMBER CAE VOUCHER [--notes TEXT]
    afipsync status

Every command is a thin wrapper over the ledger or the orchestrator.
Exit code is 0 on success, 1 when an order failed or the command errored.
"""

import argparse
import asyncio
import logging
import sys
from typing import Sequence

from afipsync.config import Settings, configure_logging, get_settings
from afipsync.domain.models import TradeType
from afipsync.domain.processor import OrderProcessor
from afipsync.errors import AfipSyncError
from afipsync.infrastructure.database import close_db, get_session_factory, init_db
from afipsync.infrastructure.gateways import load_gateways
from afipsync.infrastructure.ledger import Ledger
from afipsync.services.reconciliation import ReconciliationOrchestrator

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="afipsync",
        description="Invoice P2P exchange orders through AFIP",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="command")
    subparsers.required = True

    sync = subparsers.add_parser("sync", help="Fetch recent exchange orders into the ledger")
    sync.add_argument("--days", type=int, default=None, help="Days of history (default: settings)")
    sync.add_argument("--trade-type", choices=[t.value for t in TradeType], default=TradeType.SELL.value)

    process = subparsers.add_parser("process", help="Invoice pending orders")
    process.add_argument("--limit", type=int, default=None)
    process.add_argument("--trade-type", choices=[t.value for t in TradeType], default=None)

    manual = subparsers.add_parser("manual", help="Record an invoice issued in the AFIP portal")
    manual.add_argument("order_number")
    manual.add_argument("cae")
    manual.add_argument("voucher_number", type=int)
    manual.add_argument("--notes", default=None)

    subparsers.add_parser("status", help="Show ledger totals")

    return parser


def _orchestrator(settings: Settings, ledger: Ledger) -> ReconciliationOrchestrator:
    order_source, tax_authority = load_gateways(settings.gateway_factory)
    return ReconciliationOrchestrator(
        ledger=ledger,
        tax_authority=tax_authority,
        processor=OrderProcessor(settings.invoicing_policy()),
        order_source=order_source,
    )


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    await init_db()
    try:
        ledger = Ledger(get_session_factory())

        if args.command == "sync":
            result = await _orchestrator(settings, ledger).sync_orders(
                days=args.days or settings.fetch_days,
                trade_type=TradeType(args.trade_type),
            )
            print(f"Fetched {result.fetched} orders: {result.new} new, {result.duplicates} already known")
            return 0

        if args.command == "process":
            result = await _orchestrator(settings, ledger).process_unprocessed_orders(
                limit=args.limit,
                trade_type=TradeType(args.trade_type) if args.trade_type else None,
            )
            for line in result.results:
                detail = f"voucher {line.voucher_number}, CAE {line.cae}" if line.cae else (line.error or "")
                print(f"{line.order_number:<24} {line.status.value:<12} {detail}")
            print(
                f"Processed {result.processed}: {result.successful} successful, {result.failed} failed "
                f"({result.deferred} deferred, {result.unconfirmed} unconfirmed), {result.skipped} skipped"
            )
            return 0 if result.failed == 0 else 1

        if args.command == "manual":
            record = await ledger.mark_manual(
                args.order_number, args.cae, args.voucher_number, notes=args.notes
            )
            print(f"Order {record.order_number} recorded: voucher {record.voucher_number}, CAE {record.cae}")
            return 0

        stats = await ledger.statistics()
        print(f"Total:      {stats.total}")
        print(f"Pending:    {stats.pending}")
        print(f"Successful: {stats.successful} ({stats.automatic} automatic, {stats.manual} manual)")
        print(f"Failed:     {stats.failed}")
        print(f"Invoiced:   {stats.invoiced_amount}")
        return 0
    finally:
        await close_db()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        return asyncio.run(_run(args, settings))
    except AfipSyncError as e:
        logger.error(f"{e.code}: {e.message}")
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
