"""
Order processing rules.

Decides whether an order can be invoiced and builds its Invoice.
Pure domain service: no ledger or gateway access, the caller passes in
orders that already carry their ledger state.
"""

from dataclasses import dataclass, field, replace
from datetime import date
from typing import Callable, Iterable

from afipsync.errors import DomainError, ValidationError

from .amounts import should_apply_vat
from .dates import can_still_invoice, is_valid_invoice_date, suggest_invoice_date, today_utc
from .invoice import Invoice, InvoiceOptions
from .models import Eligibility, InvoicingPolicy, Order


@dataclass
class OrderStatistics:
    total: int = 0
    processed: int = 0
    unprocessed: int = 0
    successful: int = 0
    failed: int = 0
    sell_trades: int = 0
    buy_trades: int = 0
    ready_for_invoicing: int = 0
    expired_for_invoicing: int = 0


@dataclass
class CategorizedOrders:
    processable: list[Order] = field(default_factory=list)
    unprocessable: list[tuple[Order, list[str]]] = field(default_factory=list)


@dataclass(frozen=True)
class Recommendation:
    action: str    # "process" | "skip"
    priority: str  # "urgent" | "high" | "normal" | "none"
    message: str


class OrderProcessor:
    """
    Eligibility and invoice construction for exchange orders.

    Args:
        policy: Invoicing configuration (lag window, VAT defaults, rounding).
        clock: Returns "today"; injected so tests are deterministic.
    """

    def __init__(
        self,
        policy: InvoicingPolicy,
        clock: Callable[[], date] = today_utc,
    ) -> None:
        self.policy = policy
        self._clock = clock

    def today(self) -> date:
        return self._clock()

    def can_process(self, order: Order) -> Eligibility:
        result = Eligibility()

        if not order.is_sell():
            result.reject("Only SELL trades can be invoiced")
        if order.is_terminal():
            result.reject("Order has already been processed")

        window = can_still_invoice(order.order_date, self.today(), self.policy.lag_days)
        if not window.can_invoice:
            result.reject(
                f"Order is outside the {self.policy.lag_days}-day invoicing window"
            )

        return result

    def validate_for_processing(self, order: Order) -> None:
        """
        Raises:
            DomainError: the order cannot be invoiced, with every reason.
        """
        check = self.can_process(order)
        if not check.eligible:
            raise DomainError(
                f"Order cannot be processed: {', '.join(check.reasons)}",
                {"order_number": order.order_number, "reasons": check.reasons},
            )

    def determine_invoice_date(self, order: Order, preferred: date | None = None) -> date:
        """
        Invoice date for an order.

        ``preferred`` (the trade day when omitted) is used if the lag rule
        accepts it; otherwise the suggested date for today is returned.
        """
        today = self.today()
        candidate = preferred or order.order_date
        if is_valid_invoice_date(order.order_date, candidate, today, self.policy.lag_days):
            return candidate
        return suggest_invoice_date(order.order_date, today, self.policy.lag_days)

    def should_include_vat(self, force_vat: bool = False, force_no_vat: bool = False) -> bool:
        if force_vat and force_no_vat:
            raise ValidationError.for_field("include_vat", "cannot force both VAT and no VAT")
        if force_vat:
            return True
        if force_no_vat:
            return False
        if self.policy.include_vat:
            return True
        # Monotributo seller, final consumer buyer
        return should_apply_vat(is_monotributista=True, is_final_consumer=True)

    def create_invoice_from_order(self, order: Order, options: InvoiceOptions | None = None) -> Invoice:
        """
        Validate an order and build its invoice.

        Raises:
            DomainError: the order is not eligible.
            ValidationError: the resulting invoice is inconsistent.
        """
        self.validate_for_processing(order)

        options = options or InvoiceOptions()
        include_vat = options.include_vat
        if include_vat is None:
            include_vat = self.should_include_vat()

        options = replace(
            options,
            include_vat=include_vat,
            invoice_date=self.determine_invoice_date(order, options.invoice_date),
        )
        return Invoice.from_order(order, self.policy, options, today=self.today())

    def categorize_orders(self, orders: Iterable[Order]) -> CategorizedOrders:
        result = CategorizedOrders()
        for order in orders:
            check = self.can_process(order)
            if check.eligible:
                result.processable.append(order)
            else:
                result.unprocessable.append((order, check.reasons))
        return result

    def calculate_statistics(self, orders: Iterable[Order]) -> OrderStatistics:
        stats = OrderStatistics()
        today = self.today()

        for order in orders:
            stats.total += 1

            if order.is_terminal():
                stats.processed += 1
                if order.is_successful():
                    stats.successful += 1
                else:
                    stats.failed += 1
            else:
                stats.unprocessed += 1

            if order.is_sell():
                stats.sell_trades += 1
            else:
                stats.buy_trades += 1

            if order.is_sell() and not order.is_terminal():
                window = can_still_invoice(order.order_date, today, self.policy.lag_days)
                if window.can_invoice:
                    stats.ready_for_invoicing += 1
                else:
                    stats.expired_for_invoicing += 1

        return stats

    def recommendation(self, order: Order) -> Recommendation:
        check = self.can_process(order)
        if not check.eligible:
            return Recommendation("skip", "none", ", ".join(check.reasons))

        remaining = can_still_invoice(order.order_date, self.today(), self.policy.lag_days).days_remaining
        if remaining <= 2:
            return Recommendation("process", "urgent", f"Only {remaining} days remaining in invoicing window")
        if remaining <= 5:
            return Recommendation("process", "high", f"{remaining} days remaining in invoicing window")
        return Recommendation("process", "normal", f"{remaining} days remaining in invoicing window")
