"""
Invoice date rule.

AFIP only accepts a voucher whose date (CbteFch) falls within a fixed
number of days after the underlying transaction and never in the future.
All functions here are pure: "today" is always an explicit argument
defaulting to the current UTC date.

Rules, checked in order:
1. Both dates are calendar dates (``date`` or ``YYYY-MM-DD``, no time part).
2. The invoice date is not after the reference date.
3. 0 <= days_between(transaction, invoice) <= max_lag_days.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from afipsync.errors import DomainError, ValidationError


# AFIP window for services (concept 2/3); products use 5
MAX_LAG_DAYS = 10

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def parse_date(value: date | str, field: str = "date") -> date:
    """
    Parse a calendar date.

    Raises:
        ValidationError: datetimes (time component), malformed strings,
            impossible dates such as 2024-02-30.
    """
    if isinstance(value, datetime):
        raise ValidationError.for_field(field, "must be a calendar date without time")
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not _ISO_DATE.match(value):
        raise ValidationError.for_field(field, "must be in YYYY-MM-DD format")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError.for_field(field, "is not a valid date") from None


def days_between(start: date, end: date) -> int:
    """Whole days from ``start`` to ``end`` (negative when end is earlier)."""
    return (end - start).days


def validate_invoice_date(
    transaction_date: date | str,
    invoice_date: date | str,
    reference_date: date | None = None,
    max_lag_days: int = MAX_LAG_DAYS,
) -> date:
    """
    Check a proposed invoice date against the lag rule.

    Returns:
        The parsed invoice date.

    Raises:
        ValidationError: a date does not parse.
        DomainError: future invoice, invoice before the transaction or
            outside the allowed window.
    """
    tx_date = parse_date(transaction_date, "transaction_date")
    inv_date = parse_date(invoice_date, "invoice_date")
    reference = reference_date or today_utc()

    if inv_date > reference:
        raise DomainError(
            "Invoice date cannot be in the future",
            {"invoice_date": inv_date.isoformat(), "reference_date": reference.isoformat()},
        )

    lag = days_between(tx_date, inv_date)
    if lag < 0:
        raise DomainError(
            "Invoice date cannot be before transaction date",
            {"transaction_date": tx_date.isoformat(), "invoice_date": inv_date.isoformat()},
        )
    if lag > max_lag_days:
        raise DomainError(
            f"Invoice must be dated within {max_lag_days} days of the transaction",
            {
                "transaction_date": tx_date.isoformat(),
                "invoice_date": inv_date.isoformat(),
                "days_after": lag,
            },
        )

    return inv_date


def is_valid_invoice_date(
    transaction_date: date | str,
    invoice_date: date | str,
    reference_date: date | None = None,
    max_lag_days: int = MAX_LAG_DAYS,
) -> bool:
    try:
        validate_invoice_date(transaction_date, invoice_date, reference_date, max_lag_days)
    except (ValidationError, DomainError):
        return False
    return True


def max_invoice_date(transaction_date: date | str, max_lag_days: int = MAX_LAG_DAYS) -> date:
    """Latest date the lag rule still accepts for this transaction."""
    return parse_date(transaction_date, "transaction_date") + timedelta(days=max_lag_days)


@dataclass(frozen=True)
class InvoicingWindow:
    """Whether a transaction can still be invoiced as of a reference date."""
    can_invoice: bool
    days_remaining: int


def can_still_invoice(
    transaction_date: date | str,
    reference_date: date | None = None,
    max_lag_days: int = MAX_LAG_DAYS,
) -> InvoicingWindow:
    tx_date = parse_date(transaction_date, "transaction_date")
    reference = reference_date or today_utc()

    elapsed = days_between(tx_date, reference)
    remaining = max_lag_days - elapsed
    # A transaction dated after the reference day cannot be invoiced yet
    return InvoicingWindow(
        can_invoice=0 <= elapsed <= max_lag_days,
        days_remaining=max(0, min(remaining, max_lag_days)),
    )


def suggest_invoice_date(
    transaction_date: date | str,
    reference_date: date | None = None,
    max_lag_days: int = MAX_LAG_DAYS,
) -> date:
    """
    Best legal invoice date for a transaction.

    Returns the reference date while it is inside the window, otherwise
    the last day of the window. The fallback satisfies the lag rule on
    paper, but AFIP measures its own window from the submission day and
    may still reject a stale date.
    """
    tx_date = parse_date(transaction_date, "transaction_date")
    reference = reference_date or today_utc()

    if 0 <= days_between(tx_date, reference) <= max_lag_days:
        return reference
    return tx_date + timedelta(days=max_lag_days)
