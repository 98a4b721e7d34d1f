"""
Money helpers for service-charge billing and payment reconciliation.

All amounts are Decimal with two-decimal (minor unit) precision. Intermediate
results stay unrounded; callers round once on the final total with
banker's rounding (ROUND_HALF_EVEN).
"""
from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation
from typing import Any, Iterable, Optional

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_decimal(value: Any, default: Optional[Decimal] = ZERO) -> Optional[Decimal]:
    """
    Convert a number-like value to Decimal without going through binary floats.

    None and empty strings return `default`. Floats are converted via str()
    so 0.1 becomes Decimal("0.1") rather than its binary expansion.
    """
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Not a monetary value: {value!r}")
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Not a monetary value: {value!r}")


def round_money(value: Decimal) -> Decimal:
    """Round to the currency minor unit using banker's rounding."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_EVEN)


def sum_money(values: Iterable[Any]) -> Decimal:
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return total


def format_money(amount: Any, currency: str = "KES") -> str:
    """Format an amount for notifications, e.g. KES 1,234.50."""
    return f"{currency} {round_money(to_decimal(amount)):,.2f}"
