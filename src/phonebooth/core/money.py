"""
Monetary amounts.

Balances, prices and transaction values are integers in the billing
currency's minor unit (cents). Decimal is used only for presentation in a
display currency, at a configured display rate.
"""

from decimal import Decimal, ROUND_HALF_EVEN
from typing import Dict, Optional

MINOR_UNITS_PER_MAJOR = 100


def require_minor_units(value, field_name: str = "value") -> int:
    """Reject floats, bools and anything else that is not an exact integer amount."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{field_name} must be an integer amount of minor units, got {type(value).__name__}")
    return value


def to_display(
    amount: int,
    currency: str,
    display_currency: str,
    display_rates: Optional[Dict[str, Decimal]] = None,
) -> Decimal:
    """
    Convert a minor-unit amount to major units of the display currency.

    display_rates maps a currency code to its value per one unit of the
    billing currency. Unknown display currencies fall back to the billing
    currency.
    """
    major = Decimal(require_minor_units(amount, "amount")) / MINOR_UNITS_PER_MAJOR
    if display_currency != currency:
        rate = (display_rates or {}).get(display_currency)
        if rate is not None:
            major = major * Decimal(rate)
    return major.quantize(Decimal("0.01"), rounding=ROUND_HALF_EVEN)


def format_amount(amount: int, currency: str) -> str:
    major = Decimal(require_minor_units(amount, "amount")) / MINOR_UNITS_PER_MAJOR
    return f"{major:.2f} {currency}"
