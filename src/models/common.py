"""Shared helpers for domain models."""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

# ISO 4217 currencies without minor units
ZERO_DECIMAL_CURRENCIES = frozenset({"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"})


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def quantize_money(amount: Decimal, currency: str) -> Decimal:
    """Round an amount to the currency's smallest unit (half up)."""
    exponent = Decimal("1") if currency.upper() in ZERO_DECIMAL_CURRENCIES else Decimal("0.01")
    return amount.quantize(exponent, rounding=ROUND_HALF_UP)
