from decimal import ROUND_HALF_UP, Decimal
from typing import Union

# Currencies the gateway expects without a fractional part
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})

Number = Union[Decimal, int, float, str]


def _exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_decimal(amount: Number) -> Decimal:
    # str() first so floats like 0.1 do not leak binary noise
    return amount if isinstance(amount, Decimal) else Decimal(str(amount))


def quantize(amount: Number, currency: str) -> Decimal:
    step = Decimal(1).scaleb(-_exponent(currency))
    return to_decimal(amount).quantize(step, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Number, currency: str) -> int:
    """500.005 INR -> 50001 paise (round half up)."""
    scaled = to_decimal(amount).scaleb(_exponent(currency))
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    return quantize(Decimal(int(amount)).scaleb(-_exponent(currency)), currency)
