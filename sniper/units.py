from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

CHAIN_DECIMALS = {
    "LTC": 8,
    "BTC": 8,
    "SOL": 9,
    "ETH": 18,
}

_QUANTIZERS = {}


def _quantizer(places: int) -> Decimal:
    if places not in _QUANTIZERS:
        _QUANTIZERS[places] = Decimal(10) ** -places
    return _QUANTIZERS[places]


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    try:
        # str() first so floats keep their printed value
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def quantize(amount: Any, chain: str) -> Decimal:
    """Round to the chain's native precision."""
    places = CHAIN_DECIMALS.get((chain or "").upper(), 8)
    return to_decimal(amount, Decimal(0)).quantize(_quantizer(places), rounding=ROUND_HALF_UP)


def amounts_equal(a: Any, b: Any, chain: str) -> bool:
    return quantize(a, chain) == quantize(b, chain)


def format_amount(amount: Any, places: int = 2) -> str:
    return str(to_decimal(amount, Decimal(0)).quantize(_quantizer(places), rounding=ROUND_HALF_UP))


def display_amount(amount: Any, chain: str) -> str:
    """Chain precision without trailing zeros: 21.00000000 -> 21."""
    text = str(quantize(amount, chain))
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
