"""
Quantity precision helpers for USDT-M futures symbols.

Quantities are always floored to the instrument's step so that truncated
totals land at or below the nominal budget, never above.
"""

from __future__ import annotations

import math

__all__ = [
    "QUANTITY_PRECISION",
    "DEFAULT_QUANTITY_PRECISION",
    "base_asset",
    "quantity_precision",
    "floor_to_decimals",
    "floor_quantity",
    "format_quantity",
]

# Decimal places of the minimum order quantity, keyed by base asset.
QUANTITY_PRECISION = {
    "BTC": 3,
    "ETH": 3,
    "BNB": 2,
    "XRP": 1,
    "ADA": 0,
    "DOGE": 0,
    "SOL": 2,
    "AVAX": 2,
    "MATIC": 1,
    "DOT": 2,
    "LINK": 2,
    "UNI": 2,
}
DEFAULT_QUANTITY_PRECISION = 3

# Absorbs binary float error such as 0.07 * 100 == 7.000000000000001 or 6.9999999.
_EPS = 1e-9


def base_asset(symbol: str) -> str:
    sym = symbol.upper()
    if sym.endswith("USDT") and len(sym) > 4:
        return sym[:-4]
    return sym


def quantity_precision(symbol: str) -> int:
    return QUANTITY_PRECISION.get(base_asset(symbol), DEFAULT_QUANTITY_PRECISION)


def floor_to_decimals(value: float, decimals: int) -> float:
    """Floor toward zero at `decimals` places (sign preserved)."""
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    scale = 10 ** decimals
    magnitude = math.floor(abs(value) * scale + _EPS) / scale
    return math.copysign(magnitude, value) if magnitude else 0.0


def floor_quantity(quantity: float, symbol: str) -> float:
    return floor_to_decimals(quantity, quantity_precision(symbol))


def format_quantity(quantity: float, symbol: str) -> str:
    """Wire format: floored to the symbol's step, trailing zeros stripped."""
    decimals = quantity_precision(symbol)
    text = f"{floor_to_decimals(abs(quantity), decimals):.{decimals}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
