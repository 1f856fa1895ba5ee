"""
Price-tolerance gate.

Decides whether a detected entry is still safe to copy given how far the
live price has drifted from the agent's quoted entry price. The gate only
reports; callers decide whether to block execution.
"""

from __future__ import annotations

from typing import Optional

from copybot.config.tolerance import ToleranceConfig
from copybot.core.models import PriceToleranceCheck


class PriceToleranceError(ZeroDivisionError):
    """Entry price is zero or negative, so relative drift is undefined."""


def price_difference(entry_price: float, current_price: float) -> float:
    """Absolute drift in percent of the entry price: |current - entry| / entry * 100."""
    if entry_price <= 0:
        raise PriceToleranceError(f"Entry price must be greater than 0, got {entry_price}")
    return abs((current_price - entry_price) / entry_price) * 100


def check_price_tolerance(
    entry_price: float,
    current_price: float,
    symbol: Optional[str] = None,
    tolerance: Optional[float] = None,
    config: Optional[ToleranceConfig] = None,
) -> PriceToleranceCheck:
    """
    Resolve tolerance (explicit override > per-symbol > global default) and
    build a verdict. Always returns a record, never raises on drift.
    """
    if tolerance is None:
        tolerance = (config or ToleranceConfig()).get_price_tolerance(symbol)
    diff = price_difference(entry_price, current_price)
    within = diff <= tolerance
    verb = "is within" if within else "exceeds"
    return PriceToleranceCheck(
        entry_price=entry_price,
        current_price=current_price,
        price_difference=diff,
        tolerance=tolerance,
        within_tolerance=within,
        should_execute=within,
        reason=f"Price difference {diff:.2f}% {verb} tolerance {tolerance:g}%",
    )
