"""
CapitalAllocator: split a fixed margin budget across simultaneous entries.

Each symbol gets a share of the budget proportional to the margin the agent
itself committed to it:

    ratio_i     = margin_i / sum(margin)
    allocated_i = floor(budget * ratio_i)                 (whole currency units)
    notional_i  = floor(budget * ratio_i * leverage_i)
    quantity_i  = floor_to_step(budget * ratio_i * leverage_i / current_price_i)

Positions without positive margin are left out entirely. Flooring keeps the
allocated total at or below the budget; the shortfall is below one currency
unit per symbol.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, List, Optional

from copybot.core.errors import ConfigurationError
from copybot.core.json_utils import dumps
from copybot.core.models import AllocationResult, CapitalAllocation, Position, Side
from copybot.core.rounding import floor_quantity

log = logging.getLogger("copybot")

DEFAULT_TOTAL_MARGIN = 1000.0
RATIO_EPSILON = 0.001


class CapitalAllocator:
    def __init__(self, default_total_margin: float = DEFAULT_TOTAL_MARGIN) -> None:
        self._default_total_margin = DEFAULT_TOTAL_MARGIN
        self.set_default_total_margin(default_total_margin)

    @property
    def default_total_margin(self) -> float:
        return self._default_total_margin

    def set_default_total_margin(self, margin: float) -> None:
        if margin is None or margin <= 0:
            raise ConfigurationError("Total margin must be positive", config_key="TOTAL_MARGIN")
        self._default_total_margin = float(margin)

    def budget(self, total_margin: Optional[float] = None, available_balance: Optional[float] = None) -> float:
        """Budget actually spent: requested total, capped by the live available balance when known."""
        budget = total_margin if total_margin and total_margin > 0 else self._default_total_margin
        if available_balance is not None and available_balance >= 0 and available_balance < budget:
            log.warning(dumps({
                "event": "allocation_capped_by_balance",
                "requested": budget,
                "available": available_balance,
            }))
            budget = available_balance
        return budget

    def allocate(
        self,
        positions: Iterable[Position],
        total_margin: Optional[float] = None,
        available_balance: Optional[float] = None,
    ) -> AllocationResult:
        eligible = [p for p in positions if p.margin > 0]
        if not eligible:
            return AllocationResult(0.0, 0.0, 0.0, [])

        budget = self.budget(total_margin, available_balance)
        total_original = sum(p.margin for p in eligible)

        allocations: List[CapitalAllocation] = []
        for p in eligible:
            ratio = p.margin / total_original
            raw_margin = budget * ratio
            raw_notional = raw_margin * p.leverage
            quantity = raw_notional / p.current_price if p.current_price > 0 else 0.0
            allocations.append(CapitalAllocation(
                symbol=p.symbol,
                original_margin=p.margin,
                allocated_margin=float(math.floor(raw_margin)),
                notional_value=float(math.floor(raw_notional)),
                adjusted_quantity=floor_quantity(quantity, p.symbol),
                allocation_ratio=ratio,
                leverage=p.leverage,
                side=Side.from_quantity(p.quantity),
            ))

        return AllocationResult(
            total_original_margin=total_original,
            total_allocated_margin=sum(a.allocated_margin for a in allocations),
            total_notional_value=sum(a.notional_value for a in allocations),
            allocations=allocations,
        )

    def validate(self, result: AllocationResult, expected_total: Optional[float] = None) -> bool:
        """
        Ratios must sum to 1 (+/- 0.001) and the allocated total must sit at or
        below the expected budget, short by at most one currency unit per symbol.
        """
        if not result.allocations:
            return True
        expected = expected_total if expected_total is not None else self._default_total_margin

        ratio_sum = sum(a.allocation_ratio for a in result.allocations)
        if abs(ratio_sum - 1.0) > RATIO_EPSILON:
            log.warning(dumps({"event": "allocation_ratio_mismatch", "ratio_sum": ratio_sum}))
            return False

        shortfall = expected - result.total_allocated_margin
        if shortfall < 0 or shortfall > len(result.allocations):
            log.warning(dumps({
                "event": "allocation_margin_mismatch",
                "expected": expected,
                "allocated": result.total_allocated_margin,
            }))
            return False
        return True

    @staticmethod
    def format_percentage(ratio: float) -> str:
        return f"{ratio * 100:.2f}%"

    @staticmethod
    def format_amount(amount: float) -> str:
        return f"${amount:,.2f}"
