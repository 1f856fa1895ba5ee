"""
Exit evaluator: does a position's current price trip its exit plan?

Comparisons are literal and inclusive. A zero profit target or stop loss is
not treated as "unset": a long with stop_loss 0 never trips the stop, but a
long with profit_target 0 trips take-profit immediately.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from copybot.core.models import Position


@dataclass(frozen=True)
class ExitDecision:
    should_exit: bool
    reason: Optional[str] = None


NO_EXIT = ExitDecision(False, None)

TAKE_PROFIT_REASON = "Take profit"
STOP_LOSS_REASON = "Stop loss"


def evaluate_exit(position: Position) -> ExitDecision:
    if position.quantity == 0:
        return NO_EXIT

    price = position.current_price
    target = position.exit_plan.profit_target
    stop = position.exit_plan.stop_loss

    if position.quantity > 0:
        hit_profit = price >= target
        hit_stop = price <= stop
    else:
        hit_profit = price <= target
        hit_stop = price >= stop

    if hit_profit:
        return ExitDecision(True, f"{TAKE_PROFIT_REASON} at {target}")
    if hit_stop:
        return ExitDecision(True, f"{STOP_LOSS_REASON} at {stop}")
    return NO_EXIT
