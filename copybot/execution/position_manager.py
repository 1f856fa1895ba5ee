"""
PositionManager: exchange-side position operations used by the engine and runner.

- close_position: cancel the symbol's open orders, market-close every open
  position (reduce-only, opposite side), then verify nothing remains
- open_position: validate the agent position behind an ENTER plan, execute
  it with stop orders and record the quantity sent in the ledger
- clean_orphaned_orders: cancel TP/SL orders on symbols that no longer have
  an exchange position

The exchange is ground truth for what is actually open; the ledger only
records intent.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from copybot.core.errors import PositionError, wrap_errors
from copybot.core.json_utils import dumps
from copybot.core.models import FollowPlan, Position, Side
from copybot.infra.binance_client import STOP_ORDER_TYPES, to_exchange_symbol

if TYPE_CHECKING:
    from copybot.execution.trading_executor import TradingExecutor
    from copybot.ledger.order_ledger import OrderLedger
    from copybot.monitoring.metrics import CopyMetrics

log = logging.getLogger("copybot")


@dataclass
class PositionOperationResult:
    success: bool
    symbol: str
    operation: str  # "open" | "close"
    order_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PositionValidation:
    is_valid: bool
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class OrphanSweepResult:
    success: bool
    cancelled_orders: int = 0
    errors: List[str] = field(default_factory=list)


def validate_position(position: Position) -> PositionValidation:
    if position.quantity == 0:
        return PositionValidation(False, "Position quantity cannot be zero")
    if position.leverage <= 0:
        return PositionValidation(False, "Leverage must be greater than zero")
    if position.entry_price <= 0:
        return PositionValidation(False, "Entry price must be greater than zero")

    warnings: List[str] = []
    target = position.exit_plan.profit_target
    stop = position.exit_plan.stop_loss
    if position.quantity > 0:
        if target <= position.entry_price:
            warnings.append("Profit target should be higher than entry price for long positions")
        if stop >= position.entry_price:
            warnings.append("Stop loss should be lower than entry price for long positions")
    else:
        if target >= position.entry_price:
            warnings.append("Profit target should be lower than entry price for short positions")
        if stop <= position.entry_price:
            warnings.append("Stop loss should be higher than entry price for short positions")
    return PositionValidation(True, None, warnings)


class PositionManager:
    def __init__(
        self,
        executor: "TradingExecutor",
        ledger: "OrderLedger",
        verify_delay: float = 2.0,
        metrics: Optional["CopyMetrics"] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.executor = executor
        self.exchange = executor.exchange
        self.ledger = ledger
        self.verify_delay = verify_delay
        self.metrics = metrics
        self._sleep = sleep or asyncio.sleep

    # ========== Close ==========

    async def close_position(self, symbol: str, reason: str) -> PositionOperationResult:
        """Flatten `symbol` on the exchange. Never raises; failures come back in the result."""
        try:
            return await self._close_position(symbol, reason)
        except PositionError as exc:
            log.error(dumps({"event": "close_position_failed", "symbol": symbol, "err": str(exc)}))
            return PositionOperationResult(False, symbol, "close", error=str(exc))

    @wrap_errors("PositionManager", PositionError)
    async def _close_position(self, symbol: str, reason: str) -> PositionOperationResult:
        log.info(dumps({"event": "close_position", "symbol": symbol, "reason": reason}))
        positions = await self.exchange.positions(symbol)
        open_orders = await self.exchange.open_orders(symbol)

        if open_orders:
            if not await self.executor.cancel_all_orders(symbol):
                return PositionOperationResult(False, symbol, "close", error="Failed to cancel open orders")
            log.info(dumps({"event": "orders_cancelled_before_close", "symbol": symbol, "count": len(open_orders)}))

        if not positions:
            return PositionOperationResult(True, symbol, "close")

        last_order_id: Optional[str] = None
        for row in positions:
            amount = float(row.get("positionAmt", 0))
            if amount == 0:
                continue
            side = Side.SELL if amount > 0 else Side.BUY
            try:
                resp = await self.exchange.place_order(
                    symbol=symbol,
                    side=side.value,
                    order_type="MARKET",
                    quantity=abs(amount),
                    reduce_only=True,
                )
                last_order_id = str(resp.get("orderId"))
            except Exception as exc:
                log.error(dumps({"event": "close_order_failed", "symbol": symbol, "amount": amount, "err": str(exc)}))

        if not await self._verify_closed(symbol):
            return PositionOperationResult(
                False, symbol, "close", order_id=last_order_id,
                error=f"Some positions still remain open for {symbol}",
            )
        return PositionOperationResult(True, symbol, "close", order_id=last_order_id)

    async def _verify_closed(self, symbol: str) -> bool:
        await self._sleep(self.verify_delay)
        remaining = await self.exchange.positions(symbol)
        return not remaining

    # ========== Open ==========

    async def open_position(self, plan: FollowPlan, quantity: Optional[float] = None) -> PositionOperationResult:
        """
        Open the replica for an ENTER plan that carries its source position.

        The agent position is validated first (errors abort, warnings are
        logged). The main order goes out with TP/SL stop orders; on success
        the lot is recorded in the ledger with the quantity actually sent.
        """
        position = plan.position
        if position is None:
            return PositionOperationResult(False, plan.symbol, "open", error="Plan has no source position")
        validation = validate_position(position)
        if not validation.is_valid:
            return PositionOperationResult(False, plan.symbol, "open", error=validation.error)
        for warning in validation.warnings:
            log.warning(dumps({"event": "position_validation_warning", "symbol": plan.symbol, "warning": warning}))

        qty = abs(plan.quantity if quantity is None else quantity)
        result = await self.executor.execute_plan_with_stop_orders(plan, position, qty)
        if not result.success:
            return PositionOperationResult(False, plan.symbol, "open", error=result.error or "Unknown trading error")

        if position.entry_oid and result.order_id:
            self.ledger.record(
                position.entry_oid, plan.symbol, plan.agent, plan.side,
                qty, plan.entry_price, result.order_id,
            )
        return PositionOperationResult(True, plan.symbol, "open", order_id=result.order_id)

    # ========== Orphaned orders ==========

    async def clean_orphaned_orders(self) -> OrphanSweepResult:
        """Cancel stop / take-profit orders whose symbol has no open exchange position."""
        try:
            orders = await self.exchange.open_orders()
            positions = await self.exchange.positions()
        except Exception as exc:
            log.warning(dumps({"event": "orphan_sweep_failed", "err": str(exc)}))
            return OrphanSweepResult(False, errors=[str(exc)])

        held = {to_exchange_symbol(p["symbol"]) for p in positions}
        orphans: List[Dict[str, Any]] = [
            o for o in orders
            if o.get("type") in STOP_ORDER_TYPES and to_exchange_symbol(o.get("symbol", "")) not in held
        ]
        result = OrphanSweepResult(True)
        for order in orphans:
            symbol = order["symbol"]
            try:
                await self.exchange.cancel_order(symbol, order["orderId"])
            except Exception as exc:
                result.errors.append(f"{symbol} {order['orderId']}: {exc}")
                continue
            result.cancelled_orders += 1
            if self.metrics:
                self.metrics.orphan_orders_cancelled.labels(symbol=symbol).inc()
            log.info(dumps({"event": "orphan_order_cancelled", "symbol": symbol,
                            "order_id": order["orderId"], "type": order.get("type")}))
        if result.errors:
            result.success = False
            log.warning(dumps({"event": "orphan_sweep_failed", "errors": result.errors}))
        return result
