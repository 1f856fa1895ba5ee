"""
TradingExecutor: turns FollowPlans into exchange orders.

- execute_plan: connectivity check, best-effort leverage, market order
- execute_plan_with_stop_orders: main order, then take-profit and stop-loss
  orders (closePosition) from the agent's exit plan

Main and stop orders are separate exchange calls. A failed stop order does
not undo the main order; the result reports partial success instead.

Failures come back as ExecutionResult(success=False, error=...) rather than
exceptions so the runner can keep processing the remaining plans.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from copybot.core.errors import safe_execute_async
from copybot.core.json_utils import dumps
from copybot.core.models import FollowPlan, Position, Side

if TYPE_CHECKING:
    from copybot.infra.binance_client import BinanceFuturesClient
    from copybot.monitoring.metrics import CopyMetrics

log = logging.getLogger("copybot")


@dataclass
class ExecutionResult:
    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    stop_loss_order_id: Optional[str] = None
    stop_order_errors: Optional[List[str]] = None

    @property
    def partial(self) -> bool:
        return self.success and bool(self.stop_order_errors)


@dataclass
class StopOrderSpec:
    symbol: str
    side: Side
    order_type: str
    stop_price: float


def stop_orders_for(position: Position, entry_side: Side) -> List[StopOrderSpec]:
    """Take-profit / stop-loss orders protecting a freshly opened position."""
    exit_side = entry_side.opposite
    orders: List[StopOrderSpec] = []
    if position.exit_plan.profit_target > 0:
        orders.append(StopOrderSpec(position.symbol, exit_side, "TAKE_PROFIT_MARKET", position.exit_plan.profit_target))
    if position.exit_plan.stop_loss > 0:
        orders.append(StopOrderSpec(position.symbol, exit_side, "STOP_MARKET", position.exit_plan.stop_loss))
    return orders


class TradingExecutor:
    def __init__(
        self,
        exchange: "BinanceFuturesClient",
        metrics: Optional["CopyMetrics"] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.exchange = exchange
        self.metrics = metrics
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    # ========== Queries ==========

    async def validate_connection(self) -> bool:
        try:
            server_time = await self.exchange.server_time()
        except Exception as exc:
            log.error(dumps({"event": "exchange_unreachable", "err": str(exc)}))
            return False
        log.debug(dumps({"event": "exchange_connected", "server_time": server_time}))
        return True

    async def account_info(self) -> Dict[str, Any]:
        return await self.exchange.account_info()

    async def available_balance(self) -> float:
        return await self.exchange.available_balance()

    async def positions(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.exchange.positions(symbol)

    async def open_orders(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.exchange.open_orders(symbol)

    async def cancel_all_orders(self, symbol: str) -> bool:
        try:
            await self.exchange.cancel_all_orders(symbol)
        except Exception as exc:
            log.error(dumps({"event": "cancel_all_failed", "symbol": symbol, "err": str(exc)}))
            return False
        return True

    # ========== Order Submission ==========

    async def execute_plan(self, plan: FollowPlan, quantity: Optional[float] = None) -> ExecutionResult:
        qty = plan.quantity if quantity is None else quantity
        self._log_event("execute_plan", symbol=plan.symbol, action=plan.action.value,
                        side=plan.side.value, quantity=qty, leverage=plan.leverage)

        if not await self.validate_connection():
            return ExecutionResult(success=False, error="Failed to connect to exchange API")

        if plan.leverage > 0:
            await safe_execute_async(
                lambda: self.exchange.set_leverage(plan.symbol, plan.leverage),
                None,
                f"set_leverage {plan.symbol} {plan.leverage}x",
            )

        try:
            resp = await self.exchange.place_order(
                symbol=plan.symbol,
                side=plan.side.value,
                order_type=plan.order_type,
                quantity=abs(qty),
            )
        except Exception as exc:
            log.error(dumps({"event": "order_failed", "symbol": plan.symbol, "side": plan.side.value, "err": str(exc)}))
            if self.metrics:
                self.metrics.orders_failed.labels(symbol=plan.symbol, kind="main").inc()
            return ExecutionResult(success=False, error=str(exc))

        order_id = resp.get("orderId")
        return ExecutionResult(success=True, order_id=str(order_id) if order_id is not None else None)

    async def execute_plan_with_stop_orders(
        self,
        plan: FollowPlan,
        position: Position,
        quantity: Optional[float] = None,
    ) -> ExecutionResult:
        main = await self.execute_plan(plan, quantity)
        if not main.success:
            return main

        result = ExecutionResult(success=True, order_id=main.order_id, stop_order_errors=[])
        for spec in stop_orders_for(position, plan.side):
            try:
                resp = await self.exchange.place_order(
                    symbol=spec.symbol,
                    side=spec.side.value,
                    order_type=spec.order_type,
                    stop_price=spec.stop_price,
                    close_position=True,
                )
            except Exception as exc:
                msg = f"{spec.order_type} at {spec.stop_price} failed: {exc}"
                log.error(dumps({"event": "stop_order_failed", "symbol": spec.symbol,
                                 "type": spec.order_type, "err": str(exc)}))
                if self.metrics:
                    self.metrics.orders_failed.labels(symbol=spec.symbol, kind=spec.order_type).inc()
                result.stop_order_errors.append(msg)
                continue
            oid = str(resp.get("orderId"))
            if spec.order_type == "TAKE_PROFIT_MARKET":
                result.take_profit_order_id = oid
            else:
                result.stop_loss_order_id = oid
            self._log_event("stop_order_placed", symbol=spec.symbol, type=spec.order_type,
                            stop_price=spec.stop_price, order_id=oid)

        if result.partial:
            log.warning(dumps({"event": "execution_partial", "symbol": plan.symbol,
                               "order_id": result.order_id, "errors": result.stop_order_errors}))
        return result
