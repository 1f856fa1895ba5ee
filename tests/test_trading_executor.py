"""
Tests for TradingExecutor order submission.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from copybot.core.errors import TradingError
from copybot.core.models import FollowPlan, PlanAction, Side
from copybot.execution.trading_executor import TradingExecutor, stop_orders_for
from copybot.monitoring.metrics import CopyMetrics


@pytest.fixture
def exchange():
    ex = MagicMock()
    ex.server_time = AsyncMock(return_value=1_700_000_000_000)
    ex.set_leverage = AsyncMock(return_value={"leverage": 10})
    ex.place_order = AsyncMock(side_effect=[{"orderId": 1}, {"orderId": 2}, {"orderId": 3}])
    ex.cancel_all_orders = AsyncMock(return_value={"code": 200})
    return ex


@pytest.fixture
def executor(exchange):
    return TradingExecutor(exchange, metrics=CopyMetrics())


def _plan(pos, quantity=None):
    return FollowPlan(
        action=PlanAction.ENTER,
        symbol=pos.symbol,
        side=pos.side,
        quantity=abs(pos.quantity) if quantity is None else quantity,
        leverage=pos.leverage,
        reason="copy",
        agent="agent-a",
        timestamp=0,
        entry_price=pos.entry_price,
        position=pos,
    )


class TestExecutePlan:
    @pytest.mark.asyncio
    async def test_market_order(self, executor, exchange, make_position):
        pos = make_position(quantity=0.05)
        result = await executor.execute_plan(_plan(pos))
        assert result.success
        assert result.order_id == "1"
        exchange.set_leverage.assert_awaited_once_with("BTC", 10.0)
        kwargs = exchange.place_order.await_args.kwargs
        assert kwargs == {"symbol": "BTC", "side": "BUY", "order_type": "MARKET", "quantity": 0.05}

    @pytest.mark.asyncio
    async def test_quantity_override(self, executor, exchange, make_position):
        await executor.execute_plan(_plan(make_position()), 0.2)
        assert exchange.place_order.await_args.kwargs["quantity"] == 0.2

    @pytest.mark.asyncio
    async def test_unreachable_exchange(self, executor, exchange, make_position):
        exchange.server_time.side_effect = TradingError("Request failed")
        result = await executor.execute_plan(_plan(make_position()))
        assert not result.success
        assert result.error == "Failed to connect to exchange API"
        exchange.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_leverage_failure_is_best_effort(self, executor, exchange, make_position):
        exchange.set_leverage.side_effect = TradingError("No need to change leverage")
        result = await executor.execute_plan(_plan(make_position()))
        assert result.success

    @pytest.mark.asyncio
    async def test_order_rejection(self, executor, exchange, make_position):
        exchange.place_order.side_effect = TradingError("Binance API Error: Margin is insufficient. (HTTP 400)")
        result = await executor.execute_plan(_plan(make_position()))
        assert not result.success
        assert "Margin is insufficient" in result.error
        assert executor.metrics.registry.get_sample_value(
            "copy_orders_failed_total", {"symbol": "BTC", "kind": "main"}) == 1.0


class TestStopOrders:
    def test_specs_for_long(self, make_position):
        specs = stop_orders_for(make_position(entry_price=100.0, profit_target=110.0, stop_loss=95.0), Side.BUY)
        assert [(s.order_type, s.side, s.stop_price) for s in specs] == [
            ("TAKE_PROFIT_MARKET", Side.SELL, 110.0),
            ("STOP_MARKET", Side.SELL, 95.0),
        ]

    def test_zero_levels_skipped(self, make_position):
        assert stop_orders_for(make_position(profit_target=0.0, stop_loss=0.0), Side.BUY) == []

    @pytest.mark.asyncio
    async def test_places_both(self, executor, exchange, make_position):
        pos = make_position(quantity=-1.0, entry_price=2500.0, profit_target=2300.0, stop_loss=2600.0, symbol="ETH")
        result = await executor.execute_plan_with_stop_orders(_plan(pos), pos)

        assert result.success and not result.partial
        assert (result.order_id, result.take_profit_order_id, result.stop_loss_order_id) == ("1", "2", "3")
        tp_call = exchange.place_order.await_args_list[1].kwargs
        assert tp_call["side"] == "BUY"
        assert tp_call["close_position"] is True
        assert "quantity" not in tp_call

    @pytest.mark.asyncio
    async def test_stop_failure_is_partial(self, executor, exchange, make_position):
        exchange.place_order.side_effect = [{"orderId": 1}, TradingError("would trigger immediately"), {"orderId": 3}]
        pos = make_position()
        result = await executor.execute_plan_with_stop_orders(_plan(pos), pos)

        assert result.success
        assert result.partial
        assert result.take_profit_order_id is None
        assert result.stop_loss_order_id == "3"
        assert "would trigger immediately" in result.stop_order_errors[0]

    @pytest.mark.asyncio
    async def test_main_failure_places_no_stops(self, executor, exchange, make_position):
        exchange.place_order.side_effect = TradingError("rejected")
        pos = make_position()
        result = await executor.execute_plan_with_stop_orders(_plan(pos), pos)
        assert not result.success
        assert exchange.place_order.await_count == 1


class TestCancelAll:
    @pytest.mark.asyncio
    async def test_success_and_failure(self, executor, exchange):
        assert await executor.cancel_all_orders("BTC")
        exchange.cancel_all_orders.side_effect = TradingError("down")
        assert not await executor.cancel_all_orders("BTC")
