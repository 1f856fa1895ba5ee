"""
Tests for BinanceFuturesClient request signing and order parameters.
"""
import hashlib
import hmac
from urllib.parse import parse_qsl, urlsplit

import httpx
import pytest

from copybot.core.errors import TradingError
from copybot.infra.binance_client import USER_TRADES_WINDOW_MS, BinanceFuturesClient, to_exchange_symbol


class Recorder:
    """MockTransport handler that remembers requests and replays canned replies (a list plays in order)."""

    def __init__(self, replies=None):
        self.requests = []
        self.replies = replies or {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies.get(request.url.path, (200, {}))
        if isinstance(reply, list):
            reply = reply.pop(0) if reply else (200, [])
        status, body = reply
        return httpx.Response(status, json=body)

    def params(self, index=-1):
        return dict(parse_qsl(urlsplit(str(self.requests[index].url)).query))


def _client(recorder):
    http = httpx.AsyncClient(base_url="https://fapi.test", transport=httpx.MockTransport(recorder))
    return BinanceFuturesClient("key", "secret", retries=1, client=http, clock=lambda: 1_700_000_000_000)


def test_symbol_mapping():
    assert to_exchange_symbol("btc") == "BTCUSDT"
    assert to_exchange_symbol("ETHUSDT") == "ETHUSDT"


class TestSigning:
    @pytest.mark.asyncio
    async def test_signed_request(self):
        rec = Recorder({"/fapi/v1/order": (200, {"orderId": 1, "status": "NEW"})})
        client = _client(rec)

        await client.place_order("BTC", "BUY", quantity=0.0567)

        req = rec.requests[0]
        assert req.method == "POST"
        assert req.headers["X-MBX-APIKEY"] == "key"
        query, _, signature = urlsplit(str(req.url)).query.rpartition("&signature=")
        expected = hmac.new(b"secret", query.encode(), hashlib.sha256).hexdigest()
        assert signature == expected
        params = rec.params()
        assert params["timestamp"] == "1700000000000"
        assert params["recvWindow"] == "5000"

    @pytest.mark.asyncio
    async def test_unsigned_read_has_no_signature(self):
        rec = Recorder({"/fapi/v1/time": (200, {"serverTime": 123})})
        client = _client(rec)
        assert await client.server_time() == 123
        assert "signature" not in str(rec.requests[0].url)


class TestOrders:
    @pytest.mark.asyncio
    async def test_quantity_floored_for_wire(self):
        rec = Recorder()
        client = _client(rec)
        await client.place_order("BTC", "SELL", quantity=0.0567, reduce_only=True)
        params = rec.params()
        assert params["symbol"] == "BTCUSDT"
        assert params["quantity"] == "0.056"
        assert params["reduceOnly"] == "true"

    @pytest.mark.asyncio
    async def test_close_position_order_has_no_quantity(self):
        rec = Recorder()
        client = _client(rec)
        await client.place_order("ETH", "SELL", order_type="STOP_MARKET", stop_price=2300.5, close_position=True)
        params = rec.params()
        assert params["closePosition"] == "true"
        assert params["stopPrice"] == "2300.5"
        assert "quantity" not in params
        assert "reduceOnly" not in params

    @pytest.mark.asyncio
    async def test_quantity_rounding_to_zero_rejected(self):
        rec = Recorder()
        client = _client(rec)
        with pytest.raises(TradingError, match="rounds to zero"):
            await client.place_order("BTC", "BUY", quantity=0.0004)
        assert rec.requests == []

    @pytest.mark.asyncio
    async def test_api_error_message_surfaced(self):
        rec = Recorder({"/fapi/v1/order": (400, {"code": -2019, "msg": "Margin is insufficient."})})
        client = _client(rec)
        with pytest.raises(TradingError, match="Margin is insufficient"):
            await client.place_order("BTC", "BUY", quantity=1)


class TestReads:
    @pytest.mark.asyncio
    async def test_positions_filters_flat_rows(self):
        rows = [
            {"symbol": "BTCUSDT", "positionAmt": "0.010"},
            {"symbol": "ETHUSDT", "positionAmt": "0.000"},
            {"symbol": "SOLUSDT", "positionAmt": "-3"},
        ]
        rec = Recorder({"/fapi/v2/positionRisk": (200, rows)})
        client = _client(rec)
        positions = await client.positions()
        assert [p["symbol"] for p in positions] == ["BTCUSDT", "SOLUSDT"]

    @pytest.mark.asyncio
    async def test_available_balance(self):
        rec = Recorder({"/fapi/v2/account": (200, {"availableBalance": "1234.5"})})
        client = _client(rec)
        assert await client.available_balance() == 1234.5

    @pytest.mark.asyncio
    async def test_read_failure_wrapped(self):
        rec = Recorder({"/fapi/v1/openOrders": (500, {"msg": "busy"})})
        client = _client(rec)
        with pytest.raises(TradingError, match="Failed after 1 attempts"):
            await client.open_orders("BTC")


def _fill(trade_id, time, symbol="BTCUSDT"):
    return {"symbol": symbol, "id": trade_id, "time": time, "realizedPnl": "0", "commission": "0"}


class TestUserTrades:
    @pytest.mark.asyncio
    async def test_signed_query(self):
        rec = Recorder({"/fapi/v1/userTrades": (200, [_fill(1, 10)])})
        client = _client(rec)

        assert await client.user_trades("eth", start_time=5, end_time=50) == [_fill(1, 10)]
        params = rec.params()
        assert params["symbol"] == "ETHUSDT"
        assert (params["startTime"], params["endTime"], params["limit"]) == ("5", "50", "1000")
        assert "fromId" not in params
        assert "signature" in params

    @pytest.mark.asyncio
    async def test_range_walked_in_seven_day_windows(self):
        week = USER_TRADES_WINDOW_MS
        rec = Recorder({"/fapi/v1/userTrades": [(200, [_fill(1, 100)]), (200, [_fill(2, week + 5)])]})
        client = _client(rec)

        trades = await client.user_trades_in_range("BTC", 0, week + 3 * 24 * 3600 * 1000)

        assert [t["id"] for t in trades] == [1, 2]
        first, second = rec.params(0), rec.params(1)
        assert (first["startTime"], first["endTime"]) == ("0", str(week - 1))
        assert (second["startTime"], second["endTime"]) == (str(week), str(week + 3 * 24 * 3600 * 1000))

    @pytest.mark.asyncio
    async def test_full_page_continued_by_trade_id(self):
        rec = Recorder({"/fapi/v1/userTrades": [
            (200, [_fill(1, 10), _fill(2, 20)]),
            (200, [_fill(3, 30), _fill(4, 500)]),
        ]})
        client = _client(rec)

        trades = await client.user_trades_in_range("BTC", 0, 100, limit=2)

        assert [t["id"] for t in trades] == [1, 2, 3]
        assert len(rec.requests) == 2
        follow_up = rec.params(1)
        assert follow_up["fromId"] == "3"
        assert "startTime" not in follow_up
