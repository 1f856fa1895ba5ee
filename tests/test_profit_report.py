"""
Tests for the realized-profit report and the profit command.
"""
import logging

import httpx
import pytest

from copybot.config.config import Settings
from copybot.core.errors import ConfigurationError
from copybot.core.models import Side
from copybot.infra.binance_client import BinanceFuturesClient
from copybot.ledger.order_ledger import OrderLedger
from copybot.main import build_parser, cmd_profit
from copybot.monitoring.profit_report import DAY_MS, analyze_trades, build_profit_report, parse_since, stats_for

NOW = 1_700_000_000_000


def _fill(symbol, pnl, commission, trade_id=1, time=NOW - 1000):
    return {"symbol": symbol, "id": trade_id, "time": time, "side": "SELL", "qty": "0.01", "price": "43000",
            "realizedPnl": str(pnl), "commission": str(commission)}


class TestParseSince:
    def test_days(self):
        assert parse_since("7d", NOW) == NOW - 7 * DAY_MS
        assert parse_since("30D", NOW) == NOW - 30 * DAY_MS

    def test_date_is_utc_midnight(self):
        assert parse_since("2024-01-01", NOW) == 1_704_067_200_000

    def test_timestamp(self):
        assert parse_since("1704067200000", NOW) == 1_704_067_200_000

    @pytest.mark.parametrize("value", ["yesterday", "7", "2024-13-01", "170406720000"])
    def test_rejects_other_formats(self, value):
        with pytest.raises(ConfigurationError):
            parse_since(value, NOW)


class TestStats:
    def test_sums_and_counts(self):
        stats = stats_for([
            _fill("BTCUSDT", 0, 0.2),
            _fill("BTCUSDT", 12.5, 0.4),
            _fill("BTCUSDT", -4.0, 0.4),
        ])
        assert stats.total_trades == 3
        assert stats.gross_profit == pytest.approx(8.5)
        assert stats.commission == pytest.approx(1.0)
        assert stats.net_profit == pytest.approx(7.5)
        assert (stats.winning_trades, stats.losing_trades) == (1, 1)
        assert stats.max_profit == 12.5
        assert stats.max_loss == -4.0
        assert stats.win_rate == pytest.approx(100 / 3)

    def test_empty(self):
        stats = stats_for([])
        assert stats.total_trades == 0
        assert stats.win_rate == 0.0

    def test_grouped_by_symbol(self):
        report = analyze_trades([_fill("BTCUSDT", 10, 1), _fill("ETHUSDT", -2, 0.5), _fill("BTCUSDT", 5, 1)], 0, NOW)
        assert sorted(report.by_symbol) == ["BTCUSDT", "ETHUSDT"]
        assert report.by_symbol["BTCUSDT"].net_profit == pytest.approx(13.0)
        assert report.overall.net_profit == pytest.approx(10.5)
        assert report.to_dict()["bySymbol"]["ETHUSDT"]["losing_trades"] == 1


class FillsByMarket:
    """MockTransport handler serving /fapi/v1/userTrades per symbol."""

    def __init__(self, fills):
        self.fills = fills
        self.symbols = []
        self.params = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.params.append(dict(request.url.params))
        symbol = request.url.params["symbol"]
        self.symbols.append(symbol)
        return httpx.Response(200, json=self.fills.get(symbol, []))


def _exchange(handler):
    http = httpx.AsyncClient(base_url="https://fapi.test", transport=httpx.MockTransport(handler))
    return BinanceFuturesClient("key", "secret", retries=1, client=http, clock=lambda: NOW)


class TestBuildReport:
    @pytest.mark.asyncio
    async def test_one_request_per_market(self):
        handler = FillsByMarket({"BTCUSDT": [_fill("BTCUSDT", 10, 1)], "ETHUSDT": [_fill("ETHUSDT", -3, 1)]})

        report = await build_profit_report(_exchange(handler), ["BTC", "BTCUSDT", "eth"], NOW - DAY_MS, NOW)

        assert handler.symbols == ["BTCUSDT", "ETHUSDT"]
        assert report.overall.total_trades == 2
        assert report.overall.net_profit == pytest.approx(5.0)


@pytest.fixture
def cfg(tmp_path, monkeypatch):
    monkeypatch.setenv("COPYBOT_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("BINANCE_API_KEY", raising=False)
    monkeypatch.delenv("BINANCE_API_SECRET", raising=False)
    return Settings.load()


@pytest.fixture
def log():
    return logging.getLogger("profit.test")


class TestProfitCommand:
    @pytest.mark.asyncio
    async def test_requires_credentials(self, cfg, log):
        args = build_parser().parse_args(["profit"])
        assert await cmd_profit(cfg, args, log) == 1

    @pytest.mark.asyncio
    async def test_ledger_symbols_since_creation(self, cfg, log):
        ledger = OrderLedger(cfg.data_dir)
        ledger.record(1, "BTC", "gpt-5", Side.BUY, 0.1)
        ledger.record(2, "ETH", "gpt-5", Side.BUY, 1.0)
        handler = FillsByMarket({"BTCUSDT": [_fill("BTCUSDT", 10, 1)]})

        args = build_parser().parse_args(["profit", "--json"])
        assert await cmd_profit(cfg, args, log, exchange=_exchange(handler)) == 0

        assert handler.symbols == ["BTCUSDT", "ETHUSDT"]
        assert handler.params[0]["startTime"] == str(ledger.created_at())

    @pytest.mark.asyncio
    async def test_pair_and_since(self, cfg, log):
        handler = FillsByMarket({"SOLUSDT": [_fill("SOLUSDT", -1, 0.1)]})

        args = build_parser().parse_args(["profit", "--pair", "SOL", "--since", "3d"])
        assert await cmd_profit(cfg, args, log, exchange=_exchange(handler)) == 0

        assert handler.symbols == ["SOLUSDT"]
        window = int(handler.params[0]["endTime"]) - int(handler.params[0]["startTime"])
        assert window == pytest.approx(3 * DAY_MS, abs=1000)

    @pytest.mark.asyncio
    async def test_nothing_to_report(self, cfg, log):
        handler = FillsByMarket({})
        args = build_parser().parse_args(["profit"])
        assert await cmd_profit(cfg, args, log, exchange=_exchange(handler)) == 0
        assert handler.symbols == []

    def test_bad_since_rejected(self):
        args = build_parser().parse_args(["profit", "--since", "last week"])
        with pytest.raises(ConfigurationError):
            parse_since(args.since, NOW)
