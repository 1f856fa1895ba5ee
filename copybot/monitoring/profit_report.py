"""
Realized profit of the replica account, from Binance futures fills.

Every fill returned by /fapi/v1/userTrades carries `realizedPnl` (non-zero on
fills that reduce a position) and `commission`. Per symbol and overall:

    gross = sum(realizedPnl)
    net   = gross - sum(commission)

A fill is a win when realizedPnl > 0 and a loss when realizedPnl < 0; opening
fills count toward the trade total only.

Usage:
    start = parse_since("7d", now_ms)
    report = await build_profit_report(exchange, ["BTC", "ETH"], start, now_ms)
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Sequence

from copybot.core.errors import ConfigurationError
from copybot.core.json_utils import dumps
from copybot.infra.binance_client import to_exchange_symbol

if TYPE_CHECKING:
    from copybot.infra.binance_client import BinanceFuturesClient

log = logging.getLogger("copybot")

DAY_MS = 24 * 60 * 60 * 1000

_DAYS_RE = re.compile(r"^(\d+)d$", re.IGNORECASE)
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIMESTAMP_RE = re.compile(r"^\d{13}$")


@dataclass
class ProfitStats:
    total_trades: int = 0
    gross_profit: float = 0.0
    commission: float = 0.0
    net_profit: float = 0.0
    winning_trades: int = 0
    losing_trades: int = 0
    average_win: float = 0.0
    average_loss: float = 0.0
    max_profit: float = 0.0
    max_loss: float = 0.0

    @property
    def win_rate(self) -> float:
        if not self.total_trades:
            return 0.0
        return self.winning_trades / self.total_trades * 100

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["win_rate"] = self.win_rate
        return out


@dataclass
class ProfitReport:
    start_time: int
    end_time: int
    overall: ProfitStats
    by_symbol: Dict[str, ProfitStats] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startTime": self.start_time,
            "endTime": self.end_time,
            "overall": self.overall.to_dict(),
            "bySymbol": {sym: stats.to_dict() for sym, stats in sorted(self.by_symbol.items())},
        }


def parse_since(value: str, now_ms: int) -> int:
    """
    Start of the report window in epoch ms.

    Accepts "7d" (last N days), "2024-01-01" (UTC midnight of that date) or a
    13-digit millisecond timestamp.
    """
    text = value.strip()
    m = _DAYS_RE.match(text)
    if m:
        return now_ms - int(m.group(1)) * DAY_MS
    if _DATE_RE.match(text):
        try:
            day = datetime.strptime(text, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid date '{value}'. Expected YYYY-MM-DD", config_key="since") from exc
        return int(day.timestamp() * 1000)
    if _TIMESTAMP_RE.match(text):
        return int(text)
    raise ConfigurationError(
        f"Invalid time format '{value}'. Use '7d' (last 7 days), '2024-01-01' (since date) "
        "or '1704067200000' (timestamp)",
        config_key="since",
    )


def stats_for(trades: Sequence[Dict[str, Any]]) -> ProfitStats:
    if not trades:
        return ProfitStats()
    pnls = [float(t.get("realizedPnl", 0) or 0) for t in trades]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]
    gross = sum(pnls)
    commission = sum(float(t.get("commission", 0) or 0) for t in trades)
    return ProfitStats(
        total_trades=len(trades),
        gross_profit=gross,
        commission=commission,
        net_profit=gross - commission,
        winning_trades=len(wins),
        losing_trades=len(losses),
        average_win=sum(wins) / len(wins) if wins else 0.0,
        average_loss=sum(losses) / len(losses) if losses else 0.0,
        max_profit=max(pnls),
        max_loss=min(pnls),
    )


def analyze_trades(trades: Iterable[Dict[str, Any]], start_time: int, end_time: int) -> ProfitReport:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    all_trades: List[Dict[str, Any]] = []
    for t in trades:
        grouped.setdefault(t["symbol"], []).append(t)
        all_trades.append(t)
    return ProfitReport(
        start_time=start_time,
        end_time=end_time,
        overall=stats_for(all_trades),
        by_symbol={sym: stats_for(rows) for sym, rows in grouped.items()},
    )


async def build_profit_report(
    exchange: "BinanceFuturesClient",
    symbols: Iterable[str],
    start_time: int,
    end_time: int,
) -> ProfitReport:
    """Fetch fills for each symbol (BTC and BTCUSDT are the same market) and aggregate them."""
    markets = sorted({to_exchange_symbol(s) for s in symbols})
    trades: List[Dict[str, Any]] = []
    for market in markets:
        trades.extend(await exchange.user_trades_in_range(market, start_time, end_time))
    report = analyze_trades(trades, start_time, end_time)
    log.info(dumps({"event": "profit_report_built", "symbols": markets, "trades": report.overall.total_trades,
                    "net": round(report.overall.net_profit, 4)}))
    return report
