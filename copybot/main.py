"""
Entry point wiring all components.

    copybot follow AGENT [--interval N] [--total-margin X] [--price-tolerance P] [--risk-only] [--once]
    copybot agents
    copybot status
    copybot reset SYMBOL [--oid N]
    copybot profit [--since 7d|YYYY-MM-DD|MS] [--pair SYMBOL] [--json]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from copybot.allocation.capital_allocator import CapitalAllocator
from copybot.app import FollowRunner
from copybot.config.config import Settings
from copybot.config.config_validator import validate_and_log
from copybot.config.tolerance import ToleranceConfig
from copybot.core.errors import CopyBotError
from copybot.core.json_utils import dumps
from copybot.engine.follow_engine import FollowEngine
from copybot.execution.position_manager import PositionManager
from copybot.execution.trading_executor import TradingExecutor
from copybot.infra.agent_client import AgentClient
from copybot.infra.binance_client import BinanceFuturesClient
from copybot.infra.logging_cfg import build_logger, log_event
from copybot.ledger.order_ledger import OrderLedger
from copybot.monitoring.metrics import CopyMetrics, start_metrics_server
from copybot.monitoring.profit_report import ProfitReport, build_profit_report, parse_since
from copybot.risk.risk_manager import RiskManager

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="copybot", description="Copy an AI trading agent's futures positions")
    sub = parser.add_subparsers(dest="command", required=True)

    follow = sub.add_parser("follow", help="follow an agent")
    follow.add_argument("agent", help="agent id (model_id)")
    follow.add_argument("--interval", type=float, default=None, help="poll interval in seconds")
    follow.add_argument("--total-margin", type=float, default=None, help="margin budget to allocate across entries")
    follow.add_argument("--price-tolerance", type=float, default=None, help="global price tolerance in percent")
    follow.add_argument("--risk-only", action="store_true", help="plan and assess only, never trade")
    follow.add_argument("--once", action="store_true", help="run a single poll and exit")

    sub.add_parser("agents", help="list agents in the latest snapshot")
    sub.add_parser("status", help="show order ledger statistics")

    reset = sub.add_parser("reset", help="forget copied lots of a symbol so they are copied again")
    reset.add_argument("symbol")
    reset.add_argument("--oid", type=int, default=None, help="only this entry oid")

    profit = sub.add_parser("profit", help="realized profit from exchange fills")
    profit.add_argument("--since", default=None,
                        help="7d, YYYY-MM-DD or a ms timestamp (default: when the ledger was created)")
    profit.add_argument("--pair", default=None, help="only this symbol (default: every symbol in the ledger)")
    profit.add_argument("--json", action="store_true", help="print the report as JSON")
    return parser


# ========== Commands ==========

def apply_follow_overrides(cfg: Settings, args: argparse.Namespace) -> Settings:
    """Fold the follow flags into the settings and check them like their environment variables."""
    merged = replace(
        cfg,
        total_margin=cfg.total_margin if args.total_margin is None else args.total_margin,
        poll_interval=cfg.poll_interval if args.interval is None else args.interval,
        price_tolerance=cfg.price_tolerance if args.price_tolerance is None else args.price_tolerance,
    )
    merged.validate()
    return merged


async def cmd_follow(cfg: Settings, args: argparse.Namespace, log: logging.Logger) -> int:
    cfg = apply_follow_overrides(cfg, args)
    if not validate_and_log(cfg, log, require_credentials=not args.risk_only):
        log.error("Configuration validation failed, exiting")
        return 1

    tolerance = ToleranceConfig.from_settings(cfg)
    if args.price_tolerance is not None:
        # The flag wins over the PRICE_TOLERANCE environment variable.
        tolerance.set_price_tolerance(args.price_tolerance)
    total_margin = cfg.total_margin
    interval = cfg.poll_interval

    metrics = CopyMetrics()
    start_metrics_server(metrics, cfg.metrics_port)

    agent_client = AgentClient(cfg.agent_api_url, timeout=cfg.http_timeout, cache_ttl=cfg.cache_ttl,
                               retries=cfg.api_retries)
    exchange = BinanceFuturesClient(cfg.binance_api_key or "", cfg.binance_api_secret or "",
                                    testnet=cfg.testnet, timeout=cfg.http_timeout, retries=cfg.api_retries)
    ledger = OrderLedger(cfg.data_dir)
    executor = TradingExecutor(exchange, metrics=metrics)
    manager = PositionManager(executor, ledger, verify_delay=cfg.close_verify_delay, metrics=metrics)
    engine = FollowEngine(
        ledger, executor, manager,
        tolerance=tolerance,
        allocator=CapitalAllocator(total_margin) if total_margin > 0 else None,
        balance_settle_delay=cfg.balance_settle_delay,
        dry_run=args.risk_only,
        metrics=metrics,
    )
    runner = FollowRunner(
        agent_client, engine, executor, manager, ledger,
        risk_manager=RiskManager(tolerance),
        total_margin=total_margin if total_margin > 0 else None,
        interval=interval,
        risk_only=args.risk_only,
        retention_days=cfg.ledger_retention_days,
        metrics=metrics,
    )

    log_event(log, "startup", agent=args.agent, interval=interval, total_margin=total_margin,
              risk_only=args.risk_only, testnet=cfg.testnet)
    try:
        if args.once:
            summary = await runner.poll_once(args.agent)
            _print_plans(summary)
            return 0

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, runner.stop)
            except NotImplementedError:
                pass
        await runner.run(args.agent)
        return 0
    finally:
        log.info("Closing connections...")
        await agent_client.close()
        await exchange.close()
        log.info("Shutdown complete")


async def cmd_agents(cfg: Settings) -> int:
    client = AgentClient(cfg.agent_api_url, timeout=cfg.http_timeout, cache_ttl=cfg.cache_ttl,
                         retries=cfg.api_retries)
    try:
        snapshots = await client.latest_snapshots()
    finally:
        await client.close()

    table = Table(title="Agents")
    table.add_column("agent")
    table.add_column("marker", justify="right")
    table.add_column("open positions", justify="right")
    for snap in snapshots:
        open_count = sum(1 for p in snap.positions.values() if p.is_open)
        table.add_row(snap.agent_id, str(snap.marker), str(open_count))
    console.print(table)
    return 0


def cmd_status(cfg: Settings) -> int:
    ledger = OrderLedger(cfg.data_dir)
    stats = ledger.stats()
    table = Table(title=f"Order ledger ({ledger.path})")
    table.add_column("key")
    table.add_column("count", justify="right")
    table.add_row("total orders", str(stats.total_orders))
    table.add_row("profit exits", str(stats.profit_exits))
    for agent, n in sorted(stats.orders_by_agent.items()):
        table.add_row(f"agent {agent}", str(n))
    for symbol, n in sorted(stats.orders_by_symbol.items()):
        table.add_row(f"symbol {symbol}", str(n))
    console.print(table)
    return 0


def cmd_reset(cfg: Settings, args: argparse.Namespace) -> int:
    ledger = OrderLedger(cfg.data_dir)
    removed = ledger.reset(args.symbol, args.oid)
    console.print(f"Removed {removed} ledger entr{'y' if removed == 1 else 'ies'} for {args.symbol}")
    return 0


async def cmd_profit(cfg: Settings, args: argparse.Namespace, log: logging.Logger,
                     exchange: Optional[BinanceFuturesClient] = None) -> int:
    if exchange is None and not (cfg.binance_api_key and cfg.binance_api_secret):
        log.error("BINANCE_API_KEY and BINANCE_API_SECRET are required for the profit report")
        return 1

    ledger = OrderLedger(cfg.data_dir)
    end_time = int(time.time() * 1000)
    start_time = parse_since(args.since, end_time) if args.since else ledger.created_at()
    symbols = [args.pair] if args.pair else ledger.symbols()
    if not symbols:
        console.print("No symbols in the ledger; pass --pair to pick one")
        return 0

    log_event(log, "profit_report_start", symbols=symbols, start=start_time, end=end_time)
    owned = exchange is None
    if owned:
        exchange = BinanceFuturesClient(cfg.binance_api_key, cfg.binance_api_secret, testnet=cfg.testnet,
                                        timeout=cfg.http_timeout, retries=cfg.api_retries)
    try:
        report = await build_profit_report(exchange, symbols, start_time, end_time)
    finally:
        if owned:
            await exchange.close()

    if args.json:
        console.print_json(dumps(report.to_dict()))
    else:
        _print_profit(report)
    return 0


def _print_plans(summary) -> None:
    table = Table(title=f"Plans for {summary.agent}")
    for col in ("action", "symbol", "side", "quantity", "leverage", "reason"):
        table.add_column(col)
    for plan in summary.plans:
        table.add_row(plan.action.value, plan.symbol, plan.side.value, f"{plan.quantity:g}",
                      f"{plan.leverage:g}x", plan.reason)
    console.print(table)
    console.print(f"executed={summary.executed} skipped={summary.skipped}")


def _print_profit(report: ProfitReport) -> None:
    def fmt_ms(ms: int) -> str:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")

    table = Table(title=f"Realized profit {fmt_ms(report.start_time)} .. {fmt_ms(report.end_time)}")
    for col in ("symbol", "trades", "wins", "losses", "win rate", "gross", "commission", "net"):
        table.add_column(col, justify="left" if col == "symbol" else "right")

    def add(label: str, s) -> None:
        color = "green" if s.net_profit > 0 else "red" if s.net_profit < 0 else "white"
        table.add_row(label, str(s.total_trades), str(s.winning_trades), str(s.losing_trades),
                      f"{s.win_rate:.2f}%", f"{s.gross_profit:.4f}", f"{s.commission:.4f}",
                      f"[{color}]{s.net_profit:.4f}[/{color}]")

    for symbol, stats in sorted(report.by_symbol.items()):
        add(symbol, stats)
    add("TOTAL", report.overall)
    console.print(table)
    if not report.overall.total_trades:
        console.print("No trades found in the selected window")


# ========== Entry ==========

async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = Settings.load()
    log = build_logger("copybot", level=getattr(logging, cfg.log_level, logging.INFO), file_path=cfg.log_file)

    if args.command == "follow":
        return await cmd_follow(cfg, args, log)
    if args.command == "agents":
        return await cmd_agents(cfg)
    if args.command == "status":
        return cmd_status(cfg)
    if args.command == "reset":
        return cmd_reset(cfg, args)
    if args.command == "profit":
        return await cmd_profit(cfg, args, log)
    return 2


def cli() -> None:
    try:
        code = asyncio.run(main())
    except CopyBotError as exc:
        console.print(f"[red]error:[/red] {exc}")
        code = 1
    except KeyboardInterrupt:
        print("\nStopped by user")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    cli()
