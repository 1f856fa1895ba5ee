"""
Infrastructure package.

This package contains the remote clients (agent-data API, Binance futures),
the retry helper and logging configuration.
"""

from copybot.infra.agent_client import AgentClient, current_marker, latest_per_agent
from copybot.infra.binance_client import BinanceFuturesClient, to_exchange_symbol
from copybot.infra.logging_cfg import build_logger, log_event
from copybot.infra.retry import retry_with_backoff

__all__ = [
    "AgentClient",
    "current_marker",
    "latest_per_agent",
    "BinanceFuturesClient",
    "to_exchange_symbol",
    "build_logger",
    "log_event",
    "retry_with_backoff",
]
