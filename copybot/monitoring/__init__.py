"""
Monitoring package.

This package contains the Prometheus metrics for the follow loop and the
realized-profit report built from exchange fills.
"""

from copybot.monitoring.metrics import CopyMetrics, start_metrics_server
from copybot.monitoring.profit_report import ProfitReport, ProfitStats, build_profit_report, parse_since

__all__ = [
    "CopyMetrics",
    "start_metrics_server",
    "ProfitReport",
    "ProfitStats",
    "build_profit_report",
    "parse_since",
]
