"""
Prometheus metrics for the follow loop.

Organized into: plans, execution, ledger, operational.
"""

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest, start_http_server

from copybot.core.json_utils import dumps

log = logging.getLogger("copybot")


class CopyMetrics:
    """Counters and gauges for one bot process. Each instance owns its registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Plan Metrics ===
        self.plans_emitted = Counter(
            'copy_plans_emitted_total',
            'Follow plans produced by the engine',
            labelnames=['agent', 'action'],
            registry=reg
        )
        self.plans_executed = Counter(
            'copy_plans_executed_total',
            'Follow plans executed on the exchange',
            labelnames=['agent', 'action'],
            registry=reg
        )
        self.plans_skipped = Counter(
            'copy_plans_skipped_total',
            'Follow plans not executed',
            labelnames=['agent', 'reason'],
            registry=reg
        )

        # === Execution Metrics ===
        self.orders_failed = Counter(
            'copy_orders_failed_total',
            'Exchange orders that failed',
            labelnames=['symbol', 'kind'],
            registry=reg
        )
        self.orphan_orders_cancelled = Counter(
            'copy_orphan_orders_cancelled_total',
            'Stop / take-profit orders cancelled because their position is gone',
            labelnames=['symbol'],
            registry=reg
        )
        self.released_margin = Counter(
            'copy_released_margin_total',
            'Margin freed by closing a replica before re-entry (quote currency)',
            labelnames=['symbol'],
            registry=reg
        )

        # === Ledger Metrics ===
        self.ledger_entries = Gauge(
            'copy_ledger_entries',
            'Entries in the order ledger',
            registry=reg
        )

        # === Operational Metrics ===
        self.cycle_duration = Histogram(
            'copy_cycle_duration_seconds',
            'Duration of one follow cycle',
            labelnames=['agent'],
            buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
            registry=reg
        )
        self.cycles_skipped = Counter(
            'copy_cycles_skipped_total',
            'Ticks skipped because the previous cycle was still running',
            labelnames=['agent'],
            registry=reg
        )
        self.cycle_errors = Counter(
            'copy_cycle_errors_total',
            'Follow cycles that raised',
            labelnames=['agent', 'error'],
            registry=reg
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)


def start_metrics_server(metrics: CopyMetrics, port: int, addr: str = "0.0.0.0") -> bool:
    """Serve /metrics on `port`. Port 0 disables the endpoint."""
    if port <= 0:
        return False
    start_http_server(port, addr=addr, registry=metrics.registry)
    log.info(dumps({"event": "metrics_server_started", "port": port}))
    return True
