"""
Order ledger package.

Durable, append-only record of replica orders used for deduplication and
for rebuilding prior positions after a restart.
"""

from copybot.ledger.order_ledger import LedgerCorruptError, LedgerStats, OrderLedger

__all__ = [
    "LedgerCorruptError",
    "LedgerStats",
    "OrderLedger",
]
