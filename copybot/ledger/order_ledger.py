"""
OrderLedger: durable record of every replica order placed.

The ledger is the only source of truth for "what has already been copied".
The follow engine never trusts an in-memory previous snapshot; it rebuilds
prior positions by replaying the latest entry per (agent, symbol).

File layout (`<data_dir>/order-history.json`, indented, hand-editable):

    {
      "processedOrders": [{"entryOid": 1, "symbol": "BTC", "agent": "...",
                           "timestamp": 0, "orderId": "42", "side": "BUY",
                           "quantity": 0.1, "price": 43000.0}],
      "profitExits": [...],
      "lastUpdated": 0,
      "createdAt": 0
    }

Invariants:
    - Unique per (entryOid, symbol). A second record() is a logged no-op.
    - Entries are never mutated; they leave only through reset() or
      prune_older_than(), which never drops the latest entry of an
      (agent, symbol).
    - Writes go to a temp file then replace() the original.
    - Reads that feed reconciliation decisions reload the file first, so
      manual edits between cycles are honoured.

Thread Safety:
    None. The runner allows one follow cycle per agent at a time and the
    ledger has no other writer.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from copybot.core.errors import CopyBotError
from copybot.core.json_utils import JSONDecodeError, dumps, dumps_pretty, loads
from copybot.core.models import LedgerEntry, ProfitExitRecord, Side

log = logging.getLogger("copybot")

LEDGER_FILENAME = "order-history.json"
DAY_MS = 24 * 60 * 60 * 1000


class LedgerCorruptError(CopyBotError):
    """The ledger file exists but cannot be parsed; dedup state is unknown."""


@dataclass
class LedgerStats:
    total_orders: int
    orders_by_agent: Dict[str, int] = field(default_factory=dict)
    orders_by_symbol: Dict[str, int] = field(default_factory=dict)
    last_updated: int = 0
    profit_exits: int = 0


def _now_ms() -> int:
    return int(time.time() * 1000)


class OrderLedger:
    def __init__(
        self,
        data_dir: str = "data",
        clock: Optional[Callable[[], int]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.path = Path(data_dir) / LEDGER_FILENAME
        self.tmp = self.path.with_suffix(".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or _now_ms
        self._log_event = log_event or self._default_log
        self._entries: List[LedgerEntry] = []
        self._profit_exits: List[ProfitExitRecord] = []
        self._last_updated: int = 0
        self._created_at: Optional[int] = None
        self._load()

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    # ========== Persistence ==========

    def _load(self) -> None:
        if not self.path.exists():
            self._entries = []
            self._profit_exits = []
            self._last_updated = self._clock()
            self._created_at = None
            return

        try:
            raw = loads(self.path.read_bytes())
        except (JSONDecodeError, OSError) as exc:
            log.critical(dumps({"event": "ledger_load_error", "path": str(self.path), "err": str(exc)}))
            raise LedgerCorruptError(f"OrderLedger - load: cannot read {self.path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise LedgerCorruptError(f"OrderLedger - load: {self.path} is not a JSON object")

        try:
            self._entries = [LedgerEntry.from_dict(d) for d in raw.get("processedOrders") or []]
            # Files written before profit exits existed have no such key.
            self._profit_exits = [ProfitExitRecord.from_dict(d) for d in raw.get("profitExits") or []]
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerCorruptError(f"OrderLedger - load: malformed record in {self.path}: {exc}") from exc
        self._last_updated = int(raw.get("lastUpdated") or 0)
        created = raw.get("createdAt")
        self._created_at = int(created) if created else None

        if self._created_at is None:
            self._created_at = self._backfill_created_at()
            self._log_event("ledger_created_at_backfilled", created_at=self._created_at)
            self._save()

    def _backfill_created_at(self) -> int:
        if self._entries:
            return min(e.timestamp for e in self._entries)
        try:
            return int(self.path.stat().st_mtime * 1000)
        except OSError:
            return self._clock()

    def _save(self) -> None:
        self._last_updated = self._clock()
        if self._created_at is None:
            # First write of a fresh ledger: following starts now.
            self._created_at = self._last_updated
        payload = {
            "processedOrders": [e.to_dict() for e in self._entries],
            "profitExits": [p.to_dict() for p in self._profit_exits],
            "lastUpdated": self._last_updated,
            "createdAt": self._created_at,
        }
        try:
            self.tmp.write_text(dumps_pretty(payload), encoding="utf-8")
            self.tmp.replace(self.path)
        except OSError as exc:
            log.critical(dumps({"event": "ledger_write_error", "path": str(self.path), "err": str(exc)}))
            raise

    def reload(self) -> None:
        """Re-read the backing file (picks up manual edits)."""
        self._load()

    # ========== Processed orders ==========

    def is_processed(self, entry_oid: int, symbol: str) -> bool:
        self._load()
        return any(e.entry_oid == entry_oid and e.symbol == symbol for e in self._entries)

    def record(
        self,
        entry_oid: int,
        symbol: str,
        agent: str,
        side: Side | str,
        quantity: float,
        price: Optional[float] = None,
        order_id: Optional[str] = None,
    ) -> bool:
        """Append an entry. Returns False (and keeps the first write) on a duplicate key."""
        self._load()
        if any(e.entry_oid == entry_oid and e.symbol == symbol for e in self._entries):
            self._log_event("ledger_duplicate_ignored", symbol=symbol, entry_oid=entry_oid, agent=agent)
            return False
        entry = LedgerEntry(
            entry_oid=int(entry_oid),
            symbol=symbol,
            agent=agent,
            side=Side(side),
            quantity=abs(float(quantity)),
            timestamp=self._clock(),
            price=price,
            order_id=str(order_id) if order_id is not None else None,
        )
        self._entries.append(entry)
        self._save()
        self._log_event("ledger_recorded", symbol=symbol, entry_oid=entry_oid, agent=agent,
                        side=entry.side.value, quantity=entry.quantity, order_id=entry.order_id)
        return True

    def entries(self) -> List[LedgerEntry]:
        return list(self._entries)

    def entries_for_agent(self, agent: str) -> List[LedgerEntry]:
        self._load()
        return [e for e in self._entries if e.agent == agent]

    def entries_for_symbol(self, symbol: str) -> List[LedgerEntry]:
        return [e for e in self._entries if e.symbol == symbol]

    def symbols(self) -> List[str]:
        """Every symbol with a recorded lot or profit exit, sorted."""
        self._load()
        return sorted({e.symbol for e in self._entries} | {p.symbol for p in self._profit_exits})

    def latest_entry(self, agent: str, symbol: str) -> Optional[LedgerEntry]:
        """Most recent entry for (agent, symbol) from the in-memory view; call reload() first."""
        candidates = [e for e in self._entries if e.agent == agent and e.symbol == symbol]
        if not candidates:
            return None
        latest = candidates[0]
        for e in candidates[1:]:
            # Equal timestamps: the later append wins.
            if e.timestamp >= latest.timestamp:
                latest = e
        return latest

    def prune_older_than(self, days: int = 30) -> int:
        """
        Drop entries older than `days`. The latest entry of each (agent, symbol)
        is kept whatever its age: it is what the engine replays for a lot the
        agent may still hold.
        """
        self._load()
        cutoff = self._clock() - days * DAY_MS
        latest: Dict[Tuple[str, str], int] = {}
        for i, e in enumerate(self._entries):
            key = (e.agent, e.symbol)
            kept = latest.get(key)
            # Equal timestamps: the later append wins, as in latest_entry().
            if kept is None or e.timestamp >= self._entries[kept].timestamp:
                latest[key] = i
        protected = set(latest.values())
        before = len(self._entries)
        self._entries = [e for i, e in enumerate(self._entries) if i in protected or e.timestamp > cutoff]
        removed = before - len(self._entries)
        if removed:
            self._save()
            self._log_event("ledger_pruned", removed=removed, kept_days=days)
        return removed

    def reset(self, symbol: str, entry_oid: Optional[int] = None) -> int:
        """Forget one lot (or every lot) of `symbol` so the engine copies it again."""
        self._load()
        before = len(self._entries)
        if entry_oid is not None:
            self._entries = [e for e in self._entries if not (e.entry_oid == entry_oid and e.symbol == symbol)]
        else:
            self._entries = [e for e in self._entries if e.symbol != symbol]
        removed = before - len(self._entries)
        if removed:
            self._save()
            self._log_event("ledger_reset", symbol=symbol, entry_oid=entry_oid, removed=removed)
        else:
            log.debug(dumps({"event": "ledger_reset_noop", "symbol": symbol, "entry_oid": entry_oid}))
        return removed

    # ========== Profit exits ==========

    def add_profit_exit(
        self,
        symbol: str,
        entry_oid: int,
        exit_price: float,
        profit_percentage: float,
        reason: str,
    ) -> ProfitExitRecord:
        self._load()
        record = ProfitExitRecord(
            symbol=symbol,
            entry_oid=int(entry_oid),
            exit_price=float(exit_price),
            profit_percentage=float(profit_percentage),
            reason=reason,
            timestamp=self._clock(),
        )
        self._profit_exits.append(record)
        self._save()
        self._log_event("ledger_profit_exit", symbol=symbol, entry_oid=entry_oid,
                        profit_pct=round(profit_percentage, 2))
        return record

    def has_profit_exit(self, entry_oid: int, symbol: str) -> bool:
        self._load()
        return any(p.entry_oid == entry_oid and p.symbol == symbol for p in self._profit_exits)

    def profit_exits(self, symbol: Optional[str] = None) -> List[ProfitExitRecord]:
        if symbol is None:
            return list(self._profit_exits)
        return [p for p in self._profit_exits if p.symbol == symbol]

    # ========== Metadata ==========

    def created_at(self) -> int:
        """
        When following started: the stored value, else the earliest entry,
        else one day ago (nothing recorded yet).
        """
        self._load()
        if self._created_at:
            return self._created_at
        if self._entries:
            return min(e.timestamp for e in self._entries)
        fallback = self._clock() - DAY_MS
        log.warning(dumps({"event": "ledger_created_at_missing", "path": str(self.path), "fallback": fallback}))
        return fallback

    def stats(self) -> LedgerStats:
        by_agent: Dict[str, int] = {}
        by_symbol: Dict[str, int] = {}
        for e in self._entries:
            by_agent[e.agent] = by_agent.get(e.agent, 0) + 1
            by_symbol[e.symbol] = by_symbol.get(e.symbol, 0) + 1
        return LedgerStats(
            total_orders=len(self._entries),
            orders_by_agent=by_agent,
            orders_by_symbol=by_symbol,
            last_updated=self._last_updated,
            profit_exits=len(self._profit_exits),
        )

    def __len__(self) -> int:
        return len(self._entries)
