"""
FollowEngine: reconcile an agent's live positions against what has already
been copied, and emit the ENTER/EXIT plans needed to converge.

Architecture:
    live positions ──┐
                     ├─> detect_changes ─> plans ─> exit evaluator ─> allocation
    ledger replay ───┘

    1. Best-effort sweep of orphaned stop / take-profit orders
    2. Reload the ledger and rebuild "previous" positions from the latest
       entry per (agent, symbol). No in-memory snapshot survives a cycle.
    3. Classify each symbol: new_position / entry_changed / position_closed
    4. entry_changed emits the EXIT of the old lot, then (unless the new lot
       is already copied) flattens any real exchange position and emits the
       ENTER carrying the released margin
    5. Exit evaluator over every open live position
    6. Optional capital allocation across ENTER plans

Invariants:
    - The engine never writes the ledger; the runner records confirmed fills.
    - A failed close aborts the paired ENTER.
    - Every ENTER carries a price-tolerance verdict. Plans that fail it are
      still returned, with `executable` False.

Thread Safety:
    One cycle per agent at a time (asyncio.Lock per agent id).
    is_cycle_in_flight() lets the runner skip a tick instead of queueing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

from copybot.allocation.capital_allocator import CapitalAllocator
from copybot.config.tolerance import ToleranceConfig
from copybot.core.errors import CopyBotError, wrap_errors
from copybot.core.json_utils import dumps
from copybot.core.models import FollowPlan, LedgerEntry, PlanAction, Position, Side
from copybot.engine.exit_evaluator import evaluate_exit
from copybot.risk.price_tolerance import check_price_tolerance

if TYPE_CHECKING:
    from copybot.execution.position_manager import PositionManager
    from copybot.execution.trading_executor import TradingExecutor
    from copybot.ledger.order_ledger import OrderLedger
    from copybot.monitoring.metrics import CopyMetrics

log = logging.getLogger("copybot")

NEW_POSITION = "new_position"
ENTRY_CHANGED = "entry_changed"
POSITION_CLOSED = "position_closed"


@dataclass
class PositionChange:
    symbol: str
    kind: str
    current: Position
    previous: Optional[Position] = None


def detect_changes(current: Iterable[Position], previous: Iterable[Position]) -> List[PositionChange]:
    """Classify each live symbol against its rebuilt previous position. No-change symbols are omitted."""
    prev_by_symbol = {p.symbol: p for p in previous}
    changes: List[PositionChange] = []
    for pos in current:
        prev = prev_by_symbol.get(pos.symbol)
        if prev is None:
            if pos.quantity != 0:
                changes.append(PositionChange(pos.symbol, NEW_POSITION, pos))
        elif prev.entry_oid != pos.entry_oid and pos.quantity != 0:
            changes.append(PositionChange(pos.symbol, ENTRY_CHANGED, pos, prev))
        elif prev.quantity != 0 and pos.quantity == 0:
            changes.append(PositionChange(pos.symbol, POSITION_CLOSED, pos, prev))
    return changes


def _latest(entries: List[LedgerEntry]) -> LedgerEntry:
    latest = entries[0]
    for e in entries[1:]:
        if e.timestamp >= latest.timestamp:
            latest = e
    return latest


class FollowEngine:
    def __init__(
        self,
        ledger: "OrderLedger",
        executor: "TradingExecutor",
        position_manager: "PositionManager",
        tolerance: Optional[ToleranceConfig] = None,
        allocator: Optional[CapitalAllocator] = None,
        balance_settle_delay: float = 1.0,
        dry_run: bool = False,
        metrics: Optional["CopyMetrics"] = None,
        log_event: Optional[Callable[..., None]] = None,
        clock: Optional[Callable[[], int]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.ledger = ledger
        self.executor = executor
        self.position_manager = position_manager
        self.tolerance = tolerance or ToleranceConfig()
        self.allocator = allocator or CapitalAllocator()
        self.balance_settle_delay = balance_settle_delay
        # Dry run: plans only, no closes or order cancels on the exchange.
        self.dry_run = dry_run
        self.metrics = metrics
        self._log_event = log_event or self._default_log
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._sleep = sleep or asyncio.sleep
        self._locks: Dict[str, asyncio.Lock] = {}
        self._guard = asyncio.Lock()

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    # ========== Concurrency ==========

    def is_cycle_in_flight(self, agent_id: str) -> bool:
        lock = self._locks.get(agent_id)
        return lock is not None and lock.locked()

    async def _agent_lock(self, agent_id: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._locks.get(agent_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[agent_id] = lock
            return lock

    # ========== Cycle ==========

    @wrap_errors("FollowEngine", CopyBotError)
    async def follow_agent(
        self,
        agent_id: str,
        current_positions: List[Position],
        total_margin: Optional[float] = None,
    ) -> List[FollowPlan]:
        lock = await self._agent_lock(agent_id)
        async with lock:
            return await self._follow(agent_id, current_positions, total_margin)

    async def _follow(
        self,
        agent_id: str,
        current_positions: List[Position],
        total_margin: Optional[float],
    ) -> List[FollowPlan]:
        self._log_event("follow_cycle_start", agent=agent_id, positions=len(current_positions))

        if not self.dry_run:
            sweep = await self.position_manager.clean_orphaned_orders()
            if not sweep.success:
                log.warning(dumps({"event": "orphan_sweep_failed", "agent": agent_id, "errors": sweep.errors}))

        self.ledger.reload()
        previous = self.rebuild_previous_positions(agent_id, current_positions)

        plans: List[FollowPlan] = []
        for change in detect_changes(current_positions, previous):
            if change.kind == ENTRY_CHANGED:
                plans.extend(await self._on_entry_changed(change, agent_id))
            elif change.kind == NEW_POSITION:
                plans.extend(await self._on_new_position(change, agent_id))
            elif change.kind == POSITION_CLOSED:
                plans.append(self._on_position_closed(change, agent_id))

        plans.extend(self._exit_signals(current_positions, agent_id))

        if total_margin is not None and total_margin > 0:
            await self._apply_allocation(plans, total_margin, agent_id)

        if self.metrics:
            for plan in plans:
                self.metrics.plans_emitted.labels(agent=agent_id, action=plan.action.value).inc()
        self._log_event("follow_cycle_done", agent=agent_id, plans=len(plans),
                        enter=sum(1 for p in plans if p.action is PlanAction.ENTER),
                        exit=sum(1 for p in plans if p.action is PlanAction.EXIT))
        return plans

    def rebuild_previous_positions(self, agent_id: str, current_positions: List[Position]) -> List[Position]:
        """Project the latest ledger entry per live symbol into a Position."""
        history = self.ledger.entries_for_agent(agent_id)
        if not history:
            log.debug(dumps({"event": "ledger_empty_for_agent", "agent": agent_id}))
            return []

        rebuilt: List[Position] = []
        for pos in current_positions:
            same_symbol = [e for e in history if e.symbol == pos.symbol]
            if not same_symbol:
                continue
            entry = _latest(same_symbol)
            rebuilt.append(Position(
                symbol=pos.symbol,
                entry_price=entry.price or pos.entry_price,
                quantity=entry.signed_quantity,
                leverage=pos.leverage,
                current_price=pos.current_price,
                confidence=pos.confidence,
                entry_oid=entry.entry_oid,
                exit_plan=pos.exit_plan,
            ))
        return rebuilt

    # ========== Transitions ==========

    async def _on_entry_changed(self, change: PositionChange, agent_id: str) -> List[FollowPlan]:
        prev, cur = change.previous, change.current
        self._log_event("entry_oid_changed", symbol=cur.symbol, agent=agent_id,
                        old_oid=prev.entry_oid, new_oid=cur.entry_oid)

        plans = [FollowPlan(
            action=PlanAction.EXIT,
            symbol=cur.symbol,
            side=prev.side.opposite,
            quantity=abs(prev.quantity),
            leverage=prev.leverage,
            reason=f"Closing old lot of {agent_id} (OID: {prev.entry_oid}) before re-entry",
            agent=agent_id,
            timestamp=self._clock(),
            exit_price=cur.current_price,
        )]

        if self.ledger.is_processed(cur.entry_oid, cur.symbol):
            log.debug(dumps({"event": "enter_skipped_processed", "symbol": cur.symbol, "entry_oid": cur.entry_oid}))
            return plans

        ok, released = await self._close_existing(
            cur.symbol,
            f"Entry changed (old: {prev.entry_oid} -> new: {cur.entry_oid}), closing old position",
        )
        if not ok:
            log.error(dumps({"event": "enter_aborted_close_failed", "symbol": cur.symbol,
                             "agent": agent_id, "entry_oid": cur.entry_oid}))
            return plans

        plans.append(self._enter_plan(
            cur, agent_id,
            f"Entry changed by {agent_id} (old OID: {prev.entry_oid} → new OID: {cur.entry_oid})",
            released,
        ))
        return plans

    async def _on_new_position(self, change: PositionChange, agent_id: str) -> List[FollowPlan]:
        cur = change.current
        if self.ledger.is_processed(cur.entry_oid, cur.symbol):
            log.debug(dumps({"event": "enter_skipped_processed", "symbol": cur.symbol, "entry_oid": cur.entry_oid}))
            return []

        # A position already on the exchange means we restarted mid-lot.
        ok, released = await self._close_existing(
            cur.symbol,
            f"Closing existing position before opening new entry (OID: {cur.entry_oid})",
        )
        if not ok:
            log.error(dumps({"event": "enter_aborted_close_failed", "symbol": cur.symbol,
                             "agent": agent_id, "entry_oid": cur.entry_oid}))
            return []

        return [self._enter_plan(cur, agent_id, f"New position opened by {agent_id} (OID: {cur.entry_oid})", released)]

    def _on_position_closed(self, change: PositionChange, agent_id: str) -> FollowPlan:
        prev, cur = change.previous, change.current
        plan = FollowPlan(
            action=PlanAction.EXIT,
            symbol=cur.symbol,
            side=prev.side.opposite,
            quantity=abs(prev.quantity),
            leverage=prev.leverage,
            reason=f"Position closed by {agent_id}",
            agent=agent_id,
            timestamp=self._clock(),
            exit_price=cur.current_price,
        )
        self._log_event("position_closed", symbol=cur.symbol, agent=agent_id,
                        side=plan.side.value, quantity=plan.quantity, exit_price=plan.exit_price)
        return plan

    def _exit_signals(self, positions: List[Position], agent_id: str) -> List[FollowPlan]:
        plans: List[FollowPlan] = []
        for pos in positions:
            decision = evaluate_exit(pos)
            if not decision.should_exit:
                continue
            plans.append(FollowPlan(
                action=PlanAction.EXIT,
                symbol=pos.symbol,
                side=pos.side.opposite,
                quantity=abs(pos.quantity),
                leverage=pos.leverage,
                reason=decision.reason,
                agent=agent_id,
                timestamp=self._clock(),
                exit_price=pos.current_price,
                entry_price=pos.entry_price,
                position=pos,
            ))
            self._log_event("exit_signal", symbol=pos.symbol, agent=agent_id, reason=decision.reason)
        return plans

    def _enter_plan(self, pos: Position, agent_id: str, reason: str, released: Optional[float]) -> FollowPlan:
        check = check_price_tolerance(pos.entry_price, pos.current_price, pos.symbol, config=self.tolerance)
        plan = FollowPlan(
            action=PlanAction.ENTER,
            symbol=pos.symbol,
            side=Side.from_quantity(pos.quantity),
            quantity=abs(pos.quantity),
            leverage=pos.leverage,
            reason=reason,
            agent=agent_id,
            timestamp=self._clock(),
            entry_price=pos.entry_price,
            position=pos,
            price_tolerance=check,
            released_margin=released,
        )
        if check.should_execute:
            self._log_event("enter_planned", **plan.summary())
        else:
            log.warning(dumps({"event": "enter_outside_tolerance", "symbol": pos.symbol,
                               "agent": agent_id, "reason": check.reason}))
        return plan

    # ========== Exchange side effects ==========

    async def _close_existing(self, symbol: str, reason: str) -> tuple[bool, Optional[float]]:
        """
        Flatten a real exchange position on `symbol`, if any.

        Returns (ok, released_margin). ok is False only when a close was
        attempted and failed. released_margin is the positive change in
        available balance across the close, else None.
        """
        try:
            existing = await self.executor.positions(symbol)
        except Exception as exc:
            log.warning(dumps({"event": "exchange_position_check_failed", "symbol": symbol, "err": str(exc)}))
            return True, None
        if not existing:
            return True, None

        if self.dry_run:
            self._log_event("close_skipped_dry_run", symbol=symbol, reason=reason)
            return True, None

        before = await self._read_balance(symbol)
        result = await self.position_manager.close_position(symbol, reason)
        if not result.success:
            return False, None
        if before is None:
            return True, None

        await self._sleep(self.balance_settle_delay)
        after = await self._read_balance(symbol)
        if after is None:
            return True, None
        released = after - before
        self._log_event("margin_released", symbol=symbol, released=round(released, 2),
                        before=before, after=after)
        if released <= 0:
            return True, None
        if self.metrics:
            self.metrics.released_margin.labels(symbol=symbol).inc(released)
        return True, released

    async def _read_balance(self, symbol: str) -> Optional[float]:
        try:
            return await self.executor.available_balance()
        except Exception as exc:
            log.warning(dumps({"event": "balance_read_failed", "symbol": symbol, "err": str(exc)}))
            return None

    # ========== Allocation ==========

    async def _apply_allocation(self, plans: List[FollowPlan], total_margin: float, agent_id: str) -> None:
        enter_plans = [p for p in plans if p.action is PlanAction.ENTER]
        sources = [p.position for p in enter_plans if p.position is not None and p.position.margin > 0]
        if not sources:
            return

        available = await self._read_balance("*")
        budget = self.allocator.budget(total_margin, available)
        result = self.allocator.allocate(sources, budget)
        if not self.allocator.validate(result, budget):
            log.warning(dumps({"event": "allocation_invalid", "agent": agent_id, **result.to_dict()}))

        by_symbol = result.by_symbol()
        for plan in enter_plans:
            alloc = by_symbol.get(plan.symbol)
            if alloc is None:
                continue
            plan.original_margin = alloc.original_margin
            plan.allocated_margin = alloc.allocated_margin
            plan.notional_value = alloc.notional_value
            plan.adjusted_quantity = alloc.adjusted_quantity
            plan.allocation_ratio = alloc.allocation_ratio
            plan.quantity = alloc.adjusted_quantity
            log.debug(dumps({
                "event": "allocation_applied",
                "agent": agent_id,
                "symbol": plan.symbol,
                "ratio": self.allocator.format_percentage(alloc.allocation_ratio),
                "margin": self.allocator.format_amount(alloc.allocated_margin),
                "notional": self.allocator.format_amount(alloc.notional_value),
                "quantity": alloc.adjusted_quantity,
            }))
