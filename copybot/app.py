"""
FollowRunner: drives the follow engine on a timer and executes its plans.

One poll:
    agent snapshot -> FollowEngine.follow_agent -> risk assessment per plan
    -> execution of executable plans -> ledger.record on confirmed ENTER fills
    (through PositionManager.open_position) and a profit-exit record for
    take-profit EXITs

Ticks fire on a fixed interval. A tick that finds the previous cycle for the
agent still running is skipped, never queued. Shutdown waits for the cycle
in flight to finish.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, TYPE_CHECKING

from copybot.core.json_utils import dumps
from copybot.core.models import FollowPlan, PlanAction
from copybot.core.rounding import floor_quantity
from copybot.engine.exit_evaluator import TAKE_PROFIT_REASON
from copybot.risk.risk_manager import RiskAssessment, RiskManager

if TYPE_CHECKING:
    from copybot.engine.follow_engine import FollowEngine
    from copybot.execution.position_manager import PositionManager
    from copybot.execution.trading_executor import TradingExecutor
    from copybot.infra.agent_client import AgentClient
    from copybot.ledger.order_ledger import OrderLedger
    from copybot.monitoring.metrics import CopyMetrics

log = logging.getLogger("copybot")

PRUNE_INTERVAL_SEC = 3600.0


@dataclass
class PollSummary:
    agent: str
    executed: int = 0
    skipped: int = 0
    plans: List[FollowPlan] = field(default_factory=list)
    assessments: List[RiskAssessment] = field(default_factory=list)


class FollowRunner:
    def __init__(
        self,
        agent_client: "AgentClient",
        engine: "FollowEngine",
        executor: "TradingExecutor",
        position_manager: "PositionManager",
        ledger: "OrderLedger",
        risk_manager: Optional[RiskManager] = None,
        total_margin: Optional[float] = None,
        interval: float = 30.0,
        risk_only: bool = False,
        retention_days: int = 30,
        metrics: Optional["CopyMetrics"] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.agent_client = agent_client
        self.engine = engine
        self.executor = executor
        self.position_manager = position_manager
        self.ledger = ledger
        self.risk = risk_manager or RiskManager(engine.tolerance)
        self.total_margin = total_margin
        self.interval = interval
        self.risk_only = risk_only
        self.retention_days = retention_days
        self.metrics = metrics
        self._log_event = log_event or self._default_log
        self._stop = asyncio.Event()
        self._current: Optional[asyncio.Task] = None
        self._last_prune = 0.0

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    def stop(self) -> None:
        self._stop.set()

    # ========== One poll ==========

    async def poll_once(self, agent_id: str) -> PollSummary:
        started = time.monotonic()
        snapshot = await self.agent_client.agent_snapshot(agent_id)
        positions = list(snapshot.positions.values())
        plans = await self.engine.follow_agent(agent_id, positions, self.total_margin)

        summary = PollSummary(agent=agent_id, plans=plans)
        for plan in plans:
            assessment = self.risk.assess_plan(plan)
            summary.assessments.append(assessment)
            for warning in assessment.warnings:
                log.warning(dumps({"event": "risk_warning", "symbol": plan.symbol, "agent": agent_id,
                                   "warning": warning}))

            if not assessment.is_valid or not plan.executable:
                self._skip(summary, plan, "risk")
                continue
            if self.risk_only:
                self._skip(summary, plan, "risk_only")
                continue

            if await self.execute_with_ledger(plan):
                summary.executed += 1
                if self.metrics:
                    self.metrics.plans_executed.labels(agent=agent_id, action=plan.action.value).inc()
            else:
                self._skip(summary, plan, "execution_failed")

        if self.metrics:
            self.metrics.ledger_entries.set(len(self.ledger))
            self.metrics.cycle_duration.labels(agent=agent_id).observe(time.monotonic() - started)
        self._log_event("poll_done", agent=agent_id, plans=len(plans),
                        executed=summary.executed, skipped=summary.skipped)
        return summary

    def _skip(self, summary: PollSummary, plan: FollowPlan, reason: str) -> None:
        summary.skipped += 1
        if self.metrics:
            self.metrics.plans_skipped.labels(agent=summary.agent, reason=reason).inc()
        log.info(dumps({"event": "plan_skipped", "reason": reason, **plan.summary()}))

    async def execute_with_ledger(self, plan: FollowPlan) -> bool:
        """Execute one plan. ENTERs with a source position go through the position manager, which records the lot."""
        if plan.action is PlanAction.EXIT:
            result = await self.position_manager.close_position(plan.symbol, plan.reason)
            if not result.success:
                log.error(dumps({"event": "exit_failed", "symbol": plan.symbol, "err": result.error}))
                return False
            self._record_profit_exit(plan)
            return True

        quantity = plan.quantity
        pos = plan.position
        if plan.released_margin and plan.released_margin > 0 and pos is not None and pos.current_price > 0:
            quantity = plan.released_margin * plan.leverage / pos.current_price
            self._log_event("sizing_from_released_margin", symbol=plan.symbol,
                            released=plan.released_margin, quantity=quantity)
        # What the exchange will fill; the ledger must hold the same number.
        quantity = floor_quantity(quantity, plan.symbol)

        if pos is not None:
            opened = await self.position_manager.open_position(plan, quantity)
            if not opened.success:
                log.error(dumps({"event": "enter_failed", "symbol": plan.symbol, "err": opened.error}))
            return opened.success

        result = await self.executor.execute_plan(plan, quantity)
        if not result.success:
            log.error(dumps({"event": "enter_failed", "symbol": plan.symbol, "err": result.error}))
        return result.success

    def _record_profit_exit(self, plan: FollowPlan) -> None:
        pos = plan.position
        if pos is None or not plan.reason.startswith(TAKE_PROFIT_REASON) or pos.entry_price <= 0:
            return
        if self.ledger.has_profit_exit(pos.entry_oid, plan.symbol):
            return
        exit_price = plan.exit_price or pos.current_price
        move = (exit_price - pos.entry_price) / pos.entry_price * 100
        profit_pct = move if pos.quantity > 0 else -move
        self.ledger.add_profit_exit(plan.symbol, pos.entry_oid, exit_price, profit_pct, plan.reason)

    # ========== Loop ==========

    async def _tick(self, agent_id: str) -> None:
        try:
            await self.poll_once(agent_id)
            self._maybe_prune()
        except Exception as exc:
            log.error(dumps({"event": "follow_cycle_error", "agent": agent_id,
                             "error": type(exc).__name__, "err": str(exc)}))
            if self.metrics:
                self.metrics.cycle_errors.labels(agent=agent_id, error=type(exc).__name__).inc()

    def _maybe_prune(self) -> None:
        now = time.monotonic()
        if self._last_prune and now - self._last_prune < PRUNE_INTERVAL_SEC:
            return
        self._last_prune = now
        removed = self.ledger.prune_older_than(self.retention_days)
        if removed:
            log.info(dumps({"event": "ledger_prune_done", "removed": removed}))

    def _in_flight(self, agent_id: str) -> bool:
        if self._current is not None and not self._current.done():
            return True
        return self.engine.is_cycle_in_flight(agent_id)

    async def run(self, agent_id: str) -> None:
        self._log_event("runner_start", agent=agent_id, interval=self.interval,
                        total_margin=self.total_margin, risk_only=self.risk_only)
        try:
            while not self._stop.is_set():
                if self._in_flight(agent_id):
                    log.warning(dumps({"event": "follow_cycle_skipped", "agent": agent_id}))
                    if self.metrics:
                        self.metrics.cycles_skipped.labels(agent=agent_id).inc()
                else:
                    self._current = asyncio.create_task(self._tick(agent_id))
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            # No mid-cycle cancellation: let the running cycle finish.
            if self._current is not None and not self._current.done():
                await asyncio.gather(self._current, return_exceptions=True)
            self._log_event("runner_stop", agent=agent_id)
