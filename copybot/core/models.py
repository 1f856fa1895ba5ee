"""
Domain records shared by the ledger, engine, allocator and executors.

Position / AgentSnapshot are transient (replaced every poll), LedgerEntry is
persisted, FollowPlan / CapitalAllocation are built fresh each cycle.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY

    @classmethod
    def from_quantity(cls, quantity: float) -> "Side":
        return cls.BUY if quantity > 0 else cls.SELL


class PlanAction(str, Enum):
    ENTER = "ENTER"
    EXIT = "EXIT"


def _num(raw: Any, default: float = 0.0) -> float:
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass
class ExitPlan:
    profit_target: float = 0.0
    stop_loss: float = 0.0
    invalidation_condition: str = ""

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> "ExitPlan":
        data = data or {}
        return cls(
            profit_target=_num(data.get("profit_target")),
            stop_loss=_num(data.get("stop_loss")),
            invalidation_condition=str(data.get("invalidation_condition") or ""),
        )


@dataclass
class Position:
    """One symbol of an agent's portfolio. quantity is signed; 0 means flat."""
    symbol: str
    entry_price: float
    quantity: float
    leverage: float
    current_price: float
    unrealized_pnl: float = 0.0
    confidence: float = 0.0
    entry_oid: int = 0
    tp_oid: int = 0
    sl_oid: int = 0
    margin: float = 0.0
    exit_plan: ExitPlan = field(default_factory=ExitPlan)

    @property
    def is_open(self) -> bool:
        return self.quantity != 0

    @property
    def side(self) -> Side:
        return Side.from_quantity(self.quantity)

    @classmethod
    def from_api(cls, data: Dict[str, Any], symbol: Optional[str] = None) -> "Position":
        return cls(
            symbol=str(data.get("symbol") or symbol or ""),
            entry_price=_num(data.get("entry_price")),
            quantity=_num(data.get("quantity")),
            leverage=_num(data.get("leverage"), 1.0),
            current_price=_num(data.get("current_price")),
            unrealized_pnl=_num(data.get("unrealized_pnl")),
            confidence=_num(data.get("confidence")),
            entry_oid=int(_num(data.get("entry_oid"))),
            tp_oid=int(_num(data.get("tp_oid"))),
            sl_oid=int(_num(data.get("sl_oid"))),
            margin=_num(data.get("margin")),
            exit_plan=ExitPlan.from_api(data.get("exit_plan")),
        )


@dataclass
class AgentSnapshot:
    agent_id: str
    marker: int
    positions: Dict[str, Position] = field(default_factory=dict)
    snapshot_id: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "AgentSnapshot":
        raw_positions = data.get("positions") or {}
        return cls(
            agent_id=str(data.get("model_id", "")),
            marker=int(_num(data.get("since_inception_hourly_marker"))),
            positions={sym: Position.from_api(p, sym) for sym, p in raw_positions.items()},
            snapshot_id=str(data.get("id", "")),
        )


@dataclass
class LedgerEntry:
    """A replica order that was placed. Unique per (entry_oid, symbol)."""
    entry_oid: int
    symbol: str
    agent: str
    side: Side
    quantity: float
    timestamp: int
    price: Optional[float] = None
    order_id: Optional[str] = None

    @property
    def signed_quantity(self) -> float:
        return self.quantity if self.side is Side.BUY else -self.quantity

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "entryOid": self.entry_oid,
            "symbol": self.symbol,
            "agent": self.agent,
            "timestamp": self.timestamp,
            "side": self.side.value,
            "quantity": self.quantity,
        }
        if self.order_id is not None:
            out["orderId"] = self.order_id
        if self.price is not None:
            out["price"] = self.price
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerEntry":
        price = data.get("price")
        order_id = data.get("orderId")
        return cls(
            entry_oid=int(data["entryOid"]),
            symbol=str(data["symbol"]),
            agent=str(data.get("agent", "")),
            side=Side(str(data.get("side", "BUY")).upper()),
            quantity=abs(float(data.get("quantity", 0))),
            timestamp=int(data.get("timestamp", 0)),
            price=float(price) if price is not None else None,
            order_id=str(order_id) if order_id is not None else None,
        )


@dataclass
class ProfitExitRecord:
    symbol: str
    entry_oid: int
    exit_price: float
    profit_percentage: float
    reason: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "entryOid": self.entry_oid,
            "exitPrice": self.exit_price,
            "profitPercentage": self.profit_percentage,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProfitExitRecord":
        return cls(
            symbol=str(data["symbol"]),
            entry_oid=int(data["entryOid"]),
            exit_price=float(data.get("exitPrice", 0)),
            profit_percentage=float(data.get("profitPercentage", 0)),
            reason=str(data.get("reason", "")),
            timestamp=int(data.get("timestamp", 0)),
        )


@dataclass
class PriceToleranceCheck:
    entry_price: float
    current_price: float
    price_difference: float
    tolerance: float
    within_tolerance: bool
    should_execute: bool
    reason: str


@dataclass
class FollowPlan:
    """One ENTER/EXIT action handed to the execution side."""
    action: PlanAction
    symbol: str
    side: Side
    quantity: float
    leverage: float
    reason: str
    agent: str
    timestamp: int
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    position: Optional[Position] = None
    price_tolerance: Optional[PriceToleranceCheck] = None
    original_margin: Optional[float] = None
    allocated_margin: Optional[float] = None
    notional_value: Optional[float] = None
    adjusted_quantity: Optional[float] = None
    allocation_ratio: Optional[float] = None
    released_margin: Optional[float] = None
    order_type: str = "MARKET"

    @property
    def executable(self) -> bool:
        if self.price_tolerance is None:
            return True
        return self.price_tolerance.should_execute

    def summary(self) -> Dict[str, Any]:
        out = {
            "action": self.action.value,
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "leverage": self.leverage,
            "reason": self.reason,
            "agent": self.agent,
        }
        if self.position is not None:
            out["entry_oid"] = self.position.entry_oid
        if self.price_tolerance is not None:
            out["price_difference"] = round(self.price_tolerance.price_difference, 4)
            out["should_execute"] = self.price_tolerance.should_execute
        if self.allocated_margin is not None:
            out["allocated_margin"] = self.allocated_margin
        if self.released_margin is not None:
            out["released_margin"] = self.released_margin
        return out


@dataclass
class CapitalAllocation:
    symbol: str
    original_margin: float
    allocated_margin: float
    notional_value: float
    adjusted_quantity: float
    allocation_ratio: float
    leverage: float
    side: Side


@dataclass
class AllocationResult:
    total_original_margin: float
    total_allocated_margin: float
    total_notional_value: float
    allocations: List[CapitalAllocation] = field(default_factory=list)

    def by_symbol(self) -> Dict[str, CapitalAllocation]:
        return {a.symbol: a for a in self.allocations}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
