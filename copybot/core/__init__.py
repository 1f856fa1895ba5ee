"""
Core utilities package.

This package contains the domain records, typed errors, JSON helpers and
quantity rounding shared by every other package.
"""

from copybot.core.errors import (
    ConfigurationError,
    CopyBotError,
    DataSourceError,
    PositionError,
    TradingError,
    safe_execute,
    safe_execute_async,
    wrap_errors,
)
from copybot.core.models import (
    AgentSnapshot,
    AllocationResult,
    CapitalAllocation,
    ExitPlan,
    FollowPlan,
    LedgerEntry,
    PlanAction,
    Position,
    PriceToleranceCheck,
    ProfitExitRecord,
    Side,
)
from copybot.core.rounding import floor_quantity, format_quantity, quantity_precision

__all__ = [
    "ConfigurationError",
    "CopyBotError",
    "DataSourceError",
    "PositionError",
    "TradingError",
    "safe_execute",
    "safe_execute_async",
    "wrap_errors",
    "AgentSnapshot",
    "AllocationResult",
    "CapitalAllocation",
    "ExitPlan",
    "FollowPlan",
    "LedgerEntry",
    "PlanAction",
    "Position",
    "PriceToleranceCheck",
    "ProfitExitRecord",
    "Side",
    "floor_quantity",
    "format_quantity",
    "quantity_precision",
]
