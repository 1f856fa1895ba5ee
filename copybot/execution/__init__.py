"""
Execution package.

This package contains the order executor and the position manager that
drive the exchange on behalf of the follow engine.
"""

from copybot.execution.position_manager import (
    OrphanSweepResult,
    PositionManager,
    PositionOperationResult,
    PositionValidation,
    validate_position,
)
from copybot.execution.trading_executor import ExecutionResult, StopOrderSpec, TradingExecutor, stop_orders_for

__all__ = [
    "OrphanSweepResult",
    "PositionManager",
    "PositionOperationResult",
    "PositionValidation",
    "validate_position",
    "ExecutionResult",
    "StopOrderSpec",
    "TradingExecutor",
    "stop_orders_for",
]
