"""
Engine package.

This package contains the reconciliation engine and the exit evaluator.
"""

from copybot.engine.exit_evaluator import NO_EXIT, STOP_LOSS_REASON, TAKE_PROFIT_REASON, ExitDecision, evaluate_exit
from copybot.engine.follow_engine import (
    ENTRY_CHANGED,
    NEW_POSITION,
    POSITION_CLOSED,
    FollowEngine,
    PositionChange,
    detect_changes,
)

__all__ = [
    "NO_EXIT",
    "STOP_LOSS_REASON",
    "TAKE_PROFIT_REASON",
    "ExitDecision",
    "evaluate_exit",
    "ENTRY_CHANGED",
    "NEW_POSITION",
    "POSITION_CLOSED",
    "FollowEngine",
    "PositionChange",
    "detect_changes",
]
