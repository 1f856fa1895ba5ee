"""
Pre-execution risk assessment for follow plans.

Combines a leverage-based risk score with the price-tolerance gate. The
follow runner skips any plan whose assessment is not valid.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from copybot.config.tolerance import ToleranceConfig
from copybot.core.models import FollowPlan, PlanAction, PriceToleranceCheck
from copybot.risk.price_tolerance import check_price_tolerance

logger = logging.getLogger("copybot")

MAX_RISK_SCORE = 100.0
HIGH_LEVERAGE = 20.0
HIGH_RISK_SCORE = 80.0


@dataclass
class RiskAssessment:
    is_valid: bool
    risk_score: float
    warnings: List[str] = field(default_factory=list)
    max_loss: float = 0.0
    suggested_position_size: float = 0.0
    price_tolerance: Optional[PriceToleranceCheck] = None


class RiskManager:
    """
    Usage:
        rm = RiskManager(tolerance_config)
        assessment = rm.assess_plan(plan)
        if not assessment.is_valid: skip
    """

    def __init__(self, config: Optional[ToleranceConfig] = None) -> None:
        self.config = config or ToleranceConfig()

    @staticmethod
    def risk_score(leverage: float) -> float:
        return min(20.0 + leverage * 10.0, MAX_RISK_SCORE)

    @staticmethod
    def _reference_price(plan: FollowPlan) -> float:
        if plan.position is not None and plan.position.current_price > 0:
            return plan.position.current_price
        return plan.entry_price or plan.exit_price or 0.0

    def assess_risk(self, plan: FollowPlan) -> RiskAssessment:
        score = self.risk_score(plan.leverage)
        warnings: List[str] = []
        if plan.leverage > HIGH_LEVERAGE:
            warnings.append("High leverage detected")
        if score > HIGH_RISK_SCORE:
            warnings.append("High risk score")
        # Margin committed is the most a non-liquidated position can lose.
        price = self._reference_price(plan)
        max_loss = plan.quantity * price / plan.leverage if plan.leverage > 0 else plan.quantity * price
        return RiskAssessment(
            is_valid=score <= MAX_RISK_SCORE,
            risk_score=score,
            warnings=warnings,
            max_loss=max_loss,
            suggested_position_size=plan.quantity,
        )

    def assess_with_price_tolerance(
        self,
        plan: FollowPlan,
        entry_price: float,
        current_price: float,
        symbol: Optional[str] = None,
        tolerance: Optional[float] = None,
    ) -> RiskAssessment:
        basic = self.assess_risk(plan)
        check = check_price_tolerance(entry_price, current_price, symbol, tolerance, self.config)
        warnings = list(basic.warnings)
        if not check.within_tolerance:
            warnings.append(f"Price tolerance check failed: {check.reason}")
        return RiskAssessment(
            is_valid=basic.is_valid and check.within_tolerance,
            risk_score=basic.risk_score,
            warnings=warnings,
            max_loss=basic.max_loss,
            suggested_position_size=basic.suggested_position_size,
            price_tolerance=check,
        )

    def assess_plan(self, plan: FollowPlan, tolerance: Optional[float] = None) -> RiskAssessment:
        """ENTER plans with a quoted entry and a live price get the tolerance check too."""
        if (
            plan.action is PlanAction.ENTER
            and plan.entry_price
            and plan.position is not None
            and plan.position.current_price
        ):
            return self.assess_with_price_tolerance(
                plan, plan.entry_price, plan.position.current_price, plan.symbol, tolerance
            )
        return self.assess_risk(plan)
