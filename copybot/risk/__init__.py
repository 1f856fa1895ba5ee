"""
Risk package.

This package contains the price-tolerance gate and the pre-execution
risk assessment of follow plans.
"""

from copybot.risk.price_tolerance import PriceToleranceError, check_price_tolerance, price_difference
from copybot.risk.risk_manager import RiskAssessment, RiskManager

__all__ = [
    "PriceToleranceError",
    "check_price_tolerance",
    "price_difference",
    "RiskAssessment",
    "RiskManager",
]
