"""
Configuration package.

This package contains settings loading, validation, and per-symbol
price-tolerance overrides.
"""

from copybot.config.config import Settings
from copybot.config.config_validator import ConfigValidator, validate_and_log
from copybot.config.tolerance import ToleranceConfig, load_symbol_overrides

__all__ = [
    "Settings",
    "ConfigValidator",
    "validate_and_log",
    "ToleranceConfig",
    "load_symbol_overrides",
]
