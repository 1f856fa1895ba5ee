"""
Configuration validation run once before the follow loop starts.

- Range checks for numeric parameters
- Credentials required for live trading (risk-only mode runs without them)
- Warnings for risky but valid values
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

logger = logging.getLogger("copybot")


class ValidationSeverity(Enum):
    ERROR = auto()    # Blocks startup
    WARNING = auto()  # Logged, startup continues
    INFO = auto()


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def get_errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    def get_warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]


class ConfigValidator:
    """
    Validates Settings before the bot touches the exchange.

    Usage:
        result = ConfigValidator().validate(cfg, require_credentials=True)
        if not result.valid: ...
    """

    # field -> (min, max)
    NUMERIC_RANGES: Dict[str, Tuple[float, float]] = {
        "price_tolerance": (0.01, 50.0),
        "total_margin": (0.0, 10_000_000.0),
        "poll_interval": (1.0, 86_400.0),
        "http_timeout": (1.0, 120.0),
        "cache_ttl": (0.0, 3600.0),
        "api_retries": (1, 10),
        "ledger_retention_days": (1, 3650),
        "close_verify_delay": (0.0, 60.0),
        "balance_settle_delay": (0.0, 60.0),
        "metrics_port": (0, 65535),
    }

    def __init__(self) -> None:
        self._custom_validators: List[Callable[[Any], List[ValidationIssue]]] = []

    def register_validator(self, validator: Callable[[Any], List[ValidationIssue]]) -> None:
        self._custom_validators.append(validator)

    def validate(self, cfg, require_credentials: bool = True) -> ValidationResult:
        issues: List[ValidationIssue] = []
        issues.extend(self._validate_urls(cfg))
        issues.extend(self._validate_numeric_ranges(cfg))
        if require_credentials:
            issues.extend(self._validate_credentials(cfg))
        issues.extend(self._check_risky_configs(cfg))
        for validator in self._custom_validators:
            issues.extend(validator(cfg) or [])
        has_errors = any(i.severity == ValidationSeverity.ERROR for i in issues)
        return ValidationResult(valid=not has_errors, issues=issues)

    def _validate_urls(self, cfg) -> List[ValidationIssue]:
        url = getattr(cfg, "agent_api_url", "") or ""
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return [ValidationIssue(
                field="agent_api_url",
                message=f"Agent API URL '{url}' is not an http(s) URL",
                severity=ValidationSeverity.ERROR,
                value=url,
                suggestion="Set NOF1_API_BASE_URL, e.g. https://nof1.ai/api",
            )]
        return []

    def _validate_numeric_ranges(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name, (min_val, max_val) in self.NUMERIC_RANGES.items():
            value = getattr(cfg, field_name, None)
            if value is None:
                continue
            num_value = float(value)
            if num_value < min_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is below minimum {min_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at least {min_val}",
                ))
            elif num_value > max_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is above maximum {max_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at most {max_val}",
                ))
        return issues

    def _validate_credentials(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name, env in (("binance_api_key", "BINANCE_API_KEY"), ("binance_api_secret", "BINANCE_API_SECRET")):
            if not getattr(cfg, field_name, None):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"{env} is required for live trading",
                    severity=ValidationSeverity.ERROR,
                    suggestion="Set it in .env or run with --risk-only",
                ))
        return issues

    def _check_risky_configs(self, cfg) -> List[ValidationIssue]:
        issues = []
        tolerance = getattr(cfg, "price_tolerance", 1.0)
        if tolerance > 5.0:
            issues.append(ValidationIssue(
                field="price_tolerance",
                message=f"Price tolerance {tolerance}% allows copying entries far from the agent's price",
                severity=ValidationSeverity.WARNING,
                value=tolerance,
            ))
        if not getattr(cfg, "testnet", False) and getattr(cfg, "binance_api_key", None):
            issues.append(ValidationIssue(
                field="testnet",
                message="Trading on Binance MAINNET with real funds",
                severity=ValidationSeverity.WARNING,
                suggestion="Set BINANCE_TESTNET=true while evaluating",
            ))
        if getattr(cfg, "total_margin", 0) == 0:
            issues.append(ValidationIssue(
                field="total_margin",
                message="TOTAL_MARGIN is 0: entries copy the agent's quantities unscaled",
                severity=ValidationSeverity.INFO,
            ))
        return issues


def validate_config(cfg, require_credentials: bool = True) -> ValidationResult:
    return ConfigValidator().validate(cfg, require_credentials=require_credentials)


def validate_and_log(cfg, logger_instance=None, require_credentials: bool = True) -> bool:
    """Validate config and log every issue. Returns True when there are no errors."""
    log = logger_instance or logger
    result = validate_config(cfg, require_credentials=require_credentials)

    for issue in result.get_errors():
        msg = f"CONFIG ERROR: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.error(msg)

    for issue in result.get_warnings():
        msg = f"CONFIG WARNING: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.warning(msg)

    if result.valid:
        log.info("Configuration validation passed")
    else:
        log.error(f"Configuration validation failed with {len(result.get_errors())} error(s)")
    return result.valid
