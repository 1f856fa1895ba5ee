"""
Price-tolerance configuration: a global default plus per-symbol overrides.

Sources, later wins:
- built-in default (1.0%)
- YAML file (env `COPYBOT_SYMBOL_CONFIG`, default `configs/symbols.yaml`):

      BTCUSDT: { price_tolerance: 0.5 }
      ETH: { price_tolerance: 0.8 }

- environment: `PRICE_TOLERANCE` (global) and `<SYMBOL>_TOLERANCE`
- explicit setters (CLI flags)

An instance is passed into the engine and risk manager; there is no
module-level mutable tolerance.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from copybot.core.errors import ConfigurationError
from copybot.core.json_utils import dumps
from copybot.core.rounding import base_asset

log = logging.getLogger("copybot")

DEFAULT_PRICE_TOLERANCE = 1.0
_ENV_SUFFIX = "_TOLERANCE"
_GLOBAL_ENV = "PRICE_TOLERANCE"


def load_symbol_overrides(path: str | None = None) -> Dict[str, Dict[str, Any]]:
    """Read per-symbol overrides from YAML. Missing file -> {}."""
    if path is None:
        path = os.getenv("COPYBOT_SYMBOL_CONFIG", "configs/symbols.yaml")
    p = Path(path)
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        log.warning(dumps({"event": "symbol_config_invalid", "path": str(p), "err": str(exc)}))
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k).upper(): v for k, v in data.items() if isinstance(v, dict)}


class ToleranceConfig:
    def __init__(self, default_tolerance: float = DEFAULT_PRICE_TOLERANCE) -> None:
        self._validate(default_tolerance, _GLOBAL_ENV)
        self._default = float(default_tolerance)
        self._symbols: Dict[str, float] = {}

    @staticmethod
    def _validate(value: float, key: str) -> None:
        if value is None or value <= 0:
            raise ConfigurationError("Price tolerance must be positive", config_key=key)

    @property
    def default_tolerance(self) -> float:
        return self._default

    def get_price_tolerance(self, symbol: Optional[str] = None) -> float:
        if symbol:
            sym = symbol.upper()
            for key in (sym, f"{base_asset(sym)}USDT", base_asset(sym)):
                if key in self._symbols:
                    return self._symbols[key]
        return self._default

    def set_price_tolerance(self, tolerance: float, symbol: Optional[str] = None) -> None:
        if symbol:
            self._validate(tolerance, f"{symbol.upper()}{_ENV_SUFFIX}")
            self._symbols[symbol.upper()] = float(tolerance)
        else:
            self._validate(tolerance, _GLOBAL_ENV)
            self._default = float(tolerance)

    def load_from_env(self, environ: Optional[Mapping[str, str]] = None) -> None:
        """Apply PRICE_TOLERANCE and <SYMBOL>_TOLERANCE; unparsable or non-positive values are ignored."""
        env = os.environ if environ is None else environ
        raw = env.get(_GLOBAL_ENV)
        value = _positive_float(raw)
        if value is not None:
            self._default = value
        elif raw:
            log.warning(dumps({"event": "tolerance_env_ignored", "key": _GLOBAL_ENV, "value": raw}))

        for key, raw in env.items():
            if key == _GLOBAL_ENV or not key.endswith(_ENV_SUFFIX):
                continue
            symbol = key[: -len(_ENV_SUFFIX)]
            value = _positive_float(raw)
            if symbol and value is not None:
                self._symbols[symbol.upper()] = value

    def load_overrides(self, overrides: Mapping[str, Mapping[str, Any]]) -> None:
        for symbol, opts in overrides.items():
            if "price_tolerance" in opts:
                self.set_price_tolerance(float(opts["price_tolerance"]), symbol)

    def export(self) -> Dict[str, Any]:
        return {
            "default_price_tolerance": self._default,
            "symbol_tolerances": dict(self._symbols),
        }

    def import_config(self, data: Mapping[str, Any]) -> None:
        if data.get("default_price_tolerance") is not None:
            self.set_price_tolerance(float(data["default_price_tolerance"]))
        for symbol, tol in (data.get("symbol_tolerances") or {}).items():
            self.set_price_tolerance(float(tol), symbol)

    def reset(self) -> None:
        self._default = DEFAULT_PRICE_TOLERANCE
        self._symbols.clear()

    @classmethod
    def from_settings(cls, cfg, overrides: Optional[Mapping[str, Mapping[str, Any]]] = None) -> "ToleranceConfig":
        tc = cls(cfg.price_tolerance)
        tc.load_overrides(overrides if overrides is not None else load_symbol_overrides(cfg.symbol_config_path))
        tc.load_from_env()
        return tc


def _positive_float(raw: Optional[str]) -> Optional[float]:
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None
