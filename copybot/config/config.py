"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from copybot.core.errors import ConfigurationError
from copybot.core.json_utils import dumps

load_dotenv()

log = logging.getLogger("copybot")

DEFAULT_AGENT_API_URL = "https://nof1.ai/api"
BINANCE_MAINNET_URL = "https://fapi.binance.com"
BINANCE_TESTNET_URL = "https://testnet.binancefuture.com"


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}", config_key=key) from exc


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}", config_key=key) from exc


@dataclass(frozen=True)
class Settings:
    agent_api_url: str
    binance_api_key: str | None
    binance_api_secret: str | None
    testnet: bool
    price_tolerance: float  # percent
    total_margin: float  # 0 disables proportional allocation
    poll_interval: float
    data_dir: str
    http_timeout: float
    cache_ttl: float
    api_retries: int
    ledger_retention_days: int
    close_verify_delay: float
    balance_settle_delay: float
    metrics_port: int  # 0 disables the exporter
    log_file: str | None
    log_level: str
    symbol_config_path: str

    @property
    def binance_base_url(self) -> str:
        return BINANCE_TESTNET_URL if self.testnet else BINANCE_MAINNET_URL

    @property
    def has_trading_credentials(self) -> bool:
        return bool(self.binance_api_key and self.binance_api_secret)

    def dump(self) -> dict:
        """Settings as a dict with secrets masked."""
        out = self.__dict__.copy()
        for key in ("binance_api_key", "binance_api_secret"):
            if out.get(key):
                out[key] = "***"
        return out

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            agent_api_url=os.getenv("NOF1_API_BASE_URL", DEFAULT_AGENT_API_URL),
            binance_api_key=os.getenv("BINANCE_API_KEY"),
            binance_api_secret=os.getenv("BINANCE_API_SECRET"),
            testnet=env_bool("BINANCE_TESTNET", False),
            price_tolerance=_float_env("PRICE_TOLERANCE", 1.0),
            total_margin=_float_env("TOTAL_MARGIN", 0.0),
            poll_interval=_float_env("POLL_INTERVAL_SEC", 30.0),
            data_dir=os.getenv("COPYBOT_DATA_DIR", "data"),
            http_timeout=_float_env("HTTP_TIMEOUT", 10.0),
            cache_ttl=_float_env("AGENT_CACHE_TTL_SEC", 30.0),
            api_retries=_int_env("API_RETRIES", 3),
            ledger_retention_days=_int_env("LEDGER_RETENTION_DAYS", 30),
            close_verify_delay=_float_env("CLOSE_VERIFY_DELAY_SEC", 2.0),
            balance_settle_delay=_float_env("BALANCE_SETTLE_DELAY_SEC", 1.0),
            metrics_port=_int_env("COPYBOT_METRICS_PORT", 0),
            log_file=os.getenv("COPYBOT_LOG_FILE", "copybot.log") or None,
            log_level=os.getenv("COPYBOT_LOG_LEVEL", "INFO").upper(),
            symbol_config_path=os.getenv("COPYBOT_SYMBOL_CONFIG", "configs/symbols.yaml"),
        )
        cfg.validate()
        _sanity_check(cfg)
        return cfg

    def validate(self) -> None:
        if self.price_tolerance <= 0:
            raise ConfigurationError("PRICE_TOLERANCE must be > 0", config_key="PRICE_TOLERANCE")
        if self.total_margin < 0:
            raise ConfigurationError("TOTAL_MARGIN must be >= 0", config_key="TOTAL_MARGIN")
        if self.poll_interval <= 0:
            raise ConfigurationError("POLL_INTERVAL_SEC must be > 0", config_key="POLL_INTERVAL_SEC")
        if self.http_timeout <= 0:
            raise ConfigurationError("HTTP_TIMEOUT must be > 0", config_key="HTTP_TIMEOUT")
        if self.cache_ttl < 0:
            raise ConfigurationError("AGENT_CACHE_TTL_SEC must be >= 0", config_key="AGENT_CACHE_TTL_SEC")
        if self.api_retries < 1:
            raise ConfigurationError("API_RETRIES must be >= 1", config_key="API_RETRIES")
        if self.ledger_retention_days <= 0:
            raise ConfigurationError("LEDGER_RETENTION_DAYS must be > 0", config_key="LEDGER_RETENTION_DAYS")
        if self.close_verify_delay < 0 or self.balance_settle_delay < 0:
            raise ConfigurationError("Settle/verify delays must be >= 0")

        if self.price_tolerance > 5.0:
            log.warning(
                f"WARNING: PRICE_TOLERANCE is {self.price_tolerance}%. "
                "Entries far from the agent's price will be copied."
            )
        if self.poll_interval < 10:
            log.warning(
                f"WARNING: POLL_INTERVAL_SEC is {self.poll_interval}s. "
                "The agent API only changes hourly; short intervals mostly hit the cache."
            )


def _sanity_check(cfg: Settings) -> None:
    """Log critical settings once at startup so overrides are obvious."""
    log.info(dumps({
        "event": "config_loaded",
        "agent_api_url": cfg.agent_api_url,
        "testnet": cfg.testnet,
        "price_tolerance": cfg.price_tolerance,
        "total_margin": cfg.total_margin,
        "poll_interval": cfg.poll_interval,
        "data_dir": cfg.data_dir,
    }))
