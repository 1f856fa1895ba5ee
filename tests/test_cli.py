"""
Tests for the command line entry points that need no network.
"""
import pytest

from copybot.config.config import Settings
from copybot.core.errors import ConfigurationError
from copybot.core.models import Side
from copybot.ledger.order_ledger import OrderLedger
from copybot.main import apply_follow_overrides, build_parser, cmd_reset, cmd_status


@pytest.fixture
def cfg(tmp_path, monkeypatch):
    monkeypatch.setenv("COPYBOT_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("PRICE_TOLERANCE", raising=False)
    monkeypatch.delenv("TOTAL_MARGIN", raising=False)
    monkeypatch.delenv("POLL_INTERVAL_SEC", raising=False)
    return Settings.load()


class TestParser:
    def test_follow_flags(self):
        args = build_parser().parse_args(
            ["follow", "gpt-5", "--total-margin", "1000", "--price-tolerance", "0.5", "--risk-only", "--once"])
        assert args.command == "follow"
        assert args.agent == "gpt-5"
        assert args.total_margin == 1000.0
        assert args.price_tolerance == 0.5
        assert args.risk_only and args.once
        assert args.interval is None

    def test_reset_oid(self):
        args = build_parser().parse_args(["reset", "BTC", "--oid", "42"])
        assert (args.symbol, args.oid) == ("BTC", 42)

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_profit_flags(self):
        args = build_parser().parse_args(["profit", "--since", "7d", "--pair", "ETH", "--json"])
        assert (args.command, args.since, args.pair, args.json) == ("profit", "7d", "ETH", True)


class TestFollowOverrides:
    def test_flags_replace_settings(self, cfg):
        args = build_parser().parse_args(["follow", "gpt-5", "--total-margin", "500", "--interval", "15"])
        merged = apply_follow_overrides(cfg, args)
        assert merged.total_margin == 500.0
        assert merged.poll_interval == 15.0
        assert merged.price_tolerance == cfg.price_tolerance

    def test_no_flags_keep_settings(self, cfg):
        merged = apply_follow_overrides(cfg, build_parser().parse_args(["follow", "gpt-5"]))
        assert merged == cfg

    @pytest.mark.parametrize("flags", [
        ["--total-margin", "-100"],
        ["--interval", "0"],
        ["--price-tolerance", "-1"],
    ])
    def test_invalid_flags_rejected(self, cfg, flags):
        args = build_parser().parse_args(["follow", "gpt-5", *flags])
        with pytest.raises(ConfigurationError):
            apply_follow_overrides(cfg, args)


class TestLedgerCommands:
    def test_status_on_empty_ledger(self, cfg):
        assert cmd_status(cfg) == 0

    def test_reset_removes_lot(self, cfg):
        ledger = OrderLedger(cfg.data_dir)
        ledger.record(1, "BTC", "gpt-5", Side.BUY, 0.1)
        ledger.record(2, "BTC", "gpt-5", Side.BUY, 0.1)

        args = build_parser().parse_args(["reset", "BTC", "--oid", "1"])
        assert cmd_reset(cfg, args) == 0

        reloaded = OrderLedger(cfg.data_dir)
        assert not reloaded.is_processed(1, "BTC")
        assert reloaded.is_processed(2, "BTC")
