"""
Tests for the price-tolerance gate and ToleranceConfig.
"""
import pytest

from copybot.config.tolerance import ToleranceConfig, load_symbol_overrides
from copybot.core.errors import ConfigurationError
from copybot.risk.price_tolerance import PriceToleranceError, check_price_tolerance, price_difference


class TestPriceDifference:
    def test_zero_at_entry(self):
        assert price_difference(43000.0, 43000.0) == 0

    def test_direction_independent(self):
        assert price_difference(100.0, 110.0) == pytest.approx(price_difference(100.0, 90.0))
        assert price_difference(100.0, 110.0) == pytest.approx(10.0)

    @pytest.mark.parametrize("entry", [0.0, -5.0])
    def test_non_positive_entry(self, entry):
        with pytest.raises(PriceToleranceError):
            price_difference(entry, 100.0)
        with pytest.raises(ZeroDivisionError):
            price_difference(entry, 100.0)


class TestCheck:
    def test_within(self):
        check = check_price_tolerance(100.0, 100.5, tolerance=1.0)
        assert check.within_tolerance and check.should_execute
        assert check.price_difference == pytest.approx(0.5)
        assert check.reason == "Price difference 0.50% is within tolerance 1%"

    def test_boundary_is_inclusive(self):
        assert check_price_tolerance(100.0, 101.0, tolerance=1.0).should_execute

    def test_exceeds(self):
        check = check_price_tolerance(100.0, 103.0, tolerance=1.0)
        assert not check.within_tolerance
        assert not check.should_execute
        assert "exceeds" in check.reason

    def test_symbol_override_used(self):
        cfg = ToleranceConfig(1.0)
        cfg.set_price_tolerance(0.2, "BTCUSDT")
        assert not check_price_tolerance(100.0, 100.5, "BTC", config=cfg).should_execute
        assert check_price_tolerance(100.0, 100.5, "ETH", config=cfg).should_execute

    def test_explicit_tolerance_wins(self):
        cfg = ToleranceConfig(0.1)
        assert check_price_tolerance(100.0, 102.0, "BTC", tolerance=5.0, config=cfg).should_execute


class TestToleranceConfig:
    def test_rejects_non_positive(self):
        cfg = ToleranceConfig()
        with pytest.raises(ConfigurationError):
            cfg.set_price_tolerance(0)
        with pytest.raises(ConfigurationError):
            cfg.set_price_tolerance(-1, "BTC")
        with pytest.raises(ConfigurationError):
            ToleranceConfig(0)

    def test_symbol_lookup_variants(self):
        cfg = ToleranceConfig(1.0)
        cfg.set_price_tolerance(0.5, "eth")
        assert cfg.get_price_tolerance("ETH") == 0.5
        assert cfg.get_price_tolerance("ETHUSDT") == 0.5
        assert cfg.get_price_tolerance("SOL") == 1.0
        assert cfg.get_price_tolerance() == 1.0

    def test_load_from_env(self):
        cfg = ToleranceConfig()
        cfg.load_from_env({"PRICE_TOLERANCE": "2.5", "BTCUSDT_TOLERANCE": "0.3", "ETH_TOLERANCE": "-1"})
        assert cfg.default_tolerance == 2.5
        assert cfg.get_price_tolerance("BTC") == 0.3
        assert cfg.get_price_tolerance("ETH") == 2.5

    def test_export_import_reset(self):
        cfg = ToleranceConfig(1.5)
        cfg.set_price_tolerance(0.4, "BTC")
        exported = cfg.export()
        assert exported == {"default_price_tolerance": 1.5, "symbol_tolerances": {"BTC": 0.4}}

        other = ToleranceConfig()
        other.import_config(exported)
        assert other.get_price_tolerance("BTCUSDT") == 0.4
        other.reset()
        assert other.export() == {"default_price_tolerance": 1.0, "symbol_tolerances": {}}

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "symbols.yaml"
        path.write_text("btcusdt:\n  price_tolerance: 0.5\nETH:\n  price_tolerance: 0.8\nnoise: 3\n")
        overrides = load_symbol_overrides(str(path))
        assert set(overrides) == {"BTCUSDT", "ETH"}

        cfg = ToleranceConfig()
        cfg.load_overrides(overrides)
        assert cfg.get_price_tolerance("BTC") == 0.5
        assert cfg.get_price_tolerance("ETHUSDT") == 0.8

    def test_yaml_missing_or_invalid(self, tmp_path):
        assert load_symbol_overrides(str(tmp_path / "nope.yaml")) == {}
        bad = tmp_path / "bad.yaml"
        bad.write_text("a: [unclosed\n")
        assert load_symbol_overrides(str(bad)) == {}
