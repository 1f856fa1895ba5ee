"""
Tests for CapitalAllocator.
"""
import pytest

from copybot.allocation.capital_allocator import CapitalAllocator
from copybot.core.errors import ConfigurationError
from copybot.core.models import Side


@pytest.fixture
def three_positions(make_position):
    return [
        make_position(symbol="BTC", quantity=0.5, entry_price=43000.0, leverage=20, margin=248.66, entry_oid=1),
        make_position(symbol="ETH", quantity=-4.0, entry_price=2500.0, leverage=10, margin=205.80, entry_oid=2),
        make_position(symbol="SOL", quantity=30.0, entry_price=150.0, leverage=5, margin=201.16, entry_oid=3),
    ]


class TestAllocate:
    def test_literal_scenario(self, three_positions):
        allocator = CapitalAllocator()
        result = allocator.allocate(three_positions, 1000)
        by_symbol = result.by_symbol()

        assert by_symbol["BTC"].allocation_ratio == pytest.approx(0.3794, abs=1e-3)
        assert by_symbol["ETH"].allocation_ratio == pytest.approx(0.3139, abs=1e-3)
        assert by_symbol["SOL"].allocation_ratio == pytest.approx(0.3067, abs=1e-3)
        assert [a.allocated_margin for a in result.allocations] == [379, 313, 306]
        assert result.total_allocated_margin == 998
        assert result.total_allocated_margin <= 1000
        assert allocator.validate(result, 1000)

    def test_notional_and_quantity_floored(self, three_positions):
        result = CapitalAllocator().allocate(three_positions, 1000)
        btc = result.by_symbol()["BTC"]
        # 1000 * 0.379275 * 20 = 7585.49
        assert btc.notional_value == 7585
        # 7585.49 / 43000 = 0.17640 -> 3 decimals
        assert btc.adjusted_quantity == 0.176
        assert btc.leverage == 20
        assert btc.side is Side.BUY
        assert result.by_symbol()["ETH"].side is Side.SELL

    def test_ratios_sum_to_one(self, make_position):
        positions = [make_position(symbol=s, margin=m) for s, m in
                     [("BTC", 1.0), ("ETH", 3.3), ("SOL", 7.77), ("XRP", 0.01)]]
        result = CapitalAllocator().allocate(positions, 250)
        assert sum(a.allocation_ratio for a in result.allocations) == pytest.approx(1.0, abs=1e-3)
        assert result.total_allocated_margin <= 250

    def test_non_positive_margin_excluded(self, make_position):
        positions = [
            make_position(symbol="BTC", margin=100.0),
            make_position(symbol="ETH", margin=0.0),
            make_position(symbol="SOL", margin=-5.0),
        ]
        result = CapitalAllocator().allocate(positions, 500)
        assert [a.symbol for a in result.allocations] == ["BTC"]
        assert result.allocations[0].allocation_ratio == 1.0

    def test_empty(self, make_position):
        result = CapitalAllocator().allocate([make_position(margin=0.0)], 500)
        assert result.allocations == []
        assert result.total_allocated_margin == 0

    def test_capped_by_available_balance(self, make_position):
        result = CapitalAllocator().allocate([make_position(margin=10.0)], 1000, available_balance=400.0)
        assert result.total_allocated_margin == 400

    def test_default_budget_used(self, make_position):
        allocator = CapitalAllocator(default_total_margin=300)
        result = allocator.allocate([make_position(margin=10.0)])
        assert result.total_allocated_margin == 300


class TestValidate:
    def test_rejects_overshoot(self, three_positions):
        allocator = CapitalAllocator()
        result = allocator.allocate(three_positions, 1000)
        assert not allocator.validate(result, 990)

    def test_rejects_large_shortfall(self, three_positions):
        allocator = CapitalAllocator()
        result = allocator.allocate(three_positions, 1000)
        assert not allocator.validate(result, 1010)

    def test_rejects_bad_ratios(self, three_positions):
        allocator = CapitalAllocator()
        result = allocator.allocate(three_positions, 1000)
        result.allocations[0].allocation_ratio = 0.9
        assert not allocator.validate(result, 1000)


class TestConfig:
    @pytest.mark.parametrize("value", [0, -10])
    def test_rejects_non_positive_budget(self, value):
        with pytest.raises(ConfigurationError):
            CapitalAllocator(default_total_margin=value)
        allocator = CapitalAllocator()
        with pytest.raises(ConfigurationError):
            allocator.set_default_total_margin(value)

    def test_formatting(self):
        assert CapitalAllocator.format_percentage(0.37941) == "37.94%"
        assert CapitalAllocator.format_amount(1234.5) == "$1,234.50"
