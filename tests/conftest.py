"""
Pytest configuration and fixtures.
Adds the repo root to Python path so tests can import copybot.
"""

import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from copybot.core.models import ExitPlan, Position  # noqa: E402
from copybot.ledger.order_ledger import OrderLedger  # noqa: E402

DAY_MS = 24 * 60 * 60 * 1000


class FakeClock:
    """Millisecond clock the test moves by hand."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def build_position(
    symbol="BTC",
    quantity=0.05,
    entry_price=43000.0,
    current_price=None,
    leverage=10.0,
    entry_oid=5,
    margin=0.0,
    profit_target=None,
    stop_loss=None,
):
    """Position whose exit plan sits 10% away from entry unless given."""
    current = entry_price if current_price is None else current_price
    if profit_target is None:
        profit_target = entry_price * (1.1 if quantity >= 0 else 0.9)
    if stop_loss is None:
        stop_loss = entry_price * (0.9 if quantity >= 0 else 1.1)
    return Position(
        symbol=symbol,
        entry_price=entry_price,
        quantity=quantity,
        leverage=leverage,
        current_price=current,
        entry_oid=entry_oid,
        margin=margin,
        exit_plan=ExitPlan(profit_target=profit_target, stop_loss=stop_loss),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(tmp_path, clock):
    return OrderLedger(str(tmp_path / "data"), clock=clock)


@pytest.fixture
def make_position():
    return build_position
