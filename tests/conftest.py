import sys
import pathlib
from datetime import datetime, timedelta, timezone

import pytest

sys.path.append(str(pathlib.Path(__file__).parent))
root_dir = pathlib.Path(__file__).resolve().parents[1]
# Ensure the src package is importable
sys.path.append(str(root_dir / "src"))

from exitengine.exit.emitter import IntentEmitter  # noqa: E402
from exitengine.exit.feeds import MemoryHoldingsFeed, MemoryPriceFeed  # noqa: E402
from exitengine.exit.governor import ControlGovernor  # noqa: E402
from exitengine.exit.models import Position  # noqa: E402
from exitengine.exit.profile import DEFAULT_PROFILE  # noqa: E402
from exitengine.exit.resolver import ProfileResolver  # noqa: E402
from exitengine.exit.service import ExitService  # noqa: E402
from exitengine.exit.state import PositionStateStore  # noqa: E402
from exitengine.exit.stores import (  # noqa: E402
    MemoryControlStore,
    MemoryIntentStore,
    MemoryProfileStore,
)

NOW = datetime(2026, 3, 2, 14, 30, tzinfo=timezone.utc)


def make_position(
    position_id: str = "P1",
    *,
    symbol: str = "005930",
    qty: int = 100,
    original_qty: int | None = None,
    avg_price: float = 10000.0,
    opened_ts: datetime | None = None,
    **kwargs,
) -> Position:
    return Position(
        position_id=position_id,
        account_id="ACC1",
        symbol=symbol,
        qty=qty,
        original_qty=qty if original_qty is None else original_qty,
        avg_price=avg_price,
        opened_ts=opened_ts or NOW - timedelta(days=1),
        **kwargs,
    )


class Engine:
    """In-memory exit engine wiring used across tests."""

    def __init__(self, profiles=(DEFAULT_PROFILE,), *, require_approval=False):
        self.profiles = MemoryProfileStore(profiles)
        self.intents = MemoryIntentStore()
        self.control = MemoryControlStore()
        self.prices = MemoryPriceFeed()
        self.holdings = MemoryHoldingsFeed()
        self.signals = []
        self.governor = ControlGovernor(self.control)
        self.state = PositionStateStore(retries=0, base_delay=0.0, max_delay=0.0)
        self.resolver = ProfileResolver(self.profiles, default_profile_id="default", ttl_s=30.0)
        self.emitter = IntentEmitter(self.intents, require_approval=require_approval)
        self.service = ExitService(
            state_store=self.state,
            resolver=self.resolver,
            emitter=self.emitter,
            price_feed=self.prices,
            signal_sink=self.signals.append,
            price_max_age_s=10.0,
            tick_size=0.0,
        )

    def tick(self, position: Position, price: float, now: datetime = NOW):
        self.prices.update(position.symbol, price, as_of_ts=now)
        return self.service.evaluate_position(position, self.governor.snapshot(), now)


@pytest.fixture
def engine():
    return Engine()


@pytest.fixture
def position():
    return make_position()
