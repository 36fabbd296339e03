import os
import tempfile

# Keep log, metric and cache files out of the working tree. This runs before
# any project module is imported, so the module-level defaults pick it up.
_TEST_ROOT = tempfile.mkdtemp(prefix="neuroliquid-tests-")
os.environ.setdefault("LOG_FILE", os.path.join(_TEST_ROOT, "neuroliquid.log"))
os.environ.setdefault("METRICS_PATH", os.path.join(_TEST_ROOT, "metrics.csv"))
os.environ.setdefault("FEAR_GREED_CACHE_PATH", os.path.join(_TEST_ROOT, "fear_greed_cache.json"))

import pytest  # noqa: E402

from config import TradeConfig  # noqa: E402
from trading_state import TradingState  # noqa: E402

NOW = 1_700_000_000.0


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def btc_state(clock):
    """Single-asset state with BTC marked at 50,000."""

    state = TradingState(TradeConfig(assets=("BTC",)), clock=clock)
    state.apply_mids({"BTC": 50_000.0})
    return state
