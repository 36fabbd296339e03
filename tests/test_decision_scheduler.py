import asyncio
import threading
import time
import random

import pytest

from config import TradeConfig
from decision_provider import Decision
from decision_scheduler import STOP_LOSS_REASON, TAKE_PROFIT_REASON, DecisionScheduler
from execution import ABORT_NO_KEY
from llm_http import ProviderError
from position_ledger import TradeSide
from trading_state import TradingState
from worker_pools import SideEffectDispatcher


class StaticProvider:
    def __init__(self, decision):
        self.decision = decision
        self.contexts = []

    def analyze(self, context):
        self.contexts.append(context)
        return self.decision


class FailingProvider:
    def __init__(self, exc):
        self.exc = exc

    def analyze(self, context):
        raise self.exc


class SlowProvider:
    def __init__(self):
        self.calls = 0

    async def analyze(self, context):
        self.calls += 1
        await asyncio.sleep(0.05)
        return Decision.wait("thinking")


class RecordingJournal:
    def __init__(self):
        self.trades = []
        self.rejections = []
        self.statuses = []

    def log_trade(self, position):
        self.trades.append(position)

    def log_rejection(self, asset, reason):
        self.rejections.append((asset, reason))

    def record_system_status(self, status):
        self.statuses.append(status)


class RecordingNotifier:
    def __init__(self):
        self.trades = []
        self.messages = []

    def notify_trade(self, position):
        self.trades.append(position)

    def send(self, text, subject="NeuroLiquid Alert"):
        self.messages.append((subject, text))


def _long(confidence=80, leverage=8):
    return Decision(decision=TradeSide.LONG, leverage=leverage, confidence=confidence, reasoning="breakout")


def _scheduler(state, provider, **kwargs):
    kwargs.setdefault("rng", random.Random(1))
    return DecisionScheduler(
        state,
        provider,
        dispatcher=SideEffectDispatcher(inline=True),
        journal=kwargs.pop("journal", RecordingJournal()),
        notifier=kwargs.pop("notifier", RecordingNotifier()),
        report_probability=kwargs.pop("report_probability", 0.0),
        **kwargs,
    )


def test_entry_clamps_leverage_and_debits_risk_fraction(btc_state):
    journal = RecordingJournal()
    notifier = RecordingNotifier()
    scheduler = _scheduler(btc_state, StaticProvider(_long()), journal=journal, notifier=notifier)

    result = asyncio.run(scheduler.run_cycle())

    assert result.action == "entered"
    position = btc_state.ledger.get_open("BTC")
    assert position.leverage == 5
    assert position.size == pytest.approx(1_000)
    assert position.entry_price == 50_000.0
    assert btc_state.portfolio().available_margin == pytest.approx(9_000)
    assert [p.id for p in journal.trades] == [position.id]
    assert [p.id for p in notifier.trades] == [position.id]
    assert len(journal.statuses) == 1


def test_context_carries_market_and_sentiment(btc_state):
    provider = StaticProvider(Decision.wait("meh"))
    btc_state.set_fear_index(21)
    asyncio.run(_scheduler(btc_state, provider).run_cycle())

    context = provider.contexts[0]
    assert context.asset == "BTC"
    assert context.price == 50_000.0
    assert context.fear_greed_index == 21
    assert context.equity == 10_000.0


def test_stop_loss_closes_position(btc_state):
    btc_state.open_position("BTC", TradeSide.LONG, 1_000, 5)
    btc_state.apply_mids({"BTC": 48_750.0})
    assert btc_state.ledger.get_open("BTC").pnl_ratio <= -0.02
    provider = StaticProvider(_long())

    result = asyncio.run(_scheduler(btc_state, provider).run_cycle())

    assert result.action == "managed"
    assert result.outcomes[0].message == STOP_LOSS_REASON
    assert btc_state.ledger.get_open("BTC") is None
    assert btc_state.closed_positions()[0].close_reason == STOP_LOSS_REASON
    assert provider.contexts == []


def test_take_profit_closes_position(btc_state):
    btc_state.open_position("BTC", TradeSide.SHORT, 1_000, 5)
    btc_state.apply_mids({"BTC": 47_000.0})

    result = asyncio.run(_scheduler(btc_state, StaticProvider(_long())).run_cycle())

    assert result.outcomes[0].message == TAKE_PROFIT_REASON
    assert btc_state.closed_positions()[0].pnl > 0


def test_open_position_within_limits_is_held(btc_state):
    btc_state.open_position("BTC", TradeSide.LONG, 1_000, 5)
    btc_state.apply_mids({"BTC": 50_100.0})

    result = asyncio.run(_scheduler(btc_state, StaticProvider(_long())).run_cycle())

    assert result.action == "held"
    assert btc_state.ledger.get_open("BTC") is not None


@pytest.mark.parametrize("exc", [ProviderError("quota"), RuntimeError("boom")])
def test_provider_failure_becomes_wait(btc_state, exc):
    result = asyncio.run(_scheduler(btc_state, FailingProvider(exc)).run_cycle())

    assert result.action == "waited"
    assert "Provider error" in result.outcomes[0].message
    assert btc_state.open_positions() == []
    assert "Provider error" in btc_state.last_analysis


def test_malformed_provider_result_becomes_wait(btc_state):
    result = asyncio.run(_scheduler(btc_state, StaticProvider({"decision": "LONG"})).run_cycle())
    assert result.action == "waited"
    assert btc_state.open_positions() == []


def test_confidence_must_exceed_threshold(btc_state):
    result = asyncio.run(_scheduler(btc_state, StaticProvider(_long(confidence=75))).run_cycle())
    assert result.action == "waited"
    assert btc_state.open_positions() == []


def test_insufficient_margin_is_rejected_and_journaled(clock):
    state = TradingState(TradeConfig(assets=("BTC", "ETH"), risk_per_trade=0.6, assets_per_cycle=2), clock=clock)
    state.apply_mids({"BTC": 50_000.0, "ETH": 3_000.0})
    journal = RecordingJournal()

    result = asyncio.run(_scheduler(state, StaticProvider(_long()), journal=journal).run_cycle())

    actions = sorted(o.action for o in result.outcomes)
    assert actions == ["entered", "rejected"]
    assert len(state.open_positions()) == 1
    assert journal.rejections[0][1] == "insufficient margin"


def test_real_mode_without_key_aborts_entry(clock):
    state = TradingState(TradeConfig(assets=("BTC",), execution_mode="REAL"), clock=clock)
    state.apply_mids({"BTC": 50_000.0})

    result = asyncio.run(_scheduler(state, StaticProvider(_long())).run_cycle())

    assert result.action == "rejected"
    assert result.outcomes[0].message == ABORT_NO_KEY
    assert state.last_analysis == ABORT_NO_KEY
    assert state.open_positions() == []


def test_real_mode_with_key_opens_simulated_position(clock):
    state = TradingState(
        TradeConfig(assets=("BTC",), execution_mode="REAL", wallet_private_key="0xabc"), clock=clock
    )
    state.apply_mids({"BTC": 50_000.0})

    result = asyncio.run(_scheduler(state, StaticProvider(_long())).run_cycle())

    assert result.action == "entered"
    assert "REAL order intent logged" in state.open_positions()[0].reasoning


def test_asset_without_price_is_idle(clock):
    state = TradingState(TradeConfig(assets=("BTC",)), clock=clock)
    provider = StaticProvider(_long())
    result = asyncio.run(_scheduler(state, provider).run_cycle())
    assert result.action == "idle"
    assert provider.contexts == []


def test_empty_basket_skips_cycle(clock):
    state = TradingState(TradeConfig(assets=()), clock=clock)
    result = asyncio.run(_scheduler(state, StaticProvider(_long())).run_cycle())
    assert result.skipped
    assert result.action == "skipped"
    assert result.reason == "no assets configured"


def test_overlapping_cycles_are_dropped(btc_state):
    provider = SlowProvider()
    scheduler = _scheduler(btc_state, provider)

    async def overlap():
        return await asyncio.gather(scheduler.run_cycle(), scheduler.run_cycle())

    first, second = asyncio.run(overlap())

    assert not first.skipped
    assert second.skipped
    assert provider.calls == 1
    assert scheduler.cycles_skipped == 1
    assert not scheduler.in_flight


def test_cycle_samples_configured_number_of_assets(clock):
    state = TradingState(TradeConfig(assets=("BTC", "ETH", "SOL"), assets_per_cycle=2), clock=clock)
    state.apply_mids({"BTC": 50_000.0, "ETH": 3_000.0, "SOL": 150.0})
    provider = StaticProvider(Decision.wait("flat"))

    result = asyncio.run(_scheduler(state, provider).run_cycle())

    assert len(result.outcomes) == 2
    assert len({c.asset for c in provider.contexts}) == 2


def test_report_frequency_matches_probability(btc_state):
    notifier = RecordingNotifier()
    scheduler = _scheduler(
        btc_state,
        StaticProvider(Decision.wait("flat")),
        notifier=notifier,
        report_probability=0.005,
        rng=random.Random(1234),
    )

    trials = 40_000
    sent = sum(scheduler.maybe_send_report() for _ in range(trials))

    # Expected 200 with a standard deviation of about 14.
    assert 130 <= sent <= 270
    assert scheduler.reports_sent == sent
    assert len(notifier.messages) == sent
    assert notifier.messages[0][0] == "Performance Report"


def test_set_interval_clamps_to_one_minute(btc_state):
    scheduler = _scheduler(btc_state, StaticProvider(Decision.wait("flat")))
    assert scheduler.interval == 15 * 60
    scheduler.set_interval(0.2)
    assert scheduler.interval == 60


def test_start_and_stop_timer_thread(btc_state):
    scheduler = _scheduler(btc_state, StaticProvider(Decision.wait("flat")))
    scheduler.start()
    assert scheduler.is_running
    scheduler.stop(timeout=5)
    assert not scheduler.is_running
    assert scheduler.cycles_run == 0


def test_empty_basket_still_records_status_and_samples_report(clock):
    state = TradingState(TradeConfig(assets=()), clock=clock)
    journal = RecordingJournal()
    notifier = RecordingNotifier()
    scheduler = _scheduler(
        state, StaticProvider(_long()), journal=journal, notifier=notifier, report_probability=1.0
    )

    result = asyncio.run(scheduler.run_cycle())

    assert result.skipped
    assert scheduler.reports_sent == 1
    assert notifier.messages[0][0] == "Performance Report"
    assert len(journal.statuses) == 1
    assert scheduler.cycles_run == 0


class RacingProvider:
    """Opens a position on the asset while the decision is being made."""

    def __init__(self, state):
        self.state = state

    def analyze(self, context):
        self.state.open_position(context.asset, TradeSide.SHORT, 500, 2, reasoning="manual")
        return _long(confidence=90, leverage=3)


def test_entry_revalidates_open_position_after_decision(btc_state):
    journal = RecordingJournal()
    scheduler = _scheduler(btc_state, RacingProvider(btc_state), journal=journal)

    result = asyncio.run(scheduler.run_cycle())

    assert result.action == "rejected"
    assert result.outcomes[0].message == "position opened while deciding"
    open_positions = btc_state.open_positions()
    assert len(open_positions) == 1
    assert open_positions[0].side == TradeSide.SHORT
    assert btc_state.portfolio().available_margin == pytest.approx(9_500)
    assert journal.rejections == [("BTC", "position opened while deciding")]


class BlockingProvider:
    def __init__(self, hold=0.2):
        self.hold = hold
        self.calls = 0
        self.started = threading.Event()

    def analyze(self, context):
        self.calls += 1
        self.started.set()
        time.sleep(self.hold)
        return Decision.wait("thinking")


def test_stop_lets_in_flight_cycle_finish(btc_state):
    provider = BlockingProvider()
    scheduler = _scheduler(btc_state, provider)
    scheduler._interval = 0.01
    scheduler.start()
    try:
        assert provider.started.wait(timeout=5)
    finally:
        scheduler.stop(timeout=5)

    assert not scheduler.is_running
    assert not scheduler.in_flight
    assert scheduler.cycles_run == 1
    assert provider.calls == 1
    assert btc_state.last_analysis.startswith("BTC: WAIT")
