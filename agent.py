"""NeuroLiquid trading agent: wiring and command line entry point.

``TradingAgent`` connects the Hyperliquid feed to the shared state, drives
the candle clock, refreshes sentiment inputs and runs the decision
scheduler. Side effects (journal, alerts) go through a background
dispatcher so they never hold up the trading loop.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from config import CANDLE_CLOCK_SECONDS, TradeConfig, load_trade_config
from decision_provider import build_decision_provider
from decision_scheduler import CycleResult, DecisionScheduler
from execution import ExecutionGate
from log_utils import setup_logger
from market_data import HyperliquidInfoClient
from notifier import Notifier
from observability import log_event
from position_ledger import LedgerRejection, Position
from price_stream import HyperliquidPriceStream
from sentiment_feed import COINDESK_RSS, CRYPTO_PANIC_RSS, FearGreedIndexFetcher, collect_news, score_headline
from trade_journal import TradeJournal
from trading_state import TradingState
from worker_pools import ScheduledTask, SideEffectDispatcher

logger = setup_logger(__name__)

MANUAL_CLOSE_REASON = "Manual Override"
FEAR_GREED_REFRESH_SECS = 300.0
NEWS_REFRESH_SECS = 600.0
ORDER_BOOK_REFRESH_SECS = 5.0
SNAPSHOT_REFRESH_SECS = 60.0

_PROVIDER_FIELDS = (
    "ai_provider",
    "groq_api_key",
    "groq_model",
    "groq_fallback_model",
    "openrouter_api_key",
    "openrouter_model",
    "ollama_base_url",
    "ollama_model",
    "max_leverage",
)


def handle_exception(exc_type, exc_value, exc_traceback):
    """Log uncaught exceptions with stack traces."""
    if issubclass(exc_type, KeyboardInterrupt):
        return
    logger.error("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))


class TradingAgent:
    def __init__(
        self,
        config: Optional[TradeConfig] = None,
        *,
        client: Optional[HyperliquidInfoClient] = None,
        stream: Optional[HyperliquidPriceStream] = None,
        provider: Any = None,
        journal: Optional[TradeJournal] = None,
        notifier: Optional[Notifier] = None,
        dispatcher: Optional[SideEffectDispatcher] = None,
        fear_greed: Optional[FearGreedIndexFetcher] = None,
        news_feeds: Sequence[str] = (CRYPTO_PANIC_RSS, COINDESK_RSS),
        news_fetcher: Optional[Callable[..., Any]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or load_trade_config()
        self.clock = clock
        self.client = client or HyperliquidInfoClient()
        self.stream = stream or HyperliquidPriceStream()
        self.journal = journal or TradeJournal(self.config.data_dir)
        self.notifier = notifier or Notifier.from_config(self.config)
        self.dispatcher = dispatcher or SideEffectDispatcher()
        self.fear_greed = fear_greed or FearGreedIndexFetcher()
        self.news_feeds = tuple(news_feeds)
        self._news_fetcher = news_fetcher
        self.state = TradingState(self.config, clock=clock)
        self.execution = ExecutionGate(self.config)
        self.provider = provider or build_decision_provider(self.config)
        self.scheduler = DecisionScheduler(
            self.state,
            self.provider,
            dispatcher=self.dispatcher,
            journal=self.journal,
            notifier=self.notifier,
            execution=self.execution,
        )
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._tasks = {
            "snapshot": ScheduledTask("snapshot", min_interval=SNAPSHOT_REFRESH_SECS),
            "fear_greed": ScheduledTask("fear_greed", min_interval=FEAR_GREED_REFRESH_SECS, jitter=0.1),
            "news": ScheduledTask("news", min_interval=NEWS_REFRESH_SECS, jitter=0.1),
            "order_book": ScheduledTask("order_book", min_interval=ORDER_BOOK_REFRESH_SECS),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def bootstrap(self) -> None:
        """Load the market snapshot, seed candles and sentiment inputs."""

        snapshot = self.client.fetch_snapshot()
        if snapshot:
            self.state.apply_snapshot(snapshot)
        else:
            logger.warning("Starting without a market snapshot")
        self._tasks["snapshot"].schedule_next(self.clock())
        selected = self.state.selected_asset
        if selected:
            self.select_asset(selected)
        self.refresh_environment(force=True)
        self.dispatcher.submit("save_config", self.journal.save_config, self.config.public_dict())

    def start(self) -> None:
        self._stop.clear()
        self.bootstrap()
        self._unsubscribe = self.stream.subscribe(self._on_mids)
        self.stream.connect()
        self._spawn("candle-clock", self._clock_loop)
        self._spawn("environment", self._environment_loop)
        self.scheduler.start()
        log_event(logger, "agent_started", assets=list(self.config.assets), mode=self.config.execution_mode)

    def stop(self) -> None:
        self._stop.set()
        self.scheduler.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.stream.disconnect()
        for thread in self._threads:
            thread.join(timeout=5.0)
        self._threads = []
        self.dispatcher.shutdown(wait=True)
        log_event(logger, "agent_stopped")

    def _spawn(self, name: str, target: Callable[[], None]) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _clock_loop(self) -> None:
        while not self._stop.wait(CANDLE_CLOCK_SECONDS):
            finalised = self.state.advance_clock(self.clock())
            for candle in finalised:
                logger.info("Candle closed %s @ %d close=%.4f", self.state.selected_asset, candle.time, candle.close)

    def _environment_loop(self) -> None:
        while not self._stop.wait(1.0):
            try:
                self.refresh_environment()
            except Exception:
                logger.error("Environment refresh failed", exc_info=True)

    # ------------------------------------------------------------------
    # Feed handlers
    # ------------------------------------------------------------------
    def _on_mids(self, mids: Dict[str, float]) -> None:
        self.state.apply_mids(mids, self.clock())

    def refresh_environment(self, force: bool = False) -> None:
        """Run whichever periodic refreshes are due."""

        now = self.clock()
        if force or self._tasks["snapshot"].due(now):
            snapshot = self.client.fetch_snapshot()
            if snapshot:
                self.state.apply_snapshot(snapshot)
            self._tasks["snapshot"].schedule_next(now)
        if force or self._tasks["fear_greed"].due(now):
            self.state.set_fear_index(self.fear_greed.fetch())
            self._tasks["fear_greed"].schedule_next(now)
        if force or self._tasks["news"].due(now):
            self.refresh_news()
            self._tasks["news"].schedule_next(now)
        if force or self._tasks["order_book"].due(now):
            asset = self.state.selected_asset
            if asset:
                self.state.set_order_book(asset, self.client.fetch_l2_book(asset))
            self._tasks["order_book"].schedule_next(now)

    def refresh_news(self) -> int:
        scorer = getattr(self.provider, "score_headline", score_headline)
        kwargs: Dict[str, Any] = {"scorer": scorer}
        if self._news_fetcher is not None:
            kwargs["fetcher"] = self._news_fetcher
        added = 0
        for item in reversed(collect_news(_StateNewsSink(self.state), self.news_feeds, **kwargs)):
            added += 1
            logger.debug("News %s %+.2f: %s", item.sentiment, item.score, item.headline)
        return added

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------
    def select_asset(self, asset: str) -> float:
        """Track ``asset``: reload its candles and return the fresh RSI."""

        candles = self.client.fetch_candles(asset)
        rsi = self.state.select_asset(asset, candles)
        self.state.set_order_book(asset, self.client.fetch_l2_book(asset))
        logger.info("Tracking %s (%d candles, RSI %.2f)", asset, len(candles), rsi)
        return rsi

    def close_position(self, position_id: str, reason: str = MANUAL_CLOSE_REASON) -> Optional[Position]:
        try:
            closed = self.state.close_position(position_id, reason)
        except LedgerRejection as exc:
            logger.warning("Manual close of %s rejected: %s", position_id, exc)
            return None
        self.dispatcher.submit("log_trade", self.journal.log_trade, closed)
        self.dispatcher.submit("notify_trade", self.notifier.notify_trade, closed)
        return closed

    def update_config(self, config: TradeConfig) -> None:
        previous = self.config
        self.config = config
        self.state.update_config(config)
        self.execution.update_config(config)
        if any(getattr(previous, name) != getattr(config, name) for name in _PROVIDER_FIELDS):
            self.provider = build_decision_provider(config)
            self.scheduler.set_provider(self.provider)
        if previous.analysis_interval_mins != config.analysis_interval_mins:
            self.scheduler.set_interval(config.analysis_interval_mins)
        self.notifier.enabled = config.notifications_enabled
        self.dispatcher.submit("save_config", self.journal.save_config, config.public_dict())

    def run_cycle_once(self) -> CycleResult:
        return asyncio.run(self.scheduler.run_cycle())

    def status(self) -> Dict[str, Any]:
        status = self.state.status_snapshot()
        status["last_analysis"] = self.state.last_analysis
        status["stream_connected"] = self.stream.is_connected
        status["scheduler_running"] = self.scheduler.is_running
        return status


class _StateNewsSink:
    """Adapter so ``collect_news`` can push straight into the state buffer."""

    def __init__(self, state: TradingState) -> None:
        self._state = state

    def add(self, item) -> bool:
        return self._state.add_news(item)


def _parse_assets(raw: Optional[str]) -> Optional[Iterable[str]]:
    if not raw:
        return None
    return tuple(part.strip().upper() for part in raw.split(",") if part.strip())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the NeuroLiquid Hyperliquid trading agent.")
    parser.add_argument("--assets", help="Comma-separated basket, e.g. BTC,ETH,SOL")
    parser.add_argument("--interval", type=float, help="Analysis interval in minutes")
    parser.add_argument("--provider", choices=("GROQ", "OPENROUTER", "OLLAMA"), help="Decision provider")
    parser.add_argument("--mode", choices=("SIMULATION", "REAL"), help="Execution mode")
    parser.add_argument("--once", action="store_true", help="Bootstrap, run a single cycle and exit")
    parser.add_argument("--duration", type=float, help="Stop after this many seconds")
    return parser


def config_from_args(args: argparse.Namespace, base: Optional[TradeConfig] = None) -> TradeConfig:
    config = base or load_trade_config()
    changes: Dict[str, Any] = {}
    assets = _parse_assets(args.assets)
    if assets:
        changes["assets"] = tuple(assets)
    if args.interval is not None:
        changes["analysis_interval_mins"] = args.interval
    if args.provider:
        changes["ai_provider"] = args.provider
    if args.mode:
        changes["execution_mode"] = args.mode
    return config.replace(**changes) if changes else config


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Program entry point."""

    sys.excepthook = handle_exception
    args = build_parser().parse_args(argv)
    agent = TradingAgent(config_from_args(args))

    if args.once:
        agent.bootstrap()
        result = agent.run_cycle_once()
        logger.info("Cycle finished: %s", result.action)
        agent.dispatcher.shutdown(wait=True)
        return 0

    agent.start()
    deadline = time.monotonic() + args.duration if args.duration else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        agent.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
