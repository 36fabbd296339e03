"""Timer-driven decision loop.

Each cycle samples ``assets_per_cycle`` assets from the basket. An asset with
an open position is only risk-managed (stop-loss / take-profit); any other
asset gets a fresh decision from the provider, which opens a position when it
is actionable and confident enough. Cycles are single-flight: a trigger that
arrives while a cycle is running is dropped, not queued.
"""

from __future__ import annotations

import asyncio
import inspect
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from config import MIN_DECISION_CONFIDENCE, REPORT_PROBABILITY, TradeConfig
from decision_provider import Decision, MarketContext
from execution import ExecutionAborted, ExecutionGate, OrderIntent
from llm_http import ProviderError
from log_utils import setup_logger
from notifier import Notifier, format_performance_report
from observability import log_event, record_metric
from position_ledger import LedgerRejection, Position
from trade_journal import TradeJournal
from trading_state import TradingState
from worker_pools import SideEffectDispatcher

logger = setup_logger(__name__)

STOP_LOSS_REASON = "Stop Loss"
TAKE_PROFIT_REASON = "Take Profit"


@dataclass(frozen=True)
class AssetOutcome:
    asset: str
    action: str  # idle | held | managed | entered | rejected | waited
    message: str
    position: Optional[Position] = None


@dataclass(frozen=True)
class CycleResult:
    skipped: bool = False
    reason: str = ""
    outcomes: Tuple[AssetOutcome, ...] = field(default_factory=tuple)

    @property
    def action(self) -> str:
        if self.skipped:
            return "skipped"
        return self.outcomes[0].action if self.outcomes else "idle"


class DecisionScheduler:
    """Run decision cycles on a fixed, re-armable interval."""

    def __init__(
        self,
        state: TradingState,
        provider: Any,
        *,
        dispatcher: Optional[SideEffectDispatcher] = None,
        journal: Optional[TradeJournal] = None,
        notifier: Optional[Notifier] = None,
        execution: Optional[ExecutionGate] = None,
        rng: Optional[random.Random] = None,
        report_probability: float = REPORT_PROBABILITY,
        min_confidence: float = MIN_DECISION_CONFIDENCE,
    ) -> None:
        self.state = state
        self.provider = provider
        self.dispatcher = dispatcher
        self.journal = journal
        self.notifier = notifier
        self.execution = execution or ExecutionGate(state.config)
        self.report_probability = report_probability
        self.min_confidence = min_confidence
        self._rng = rng or random.Random()
        self._interval = state.config.interval_seconds
        self._flight_lock = threading.Lock()
        self._in_flight = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wake: Optional[asyncio.Event] = None
        self.cycles_run = 0
        self.cycles_skipped = 0
        self.reports_sent = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def interval(self) -> float:
        return self._interval

    @property
    def in_flight(self) -> bool:
        with self._flight_lock:
            return self._in_flight

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return bool(thread and thread.is_alive())

    def start(self) -> None:
        with self._thread_lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run_loop, name="decision-scheduler", daemon=True)
            self._thread.start()
        logger.info("Decision scheduler started (every %.0fs)", self._interval)

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the timer; a cycle already running is allowed to finish."""

        self._stop_event.set()
        with self._thread_lock:
            thread = self._thread
            self._thread = None
        if thread and thread is not threading.current_thread():
            # The loop may not have created its wake event yet; keep poking.
            deadline = time.monotonic() + timeout
            while thread.is_alive() and time.monotonic() < deadline:
                self._poke()
                thread.join(timeout=0.1)
        logger.info("Decision scheduler stopped")

    def set_interval(self, minutes: float) -> None:
        """Change the cycle period and restart the countdown."""

        self._interval = max(1.0, float(minutes)) * 60.0
        self._poke()
        logger.info("Decision interval set to %.1f minutes", self._interval / 60.0)

    def set_provider(self, provider: Any) -> None:
        self.provider = provider

    async def run_cycle(self) -> CycleResult:
        """Run one cycle now unless another one is still in flight."""

        with self._flight_lock:
            if self._in_flight:
                self.cycles_skipped += 1
                logger.info("Skipping decision cycle: previous cycle still running")
                return CycleResult(skipped=True, reason="previous cycle still running")
            self._in_flight = True
        try:
            return await self._cycle()
        finally:
            with self._flight_lock:
                self._in_flight = False

    def maybe_send_report(self) -> bool:
        """Memoryless periodic report: fires with ``report_probability``."""

        if self._rng.random() >= self.report_probability:
            return False
        self.reports_sent += 1
        if self.notifier is not None:
            report = format_performance_report(self.state.portfolio(), self.state.closed_positions())
            self._dispatch("performance_report", self.notifier.send, report, "Performance Report")
        return True

    # ------------------------------------------------------------------
    # Timer loop
    # ------------------------------------------------------------------
    def _run_loop(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        try:
            loop.run_until_complete(self._timer_loop())
        finally:
            self._loop = None
            self._wake = None
            loop.close()

    def _poke(self) -> None:
        loop = self._loop
        wake = self._wake
        if loop is not None and wake is not None and loop.is_running():
            loop.call_soon_threadsafe(wake.set)

    async def _timer_loop(self) -> None:
        self._wake = asyncio.Event()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            else:
                # Woken early: interval changed or stop requested, re-arm.
                self._wake.clear()
                continue
            if self._stop_event.is_set():
                break
            try:
                await self.run_cycle()
            except Exception:
                logger.error("Decision cycle crashed", exc_info=True)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    async def _cycle(self) -> CycleResult:
        # Status and report run every cycle, before the basket is looked at.
        if self.journal is not None:
            self._dispatch("system_status", self.journal.record_system_status, self.state.status_snapshot())
        self.maybe_send_report()

        config = self.state.config
        assets = list(config.assets)
        if not assets:
            logger.info("No assets configured; skipping cycle")
            return CycleResult(skipped=True, reason="no assets configured")

        self.cycles_run += 1
        picks = self._rng.sample(assets, min(config.assets_per_cycle, len(assets)))
        outcomes: List[AssetOutcome] = []
        for asset in picks:
            outcomes.append(await self._evaluate_asset(asset, config))

        for outcome in outcomes:
            log_event(logger, "decision_cycle", asset=outcome.asset, action=outcome.action, message=outcome.message)
        return CycleResult(outcomes=tuple(outcomes))

    async def _evaluate_asset(self, asset: str, config: TradeConfig) -> AssetOutcome:
        position = self.state.ledger.get_open(asset)
        if position is not None:
            return self._manage(position, config)

        context = self._build_context(asset)
        if context is None:
            return AssetOutcome(asset, "idle", "no market price yet")
        decision = await self._request_decision(context)
        self.state.set_last_analysis(
            f"{asset}: {decision.decision.value} ({decision.confidence:.0f}%) - {decision.reasoning}"
        )
        return self._maybe_enter(asset, decision, config)

    def _manage(self, position: Position, config: TradeConfig) -> AssetOutcome:
        ratio = position.pnl_ratio
        if ratio <= -config.stop_loss_pct:
            reason = STOP_LOSS_REASON
        elif ratio >= config.take_profit_pct:
            reason = TAKE_PROFIT_REASON
        else:
            return AssetOutcome(position.asset, "held", f"holding, pnl ratio {ratio:.4f}")
        try:
            closed = self.state.close_position(position.id, reason)
        except LedgerRejection as exc:
            logger.info("Close of %s rejected: %s", position.id, exc)
            return AssetOutcome(position.asset, "rejected", str(exc))
        logger.info("%s hit on %s (pnl %.2f)", reason, closed.asset, closed.pnl)
        record_metric("position_closed", closed.pnl, labels={"asset": closed.asset, "reason": reason})
        self._after_trade(closed)
        return AssetOutcome(closed.asset, "managed", reason, closed)

    def _build_context(self, asset: str) -> Optional[MarketContext]:
        market = self.state.market(asset)
        if market is None or market.price <= 0:
            return None
        return MarketContext(
            asset=asset,
            price=market.price,
            change_24h=market.change_24h,
            rsi=market.rsi,
            fear_greed_index=self.state.fear_index,
            equity=self.state.portfolio().equity,
            news=tuple(self.state.recent_news(3)),
            recent_trades=tuple(self.state.closed_positions(3)),
        )

    async def _request_decision(self, context: MarketContext) -> Decision:
        analyze: Callable[[MarketContext], Any] = self.provider.analyze
        try:
            if inspect.iscoroutinefunction(analyze):
                result = await analyze(context)
            else:
                result = await asyncio.to_thread(analyze, context)
                if inspect.isawaitable(result):
                    result = await result
        except ProviderError as exc:
            logger.warning("Decision provider failed for %s: %s", context.asset, exc)
            return Decision.wait(f"Provider error: {exc}")
        except Exception as exc:
            logger.error("Decision provider crashed for %s", context.asset, exc_info=True)
            return Decision.wait(f"Provider error: {exc}")
        if not isinstance(result, Decision):
            logger.warning("Decision provider returned %r; treating as WAIT", type(result).__name__)
            return Decision.wait("Malformed provider response")
        return result

    def _maybe_enter(self, asset: str, decision: Decision, config: TradeConfig) -> AssetOutcome:
        if not decision.actionable or decision.confidence <= self.min_confidence:
            return AssetOutcome(asset, "waited", decision.reasoning or "no actionable signal")

        portfolio = self.state.portfolio()
        size = portfolio.balance * config.risk_per_trade
        if self.state.ledger.get_open(asset) is not None:
            return self._reject(asset, "position opened while deciding")
        if portfolio.available_margin < size:
            return self._reject(asset, "insufficient margin")
        leverage = max(1, min(int(decision.leverage), config.max_leverage))

        market = self.state.market(asset)
        intent = OrderIntent(asset, decision.decision, size, leverage, market.price if market else 0.0)
        try:
            note = self.execution.prepare(intent)
        except ExecutionAborted as exc:
            self.state.set_last_analysis(str(exc))
            return self._reject(asset, str(exc))
        reasoning = f"{decision.reasoning} [{note}]" if note else decision.reasoning

        try:
            position = self.state.open_position(
                asset,
                decision.decision,
                size,
                leverage,
                reasoning=reasoning,
                confidence=decision.confidence,
            )
        except LedgerRejection as exc:
            return self._reject(asset, str(exc))
        logger.info(
            "Opened %s %s size=%.2f x%d @ %.4f",
            position.side.value,
            asset,
            position.size,
            position.leverage,
            position.entry_price,
        )
        self._after_trade(position)
        return AssetOutcome(asset, "entered", f"{position.side.value} x{position.leverage}", position)

    def _reject(self, asset: str, reason: str) -> AssetOutcome:
        logger.info("Entry on %s rejected: %s", asset, reason)
        if self.journal is not None:
            self._dispatch("log_rejection", self.journal.log_rejection, asset, reason)
        return AssetOutcome(asset, "rejected", reason)

    def _after_trade(self, position: Position) -> None:
        if self.journal is not None:
            self._dispatch("log_trade", self.journal.log_trade, position)
        if self.notifier is not None:
            self._dispatch("notify_trade", self.notifier.notify_trade, position)

    def _dispatch(self, label: str, fn: Callable[..., Any], *args: Any) -> None:
        if self.dispatcher is None:
            return
        self.dispatcher.submit(label, fn, *args)


__all__ = ["AssetOutcome", "CycleResult", "DecisionScheduler", "STOP_LOSS_REASON", "TAKE_PROFIT_REASON"]
