"""Single owner of the agent's mutable state.

``TradingState`` bundles the position ledger, the candle aggregator, per-asset
market data and the sentiment inputs behind one re-entrant lock. Stream
callbacks, the candle clock and the decision scheduler only ever call the
short synchronous methods below; reads return deep copies so no caller can
mutate shared structures by reference.
"""

from __future__ import annotations

import threading
import time
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from candle_aggregator import Candle, CandleAggregator
from config import TradeConfig
from indicators import NEUTRAL_RSI, compute_rsi
from log_utils import setup_logger
from market_data import AssetSnapshot, OrderBook
from position_ledger import Portfolio, Position, PositionLedger, TradeSide
from sentiment_feed import DEFAULT_FEAR_GREED, NewsBuffer, NewsItem

logger = setup_logger(__name__)


@dataclass
class MarketData:
    asset: str
    price: float = 0.0
    prev_day_px: float = 0.0
    change_24h: float = 0.0
    volume: float = 0.0
    rsi: float = NEUTRAL_RSI
    order_book: Optional[OrderBook] = None
    updated_at: float = 0.0

    def apply_price(self, price: float, now: float) -> None:
        self.price = price
        if self.prev_day_px > 0:
            self.change_24h = (price - self.prev_day_px) / self.prev_day_px * 100.0
        self.updated_at = now


class TradingState:
    """Thread-safe aggregate shared by the stream, clock and scheduler."""

    def __init__(
        self,
        config: TradeConfig,
        *,
        ledger: Optional[PositionLedger] = None,
        aggregator: Optional[CandleAggregator] = None,
        news: Optional[NewsBuffer] = None,
        clock=time.time,
    ) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._config = config
        self.ledger = ledger or PositionLedger(config.initial_balance, lock=self._lock, clock=clock)
        self.aggregator = aggregator or CandleAggregator()
        self._news = news or NewsBuffer()
        self._markets: Dict[str, MarketData] = {asset: MarketData(asset) for asset in config.assets}
        self._selected: Optional[str] = config.assets[0] if config.assets else None
        self._fear_index = DEFAULT_FEAR_GREED
        self._last_analysis = "Waiting for first analysis"

    # ------------------------------------------------------------------
    # Configuration and selection
    # ------------------------------------------------------------------
    @property
    def config(self) -> TradeConfig:
        with self._lock:
            return self._config

    def update_config(self, config: TradeConfig) -> None:
        with self._lock:
            self._config = config
            for asset in config.assets:
                self._markets.setdefault(asset, MarketData(asset))

    @property
    def selected_asset(self) -> Optional[str]:
        with self._lock:
            return self._selected

    def select_asset(self, asset: str, candles: Iterable[Candle]) -> float:
        """Switch the tracked asset, cold-reload its candles and return RSI."""

        with self._lock:
            self._selected = asset
            self._markets.setdefault(asset, MarketData(asset))
            self.aggregator.seed(asset, candles)
            return self._refresh_rsi()

    def relevant_assets(self) -> List[str]:
        """Basket, selected asset and every asset with an open position."""

        with self._lock:
            ordered = list(self._config.assets)
            extras = [self._selected] if self._selected else []
            extras.extend(self.ledger.open_assets())
            for asset in extras:
                if asset not in ordered:
                    ordered.append(asset)
            return ordered

    # ------------------------------------------------------------------
    # Market updates
    # ------------------------------------------------------------------
    def apply_snapshot(self, snapshots: Dict[str, AssetSnapshot]) -> None:
        now = self._clock()
        with self._lock:
            for asset in self.relevant_assets():
                snap = snapshots.get(asset)
                if snap is None:
                    continue
                market = self._markets.setdefault(asset, MarketData(asset))
                market.prev_day_px = snap.prev_day_px
                market.volume = snap.volume
                if snap.price > 0:
                    market.apply_price(snap.price, now)
                    self.ledger.mark_to_market(asset, snap.price)

    def apply_mids(self, mids: Dict[str, float], now: Optional[float] = None) -> List[str]:
        """Apply one stream batch; returns the assets that were updated."""

        now = self._clock() if now is None else now
        updated: List[str] = []
        with self._lock:
            for asset in self.relevant_assets():
                price = mids.get(asset)
                if price is None or price <= 0:
                    continue
                market = self._markets.setdefault(asset, MarketData(asset))
                market.apply_price(price, now)
                self.ledger.mark_to_market(asset, price)
                if asset == self._selected and self.aggregator.on_tick(asset, price, now):
                    self._refresh_rsi()
                updated.append(asset)
        return updated

    def advance_clock(self, now: Optional[float] = None) -> List[Candle]:
        now = self._clock() if now is None else now
        with self._lock:
            finalised = self.aggregator.advance_clock(now)
            if finalised:
                self._refresh_rsi()
            return finalised

    def _refresh_rsi(self) -> float:
        rsi = compute_rsi(self.aggregator.series(include_building=True))
        if self._selected:
            self._markets.setdefault(self._selected, MarketData(self._selected)).rsi = rsi
        return rsi

    def set_order_book(self, asset: str, book: Optional[OrderBook]) -> None:
        with self._lock:
            self._markets.setdefault(asset, MarketData(asset)).order_book = book

    def set_fear_index(self, value: int) -> None:
        with self._lock:
            self._fear_index = int(max(0, min(100, value)))

    @property
    def fear_index(self) -> int:
        with self._lock:
            return self._fear_index

    def add_news(self, item: NewsItem) -> bool:
        return self._news.add(item)

    def recent_news(self, limit: Optional[int] = None) -> List[NewsItem]:
        return self._news.recent(limit)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def market(self, asset: str) -> Optional[MarketData]:
        with self._lock:
            market = self._markets.get(asset)
            return deepcopy(market) if market is not None else None

    def markets(self) -> Dict[str, MarketData]:
        with self._lock:
            return deepcopy(self._markets)

    def candles(self, include_building: bool = True) -> List[Candle]:
        with self._lock:
            return self.aggregator.series(include_building=include_building)

    def portfolio(self) -> Portfolio:
        return self.ledger.portfolio()

    def open_positions(self) -> List[Position]:
        return self.ledger.open_positions()

    def closed_positions(self, limit: Optional[int] = None) -> List[Position]:
        return self.ledger.closed_positions(limit)

    def decision_snapshot(self, asset: str) -> Dict[str, float]:
        """Indicator and sentiment values recorded on a position at entry."""

        with self._lock:
            market = self._markets.get(asset)
            return {
                "rsi": market.rsi if market else NEUTRAL_RSI,
                "fear_index": float(self._fear_index),
                "news_score": self._news.average_score(3),
            }

    @property
    def last_analysis(self) -> str:
        with self._lock:
            return self._last_analysis

    def set_last_analysis(self, text: str) -> None:
        with self._lock:
            self._last_analysis = text

    def status_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            portfolio = self.ledger.portfolio()
            return {
                "timestamp": self._clock(),
                "portfolio": {
                    "balance": portfolio.balance,
                    "equity": portfolio.equity,
                    "available_margin": portfolio.available_margin,
                    "mark_to_market_equity": self.ledger.mark_to_market_equity(),
                },
                "active_trades": len(self.ledger.open_assets()),
                "fear_index": self._fear_index,
                "selected_asset": self._selected,
                "config": self._config.public_dict(),
            }

    # ------------------------------------------------------------------
    # Position helpers
    # ------------------------------------------------------------------
    def open_position(
        self,
        asset: str,
        side: TradeSide,
        size: float,
        leverage: int,
        *,
        reasoning: str = "",
        confidence: float = 0.0,
    ) -> Position:
        """Open at the latest mark price with the current decision snapshot."""

        with self._lock:
            market = self._markets.get(asset)
            price = market.price if market else 0.0
            return self.ledger.open(
                asset,
                side,
                size,
                leverage,
                price,
                self.decision_snapshot(asset),
                reasoning=reasoning,
                confidence=confidence,
            )

    def close_position(self, position_id: str, reason: str, price: Optional[float] = None) -> Position:
        """Close at ``price`` or, by default, at the asset's latest mark price."""

        with self._lock:
            if price is None:
                position = self.ledger.get(position_id)
                market = self._markets.get(position.asset) if position else None
                if market is not None and market.price > 0:
                    price = market.price
                elif position is not None:
                    logger.warning(
                        "No live price for %s, closing %s at entry price", position.asset, position_id
                    )
                    price = position.entry_price
                else:
                    price = 0.0
            return self.ledger.close(position_id, price, reason)


__all__ = ["MarketData", "TradingState"]
