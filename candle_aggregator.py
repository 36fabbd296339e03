"""Fixed-window OHLC aggregation for the tracked asset.

Exactly one candle is "building" at any time once the aggregator has been
seeded (or has seen its first tick). Ticks for the tracked asset update the
building candle; a wall-clock driver calls :meth:`CandleAggregator.advance_clock`
to finalise it once its window has elapsed.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional

from config import CANDLE_WINDOW_SECONDS
from log_utils import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class Candle:
    """OHLC bar; ``time`` is the window start in unix seconds."""

    time: int
    open: float
    high: float
    low: float
    close: float

    @classmethod
    def flat(cls, time: int, price: float) -> "Candle":
        return cls(time=int(time), open=price, high=price, low=price, close=price)

    def with_tick(self, price: float) -> "Candle":
        return replace(
            self,
            close=price,
            high=max(self.high, price),
            low=min(self.low, price),
        )


def window_start(timestamp: float, window: int = CANDLE_WINDOW_SECONDS) -> int:
    """Return the start of the window containing ``timestamp``."""

    return int(math.floor(timestamp / window) * window)


class CandleAggregator:
    """Build candles for a single tracked asset.

    Parameters
    ----------
    window:
        Candle length in seconds.
    catch_up:
        When ``True`` (default) a late clock call finalises every missed
        window, emitting flat candles at the previous close for windows that
        saw no ticks. When ``False`` only one boundary is crossed per call.
    max_history:
        Optional cap on closed candles retained in memory.
    """

    def __init__(
        self,
        window: int = CANDLE_WINDOW_SECONDS,
        *,
        catch_up: bool = True,
        max_history: Optional[int] = None,
    ) -> None:
        if window <= 0:
            raise ValueError("window must be positive")
        self.window = int(window)
        self.catch_up = catch_up
        self.max_history = max_history
        self._asset: Optional[str] = None
        self._history: List[Candle] = []
        self._building: Optional[Candle] = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @property
    def asset(self) -> Optional[str]:
        return self._asset

    @property
    def building(self) -> Optional[Candle]:
        return self._building

    def closed_candles(self) -> List[Candle]:
        return list(self._history)

    def series(self, include_building: bool = True) -> List[Candle]:
        """Return closed candles plus, optionally, the building one."""

        candles = list(self._history)
        if include_building and self._building is not None:
            candles.append(self._building)
        return candles

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def seed(self, asset: str, candles: Iterable[Candle]) -> None:
        """Cold reload for ``asset`` from fetched historical bars.

        History is replaced wholesale. The next building candle starts one
        window after the last fetched bar at its close. With no bars the
        aggregator waits for the first tick.
        """

        bars = sorted(candles, key=lambda c: c.time)
        self._asset = asset
        self._history = bars
        self._trim()
        if bars:
            last = bars[-1]
            self._building = Candle.flat(last.time + self.window, last.close)
        else:
            self._building = None
        logger.info("Candle history for %s reloaded with %d bars", asset, len(bars))

    def reset(self, asset: Optional[str] = None) -> None:
        self._asset = asset
        self._history = []
        self._building = None

    def on_tick(self, asset: str, price: float, now: Optional[float] = None) -> bool:
        """Fold ``price`` into the building candle.

        Returns ``True`` when the tick was applied. Ticks for other assets and
        non-positive prices are ignored. The first tick after an empty seed
        opens a candle at the window containing ``now``.
        """

        if asset != self._asset or price is None or price <= 0:
            return False
        if self._building is None:
            if now is None:
                return False
            self._building = Candle.flat(window_start(now, self.window), price)
            return True
        self._building = self._building.with_tick(price)
        return True

    def advance_clock(self, now: float) -> List[Candle]:
        """Finalise the building candle(s) whose window has elapsed."""

        finalised: List[Candle] = []
        while self._building is not None and now >= self._building.time + self.window:
            done = self._building
            self._history.append(done)
            finalised.append(done)
            self._building = Candle.flat(done.time + self.window, done.close)
            if not self.catch_up:
                break
        if finalised:
            self._trim()
        return finalised

    def _trim(self) -> None:
        if self.max_history and len(self._history) > self.max_history:
            del self._history[: len(self._history) - self.max_history]


__all__ = ["Candle", "CandleAggregator", "window_start"]
