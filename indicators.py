"""Technical indicators computed over the candle series."""
from __future__ import annotations

from typing import Iterable, List, Sequence, Union

from candle_aggregator import Candle

NEUTRAL_RSI = 50.0

SeriesLike = Union[Sequence[Candle], Sequence[float], Iterable[Union[Candle, float]]]


def _closes(series: SeriesLike) -> List[float]:
    closes: List[float] = []
    for item in series:
        if isinstance(item, Candle):
            closes.append(float(item.close))
        else:
            closes.append(float(item))
    return closes


def compute_rsi(series: SeriesLike, period: int = 14) -> float:
    """Return Wilder's RSI of the closes in ``series``.

    The first average gain/loss is the plain mean of the first ``period``
    deltas; every later delta is folded in with Wilder smoothing
    ``avg = (avg * (period - 1) + x) / period``.

    Returns ``50`` when fewer than ``period + 1`` closes are available and
    ``100`` when the final average loss is zero. The result is clamped to
    ``[0, 100]``.
    """

    if period < 1:
        raise ValueError("period must be >= 1")
    closes = _closes(series)
    if len(closes) < period + 1:
        return NEUTRAL_RSI

    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        delta = closes[i] - closes[i - 1]
        if delta >= 0:
            gains += delta
        else:
            losses -= delta
    avg_gain = gains / period
    avg_loss = losses / period

    for i in range(period + 1, len(closes)):
        delta = closes[i] - closes[i - 1]
        gain = delta if delta > 0 else 0.0
        loss = -delta if delta < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    rsi = 100.0 - 100.0 / (1.0 + rs)
    return max(0.0, min(100.0, rsi))


def rsi_zone(rsi: float, overbought: float = 75.0, oversold: float = 25.0) -> str:
    """Classify an RSI reading for prompts and status lines."""

    if rsi > overbought:
        return "OVERBOUGHT"
    if rsi < oversold:
        return "OVERSOLD"
    return "NEUTRAL"


__all__ = ["NEUTRAL_RSI", "compute_rsi", "rsi_zone"]
