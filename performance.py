"""Closed-trade performance statistics."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Union

import numpy as np
import pandas as pd

from position_ledger import Position, PositionStatus

HistoryLike = Union[pd.DataFrame, Sequence[Position], None]

DISTRIBUTION_BINS = 10


@dataclass(frozen=True)
class PerformanceStats:
    count: int
    wins: int
    losses: int
    total_pnl: float
    avg_pnl: float
    win_rate: float  # percent, 0..100
    best_trade: float
    worst_trade: float
    total_fees: float


@dataclass(frozen=True)
class PnlBin:
    start: float
    end: float
    count: int

    @property
    def label(self) -> str:
        return f"{self.start:+.0f} to {self.end:+.0f}"

    @property
    def mid(self) -> float:
        return (self.start + self.end) / 2


def history_frame(history: HistoryLike) -> pd.DataFrame:
    """Normalise closed positions (or a journal frame) to one DataFrame."""

    if history is None:
        return pd.DataFrame(columns=["exit_time", "pnl", "fees", "asset", "side"])
    if isinstance(history, pd.DataFrame):
        df = history.copy()
        if "status" in df.columns:
            df = df[df["status"] == PositionStatus.CLOSED.value].copy()
    else:
        rows = [
            {
                "exit_time": p.exit_time,
                "pnl": p.pnl,
                "fees": p.fees,
                "asset": p.asset,
                "side": p.side.value,
            }
            for p in history
            if p.status == PositionStatus.CLOSED
        ]
        df = pd.DataFrame(rows, columns=["exit_time", "pnl", "fees", "asset", "side"])
    if "pnl" not in df.columns:
        df["pnl"] = 0.0
    df["pnl"] = pd.to_numeric(df["pnl"], errors="coerce").fillna(0.0)
    if "fees" in df.columns:
        df["fees"] = pd.to_numeric(df["fees"], errors="coerce").fillna(0.0)
    return df


def compute_performance(history: HistoryLike) -> PerformanceStats:
    df = history_frame(history)
    pnls = df["pnl"].to_numpy(dtype=float) if not df.empty else np.array([], dtype=float)
    count = int(pnls.size)
    wins = int((pnls > 0).sum())
    total = float(pnls.sum()) if count else 0.0
    return PerformanceStats(
        count=count,
        wins=wins,
        losses=int((pnls <= 0).sum()),
        total_pnl=total,
        avg_pnl=total / count if count else 0.0,
        win_rate=wins / count * 100.0 if count else 0.0,
        best_trade=float(pnls.max()) if count else 0.0,
        worst_trade=float(pnls.min()) if count else 0.0,
        total_fees=float(df["fees"].sum()) if count and "fees" in df.columns else 0.0,
    )


def equity_curve(history: HistoryLike) -> pd.Series:
    """Cumulative realized PnL ordered by exit time."""

    df = history_frame(history)
    if df.empty:
        return pd.Series(dtype=float)
    if "exit_time" in df.columns:
        df = df.sort_values("exit_time", kind="stable")
    return df["pnl"].cumsum().reset_index(drop=True)


def pnl_distribution(pnls: Iterable[float], bins: int = DISTRIBUTION_BINS) -> List[PnlBin]:
    """Histogram of trade PnL on whole-dollar bin edges.

    The bin width is ``max(1, ceil(range / bins))`` (10 when every trade has
    the same PnL), anchored at a multiple of the width below the minimum.
    """

    values = np.asarray(list(pnls), dtype=float)
    if values.size == 0:
        return []
    low, high = float(values.min()), float(values.max())
    span = high - low
    width = max(1, math.ceil(span / bins)) if span > 0 else 10
    start = math.floor(low / width) * width
    end = math.ceil(high / width) * width
    steps = max(1, int((end - start) // width))
    edges = start + width * np.arange(steps + 1)
    indexes = np.clip(((values - start) // width).astype(int), 0, steps - 1)
    counts = np.bincount(indexes, minlength=steps)
    return [
        PnlBin(start=float(edges[i]), end=float(edges[i] + width), count=int(counts[i]))
        for i in range(steps)
    ]


__all__ = [
    "PerformanceStats",
    "PnlBin",
    "compute_performance",
    "equity_curve",
    "history_frame",
    "pnl_distribution",
]
