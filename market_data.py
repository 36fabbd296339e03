"""Thin REST client for the Hyperliquid ``/info`` endpoint.

Every call is synchronous and returns a neutral value (``{}``, ``[]`` or
``None``) on failure so the caller never has to guard against transport
errors. Candle payloads are shaped through ``pandas`` so malformed rows are
coerced and dropped in one place.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd
import requests

from candle_aggregator import Candle
from config import HYPERLIQUID_INFO_URL
from log_utils import setup_logger

__all__ = [
    "AssetSnapshot",
    "BookLevel",
    "HyperliquidInfoClient",
    "OrderBook",
    "candles_from_payload",
    "parse_l2_book",
    "parse_snapshot",
]

logger = setup_logger(__name__)

DEFAULT_BOOK_DEPTH = 20
DEFAULT_LOOKBACK_HOURS = 48

_CANDLE_COLUMNS: Sequence[str] = ("t", "o", "h", "l", "c")


@dataclass(frozen=True)
class AssetSnapshot:
    asset: str
    price: float
    prev_day_px: float
    volume: float

    @property
    def change_24h(self) -> float:
        if self.prev_day_px <= 0:
            return 0.0
        return (self.price - self.prev_day_px) / self.prev_day_px * 100.0


@dataclass(frozen=True)
class BookLevel:
    px: float
    sz: float


@dataclass(frozen=True)
class OrderBook:
    bids: List[BookLevel] = field(default_factory=list)
    asks: List[BookLevel] = field(default_factory=list)

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0].px if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0].px if self.asks else None


def _to_float(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) else 0.0


def _split_snapshot_payload(data: Any) -> Tuple[Any, Any]:
    universe: Any = None
    ctxs: Any = None
    if isinstance(data, list) and len(data) >= 2:
        universe, ctxs = data[0], data[1]
    elif isinstance(data, dict):
        universe = data.get("universe")
        ctxs = data.get("assetCtxs")
    # ``data[0]`` is sometimes the meta object wrapping the universe list.
    if isinstance(universe, dict) and "universe" in universe:
        universe = universe["universe"]
    return universe, ctxs


def parse_snapshot(data: Any) -> Dict[str, AssetSnapshot]:
    """Map a ``metaAndAssetCtxs`` payload to per-asset snapshots."""

    universe, ctxs = _split_snapshot_payload(data)
    if not isinstance(universe, list) or not isinstance(ctxs, list):
        logger.warning("Unrecognised snapshot payload shape: %s", type(data).__name__)
        return {}
    result: Dict[str, AssetSnapshot] = {}
    for index, meta in enumerate(universe):
        if not isinstance(meta, dict) or not meta.get("name"):
            continue
        ctx = ctxs[index] if index < len(ctxs) and isinstance(ctxs[index], dict) else {}
        name = str(meta["name"])
        result[name] = AssetSnapshot(
            asset=name,
            price=_to_float(ctx.get("midPx")),
            prev_day_px=_to_float(ctx.get("prevDayPx")),
            volume=_to_float(ctx.get("dayNtlVlm")),
        )
    return result


def candles_from_payload(raw: Any) -> List[Candle]:
    """Convert ``candleSnapshot`` rows into time-sorted candles (seconds)."""

    if not isinstance(raw, list) or not raw:
        return []
    rows = [row for row in raw if isinstance(row, dict)]
    df = pd.DataFrame(rows, columns=list(_CANDLE_COLUMNS))
    if df.empty:
        return []
    df = df.apply(pd.to_numeric, errors="coerce").dropna()
    df = df[(df[["o", "h", "l", "c"]] > 0).all(axis=1)].copy()
    df["t"] = (df["t"] // 1000).astype("int64")
    df = df.sort_values("t", kind="stable").drop_duplicates(subset="t", keep="last")
    return [
        Candle(time=int(row.t), open=float(row.o), high=float(row.h), low=float(row.l), close=float(row.c))
        for row in df.itertuples(index=False)
    ]


def parse_l2_book(data: Any, depth: int = DEFAULT_BOOK_DEPTH) -> Optional[OrderBook]:
    """Parse an ``l2Book`` payload, best levels first on each side."""

    levels = data.get("levels") if isinstance(data, dict) else None
    if not isinstance(levels, list):
        return None
    bids: List[BookLevel] = []
    asks: List[BookLevel] = []
    for level in _flatten_levels(levels):
        px = _to_float(level.get("px"))
        sz = _to_float(level.get("sz"))
        side = level.get("side")
        if side == "B":
            bids.append(BookLevel(px, sz))
        elif side == "A":
            asks.append(BookLevel(px, sz))
    bids.sort(key=lambda lvl: lvl.px, reverse=True)
    asks.sort(key=lambda lvl: lvl.px)
    return OrderBook(bids=bids[:depth], asks=asks[:depth])


def _flatten_levels(levels: List[Any]) -> List[Dict[str, Any]]:
    # The live API nests levels as ``[bids, asks]`` without a side marker.
    if len(levels) == 2 and all(isinstance(side, list) for side in levels):
        flat: List[Dict[str, Any]] = []
        for marker, side in zip(("B", "A"), levels):
            flat.extend({**lvl, "side": lvl.get("side", marker)} for lvl in side if isinstance(lvl, dict))
        return flat
    return [lvl for lvl in levels if isinstance(lvl, dict)]


class HyperliquidInfoClient:
    """POST wrapper around the Hyperliquid info endpoint."""

    def __init__(
        self,
        url: str = HYPERLIQUID_INFO_URL,
        *,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def _post(self, payload: Dict[str, Any]) -> Any:
        response = self._session.post(
            self.url,
            json=payload,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def fetch_snapshot(self) -> Dict[str, AssetSnapshot]:
        try:
            data = self._post({"type": "metaAndAssetCtxs"})
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Snapshot request failed: %s", exc)
            return {}
        return parse_snapshot(data)

    def fetch_candles(
        self,
        asset: str,
        interval: str = "15m",
        lookback_hours: float = DEFAULT_LOOKBACK_HOURS,
        *,
        now: Optional[float] = None,
    ) -> List[Candle]:
        end_ms = int((now if now is not None else time.time()) * 1000)
        start_ms = end_ms - int(lookback_hours * 3600 * 1000)
        payload = {
            "type": "candleSnapshot",
            "req": {"coin": asset, "interval": interval, "startTime": start_ms, "endTime": end_ms},
        }
        try:
            data = self._post(payload)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Candle request for %s failed: %s", asset, exc)
            return []
        return candles_from_payload(data)

    def fetch_l2_book(self, asset: str, depth: int = DEFAULT_BOOK_DEPTH) -> Optional[OrderBook]:
        try:
            data = self._post({"type": "l2Book", "coin": asset})
        except (requests.RequestException, ValueError) as exc:
            logger.warning("L2 book request for %s failed: %s", asset, exc)
            return None
        return parse_l2_book(data, depth)
