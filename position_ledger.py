"""Virtual portfolio and leveraged position lifecycle.

The ledger owns the open and closed positions and the portfolio balances.
Positions move ``OPEN -> CLOSED`` exactly once; closed positions are never
touched again. Every rejection is raised as a :class:`LedgerRejection`
before any state is modified so callers can report it and carry on.

PnL for a position is always derived from ``compute_position_pnl``::

    notional = size * leverage
    quantity = notional / entry_price
    gross    = (price - entry_price) * quantity      (negated for SHORT)
    fees     = notional * fee_rate + quantity * price * fee_rate
    net      = gross - fees
"""
from __future__ import annotations

import threading
import time
import uuid
from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from config import INITIAL_BALANCE, TRADING_FEE_RATE
from log_utils import setup_logger
from observability import log_event

logger = setup_logger(__name__)


class TradeSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    WAIT = "WAIT"

    @classmethod
    def parse(cls, value: object) -> "TradeSide":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.WAIT


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class LedgerRejection(RuntimeError):
    """Base class for business-rule rejections raised by the ledger."""


class InsufficientMarginError(LedgerRejection):
    pass


class DuplicatePositionError(LedgerRejection):
    pass


class PositionNotOpenError(LedgerRejection):
    pass


class InvalidPositionError(LedgerRejection, ValueError):
    pass


@dataclass(frozen=True)
class PnlBreakdown:
    notional: float
    quantity: float
    gross: float
    fees: float
    net: float


def compute_position_pnl(
    side: TradeSide,
    size: float,
    leverage: float,
    entry_price: float,
    price: float,
    fee_rate: float = TRADING_FEE_RATE,
) -> PnlBreakdown:
    """Return the fee-aware PnL of a position valued at ``price``."""

    notional = size * leverage
    quantity = notional / entry_price if entry_price else 0.0
    gross = (price - entry_price) * quantity
    if side == TradeSide.SHORT:
        gross = -gross
    fees = notional * fee_rate + quantity * price * fee_rate
    return PnlBreakdown(notional=notional, quantity=quantity, gross=gross, fees=fees, net=gross - fees)


@dataclass
class Position:
    """An open or closed leveraged exposure on one asset."""

    id: str
    asset: str
    side: TradeSide
    size: float
    leverage: int
    entry_price: float
    entry_time: float
    status: PositionStatus = PositionStatus.OPEN
    pnl: float = 0.0
    fees: float = 0.0
    reasoning: str = ""
    confidence: float = 0.0
    snapshot: Dict[str, float] = field(default_factory=dict)
    mark_price: Optional[float] = None
    exit_price: Optional[float] = None
    exit_time: Optional[float] = None
    close_reason: Optional[str] = None

    @property
    def notional(self) -> float:
        return self.size * self.leverage

    @property
    def pnl_ratio(self) -> float:
        """Net PnL relative to notional (used by stop-loss / take-profit)."""

        notional = self.notional
        return self.pnl / notional if notional else 0.0

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "asset": self.asset,
            "side": self.side.value,
            "size": self.size,
            "leverage": self.leverage,
            "entry_price": self.entry_price,
            "entry_time": self.entry_time,
            "status": self.status.value,
            "pnl": self.pnl,
            "fees": self.fees,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
            "snapshot": dict(self.snapshot),
            "exit_price": self.exit_price,
            "exit_time": self.exit_time,
            "close_reason": self.close_reason,
        }


@dataclass(frozen=True)
class Portfolio:
    balance: float
    equity: float
    available_margin: float


class PositionLedger:
    """Own positions and balances; all mutations go through this class.

    ``lock`` lets an enclosing aggregate share its mutex with the ledger so a
    compound update (tick -> mark-to-market) stays one critical section.
    """

    def __init__(
        self,
        initial_balance: float = INITIAL_BALANCE,
        *,
        fee_rate: float = TRADING_FEE_RATE,
        lock: Optional[threading.RLock] = None,
        clock=time.time,
    ) -> None:
        self.fee_rate = fee_rate
        self._lock = lock or threading.RLock()
        self._clock = clock
        self._balance = float(initial_balance)
        self._equity = float(initial_balance)
        self._available_margin = float(initial_balance)
        self._open: Dict[str, Position] = {}
        self._closed: List[Position] = []

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def open(
        self,
        asset: str,
        side: TradeSide,
        size: float,
        leverage: int,
        entry_price: float,
        snapshot: Optional[Dict[str, float]] = None,
        *,
        reasoning: str = "",
        confidence: float = 0.0,
    ) -> Position:
        """Open a position, debiting ``size`` from the available margin."""

        side = TradeSide.parse(side)
        if side == TradeSide.WAIT:
            raise InvalidPositionError("cannot open a WAIT position")
        if size <= 0 or entry_price <= 0 or leverage < 1:
            raise InvalidPositionError(
                f"invalid position parameters size={size} leverage={leverage} entry={entry_price}"
            )
        with self._lock:
            if self._find_open(asset) is not None:
                raise DuplicatePositionError(f"position already open for {asset}")
            if size > self._available_margin:
                raise InsufficientMarginError(
                    f"margin {size:.2f} exceeds available {self._available_margin:.2f}"
                )
            # Only the entry-side fee is charged until the position is marked.
            entry_fee = size * leverage * self.fee_rate
            position = Position(
                id=uuid.uuid4().hex[:12],
                asset=asset,
                side=side,
                size=float(size),
                leverage=int(leverage),
                entry_price=float(entry_price),
                entry_time=self._clock(),
                pnl=-entry_fee,
                fees=entry_fee,
                reasoning=reasoning,
                confidence=float(confidence),
                snapshot=dict(snapshot or {}),
                mark_price=float(entry_price),
            )
            self._available_margin -= position.size
            self._open[position.id] = position
            snapshot_copy = deepcopy(position)
        log_event(
            logger,
            "position_opened",
            id=position.id,
            asset=asset,
            side=side.value,
            size=position.size,
            leverage=position.leverage,
            entry_price=position.entry_price,
        )
        return snapshot_copy

    def mark_to_market(self, asset: str, price: float) -> int:
        """Revalue every OPEN position on ``asset``; return how many changed."""

        if price is None or price <= 0:
            return 0
        updated = 0
        with self._lock:
            for position in self._open.values():
                if position.asset != asset:
                    continue
                pnl = compute_position_pnl(
                    position.side, position.size, position.leverage, position.entry_price, price, self.fee_rate
                )
                position.pnl = pnl.net
                position.fees = pnl.fees
                position.mark_price = price
                updated += 1
        return updated

    def close(self, position_id: str, exit_price: float, reason: str) -> Position:
        """Close ``position_id`` at ``exit_price`` and settle it."""

        with self._lock:
            position = self._open.get(position_id)
            if position is None:
                raise PositionNotOpenError(f"position {position_id} is not open")
            if exit_price is None or exit_price <= 0:
                raise InvalidPositionError(f"invalid exit price {exit_price}")
            final = compute_position_pnl(
                position.side, position.size, position.leverage, position.entry_price, exit_price, self.fee_rate
            )
            del self._open[position_id]
            position.pnl = final.net
            position.fees = final.fees
            position.mark_price = exit_price
            position.exit_price = float(exit_price)
            position.exit_time = self._clock()
            position.status = PositionStatus.CLOSED
            position.close_reason = reason
            position.reasoning = f"{position.reasoning} | {reason}" if position.reasoning else reason
            self._closed.insert(0, position)
            self._available_margin += position.size + final.net
            self._balance += final.net
            self._equity += final.net
            snapshot_copy = deepcopy(position)
        log_event(
            logger,
            "position_closed",
            id=position_id,
            asset=position.asset,
            reason=reason,
            exit_price=exit_price,
            pnl=round(final.net, 6),
        )
        return snapshot_copy

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def _find_open(self, asset: str) -> Optional[Position]:
        for position in self._open.values():
            if position.asset == asset:
                return position
        return None

    def get_open(self, asset: str) -> Optional[Position]:
        with self._lock:
            position = self._find_open(asset)
            return deepcopy(position) if position is not None else None

    def get(self, position_id: str) -> Optional[Position]:
        with self._lock:
            position = self._open.get(position_id)
            if position is None:
                position = next((p for p in self._closed if p.id == position_id), None)
            return deepcopy(position) if position is not None else None

    def open_positions(self) -> List[Position]:
        with self._lock:
            return deepcopy(list(self._open.values()))

    def closed_positions(self, limit: Optional[int] = None) -> List[Position]:
        """Closed positions, most recent first."""

        with self._lock:
            items = self._closed if limit is None else self._closed[:limit]
            return deepcopy(list(items))

    def open_assets(self) -> List[str]:
        with self._lock:
            return [p.asset for p in self._open.values()]

    def portfolio(self) -> Portfolio:
        with self._lock:
            return Portfolio(
                balance=self._balance,
                equity=self._equity,
                available_margin=self._available_margin,
            )

    def unrealized_pnl(self) -> float:
        with self._lock:
            return sum(p.pnl for p in self._open.values())

    def mark_to_market_equity(self) -> float:
        """Balance plus the unrealized net PnL of every open position."""

        with self._lock:
            return self._balance + sum(p.pnl for p in self._open.values())


__all__ = [
    "DuplicatePositionError",
    "InsufficientMarginError",
    "InvalidPositionError",
    "LedgerRejection",
    "PnlBreakdown",
    "Portfolio",
    "Position",
    "PositionLedger",
    "PositionNotOpenError",
    "PositionStatus",
    "TradeSide",
    "compute_position_pnl",
]
