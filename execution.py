"""Execution gate between an accepted decision and the position ledger.

Only simulated fills are implemented. In REAL mode the gate insists on a
wallet key and logs the intended order; no order is ever sent on-chain.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from config import TradeConfig
from log_utils import setup_logger
from observability import log_event
from position_ledger import TradeSide

logger = setup_logger(__name__)

ABORT_NO_KEY = "ABORTED: Real mode requires private key"


@dataclass(frozen=True)
class OrderIntent:
    asset: str
    side: TradeSide
    size: float
    leverage: int
    price: float


class ExecutionAborted(RuntimeError):
    pass


class ExecutionGate:
    def __init__(self, config: TradeConfig) -> None:
        self.config = config

    def update_config(self, config: TradeConfig) -> None:
        self.config = config

    @property
    def mode(self) -> str:
        return self.config.execution_mode

    def prepare(self, intent: OrderIntent) -> Optional[str]:
        """Validate ``intent`` for the current mode.

        Raises :class:`ExecutionAborted` when REAL mode lacks a wallet key.
        Returns a short note describing how the order was handled.
        """

        if not self.config.is_real_mode:
            return None
        if not self.config.wallet_private_key:
            logger.error("Real execution requested without a wallet key")
            raise ExecutionAborted(ABORT_NO_KEY)
        log_event(
            logger,
            "real_order_intent",
            asset=intent.asset,
            side=intent.side.value,
            size=intent.size,
            leverage=intent.leverage,
            price=intent.price,
        )
        return "REAL order intent logged (on-chain submission not implemented)"


__all__ = ["ABORT_NO_KEY", "ExecutionAborted", "ExecutionGate", "OrderIntent"]
