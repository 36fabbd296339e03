"""Trade journal: CSV trade log, status snapshots and saved configuration.

All writers are synchronous and meant to be handed to the side-effect
dispatcher. Readers tolerate missing or malformed files and return an empty
``DataFrame`` rather than raising.
"""

import csv
import json
import os
import threading
import time
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import pandas as pd

from log_utils import setup_logger
from position_ledger import Position

logger = setup_logger(__name__)

TRADE_LOG_COLUMNS = (
    "trade_id",
    "asset",
    "side",
    "status",
    "size",
    "leverage",
    "notional",
    "entry_price",
    "exit_price",
    "entry_time",
    "exit_time",
    "pnl",
    "fees",
    "confidence",
    "close_reason",
    "reasoning",
    "rsi",
    "fear_index",
    "news_score",
)

REJECTION_COLUMNS = ("timestamp", "asset", "reason")


def _to_utc_iso(ts: Optional[float]) -> str:
    if ts is None:
        return ""
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def position_row(position: Position) -> dict:
    """Flatten a position into the journal's CSV schema."""

    snapshot = position.snapshot or {}
    return {
        "trade_id": position.id,
        "asset": position.asset,
        "side": position.side.value,
        "status": position.status.value,
        "size": round(position.size, 8),
        "leverage": position.leverage,
        "notional": round(position.notional, 8),
        "entry_price": position.entry_price,
        "exit_price": position.exit_price if position.exit_price is not None else "",
        "entry_time": _to_utc_iso(position.entry_time),
        "exit_time": _to_utc_iso(position.exit_time),
        "pnl": round(position.pnl, 8),
        "fees": round(position.fees, 8),
        "confidence": position.confidence,
        "close_reason": position.close_reason or "",
        "reasoning": position.reasoning,
        "rsi": snapshot.get("rsi", ""),
        "fear_index": snapshot.get("fear_index", ""),
        "news_score": snapshot.get("news_score", ""),
    }


class TradeJournal:
    """File-backed journal rooted at ``data_dir``."""

    def __init__(self, data_dir: str = "data") -> None:
        self.data_dir = data_dir
        self.trade_log_path = os.path.join(data_dir, "trade_log.csv")
        self.status_path = os.path.join(data_dir, "system_status.jsonl")
        self.config_path = os.path.join(data_dir, "trade_config.json")
        self.rejections_path = os.path.join(data_dir, "rejected_trades.csv")
        self._lock = threading.RLock()

    def _append_csv(self, path: str, columns, row: Mapping[str, Any]) -> None:
        with self._lock:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            need_header = not os.path.exists(path) or os.path.getsize(path) == 0
            with open(path, "a", newline="", encoding="utf-8") as fh:
                writer = csv.DictWriter(fh, fieldnames=list(columns), extrasaction="ignore")
                if need_header:
                    writer.writeheader()
                writer.writerow(row)

    def log_trade(self, position: Position) -> None:
        """Append an opened or closed position to the trade log."""

        self._append_csv(self.trade_log_path, TRADE_LOG_COLUMNS, position_row(position))
        logger.info("Journaled %s %s %s", position.status.value, position.side.value, position.asset)

    def log_rejection(self, asset: str, reason: str) -> None:
        row = {"timestamp": _to_utc_iso(time.time()), "asset": asset, "reason": reason}
        self._append_csv(self.rejections_path, REJECTION_COLUMNS, row)

    def record_system_status(self, status: Mapping[str, Any]) -> None:
        with self._lock:
            os.makedirs(self.data_dir, exist_ok=True)
            with open(self.status_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(dict(status), sort_keys=True, default=str) + "\n")

    def save_config(self, config: Mapping[str, Any]) -> None:
        with self._lock:
            os.makedirs(self.data_dir, exist_ok=True)
            tmp_path = f"{self.config_path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as fh:
                json.dump(dict(config), fh, indent=2, sort_keys=True, default=str)
            os.replace(tmp_path, self.config_path)

    def load_config(self) -> dict:
        try:
            with open(self.config_path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Saved config unreadable: %s", exc)
            return {}
        return data if isinstance(data, dict) else {}

    def load_trade_history(self, status: Optional[str] = "CLOSED") -> pd.DataFrame:
        """Return journaled trades, newest first.

        ``status`` filters to OPEN or CLOSED rows; ``None`` returns both.
        Numeric columns are coerced and timestamps parsed with
        ``errors='coerce'`` so a single bad row does not poison the frame.
        """

        path = self.trade_log_path
        if not (os.path.exists(path) and os.path.getsize(path) > 0):
            return pd.DataFrame(columns=list(TRADE_LOG_COLUMNS))
        try:
            df = pd.read_csv(
                path,
                encoding="utf-8",
                on_bad_lines="skip",
                engine="python",
                dtype={"trade_id": str, "asset": str, "status": str},
            )
        except (OSError, ValueError, pd.errors.ParserError) as exc:
            logger.warning("Failed to read trade log %s: %s", path, exc)
            return pd.DataFrame(columns=list(TRADE_LOG_COLUMNS))

        for column in ("size", "leverage", "notional", "entry_price", "exit_price", "pnl", "fees", "confidence"):
            if column in df.columns:
                df[column] = pd.to_numeric(df[column], errors="coerce")
        for column in ("entry_time", "exit_time"):
            if column in df.columns:
                df[column] = pd.to_datetime(df[column], errors="coerce", utc=True)
        if status is not None and "status" in df.columns:
            df = df[df["status"] == status]
        sort_key = "exit_time" if status == "CLOSED" else "entry_time"
        if sort_key in df.columns:
            df = df.sort_values(sort_key, ascending=False, na_position="last")
        return df.reset_index(drop=True)


__all__ = ["REJECTION_COLUMNS", "TRADE_LOG_COLUMNS", "TradeJournal", "position_row"]
