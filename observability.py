"""Structured events and lightweight metrics for the trading agent.

* ``log_event`` emits JSON encoded log lines (``event`` + ``ts`` + fields)
  so cycle outcomes, fills and closes can be grepped or shipped as-is.
* ``record_metric`` appends gauge/counter rows to a CSV file that the
  performance tooling can load with pandas.
"""
from __future__ import annotations

import csv
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Optional

_OBSERVABILITY_LOGGER = logging.getLogger("observability")

_METRIC_FIELDS = ("ts", "metric", "value", "labels")


def log_event(logger: Optional[logging.Logger], event: str, **fields: Any) -> None:
    """Emit a structured JSON log entry.

    Falls back to the module logger when ``logger`` is ``None``. Values that
    cannot be JSON encoded are replaced with their ``repr``.
    """

    payload: MutableMapping[str, Any] = {"event": event, "ts": round(time.time(), 3)}
    payload.update(fields)
    target = logger or _OBSERVABILITY_LOGGER
    try:
        target.info(json.dumps(payload, sort_keys=True))
    except TypeError:
        serialisable = {k: _safe_json_value(v) for k, v in payload.items()}
        target.info(json.dumps(serialisable, sort_keys=True))


def _safe_json_value(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except TypeError:
        return repr(value)


class MetricsSink:
    """Thread-safe CSV metrics recorder."""

    def __init__(self, path: Optional[str] = None) -> None:
        self._path = Path(path or os.getenv("METRICS_PATH", os.path.join("data", "metrics.csv")))
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def record(self, metric: str, value: float, *, labels: Optional[Mapping[str, Any]] = None) -> None:
        row = {
            "ts": f"{time.time():.6f}",
            "metric": metric,
            "value": f"{float(value):.6f}",
            "labels": json.dumps(dict(labels or {}), sort_keys=True),
        }
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            need_header = not self._path.exists() or self._path.stat().st_size == 0
            with self._path.open("a", newline="") as handle:
                writer = csv.DictWriter(handle, fieldnames=_METRIC_FIELDS)
                if need_header:
                    writer.writeheader()
                writer.writerow(row)


_metrics_sink = MetricsSink()


def set_metrics_path(path: str) -> None:
    """Redirect the process-wide metrics sink (used by tests and the CLI)."""

    global _metrics_sink
    _metrics_sink = MetricsSink(path)


def record_metric(metric: str, value: float, *, labels: Optional[Mapping[str, Any]] = None) -> None:
    """Record a numeric metric to the CSV sink. Failures are only logged."""

    try:
        _metrics_sink.record(metric, value, labels=labels)
    except Exception:
        _OBSERVABILITY_LOGGER.debug("Failed to record metric %s", metric, exc_info=True)


__all__ = ["MetricsSink", "log_event", "record_metric", "set_metrics_path"]
