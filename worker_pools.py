"""Background execution helpers for side effects and periodic chores."""

from __future__ import annotations

import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

from log_utils import setup_logger
from observability import record_metric

logger = setup_logger(__name__)

CallableType = Callable[..., Any]


class SideEffectDispatcher:
    """Fire-and-forget executor for persistence and alerting calls.

    Failures are logged and counted, never raised back to the caller, so a
    broken disk or chat webhook cannot stall a state transition. With
    ``inline=True`` work runs synchronously on the calling thread (tests).
    """

    def __init__(self, *, io_workers: int = 4, inline: bool = False) -> None:
        self.inline = inline
        self._pool: Optional[ThreadPoolExecutor] = None
        if not inline:
            self._pool = ThreadPoolExecutor(max_workers=io_workers, thread_name_prefix="agent-io")
        self._lock = threading.Lock()
        self._shutdown = False
        self.failures = 0

    def submit(self, label: str, fn: CallableType, *args: Any, **kwargs: Any) -> Optional[Future]:
        with self._lock:
            if self._shutdown:
                logger.debug("Dropping side effect %s after shutdown", label)
                return None
            pool = None if self.inline else self._pool
            if pool is not None:
                return pool.submit(self._run, label, fn, *args, **kwargs)
        self._run(label, fn, *args, **kwargs)
        return None

    def _run(self, label: str, fn: CallableType, *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception:
            with self._lock:
                self.failures += 1
            logger.warning("Side effect %s failed", label, exc_info=True)
            record_metric("side_effect_failure", 1.0, labels={"label": label})
            return None

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
            pool = self._pool
        if pool is not None:
            pool.shutdown(wait=wait, cancel_futures=not wait)


class ScheduledTask:
    """Track when a periodic chore is next due, with optional jitter."""

    def __init__(
        self,
        name: str,
        *,
        min_interval: float,
        max_interval: Optional[float] = None,
        jitter: float = 0.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.name = name
        self.min_interval = float(min_interval)
        self.max_interval = float(max_interval if max_interval is not None else min_interval)
        self.jitter = float(jitter)
        self.next_run = 0.0
        self._rng = rng or random.Random()
        self._lock = threading.Lock()

    def due(self, now: Optional[float] = None) -> bool:
        timestamp = float(now if now is not None else time.time())
        with self._lock:
            return timestamp >= self.next_run

    def schedule_next(self, now: Optional[float] = None) -> float:
        timestamp = float(now if now is not None else time.time())
        interval = self._rng.uniform(self.min_interval, self.max_interval)
        if self.jitter:
            interval = max(0.0, interval + interval * self._rng.uniform(-self.jitter, self.jitter))
        with self._lock:
            self.next_run = timestamp + interval
            return self.next_run


__all__ = ["ScheduledTask", "SideEffectDispatcher"]
