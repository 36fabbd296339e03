"""Hyperliquid ``allMids`` websocket feed with synchronous fan-out.

:class:`HyperliquidPriceStream` runs the websocket in a dedicated thread and
event loop. Every update batch (``{asset: mid_price}``) is delivered to all
subscribers synchronously, in registration order. The connection is retried
forever: a dropped connection is re-opened after ``RECONNECT_DELAY`` seconds
and a failed connection attempt after ``CONNECT_RETRY_DELAY`` seconds.
"""
from __future__ import annotations

import asyncio
import json
import math
import threading
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

import websockets

from config import HYPERLIQUID_WS_URL
from log_utils import setup_logger
from observability import record_metric

logger = setup_logger(__name__)

RECONNECT_DELAY = 2.0
CONNECT_RETRY_DELAY = 5.0
WS_PING_INTERVAL_SECS = 20
WS_PING_TIMEOUT_SECS = 10

SUBSCRIBE_PAYLOAD = {"method": "subscribe", "subscription": {"type": "allMids"}}

MidsCallback = Callable[[Dict[str, float]], None]
Connector = Callable[[], AsyncContextManager[Any]]


def parse_mids_message(raw: Any) -> Optional[Dict[str, float]]:
    """Return ``{asset: price}`` for an ``allMids`` frame, else ``None``.

    Entries whose price is not a positive finite number are dropped.
    """

    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        msg = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return None
    if not isinstance(msg, dict) or msg.get("channel") != "allMids":
        return None
    data = msg.get("data")
    mids = data.get("mids") if isinstance(data, dict) else None
    if not isinstance(mids, dict):
        return None
    prices: Dict[str, float] = {}
    for asset, value in mids.items():
        try:
            price = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(price) and price > 0:
            prices[str(asset)] = price
    return prices


class HyperliquidPriceStream:
    """Persistent mid-price feed with observer-style subscriptions."""

    def __init__(
        self,
        url: str = HYPERLIQUID_WS_URL,
        *,
        reconnect_delay: float = RECONNECT_DELAY,
        retry_delay: float = CONNECT_RETRY_DELAY,
        connector: Optional[Connector] = None,
    ) -> None:
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.retry_delay = retry_delay
        self._connector = connector or self._default_connector
        self._callbacks: List[MidsCallback] = []
        self._callback_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._connected = threading.Event()
        self.messages_received = 0
        self.frames_dropped = 0
        self.reconnects = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    def connect(self) -> None:
        """Start the background feed thread if it is not running."""

        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="hyperliquid-ws", daemon=True)
        self._thread.start()
        logger.info("Price stream starting for %s", self.url)

    def disconnect(self, timeout: float = 5.0) -> None:
        """Stop reconnecting, close the socket and drop every subscriber."""

        self._stop.set()
        loop = self._loop
        task = self._task
        if loop is not None and task is not None and loop.is_running():
            loop.call_soon_threadsafe(task.cancel)
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None
        with self._callback_lock:
            self._callbacks.clear()
        self._connected.clear()
        logger.info("Price stream disconnected")

    def subscribe(self, callback: MidsCallback) -> Callable[[], None]:
        """Register ``callback`` and return a handle that unregisters it."""

        if not callable(callback):
            raise TypeError("callback must be callable")
        with self._callback_lock:
            self._callbacks.append(callback)

        def _unsubscribe() -> None:
            with self._callback_lock:
                try:
                    self._callbacks.remove(callback)
                except ValueError:
                    pass

        return _unsubscribe

    def subscriber_count(self) -> int:
        with self._callback_lock:
            return len(self._callbacks)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _default_connector(self) -> AsyncContextManager[Any]:
        return websockets.connect(
            self.url,
            ping_interval=WS_PING_INTERVAL_SECS,
            ping_timeout=WS_PING_TIMEOUT_SECS,
            close_timeout=5,
        )

    def _run_loop(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        try:
            self._task = loop.create_task(self._run())
            loop.run_until_complete(self._task)
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
            self._loop = None
            loop.close()

    async def _run(self) -> None:
        while not self._stop.is_set():
            established = False
            try:
                async with self._connector() as ws:
                    established = True
                    self._connected.set()
                    logger.info("Connected to Hyperliquid websocket")
                    await ws.send(json.dumps(SUBSCRIBE_PAYLOAD))
                    async for raw in ws:
                        if self._stop.is_set():
                            break
                        self._handle_msg(raw)
                if not self._stop.is_set():
                    logger.info("Hyperliquid websocket closed")
            except asyncio.CancelledError:
                break
            except Exception as exc:
                if self._stop.is_set():
                    break
                if established:
                    logger.warning("Hyperliquid websocket dropped: %r", exc)
                else:
                    logger.warning("Failed to connect to Hyperliquid websocket: %r", exc)
            finally:
                self._connected.clear()

            if self._stop.is_set():
                break
            delay = self.reconnect_delay if established else self.retry_delay
            self.reconnects += 1
            record_metric("price_stream_reconnect", 1.0, labels={"established": established})
            try:
                await self._wait(delay)
            except asyncio.CancelledError:
                break

    async def _wait(self, delay: float) -> None:
        await asyncio.sleep(delay)

    def _handle_msg(self, raw: Any) -> None:
        prices = parse_mids_message(raw)
        if prices is None:
            self.frames_dropped += 1
            logger.debug("Dropped malformed price frame")
            return
        self.messages_received += 1
        if prices:
            self._emit(prices)

    def _emit(self, prices: Dict[str, float]) -> None:
        with self._callback_lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(dict(prices))
            except Exception:
                logger.warning("Price subscriber failed", exc_info=True)


__all__ = [
    "CONNECT_RETRY_DELAY",
    "HyperliquidPriceStream",
    "RECONNECT_DELAY",
    "SUBSCRIBE_PAYLOAD",
    "parse_mids_message",
]
