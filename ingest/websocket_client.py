import asyncio
import json
import logging
import random
import time
from typing import Awaitable, Callable, Dict, List, Optional

import websockets

from api.metrics import metrics
from config import config
from strategy.trade_types import Candle


logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[None]]


class WebSocketClient:
    """Live kline subscription for a single symbol.

    Registered handlers:
      * ``candle`` -- awaited with a :class:`Candle` for every kline event, in
        arrival order; the next message is not read until the handler returns.
      * ``gap_detected`` -- awaited with the gap duration in seconds after a
        reconnect.
    """

    def __init__(
        self,
        symbol: str,
        interval: str = '1m',
        base_url: Optional[str] = None,
        reconnect_backoff: Optional[List[float]] = None,
        max_reconnects: Optional[int] = None,
        stream_timeout: Optional[float] = None,
    ):
        ws_cfg = config.get('websocket', {}) or {}
        self.symbol = symbol
        self.interval = interval
        self.base_url = (base_url or config.exchange.get('ws_url') or 'wss://stream.binance.com:9443/ws').rstrip('/')
        self.reconnect_backoff = list(reconnect_backoff or ws_cfg.get('reconnect_backoff', [1, 2, 5, 10, 30]))
        self.max_reconnects = int(max_reconnects or ws_cfg.get('max_reconnects_per_minute', 5))
        self.stream_timeout = float(
            stream_timeout
            or (ws_cfg.get('stream_stale_s', 90) + ws_cfg.get('liveness_grace_s', 10))
        )

        self.handlers: Dict[str, Handler] = {}
        self.running = False
        self.reconnect_count = 0
        self.last_reconnect_window = time.time()
        self.gap_start_ts: Optional[float] = None
        self.last_message_ts: Optional[float] = None

    @property
    def stream_url(self) -> str:
        return f"{self.base_url}/{self.symbol.lower()}@kline_{self.interval}"

    def register_handler(self, stream_type: str, handler: Handler):
        self.handlers[stream_type] = handler

    async def _handle_reconnect(self, backoff_index: int = 0):
        if backoff_index >= len(self.reconnect_backoff):
            backoff_index = len(self.reconnect_backoff) - 1

        now = time.time()
        if now - self.last_reconnect_window > 60:
            self.reconnect_count = 0
            self.last_reconnect_window = now

        self.reconnect_count += 1
        metrics.record_reconnect()

        if self.reconnect_count > self.max_reconnects:
            logger.warning(
                "%s reconnects in 60s; entering degraded reconnect mode",
                self.reconnect_count,
            )
            self.reconnect_count = 0
            self.last_reconnect_window = now
            delay = self.reconnect_backoff[-1] + random.uniform(0, 0.5)
            logger.info("Reconnecting in %.1fs (extended backoff)", delay)
            await asyncio.sleep(delay)
            return

        delay = self.reconnect_backoff[backoff_index] + random.uniform(0, 0.5)
        logger.info("Reconnecting in %.1fs (attempt %s)", delay, self.reconnect_count)
        await asyncio.sleep(delay)

    async def _dispatch_candle(self, raw: str) -> None:
        data = json.loads(raw)
        if data.get('e') != 'kline':
            return
        try:
            candle = Candle.from_ws_event(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed kline event dropped: %s", exc)
            return
        handler = self.handlers.get('candle')
        if handler is not None:
            await handler(candle)

    async def subscribe_candles(self):
        backoff_index = 0
        url = self.stream_url

        while self.running:
            try:
                async with websockets.connect(url) as ws:
                    logger.info("Kline stream connected: %s", url)
                    while self.running:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=self.stream_timeout)
                        except asyncio.TimeoutError:
                            logger.warning("Kline stream stale; reconnecting")
                            self.gap_start_ts = time.time()
                            raise

                        self.last_message_ts = time.monotonic()

                        if self.gap_start_ts is not None:
                            gap_duration = time.time() - self.gap_start_ts
                            logger.info(
                                "Kline stream reconnected after %.1fs gap",
                                gap_duration,
                            )
                            if "gap_detected" in self.handlers:
                                await self.handlers["gap_detected"](gap_duration)
                            self.gap_start_ts = None
                            backoff_index = 0

                        await self._dispatch_candle(raw)

            except asyncio.CancelledError:
                break
            except asyncio.TimeoutError:
                await self._handle_reconnect(backoff_index)
                backoff_index = min(backoff_index + 1, len(self.reconnect_backoff) - 1)
            except Exception as e:
                logger.error("Kline stream error: %s", e)
                if self.gap_start_ts is None:
                    self.gap_start_ts = time.time()
                await self._handle_reconnect(backoff_index)
                backoff_index = min(backoff_index + 1, len(self.reconnect_backoff) - 1)
            else:
                backoff_index = 0

    async def start(self):
        self.running = True
        try:
            await self.subscribe_candles()
        finally:
            self.running = False

    async def stop(self):
        self.running = False
