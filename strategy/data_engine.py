import asyncio
import dataclasses
import logging
import time
from typing import Any, Callable, Optional

from api.metrics import metrics
from monitoring.async_utils import cancel_task
from orchestration.channels import Channel
from strategy.trade_snapshot import TradeSnapshot
from strategy.trade_types import Candle, FillReport, Position, TradeConfig, TradeDecision


logger = logging.getLogger(__name__)


class DataEngine:
    """Drive one symbol's TradeSnapshot from backfill and live candles.

    ``position`` is the only admission gate for strategy evaluation: while it
    is PENDING no candle reaches the snapshot. It leaves PENDING only through
    ``handle_fill_report``.
    """

    def __init__(
        self,
        trade_config: TradeConfig,
        history: Any,
        event_logger: Any,
        decisions: Channel,
        fills: Channel,
        market_data: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = trade_config
        self.history = history
        self.event_logger = event_logger
        self.decisions = decisions
        self.fills = fills
        self.market_data = market_data
        self._clock = clock

        self.position = trade_config.position
        self.snapshot: Optional[TradeSnapshot] = None
        self.last_bucket: Optional[int] = None
        self.skipped_pending = 0
        self._settled = asyncio.Event()
        self._settled.set()
        self._stream_task: Optional[asyncio.Task] = None
        self._fill_task: Optional[asyncio.Task] = None
        self._stopped = False

    def _bucket(self, open_time: int) -> int:
        return open_time // self.config.interval_ms

    async def backfill(self) -> TradeSnapshot:
        interval_ms = self.config.interval_ms
        now_ms = int(self._clock()) * 1000
        boundary = now_ms - now_ms % interval_ms
        start_ms = boundary - self.config.window_size * interval_ms
        candles = await self.history.fetch_klines(
            self.config.symbol,
            self.config.interval,
            start_ms,
            boundary - 1,
        )
        closed = [c for c in candles if c.open_time < boundary][-self.config.window_size:]
        snapshot = TradeSnapshot(self.config, closed)
        self.last_bucket = self._bucket(closed[-1].open_time)
        return snapshot

    async def start(self) -> bool:
        try:
            self.snapshot = await self.backfill()
        except Exception as exc:
            metrics.record_backfill_failure()
            self.event_logger.log_error(f"Backfill failed for {self.config.symbol}", exc)
            await self.stop()
            return False

        stats = self.snapshot.to_dict()
        metrics.update_strategy(stats)
        metrics.update_position(self.position.value)
        self.event_logger.log_info(
            f"Backfilled {self.config.window_size} bars: ema={stats['ema']:.8g} "
            f"floor={stats['floor']:.8g} ceiling={stats['ceiling']:.8g}"
        )

        self._fill_task = asyncio.create_task(self._consume_fills())
        if self.market_data is not None:
            self.market_data.register_handler('candle', self.on_candle)
            self.market_data.register_handler('gap_detected', self.on_stream_gap)
            self._stream_task = asyncio.create_task(self.market_data.start())
        return True

    async def on_candle(self, candle: Candle) -> Optional[TradeDecision]:
        if self._stopped or self.snapshot is None:
            return None
        if not candle.is_final:
            return None
        bucket = self._bucket(candle.open_time)
        if self.last_bucket is not None and bucket <= self.last_bucket:
            metrics.record_candle_skipped('stale')
            logger.debug("Stale candle bucket %s (last %s) ignored", bucket, self.last_bucket)
            return None
        self.last_bucket = bucket

        if self.position is Position.PENDING:
            self.skipped_pending += 1
            metrics.record_candle_skipped('pending')
            logger.debug("Order in flight; candle %s not evaluated", candle.iso_time)
            return None

        decision = self.snapshot.update(self.position, candle, self._on_decision)
        stats = self.snapshot.to_dict()
        metrics.record_candle(candle.close)
        metrics.update_strategy(stats)
        self.event_logger.log_candle(candle, stats)
        return decision

    async def on_stream_gap(self, gap_s: float) -> int:
        """Record a reconnect; candles closed while disconnected are not replayed."""
        missed = int(gap_s * 1000 // self.config.interval_ms)
        if missed > 0:
            self.event_logger.log_error(
                f"Kline stream gap of {gap_s:.1f}s: about {missed} candle(s) missed for {self.config.symbol}"
            )
        else:
            self.event_logger.log_info(f"Kline stream reconnected after {gap_s:.1f}s")
        return missed

    def _on_decision(self, decision: TradeDecision) -> None:
        self.position = Position.PENDING
        self._settled.clear()
        metrics.update_position(self.position.value)
        if self.config.is_simulation:
            decision = dataclasses.replace(decision, is_simulation=True)
        logger.info("%s decision for %s at %s", decision.side.value, decision.symbol, decision.price)
        if not self.decisions.try_publish(decision):
            self.event_logger.log_error(f"{decision.side.value} decision dropped: trader stopped")

    def handle_fill_report(self, report: FillReport) -> bool:
        if self.position is not Position.PENDING:
            side = getattr(report.side, 'value', report.side)
            self.event_logger.log_error(
                f"Unexpected {side} fill report {report.order_id} while {self.position.value}; dropped"
            )
            return False
        try:
            self.position = Position.after_fill(report.side)
        except ValueError as exc:
            self.event_logger.log_error(f"Fill report {report.order_id} dropped", exc)
            return False
        self._settled.set()
        metrics.update_position(self.position.value)
        logger.info(
            "%s filled %s @ %s; now looking to %s",
            report.side.value,
            report.quantity,
            report.price,
            self.position.value,
        )
        return True

    async def _consume_fills(self):
        async for report in self.fills:
            self.handle_fill_report(report)

    async def wait_settled(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._settled.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        if self.market_data is not None:
            await self.market_data.stop()
        await cancel_task(self._stream_task)
        self.decisions.close()
        self.fills.close()
        await cancel_task(self._fill_task)
        self._stream_task = None
        self._fill_task = None
