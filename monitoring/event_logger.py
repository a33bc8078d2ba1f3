import asyncio
import csv
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Set

from strategy.trade_types import Candle, TradeConfig


logger = logging.getLogger(__name__)

FIELDS = ['timestamp', 'event', 'symbol', 'side', 'price', 'quantity', 'details']


class EventLogger:
    """Append-only CSV audit trail of one trading session.

    Rows land in ``<log_dir>/<SYMBOL>_<YYYYmmdd-HHMMSS>.csv``. START, STOP,
    ORDER and ERROR events are also pushed to ``notifier`` (anything with an
    async ``notify(message)``) without waiting on delivery.
    """

    def __init__(self, symbol: str, log_dir: str = 'logs', notifier: Any = None,
                 clock=time.time):
        self.symbol = symbol
        self.notifier = notifier
        self._clock = clock
        stamp = datetime.fromtimestamp(clock(), tz=timezone.utc).strftime('%Y%m%d-%H%M%S')
        self.path = Path(log_dir) / f"{symbol}_{stamp}.csv"
        self._file = None
        self._writer = None
        self._pending: Set[asyncio.Task] = set()
        self._closed = False

    def _open(self):
        if self._writer is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.path, 'a', newline='', encoding='utf-8')
            self._writer = csv.DictWriter(self._file, fieldnames=FIELDS)
            if self._file.tell() == 0:
                self._writer.writeheader()
        return self._writer

    def _write(self, event: str, side: Optional[str] = None, price: Optional[float] = None,
               quantity: Optional[float] = None, details: str = '') -> None:
        if self._closed:
            logger.debug("Event log closed; dropped %s row", event)
            return
        writer = self._open()
        writer.writerow({
            'timestamp': datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
            'event': event,
            'symbol': self.symbol,
            'side': side or '',
            'price': '' if price is None else price,
            'quantity': '' if quantity is None else quantity,
            'details': details,
        })
        self._file.flush()

    def _notify(self, message: str) -> None:
        if self.notifier is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; notification skipped: %s", message)
            return
        task = loop.create_task(self.notifier.notify(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def log_start(self, trade_config: TradeConfig) -> None:
        details = (
            f"bb_factor={trade_config.bb_factor} smoothing_const={trade_config.smoothing_const} "
            f"window_size={trade_config.window_size} "
            f"velocity_window_size={trade_config.velocity_window_size} "
            f"stop_loss_threshold={trade_config.stop_loss_threshold} "
            f"position={trade_config.position.value} simulation={trade_config.is_simulation}"
        )
        self._write('START', details=details)
        logger.info("Trading session started for %s (%s)", self.symbol, details)
        self._notify(f"START {self.symbol}: {details}")

    def log_stop(self, balances: Dict[str, float], gains: Optional[Dict[str, float]] = None) -> None:
        parts = [f"{asset}={qty}" for asset, qty in balances.items()]
        if gains:
            parts.extend(f"{asset}_gain={pct:.2f}%" for asset, pct in gains.items())
        details = ' '.join(parts)
        self._write('STOP', details=details)
        logger.info("Trading session stopped for %s (%s)", self.symbol, details)
        self._notify(f"STOP {self.symbol}: {details}")

    def log_candle(self, candle: Candle, stats: Optional[Dict[str, Any]] = None) -> None:
        details = ''
        if stats:
            details = ' '.join(
                f"{key}={value:.8g}" if isinstance(value, float) else f"{key}={value}"
                for key, value in stats.items()
            )
        self._write('CANDLE', price=candle.close, quantity=candle.volume,
                    details=f"open_time={candle.iso_time} {details}".strip())

    def log_order(self, side: str, quantity: float, price: float, order_id: str,
                  status: str = 'FILLED') -> None:
        self._write('ORDER', side=side, price=price, quantity=quantity,
                    details=f"order_id={order_id} status={status}")
        logger.info("Order %s %s %s @ %s (%s)", order_id, side, quantity, price, status)
        self._notify(f"ORDER {side} {quantity} {self.symbol} @ {price} ({status})")

    def log_info(self, message: str) -> None:
        self._write('INFO', details=message)
        logger.info("%s", message)

    def log_error(self, message: str, exc: Optional[BaseException] = None) -> None:
        details = f"{message}: {exc}" if exc is not None else message
        self._write('ERROR', details=details)
        logger.error("%s", details)
        self._notify(f"ERROR {self.symbol}: {details}")

    async def stop(self, timeout: float = 5.0) -> None:
        if self._pending:
            _, pending = await asyncio.wait(set(self._pending), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("%s notifications still pending at shutdown; cancelled", len(pending))
        if self._closed:
            return
        self._closed = True
        if self._file is not None:
            self._file.flush()
            self._file.close()
            self._file = None
            self._writer = None
