import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Dict, Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None

_POSITION_CODES = {'BUY': 1, 'SELL': -1, 'PENDING': 0}


def _get_port_scan_limit() -> int:
    try:
        return int(config.monitoring.get('prometheus_port_scan', 0))
    except Exception:
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = config.monitoring.get('metrics_port_file') if config.monitoring else None
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except Exception as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.candles_processed = Counter('candles_processed_total', 'Finalized candles fed into the strategy')
        self.candles_skipped = Counter('candles_skipped_total', 'Candles ignored by the driver', ['reason'])

        self.current_price = Gauge('current_price', 'Last processed close price')
        self.ema = Gauge('strategy_ema', 'Current exponential moving average')
        self.band_floor = Gauge('strategy_band_floor', 'Current lower volatility band')
        self.band_ceiling = Gauge('strategy_band_ceiling', 'Current upper volatility band')
        self.velocity = Gauge('strategy_velocity', 'Current price velocity')
        self.acceleration = Gauge('strategy_acceleration', 'Current price acceleration')
        self.position = Gauge('strategy_position', 'Strategy position (1=BUY, -1=SELL, 0=PENDING)')

        self.decisions = Counter('trade_decisions_total', 'Trade decisions emitted', ['side'])
        self.orders_submitted = Counter('orders_submitted_total', 'Orders submitted', ['side'])
        self.orders_filled = Counter('orders_filled_total', 'Orders confirmed filled', ['side'])
        self.order_failures = Counter('order_failures_total', 'Orders that did not fill', ['reason'])
        self.order_latency = Histogram('order_fill_latency_seconds', 'Latency from decision to terminal order outcome')

        self.balance_free = Gauge('balance_free', 'Free balance per asset', ['asset'])
        self.balance_locked = Gauge('balance_locked', 'Locked balance per asset', ['asset'])
        self.balance_refresh_failures = Counter('balance_refresh_failures_total', 'Failed account balance refreshes')

        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects')
        self.backfill_failures = Counter('backfill_failures_total', 'Failed historical backfills')

    def record_candle(self, close: float):
        self.candles_processed.inc()
        self.current_price.set(close)

    def record_candle_skipped(self, reason: str):
        self.candles_skipped.labels(reason=reason).inc()

    def update_strategy(self, stats: Dict):
        self.ema.set(stats.get('ema') or 0.0)
        self.band_floor.set(stats.get('floor') or 0.0)
        self.band_ceiling.set(stats.get('ceiling') or 0.0)
        self.velocity.set(stats.get('velocity') or 0.0)
        self.acceleration.set(stats.get('acceleration') or 0.0)

    def update_position(self, position: str):
        self.position.set(_POSITION_CODES.get(position, 0))

    def record_decision(self, side: str):
        self.decisions.labels(side=side).inc()

    def record_order_submitted(self, side: str):
        self.orders_submitted.labels(side=side).inc()

    def record_order_filled(self, side: str, latency_seconds: Optional[float] = None):
        self.orders_filled.labels(side=side).inc()
        if latency_seconds is not None:
            self.order_latency.observe(latency_seconds)

    def record_order_failure(self, reason: str):
        self.order_failures.labels(reason=reason).inc()

    def update_balance(self, asset: str, free: float, locked: float):
        self.balance_free.labels(asset=asset).set(free)
        self.balance_locked.labels(asset=asset).set(locked)

    def record_balance_refresh_failure(self):
        self.balance_refresh_failures.inc()

    def record_reconnect(self):
        self.reconnect_count.inc()

    def record_backfill_failure(self):
        self.backfill_failures.inc()


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


metrics = MetricsCollector()
