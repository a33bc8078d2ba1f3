import asyncio
import logging
import signal
import sys
from typing import Optional

from api.alerts import alert_webhook
from api.metrics import start_metrics_server
from config import config
from ingest.rest_poller import BalancePoller
from ingest.websocket_client import WebSocketClient
from monitoring.async_utils import cancel_task
from monitoring.event_logger import EventLogger
from monitoring.logging_utils import setup_logging
from orchestration.channels import Channel
from risk.order_book import ConfigurationError, OrderBook
from strategy.auto_trader import AutoTrader
from strategy.data_engine import DataEngine
from strategy.execution import ExecutionManager
from strategy.simulators.paper import PaperExchange
from strategy.trade_types import TradeConfig
from strategy.transports.binance import BinanceTransport


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire market data, strategy, order handling and monitoring for one symbol."""

    def __init__(self, config_obj=None):
        self.config = config_obj or config
        self.config.require('exchange', 'strategy')
        self.exchange_cfg = self.config.exchange
        self.execution_cfg = self.config.get('execution') or {}
        self.monitoring_cfg = self.config.get('monitoring') or {}

        self.symbol = self.exchange_cfg['symbol']
        self.simulation = bool(self.execution_cfg.get('simulation', True))
        self.trade_config = TradeConfig.from_config(self.config.strategy, self.symbol, self.simulation)

        self.event_logger = EventLogger(
            self.symbol,
            self.monitoring_cfg.get('event_log_dir', 'logs'),
            notifier=alert_webhook,
        )
        self.transport = BinanceTransport()
        self.paper: Optional[PaperExchange] = None
        if self.simulation:
            sim_cfg = self.config.get('simulation') or {}
            initial = sim_cfg.get('initial_balances') or {}
            self.paper = PaperExchange(self.transport, dict(initial))

        self.decisions: Channel = Channel('decisions')
        self.fills: Channel = Channel('fills')
        self.market_data = WebSocketClient(self.symbol, self.trade_config.interval)
        self.data_engine = DataEngine(
            self.trade_config,
            self.transport,
            self.event_logger,
            self.decisions,
            self.fills,
            market_data=self.market_data,
        )

        self.order_book: Optional[OrderBook] = None
        self.auto_trader: Optional[AutoTrader] = None
        self.balance_poller: Optional[BalancePoller] = None
        self._poller_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._stopped = False
        self.running = False

    async def initialize(self):
        venue = self.paper or self.transport
        self.order_book = await OrderBook.create(
            venue,
            venue,
            self.symbol,
            self.event_logger,
            fee_asset=self.exchange_cfg.get('fee_asset'),
        )
        execution = ExecutionManager.from_config(self.transport, self.paper, self.execution_cfg)
        self.auto_trader = AutoTrader(
            self.order_book,
            execution,
            self.event_logger,
            self.decisions,
            self.fills,
        )
        self.balance_poller = BalancePoller(
            self.order_book,
            interval_s=float(self.execution_cfg.get('balance_refresh_s', 300)),
        )

    async def start(self) -> int:
        self.running = True
        self.event_logger.log_start(self.trade_config)
        try:
            await self.initialize()
        except ConfigurationError as exc:
            self.event_logger.log_error("Startup aborted", exc)
            await alert_webhook.startup_failed_alert(str(exc))
            await self.stop()
            return 1

        start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9108)))

        self.auto_trader.start()
        if not await self.data_engine.start():
            await self.stop()
            return 1
        self._poller_task = asyncio.create_task(self.balance_poller.start())

        try:
            await self._stop_event.wait()
        finally:
            await self.stop()
        return 0

    def request_stop(self):
        logger.info("Shutdown requested")
        self._stop_event.set()

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.running = False
        await self.data_engine.stop()
        if self.auto_trader is not None:
            await self.auto_trader.stop()
        if self.balance_poller is not None:
            await self.balance_poller.stop()
        await cancel_task(self._poller_task)
        if self.order_book is not None:
            await self.order_book.stop()
        await self.transport.close()
        await self.event_logger.stop()
        self._stop_event.set()


async def main() -> int:
    system = TradingSystem(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, system.request_stop)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable on this platform")
    try:
        return await system.start()
    except asyncio.CancelledError:
        logger.info("System shutting down on interrupt")
        await system.stop()
        return 0


if __name__ == "__main__":
    setup_logging(
        config.monitoring.get('log_level', 'INFO'),
        log_file=config.monitoring.get('log_file'),
    )
    sys.exit(asyncio.run(main()))
