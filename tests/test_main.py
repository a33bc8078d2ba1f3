#!/usr/bin/env python
import asyncio
import sys

sys.path.insert(0, '.')

import main
from api.alerts import AlertWebhook
from config import Config
from tests.trading_fixtures import FakeMarket


CONFIG_TEMPLATE = """
exchange:
  symbol: BTCUSDT
  fee_asset: BNB
strategy:
  bb_factor: 2.0
  smoothing_const: 4.0
  window_size: 80
  velocity_window_size: 3
  stop_loss_threshold: 0.01
execution:
  simulation: true
simulation:
  initial_balances:
    BTC: 0.0
    USDT: 1000.0
monitoring:
  event_log_dir: {log_dir}
  prometheus_port: 0
"""


def _config(tmp_path):
    path = tmp_path / 'bot.yaml'
    path.write_text(CONFIG_TEMPLATE.format(log_dir=tmp_path / 'events'))
    return Config(str(path))


def test_unlisted_symbol_aborts_startup(tmp_path, monkeypatch):
    market = FakeMarket(info={})
    monkeypatch.setattr(main, 'BinanceTransport', lambda: market)
    monkeypatch.setattr(main, 'alert_webhook', AlertWebhook(url=''))

    async def _run():
        system = main.TradingSystem(_config(tmp_path))
        code = await system.start()
        await system.stop()
        return system, code

    system, code = asyncio.run(_run())

    assert code == 1
    assert system.order_book is None
    assert system.decisions.closed and system.fills.closed
    assert market.closed
    assert system.event_logger.path.exists()
    log = system.event_logger.path.read_text()
    assert 'START' in log and 'not listed' in log


def test_simulation_wires_paper_exchange(tmp_path, monkeypatch):
    market = FakeMarket()
    monkeypatch.setattr(main, 'BinanceTransport', lambda: market)
    monkeypatch.setattr(main, 'alert_webhook', AlertWebhook(url=''))

    async def _run():
        system = main.TradingSystem(_config(tmp_path))
        await system.initialize()
        balances = {asset: bal.free for asset, bal in system.order_book.balances.items()}
        await system.stop()
        return system, balances

    system, balances = asyncio.run(_run())
    assert system.paper is not None
    assert system.trade_config.is_simulation
    assert balances == {'BTC': 0.0, 'USDT': 1000.0, 'BNB': 0.0}
