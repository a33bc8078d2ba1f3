#!/usr/bin/env python
import sys

sys.path.insert(0, '.')

import pytest

from config import Config, ConfigError, config
from strategy.trade_types import Position, TradeConfig


def test_env_vars_expanded(tmp_path, monkeypatch):
    path = tmp_path / 'bot.yaml'
    path.write_text(
        'exchange:\n'
        '  symbol: ETHUSDT\n'
        '  api_key: ${TEST_BOT_KEY}\n'
        '  api_secret: ${TEST_BOT_SECRET:-}\n'
        'monitoring:\n'
        '  alert_webhook: ${TEST_BOT_HOOK:-http://localhost/hook}\n'
    )
    monkeypatch.setenv('TEST_BOT_KEY', 'abc')
    monkeypatch.delenv('TEST_BOT_SECRET', raising=False)
    monkeypatch.delenv('TEST_BOT_HOOK', raising=False)

    cfg = Config(str(path))

    assert cfg.exchange['symbol'] == 'ETHUSDT'
    assert cfg.exchange.api_key == 'abc'
    assert cfg.exchange.get('api_secret') is None
    assert cfg.monitoring.alert_webhook == 'http://localhost/hook'
    with pytest.raises(AttributeError):
        cfg.backtest


def test_missing_and_invalid_files(tmp_path):
    with pytest.raises(RuntimeError):
        Config(str(tmp_path / 'missing.yaml'))
    bad = tmp_path / 'bad.yaml'
    bad.write_text('strategy: [unclosed\n')
    with pytest.raises(RuntimeError):
        Config(str(bad))


def test_trade_config_from_default_config():
    trade_config = TradeConfig.from_config(config.strategy, config.exchange['symbol'])
    assert trade_config.window_size == 5
    assert trade_config.velocity_window_size == 2
    assert trade_config.position is Position.BUY
    assert trade_config.is_simulation
    assert trade_config.interval_ms == 60_000
    assert trade_config.smoothing_factor == pytest.approx(9.5 / 6)


@pytest.mark.parametrize('overrides', [
    {'window_size': 0},
    {'velocity_window_size': 0},
    {'velocity_window_size': 6},
    {'smoothing_const': 0.0},
    {'bb_factor': -1.0},
    {'stop_loss_threshold': 1.0},
    {'stop_loss_threshold': -0.1},
    {'position': Position.PENDING},
    {'interval': '7m'},
    {'symbol': ''},
])
def test_trade_config_rejects_invalid_values(overrides):
    params = dict(symbol='BTCUSDT', bb_factor=1.25, smoothing_const=9.5, window_size=5,
                  velocity_window_size=2, stop_loss_threshold=0.15)
    params.update(overrides)
    with pytest.raises(ValueError):
        TradeConfig(**params)


def test_expanded_scalars_are_typed(tmp_path, monkeypatch):
    path = tmp_path / 'bot.yaml'
    path.write_text(
        'execution:\n'
        '  simulation: ${TEST_BOT_SIMULATION:-true}\n'
        '  order_timeout_s: ${TEST_BOT_TIMEOUT}\n'
    )
    monkeypatch.setenv('TEST_BOT_SIMULATION', 'false')
    monkeypatch.setenv('TEST_BOT_TIMEOUT', '12.5')
    cfg = Config(str(path))
    assert cfg.execution['simulation'] is False
    assert cfg.execution['order_timeout_s'] == 12.5


def test_missing_strategy_keys_rejected(tmp_path):
    path = tmp_path / 'bot.yaml'
    path.write_text('exchange:\n  symbol: BTCUSDT\nstrategy:\n  bb_factor: 2.0\n')
    with pytest.raises(ConfigError) as excinfo:
        Config(str(path))
    assert 'strategy.window_size' in str(excinfo.value)


def test_require_reports_absent_sections(tmp_path):
    path = tmp_path / 'bot.yaml'
    path.write_text('exchange:\n  symbol: BTCUSDT\n')
    cfg = Config(str(path))
    cfg.require('exchange')
    with pytest.raises(ConfigError):
        cfg.require('exchange', 'strategy')
