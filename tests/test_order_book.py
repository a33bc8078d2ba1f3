#!/usr/bin/env python
import asyncio
import logging
import sys

sys.path.insert(0, '.')

import pytest

from risk.order_book import Balance, ConfigurationError, OrderBook, SymbolConstraints
from strategy.execution_types import OrderStatus, OrderTicket, OrderType
from strategy.trade_types import Position, Side
from tests.trading_fixtures import FakeMarket, RecordingEventLogger, exchange_info


def _book(market=None, events=None, **info_overrides):
    market = market or FakeMarket(info=exchange_info(**info_overrides))
    return asyncio.run(OrderBook.create(market, market, 'BTCUSDT', events or RecordingEventLogger()))


def test_constraints_parsed_from_exchange_info():
    constraints = SymbolConstraints.from_exchange_info(exchange_info())
    assert constraints.base_asset == 'BTC'
    assert constraints.quote_asset == 'USDT'
    assert str(constraints.step_size.normalize()) == '0.001'
    assert constraints.min_notional == 10
    assert constraints.base_precision == 8


def test_buy_sizing_is_exact():
    market = FakeMarket(info=exchange_info(step='1', min_qty='1'), balances={'USDT': (1000.0, 50.0)})
    book = _book(market)
    qty = book.get_trade_qty(Position.BUY, 250.0)
    assert qty == 4
    assert book.check_order(qty, 250.0) is None


def test_buy_sizing_floors_to_lot_step():
    book = _book()
    assert book.get_trade_qty(Position.BUY, 93.0) == pytest.approx(10.752)
    market = FakeMarket(info=exchange_info(step='0.01'), balances={'USDT': (100.0, 0.0)})
    assert _book(market).get_trade_qty(Position.BUY, 30000.0) == 0.0


def test_default_step_is_whole_units():
    info = exchange_info()
    info['filters'] = [f for f in info['filters'] if f['filterType'] != 'LOT_SIZE']
    market = FakeMarket(info=info, balances={'USDT': (1000.0, 0.0)})
    assert _book(market).get_trade_qty(Position.BUY, 300.0) == 3


def test_sell_sizing_uses_full_base_balance():
    market = FakeMarket(balances={'BTC': (1.23456, 0.5), 'USDT': (0.0, 0.0)})
    book = _book(market)
    assert book.get_trade_qty(Position.SELL, 100.0) == pytest.approx(1.234)


def test_pending_position_is_not_sized(caplog):
    book = _book()
    with caplog.at_level(logging.ERROR):
        assert book.get_trade_qty(Position.PENDING, 100.0) == 0
        assert book.get_trade_qty(Position.BUY, 0.0) == 0
    assert len([r for r in caplog.records if r.levelno == logging.ERROR]) == 2


def test_check_order_rejections():
    book = _book()
    assert book.check_order(0, 100.0) == "quantity is zero"
    assert 'below minimum' in book.check_order(0.0001, 100.0)
    assert 'notional' in book.check_order(0.05, 100.0)
    assert book.check_order(0.5, 100.0) is None


def test_create_fails_without_constraints():
    market = FakeMarket()
    market.fail_info = True
    with pytest.raises(ConfigurationError):
        asyncio.run(OrderBook.create(market, market, 'BTCUSDT'))

    with pytest.raises(ConfigurationError):
        asyncio.run(OrderBook.create(FakeMarket(), FakeMarket(), 'ETHUSDT'))

    broken = FakeMarket()
    broken.fail_balances = True
    with pytest.raises(ConfigurationError):
        asyncio.run(OrderBook.create(FakeMarket(), broken, 'BTCUSDT'))


def test_orig_qty_captured_once():
    balance = Balance('USDT')
    balance.update(1000.0)
    balance.update(1200.0, 5.0)
    assert balance.orig_qty == 1000.0
    assert balance.free == 1200.0
    assert balance.total == 1205.0


def test_update_balances_failure_is_reported_not_raised():
    events = RecordingEventLogger()
    market = FakeMarket()
    book = _book(market, events)
    market.fail_balances = True
    assert asyncio.run(book.update_balances()) is False
    assert events.errors and 'Balance refresh failed' in events.errors[0]
    assert book.quote.free == 1000.0

    market.fail_balances = False
    market.balances = {'BTC': (0.5, 0.0), 'USDT': (900.0, 0.0)}
    assert asyncio.run(book.update_balances()) is True
    assert book.base.free == 0.5
    assert book.quote.orig_qty == 1000.0


def test_apply_fill_moves_both_assets():
    book = _book()
    ticket = OrderTicket(
        symbol='BTCUSDT',
        side=Side.BUY,
        type=OrderType.MARKET,
        quantity=2.0,
        status=OrderStatus.FILLED,
        price=250.0,
        executed_qty=2.0,
        quote_qty=500.0,
    )
    book.apply_fill(ticket)
    assert book.base.free == 2.0
    assert book.quote.free == 500.0


def test_stop_writes_gain_report_once():
    events = RecordingEventLogger()
    market = FakeMarket()
    book = _book(market, events)
    market.balances = {'BTC': (0.0, 0.0), 'USDT': (1100.0, 0.0)}
    asyncio.run(book.update_balances())

    asyncio.run(book.stop())
    asyncio.run(book.stop())
    assert len(events.stops) == 1
    balances, gains = events.stops[0]
    assert balances['USDT'] == 1100.0
    assert gains['USDT'] == pytest.approx(10.0)
    assert 'BTC' not in gains
