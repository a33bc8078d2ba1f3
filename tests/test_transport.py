#!/usr/bin/env python
import asyncio
import sys

sys.path.insert(0, '.')

import pytest

import strategy.transports.binance as binance_transport
from strategy.execution_types import OrderStatus, OrderType
from strategy.trade_types import Side
from strategy.transports.binance import BinanceTransport, format_qty
from tests.trading_fixtures import MINUTE_MS, exchange_info


def _kline(index, close):
    open_time = index * MINUTE_MS
    return [open_time, str(close), str(close), str(close), str(close), '1.5',
            open_time + MINUTE_MS - 1, '150.0', 12, '0', '0', '0']


class FakeRest:
    def __init__(self, klines=(), responses=None):
        self.klines = list(klines)
        self.responses = dict(responses or {})
        self.calls = []
        self.closed = False
        self.has_credentials = True

    async def get(self, path, params=None, signed=False):
        self.calls.append(('GET', path, dict(params or {}), signed))
        if path == '/api/v3/klines':
            start, end, limit = params['startTime'], params['endTime'], params['limit']
            return [k for k in self.klines if start <= k[0] <= end][:limit]
        return self.responses.get(('GET', path))

    async def post(self, path, params=None, signed=False):
        self.calls.append(('POST', path, dict(params or {}), signed))
        return self.responses.get(('POST', path), {})

    async def delete(self, path, params=None, signed=False):
        self.calls.append(('DELETE', path, dict(params or {}), signed))
        return {}

    async def close(self):
        self.closed = True


def test_fetch_klines_pages_until_short_page(monkeypatch):
    monkeypatch.setattr(binance_transport, 'KLINE_LIMIT', 2)
    rest = FakeRest(klines=[_kline(i, 100 + i) for i in range(1, 6)])
    transport = BinanceTransport(rest)

    candles = asyncio.run(transport.fetch_klines('BTCUSDT', '1m', MINUTE_MS, 5 * MINUTE_MS - 1))

    assert [c.close for c in candles] == [101.0, 102.0, 103.0, 104.0]
    assert all(c.is_final for c in candles)
    assert candles[0].trades == 12
    starts = [call[2]['startTime'] for call in rest.calls]
    assert starts == [MINUTE_MS, 2 * MINUTE_MS + 1, 4 * MINUTE_MS + 1]
    assert all(not call[3] for call in rest.calls)


def test_fetch_exchange_info_picks_requested_symbol():
    other = exchange_info(symbol='ETHUSDT')
    rest = FakeRest(responses={('GET', '/api/v3/exchangeInfo'): {'symbols': [other, exchange_info()]}})
    transport = BinanceTransport(rest)

    assert asyncio.run(transport.fetch_exchange_info('BTCUSDT'))['symbol'] == 'BTCUSDT'
    assert asyncio.run(transport.fetch_exchange_info('XRPUSDT')) is None


def test_fetch_account_balances_is_signed():
    payload = {'balances': [
        {'asset': 'BTC', 'free': '0.50000000', 'locked': '0.10000000'},
        {'asset': 'USDT', 'free': '1200.5', 'locked': '0'},
        {'free': '1'},
    ]}
    rest = FakeRest(responses={('GET', '/api/v3/account'): payload})
    balances = asyncio.run(BinanceTransport(rest).fetch_account_balances())

    assert balances == {'BTC': (0.5, 0.1), 'USDT': (1200.5, 0.0)}
    assert rest.calls[0][3] is True


def test_market_order_ack_is_normalized():
    ack = {
        'symbol': 'BTCUSDT',
        'orderId': 28,
        'clientOrderId': 'abc',
        'transactTime': 1507725176595,
        'price': '0.00000000',
        'origQty': '0.01000000',
        'executedQty': '0.01000000',
        'cummulativeQuoteQty': '250.00000000',
        'status': 'FILLED',
        'type': 'MARKET',
        'side': 'BUY',
    }
    rest = FakeRest(responses={('POST', '/api/v3/order'): ack})
    ticket = asyncio.run(BinanceTransport(rest).place_market_order('BTCUSDT', Side.BUY, 0.01))

    method, path, params, signed = rest.calls[0]
    assert (method, path, signed) == ('POST', '/api/v3/order', True)
    assert params['quantity'] == '0.01'
    assert params['type'] == 'MARKET'
    assert ticket.status is OrderStatus.FILLED
    assert ticket.type is OrderType.MARKET
    assert ticket.side is Side.BUY
    assert ticket.id == '28'
    assert ticket.price == pytest.approx(25000.0)
    assert ticket.transact_time == 1507725176595


def test_unexpected_ack_is_none_and_close_releases_client():
    rest = FakeRest(responses={('POST', '/api/v3/order'): 'gateway timeout'})
    transport = BinanceTransport(rest)
    assert asyncio.run(transport.place_market_order('BTCUSDT', Side.SELL, 1)) is None
    asyncio.run(transport.close())
    assert rest.closed


def test_format_qty_avoids_exponent():
    assert format_qty(0.00001) == '0.00001'
    assert format_qty(10.0) == '10'
    assert format_qty(10.752) == '10.752'


def test_order_status_parse():
    assert OrderStatus.parse('expired_in_match') is OrderStatus.EXPIRED
    assert OrderStatus.parse('PARTIALLY_FILLED').is_terminal is False
    assert OrderStatus.CANCELED.is_terminal
