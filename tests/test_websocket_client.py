#!/usr/bin/env python
import asyncio
import json
import sys

sys.path.insert(0, '.')

from ingest.websocket_client import WebSocketClient


def _kline_event(final=True, close='101.5'):
    return json.dumps({
        'e': 'kline',
        'E': 123456789,
        's': 'BTCUSDT',
        'k': {
            't': 4_860_000, 'T': 4_919_999, 's': 'BTCUSDT', 'i': '1m',
            'o': '100.0', 'c': close, 'h': '102.0', 'l': '99.5',
            'v': '12.5', 'n': 40, 'x': final,
        },
    })


def test_stream_url_uses_lowercase_symbol():
    client = WebSocketClient('BTCUSDT', '1m', base_url='wss://stream.binance.com:9443/ws/')
    assert client.stream_url == 'wss://stream.binance.com:9443/ws/btcusdt@kline_1m'


def test_dispatch_forwards_kline_events_in_order():
    async def _run():
        client = WebSocketClient('BTCUSDT')
        seen = []

        async def on_candle(candle):
            seen.append(candle)

        client.register_handler('candle', on_candle)
        await client._dispatch_candle(_kline_event(final=False, close='101.0'))
        await client._dispatch_candle(_kline_event(final=True, close='101.5'))
        await client._dispatch_candle(json.dumps({'e': 'trade', 'p': '1'}))
        await client._dispatch_candle(json.dumps({'e': 'kline', 'k': {'t': 1}}))
        return seen

    seen = asyncio.run(_run())
    assert [(c.close, c.is_final) for c in seen] == [(101.0, False), (101.5, True)]
    assert seen[1].open_time == 4_860_000
    assert seen[1].volume == 12.5


def test_dispatch_without_handler_is_a_noop():
    client = WebSocketClient('ETHUSDT')
    asyncio.run(client._dispatch_candle(_kline_event()))
    assert client.handlers == {}
