from typing import Dict, List, Optional, Sequence, Tuple

from strategy.trade_types import Candle, TradeConfig


MINUTE_MS = 60_000

# Flat seed, a dip that turns up at bar 84 and a rally that rolls over at bar 90.
SCENARIO_CLOSES: List[float] = (
    [100.0] * 80
    + [95.0, 94.0, 94.0, 93.0, 93.0, 93.0, 100.0, 104.0, 106.0, 108.0]
    + [108.0] * 110
)
SCENARIO_BUY_PRICE = 93.0
SCENARIO_SELL_PRICE = 108.0
SCENARIO_NET_GAIN = SCENARIO_SELL_PRICE - SCENARIO_BUY_PRICE
# Wall clock a few seconds after bar 81 opens, so the backfill covers bars 1..80.
SCENARIO_CLOCK_S = 81 * 60 + 5


def scenario_config(**overrides) -> TradeConfig:
    params = dict(
        symbol='BTCUSDT',
        bb_factor=2.0,
        smoothing_const=4.0,
        window_size=80,
        velocity_window_size=3,
        stop_loss_threshold=0.01,
    )
    params.update(overrides)
    return TradeConfig(**params)


def make_candles(closes: Sequence[float], first_index: int = 1, is_final: bool = True) -> List[Candle]:
    """Candle ``i`` opens at ``i`` minutes after the epoch."""
    return [
        Candle(
            open_time=(first_index + i) * MINUTE_MS,
            open=close,
            high=close,
            low=close,
            close=close,
            volume=1.0,
            close_time=(first_index + i + 1) * MINUTE_MS - 1,
            is_final=is_final,
        )
        for i, close in enumerate(closes)
    ]


def exchange_info(symbol: str = 'BTCUSDT', step: str = '0.00100000', min_qty: str = '0.00100000',
                  min_notional: str = '10.00000000') -> Dict:
    return {
        'symbol': symbol,
        'status': 'TRADING',
        'baseAsset': 'BTC',
        'baseAssetPrecision': 8,
        'quoteAsset': 'USDT',
        'filters': [
            {'filterType': 'PRICE_FILTER', 'minPrice': '0.01', 'maxPrice': '1000000', 'tickSize': '0.01000000'},
            {'filterType': 'LOT_SIZE', 'minQty': min_qty, 'maxQty': '9000', 'stepSize': step},
            {'filterType': 'NOTIONAL', 'minNotional': min_notional, 'applyMinToMarket': True},
        ],
    }


class FakeMarket:
    """Exchange-info, kline and balance source backed by in-memory data."""

    def __init__(self, candles: Sequence[Candle] = (), info: Optional[Dict] = None,
                 balances: Optional[Dict[str, Tuple[float, float]]] = None):
        self.candles = list(candles)
        self.info = info if info is not None else exchange_info()
        self.balances = dict(balances or {'BTC': (0.0, 0.0), 'USDT': (1000.0, 0.0)})
        self.kline_requests: List[Tuple[str, str, int, int]] = []
        self.fail_klines = False
        self.fail_info = False
        self.fail_balances = False
        self.closed = False

    async def fetch_exchange_info(self, symbol: str):
        if self.fail_info:
            raise ConnectionError('exchange info unavailable')
        if self.info and self.info.get('symbol') == symbol:
            return self.info
        return None

    async def fetch_klines(self, symbol: str, interval: str, start_ms: int, end_ms: int):
        self.kline_requests.append((symbol, interval, start_ms, end_ms))
        if self.fail_klines:
            raise ConnectionError('klines unavailable')
        return [c for c in self.candles if start_ms <= c.open_time <= end_ms]

    async def fetch_account_balances(self):
        if self.fail_balances:
            raise ConnectionError('account unavailable')
        return dict(self.balances)

    async def close(self):
        self.closed = True


class RecordingEventLogger:
    def __init__(self):
        self.starts: List = []
        self.stops: List = []
        self.candles: List = []
        self.orders: List[Tuple[str, float, float, str, str]] = []
        self.infos: List[str] = []
        self.errors: List[str] = []
        self.stopped = 0

    def log_start(self, trade_config):
        self.starts.append(trade_config)

    def log_stop(self, balances, gains=None):
        self.stops.append((balances, gains))

    def log_candle(self, candle, stats=None):
        self.candles.append((candle, stats))

    def log_order(self, side, quantity, price, order_id, status='FILLED'):
        self.orders.append((side, quantity, price, order_id, status))

    def log_info(self, message):
        self.infos.append(message)

    def log_error(self, message, exc=None):
        self.errors.append(f"{message}: {exc}" if exc is not None else message)

    async def stop(self, timeout: float = 5.0):
        self.stopped += 1
