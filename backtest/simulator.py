import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from strategy.trade_snapshot import InsufficientHistoryError, TradeSnapshot
from strategy.trade_types import Candle, Position, Side, TradeConfig, TradeDecision


logger = logging.getLogger(__name__)

KLINE_COLUMNS = [
    'timestamp', 'open', 'high', 'low', 'close', 'volume', 'close_time',
    'quote_av', 'trades', 'tb_base_av', 'tb_quote_av', 'ignore',
]

_EPOCH = pd.Timestamp(0, tz='UTC')


@dataclass(frozen=True)
class Trade:
    timestamp: int
    side: Side
    price: float


@dataclass
class SimulationResult:
    config: TradeConfig
    pairs: List[Tuple[Trade, Trade]] = field(default_factory=list)

    @property
    def buys(self) -> List[Trade]:
        return [buy for buy, _ in self.pairs]

    @property
    def sells(self) -> List[Trade]:
        return [sell for _, sell in self.pairs]

    @property
    def gains(self) -> List[float]:
        return [sell.price - buy.price for buy, sell in self.pairs]

    @property
    def trade_count(self) -> int:
        return len(self.pairs)

    @property
    def net_gain(self) -> float:
        return float(sum(t.price for t in self.sells) - sum(t.price for t in self.buys))

    def summary(self) -> Dict[str, float]:
        gains = np.asarray(self.gains, dtype=float)
        if gains.size == 0:
            return {'trades': 0, 'net_gain': 0.0, 'avg_gain': 0.0, 'win_rate': 0.0, 'worst_trade': 0.0}
        return {
            'trades': int(gains.size),
            'net_gain': float(gains.sum()),
            'avg_gain': float(gains.mean()),
            'win_rate': float(np.mean(gains > 0)),
            'worst_trade': float(gains.min()),
        }

    def as_row(self) -> list:
        return self.config.as_row() + [self.trade_count, round(self.net_gain, 8)]


def pair_trades(decisions: Sequence[TradeDecision]) -> List[Tuple[Trade, Trade]]:
    """Match each BUY with the next SELL; unmatched leading SELLs and a trailing BUY are dropped."""
    pairs: List[Tuple[Trade, Trade]] = []
    open_buy: Optional[Trade] = None
    for decision in decisions:
        trade = Trade(decision.timestamp, decision.side, decision.price)
        if decision.side is Side.BUY:
            open_buy = trade
        elif open_buy is not None:
            pairs.append((open_buy, trade))
            open_buy = None
    return pairs


def run_simulation(trade_config: TradeConfig, candles: Sequence[Candle]) -> SimulationResult:
    """Replay ``candles`` through a fresh snapshot; fills are assumed instant at the close."""
    window = trade_config.window_size
    if len(candles) < window:
        raise InsufficientHistoryError(f"need at least {window} candles, got {len(candles)}")

    snapshot = TradeSnapshot(trade_config, candles[:window])
    pos = trade_config.position
    decisions: List[TradeDecision] = []
    for candle in candles[window:]:
        decision = snapshot.update(pos, candle)
        if decision is None:
            continue
        decisions.append(decision)
        pos = Position.after_fill(decision.side)
    return SimulationResult(trade_config, pair_trades(decisions))


def _to_timestamp(value) -> pd.Timestamp:
    stamp = pd.Timestamp(value)
    if stamp.tzinfo is None:
        stamp = stamp.tz_localize('UTC')
    return stamp


def load_candles_csv(path, start=None, end=None) -> List[Candle]:
    """Read a kline CSV (epoch-ms or ISO open times) and keep rows in ``[start, end)``."""
    frame = pd.read_csv(path, header=None, dtype=str)
    frame = frame.iloc[:, :len(KLINE_COLUMNS)]
    frame.columns = KLINE_COLUMNS[:frame.shape[1]]
    frame = frame[frame['timestamp'] != 'timestamp']

    numeric = pd.to_numeric(frame['timestamp'], errors='coerce')
    if numeric.notna().all():
        opened = pd.to_datetime(numeric, unit='ms', utc=True)
    else:
        opened = pd.to_datetime(frame['timestamp'], utc=True)

    mask = pd.Series(True, index=frame.index)
    if start is not None:
        mask &= opened >= _to_timestamp(start)
    if end is not None:
        mask &= opened < _to_timestamp(end)
    frame = frame[mask]
    open_ms = (opened[mask] - _EPOCH) // pd.Timedelta(milliseconds=1)

    candles = [
        Candle(
            open_time=int(ts),
            open=float(o),
            high=float(h),
            low=float(low),
            close=float(c),
            volume=float(v),
        )
        for ts, o, h, low, c, v in zip(
            open_ms, frame['open'], frame['high'], frame['low'], frame['close'], frame['volume']
        )
    ]
    logger.info("Loaded %s candles from %s", len(candles), path)
    return candles


def write_trades_csv(result: SimulationResult, path) -> Path:
    rows = []
    for buy, sell in result.pairs:
        rows.append({'timestamp': _iso(buy.timestamp), 'order': buy.side.value, 'price': buy.price, 'gain': None})
        rows.append({
            'timestamp': _iso(sell.timestamp),
            'order': sell.side.value,
            'price': sell.price,
            'gain': sell.price - buy.price,
        })
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows, columns=['timestamp', 'order', 'price', 'gain']).to_csv(out, index=False)
    return out


def _iso(ms: int) -> str:
    return pd.Timestamp(ms, unit='ms', tz='UTC').isoformat()
