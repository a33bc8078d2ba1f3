from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence


INTERVAL_MS = {
    '1m': 60_000,
    '3m': 3 * 60_000,
    '5m': 5 * 60_000,
    '15m': 15 * 60_000,
    '30m': 30 * 60_000,
    '1h': 60 * 60_000,
    '2h': 2 * 60 * 60_000,
    '4h': 4 * 60 * 60_000,
    '1d': 24 * 60 * 60_000,
}


def interval_to_ms(interval: str) -> int:
    try:
        return INTERVAL_MS[interval]
    except KeyError as exc:
        raise ValueError(f"Unsupported candle interval '{interval}'") from exc


class Side(Enum):
    BUY = "BUY"
    SELL = "SELL"

    def opposite(self) -> 'Side':
        return Side.SELL if self is Side.BUY else Side.BUY


class Position(Enum):
    """Which side the strategy is prepared to act on next.

    BUY means "looking to buy", not "holding a long". PENDING means an order is
    in flight and no new decision may be evaluated.
    """

    BUY = "BUY"
    SELL = "SELL"
    PENDING = "PENDING"

    @classmethod
    def after_fill(cls, filled: Side) -> 'Position':
        if filled is Side.BUY:
            return cls.SELL
        if filled is Side.SELL:
            return cls.BUY
        raise ValueError(f"Unexpected filled side {filled!r}")

    @classmethod
    def parse(cls, value: Any) -> 'Position':
        if isinstance(value, Position):
            return value
        return cls(str(value).upper())


@dataclass(frozen=True)
class TradeConfig:
    symbol: str
    bb_factor: float
    smoothing_const: float
    window_size: int
    velocity_window_size: int
    stop_loss_threshold: float
    position: Position = Position.BUY
    is_simulation: bool = True
    interval: str = '1m'

    def __post_init__(self):
        if not self.symbol:
            raise ValueError("symbol is required")
        if self.window_size < 1:
            raise ValueError("window_size must be positive")
        if not 1 <= self.velocity_window_size <= self.window_size:
            raise ValueError("velocity_window_size must be between 1 and window_size")
        if self.bb_factor < 0:
            raise ValueError("bb_factor must be non-negative")
        if self.smoothing_const <= 0:
            raise ValueError("smoothing_const must be positive")
        if not 0 <= self.stop_loss_threshold < 1:
            raise ValueError("stop_loss_threshold must be in [0, 1)")
        if self.position is Position.PENDING:
            raise ValueError("initial position cannot be PENDING")
        interval_to_ms(self.interval)

    @property
    def smoothing_factor(self) -> float:
        return self.smoothing_const / (1.0 + self.window_size)

    @property
    def interval_ms(self) -> int:
        return interval_to_ms(self.interval)

    @classmethod
    def from_config(cls, strategy: Mapping[str, Any], symbol: str,
                    is_simulation: bool = True) -> 'TradeConfig':
        return cls(
            symbol=symbol,
            bb_factor=float(strategy['bb_factor']),
            smoothing_const=float(strategy['smoothing_const']),
            window_size=int(strategy['window_size']),
            velocity_window_size=int(strategy['velocity_window_size']),
            stop_loss_threshold=float(strategy['stop_loss_threshold']),
            position=Position.parse(strategy.get('initial_position', 'BUY')),
            is_simulation=bool(is_simulation),
            interval=str(strategy.get('interval', '1m')),
        )

    def as_row(self):
        return [self.bb_factor, self.smoothing_const, self.window_size,
                self.velocity_window_size, round(self.stop_loss_threshold, 4)]


@dataclass(frozen=True)
class TradeDecision:
    timestamp: int
    side: Side
    symbol: str
    price: float
    is_simulation: bool = False


@dataclass(frozen=True)
class FillReport:
    side: Side
    price: float
    quantity: float
    order_id: str
    timestamp: int


def _ms_from_value(value: Any) -> int:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    try:
        return int(float(text))
    except ValueError:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)


@dataclass(frozen=True)
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: Optional[int] = None
    is_final: bool = True
    trades: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_kline(cls, row: Sequence[Any]) -> 'Candle':
        """REST kline array: [openTime, open, high, low, close, volume, closeTime, quoteVol, trades, ...]."""
        return cls(
            open_time=_ms_from_value(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            close_time=_ms_from_value(row[6]) if len(row) > 6 and row[6] not in (None, '') else None,
            is_final=True,
            trades=int(float(row[8])) if len(row) > 8 and row[8] not in (None, '') else None,
        )

    @classmethod
    def from_ws_event(cls, event: Mapping[str, Any]) -> 'Candle':
        k = event.get('k') or {}
        return cls(
            open_time=int(k['t']),
            open=float(k['o']),
            high=float(k['h']),
            low=float(k['l']),
            close=float(k['c']),
            volume=float(k['v']),
            close_time=int(k['T']) if k.get('T') is not None else None,
            is_final=bool(k.get('x', False)),
            trades=int(k['n']) if k.get('n') is not None else None,
            raw=dict(event),
        )

    @property
    def iso_time(self) -> str:
        return datetime.fromtimestamp(self.open_time / 1000, tz=timezone.utc).isoformat()
