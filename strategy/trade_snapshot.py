import logging
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

from strategy.sliding_window import SlidingWindow
from strategy.trade_types import Candle, Position, Side, TradeConfig, TradeDecision


logger = logging.getLogger(__name__)

Sample = Union[Candle, float, int]
DecisionHandler = Callable[[TradeDecision], Any]
VelAccHandler = Callable[[Optional[int], float, float], Any]


class InsufficientHistoryError(ValueError):
    pass


def _unpack(sample: Sample) -> Tuple[float, Optional[int]]:
    if isinstance(sample, Candle):
        return sample.close, sample.open_time
    return float(sample), None


class TradeSnapshot:
    """Rolling EMA / volatility band / momentum state for one symbol.

    The snapshot does not own the position: the caller passes the position it
    is currently prepared to act on into every ``update`` and is responsible
    for not calling again while a decision is outstanding.
    """

    def __init__(self, trade_config: TradeConfig, history: Sequence[Sample]):
        if len(history) < trade_config.window_size:
            raise InsufficientHistoryError(
                f"need {trade_config.window_size} historical bars, got {len(history)}"
            )
        self.config = trade_config
        self.window = SlidingWindow(trade_config.window_size)
        self.smoothing = trade_config.smoothing_factor

        self.velocity = 0.0
        self.acceleration = 0.0
        self.last_buy_price: Optional[float] = None
        self.timestamp: Optional[int] = None

        last_close, _ = _unpack(history[-1])
        self.ema = last_close
        for sample in history:
            close, ts = _unpack(sample)
            self.window.push(close)
            self.timestamp = ts
            if self.window.is_at_multiple_of(trade_config.velocity_window_size):
                self._update_momentum(close)

        self.std = 0.0
        self.floor = self.ema
        self.ceiling = self.ema
        self._update_band()

    def _update_band(self) -> None:
        self.std = self.window.get_std()
        width = self.config.bb_factor * self.std
        self.floor = self.ema - width
        self.ceiling = self.ema + width

    def _update_momentum(self, close: float) -> None:
        velocity = close - self.window.last_n(self.config.velocity_window_size)
        self.acceleration = velocity - self.velocity
        self.velocity = velocity

    def update(
        self,
        pos: Position,
        candle: Sample,
        decision_handler: Optional[DecisionHandler] = None,
        vel_acc_handler: Optional[VelAccHandler] = None,
    ) -> Optional[TradeDecision]:
        close, ts = _unpack(candle)
        self.timestamp = ts

        self.window.push(close)
        self.ema = close * self.smoothing + self.ema * (1.0 - self.smoothing)
        self._update_band()

        if self.window.is_at_multiple_of(self.config.velocity_window_size):
            self._update_momentum(close)
            if vel_acc_handler is not None:
                vel_acc_handler(ts, self.velocity, self.acceleration)

        decision = self._evaluate(pos, close, ts)
        if decision is not None and decision_handler is not None:
            decision_handler(decision)
        return decision

    def _evaluate(self, pos: Position, close: float, ts: Optional[int]) -> Optional[TradeDecision]:
        if pos is Position.BUY:
            if close <= self.floor and self.velocity < 0 and self.acceleration > 0:
                self.last_buy_price = close
                return self._decision(Side.BUY, close, ts)
            return None

        if pos is Position.SELL:
            if self.last_buy_price is not None:
                gain = close - self.last_buy_price
                loss_fraction = 1.0 - close / self.last_buy_price if self.last_buy_price > 0 else None
            else:
                gain = 0.0
                loss_fraction = None

            at_ceiling = (
                close >= self.ceiling
                and self.velocity > 0
                and self.acceleration < 0
                and gain >= 0
            )
            stopped_out = (
                loss_fraction is not None
                and loss_fraction >= self.config.stop_loss_threshold
            )
            if at_ceiling or stopped_out:
                if not at_ceiling:
                    logger.info(
                        "Stop-loss hit for %s: close=%.8f last_buy=%.8f loss=%.4f",
                        self.config.symbol,
                        close,
                        self.last_buy_price,
                        loss_fraction,
                    )
                return self._decision(Side.SELL, close, ts)
            return None

        if pos is Position.PENDING:
            return None

        logger.error("Unrecognized position %r; decision dropped", pos)
        return None

    def _decision(self, side: Side, price: float, ts: Optional[int]) -> TradeDecision:
        return TradeDecision(
            timestamp=ts if ts is not None else 0,
            side=side,
            symbol=self.config.symbol,
            price=price,
            is_simulation=self.config.is_simulation,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'ema': self.ema,
            'std': self.std,
            'floor': self.floor,
            'ceiling': self.ceiling,
            'velocity': self.velocity,
            'acceleration': self.acceleration,
            'last_buy_price': self.last_buy_price,
            'samples': self.window.count,
        }
