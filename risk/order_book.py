import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Mapping, Optional

from api.metrics import metrics
from strategy.execution_types import OrderTicket
from strategy.trade_types import Position, Side


logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    pass


def _dec(value: Any) -> Decimal:
    return Decimal(str(value))


def floor_to_step(qty: Decimal, step: Decimal) -> Decimal:
    if step <= 0:
        return qty
    return (qty / step).to_integral_value(rounding=ROUND_FLOOR) * step


@dataclass
class Balance:
    asset: str
    free: float = 0.0
    locked: float = 0.0
    orig_qty: Optional[float] = None

    def update(self, free: float, locked: float = 0.0) -> None:
        self.free = float(free)
        self.locked = float(locked)
        if self.orig_qty is None:
            self.orig_qty = self.free

    @property
    def total(self) -> float:
        return self.free + self.locked


@dataclass(frozen=True)
class SymbolConstraints:
    symbol: str
    base_asset: str
    quote_asset: str
    base_precision: Optional[int] = None
    tick_size: Optional[Decimal] = None
    min_qty: Decimal = Decimal(0)
    step_size: Decimal = Decimal(1)
    min_notional: Decimal = Decimal(0)

    @classmethod
    def from_exchange_info(cls, payload: Mapping[str, Any]) -> 'SymbolConstraints':
        base = payload.get('baseAsset')
        quote = payload.get('quoteAsset')
        if not base or not quote:
            raise ConfigurationError(f"exchange info for {payload.get('symbol')} lacks base/quote assets")

        tick_size = None
        min_qty = Decimal(0)
        step_size = Decimal(1)
        min_notional = Decimal(0)
        for filt in payload.get('filters') or []:
            ftype = filt.get('filterType')
            if ftype == 'PRICE_FILTER':
                tick_size = _dec(filt.get('tickSize', 0)) or None
            elif ftype == 'LOT_SIZE':
                min_qty = _dec(filt.get('minQty', 0))
                step = _dec(filt.get('stepSize', 0))
                if step > 0:
                    step_size = step
            elif ftype in ('MIN_NOTIONAL', 'NOTIONAL'):
                min_notional = _dec(filt.get('minNotional', 0))

        precision = payload.get('baseAssetPrecision')
        return cls(
            symbol=payload.get('symbol'),
            base_asset=base,
            quote_asset=quote,
            base_precision=int(precision) if precision is not None else None,
            tick_size=tick_size,
            min_qty=min_qty,
            step_size=step_size,
            min_notional=min_notional,
        )


class OrderBook:
    """Base/quote balance ledger and order sizing for one symbol.

    Balances change only through ``apply_fill`` (after a confirmed fill) and
    ``update_balances`` (authoritative refresh from ``account``).
    """

    def __init__(self, account: Any, constraints: SymbolConstraints, event_logger: Any = None,
                 fee_asset: Optional[str] = None):
        self.account = account
        self.constraints = constraints
        self.symbol = constraints.symbol
        self.event_logger = event_logger
        self.base = Balance(constraints.base_asset)
        self.quote = Balance(constraints.quote_asset)
        self.fee: Optional[Balance] = None
        if fee_asset and fee_asset not in (constraints.base_asset, constraints.quote_asset):
            self.fee = Balance(fee_asset)
        self._stopped = False

    @classmethod
    async def create(cls, exchange: Any, account: Any, symbol: str, event_logger: Any = None,
                     fee_asset: Optional[str] = None) -> 'OrderBook':
        try:
            payload = await exchange.fetch_exchange_info(symbol)
        except Exception as exc:
            raise ConfigurationError(f"exchange info fetch failed for {symbol}: {exc}") from exc
        if not payload:
            raise ConfigurationError(f"symbol {symbol} not listed by the exchange")

        book = cls(account, SymbolConstraints.from_exchange_info(payload), event_logger, fee_asset)
        try:
            balances = await account.fetch_account_balances()
        except Exception as exc:
            raise ConfigurationError(f"initial balance fetch failed: {exc}") from exc
        book._apply_balances(balances)
        logger.info(
            "Order book ready for %s: %s free=%s, %s free=%s (step=%s min_notional=%s)",
            symbol,
            book.base.asset,
            book.base.free,
            book.quote.asset,
            book.quote.free,
            book.constraints.step_size,
            book.constraints.min_notional,
        )
        return book

    @property
    def balances(self) -> Dict[str, Balance]:
        tracked = [self.base, self.quote]
        if self.fee is not None:
            tracked.append(self.fee)
        return {bal.asset: bal for bal in tracked}

    def _apply_balances(self, balances: Mapping[str, Any]) -> None:
        for asset, bal in self.balances.items():
            free, locked = balances.get(asset, (0.0, 0.0))
            bal.update(free, locked)
            metrics.update_balance(asset, bal.free, bal.locked)

    def get_trade_qty(self, pos: Position, price: float) -> float:
        if price is None or price <= 0:
            logger.error("Cannot size %s order at non-positive price %s", pos, price)
            return 0.0
        step = self.constraints.step_size
        if pos is Position.BUY:
            raw = _dec(self.quote.free) / _dec(price)
        elif pos is Position.SELL:
            raw = _dec(self.base.free)
        else:
            logger.error("Cannot size an order for position %r", pos)
            return 0.0
        qty = floor_to_step(raw, step)
        return float(qty) if qty > 0 else 0.0

    def check_order(self, qty: float, price: float) -> Optional[str]:
        if qty <= 0:
            return "quantity is zero"
        qty_d = _dec(qty)
        if qty_d < self.constraints.min_qty:
            return f"quantity {qty} below minimum {self.constraints.min_qty}"
        notional = qty_d * _dec(price)
        if notional < self.constraints.min_notional:
            return f"notional {notional} below minimum {self.constraints.min_notional}"
        return None

    def apply_fill(self, ticket: OrderTicket) -> None:
        executed = _dec(ticket.executed_qty)
        quote_qty = _dec(ticket.quote_qty)
        if quote_qty == 0 and ticket.price:
            quote_qty = executed * _dec(ticket.price)
        if ticket.side is Side.BUY:
            self.base.free = float(_dec(self.base.free) + executed)
            self.quote.free = float(_dec(self.quote.free) - quote_qty)
        else:
            self.base.free = float(_dec(self.base.free) - executed)
            self.quote.free = float(_dec(self.quote.free) + quote_qty)
        for bal in (self.base, self.quote):
            metrics.update_balance(bal.asset, bal.free, bal.locked)

    async def update_balances(self) -> bool:
        try:
            balances = await self.account.fetch_account_balances()
        except Exception as exc:
            metrics.record_balance_refresh_failure()
            if self.event_logger is not None:
                self.event_logger.log_error("Balance refresh failed", exc)
            else:
                logger.error("Balance refresh failed: %s", exc)
            return False
        self._apply_balances(balances)
        return True

    def gain_report(self) -> Dict[str, float]:
        gains: Dict[str, float] = {}
        for bal in (self.base, self.quote):
            if bal.orig_qty:
                gains[bal.asset] = (bal.total - bal.orig_qty) / bal.orig_qty * 100.0
        return gains

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self.event_logger is not None:
            self.event_logger.log_stop(
                {asset: bal.total for asset, bal in self.balances.items()},
                self.gain_report(),
            )
