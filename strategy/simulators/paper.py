import itertools
import logging
import time
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from api.metrics import metrics

from strategy.execution_types import OrderStatus, OrderTicket, OrderType
from strategy.trade_types import Side


logger = logging.getLogger(__name__)


class PaperExchange:
    """In-process stand-in for the spot exchange used in simulation mode.

    Market orders fill immediately and in full at the caller's reference
    price against simulated balances. Symbol metadata is read through from
    ``market`` (normally the live transport, whose exchange-info endpoint is
    public) so paper sizing honours real lot and notional filters.
    """

    def __init__(self, market: Any, initial_balances: Optional[Mapping[str, float]] = None) -> None:
        self.market = market
        self._balances: Dict[str, Decimal] = {
            asset: Decimal(str(qty)) for asset, qty in (initial_balances or {}).items()
        }
        self._symbols: Dict[str, Tuple[str, str]] = {}
        self._orders: Dict[int, OrderTicket] = {}
        self._ids = itertools.count(1)

    @property
    def balances(self) -> Mapping[str, Decimal]:
        return MappingProxyType(self._balances)

    async def fetch_exchange_info(self, symbol: str) -> Optional[Dict[str, Any]]:
        payload = await self.market.fetch_exchange_info(symbol)
        if payload:
            self._symbols[symbol] = (payload.get("baseAsset"), payload.get("quoteAsset"))
        return payload

    async def fetch_account_balances(self) -> Dict[str, Tuple[float, float]]:
        return {asset: (float(qty), 0.0) for asset, qty in self._balances.items()}

    async def _assets_for(self, symbol: str) -> Tuple[str, str]:
        if symbol not in self._symbols:
            payload = await self.fetch_exchange_info(symbol)
            if not payload:
                raise ValueError(f"Unknown symbol {symbol}")
        return self._symbols[symbol]

    async def place_market_order(
        self,
        symbol: str,
        side: Side,
        qty: float,
        price: Optional[float] = None,
    ) -> OrderTicket:
        if price is None or price <= 0:
            raise ValueError("Paper market orders need a positive reference price")
        base, quote = await self._assets_for(symbol)
        qty_d = Decimal(str(qty))
        notional = qty_d * Decimal(str(price))

        if side is Side.BUY:
            spend_asset, spend, receive_asset, receive = quote, notional, base, qty_d
        else:
            spend_asset, spend, receive_asset, receive = base, qty_d, quote, notional

        order_id = next(self._ids)
        available = self._balances.get(spend_asset, Decimal(0))
        if qty_d <= 0 or spend > available:
            logger.warning(
                "Paper %s %s %s rejected: needs %s %s, have %s",
                side.value,
                qty,
                symbol,
                spend,
                spend_asset,
                available,
            )
            status = OrderStatus.REJECTED
            executed = 0.0
            quote_qty = 0.0
        else:
            self._balances[spend_asset] = available - spend
            self._balances[receive_asset] = self._balances.get(receive_asset, Decimal(0)) + receive
            status = OrderStatus.FILLED
            executed = float(qty_d)
            quote_qty = float(notional)
            for asset in (spend_asset, receive_asset):
                metrics.update_balance(asset, float(self._balances[asset]), 0.0)

        ticket = OrderTicket(
            symbol=symbol,
            side=side,
            type=OrderType.MARKET,
            quantity=float(qty_d),
            status=status,
            price=float(price),
            executed_qty=executed,
            quote_qty=quote_qty,
            order_id=order_id,
            client_order_id=f"paper-{order_id}",
            transact_time=int(time.time() * 1000),
        )
        self._orders[order_id] = ticket
        return ticket

    async def fetch_order(self, symbol: str, order_id: int) -> Optional[OrderTicket]:
        ticket = self._orders.get(order_id)
        if ticket is None or ticket.symbol != symbol:
            return None
        return ticket
