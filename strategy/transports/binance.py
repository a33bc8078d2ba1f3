import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient

from strategy.execution_types import OrderStatus, OrderTicket, OrderType
from strategy.trade_types import Candle, Side


__all__ = ["BinanceTransport", "BinanceAPIError", "KLINE_LIMIT"]

KLINE_LIMIT = 1000


def format_qty(qty: float) -> str:
    """Plain decimal text; the order endpoint rejects exponent notation."""
    text = format(Decimal(str(qty)).normalize(), "f")
    return text or "0"


class BinanceTransport:
    """Thin adapter around Binance spot REST with typed responses."""

    def __init__(self, rest: Optional[BinanceRESTClient] = None) -> None:
        self._rest: Optional[BinanceRESTClient] = rest
        self._lock = asyncio.Lock()

    def _client(self) -> BinanceRESTClient:
        if self._rest is None:
            self._rest = BinanceRESTClient()
        return self._rest

    @property
    def has_credentials(self) -> bool:
        return self._client().has_credentials

    async def fetch_exchange_info(self, symbol: str) -> Optional[Dict[str, Any]]:
        rest = self._client()
        data = await rest.get("/api/v3/exchangeInfo", params={"symbol": symbol})
        if not isinstance(data, dict):
            return None
        for payload in data.get("symbols") or []:
            if payload.get("symbol") == symbol:
                return payload
        return None

    async def fetch_account_balances(self) -> Dict[str, Tuple[float, float]]:
        rest = self._client()
        data = await rest.get("/api/v3/account", signed=True)
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected account payload: {data!r}")
        balances: Dict[str, Tuple[float, float]] = {}
        for item in data.get("balances") or []:
            asset = item.get("asset")
            if not asset:
                continue
            balances[asset] = (
                self._as_float(item.get("free")) or 0.0,
                self._as_float(item.get("locked")) or 0.0,
            )
        return balances

    async def fetch_klines(
        self,
        symbol: str,
        interval: str,
        start_ms: int,
        end_ms: int,
    ) -> List[Candle]:
        """Closed klines with ``start_ms <= open_time <= end_ms``, ascending."""
        rest = self._client()
        candles: List[Candle] = []
        cursor = int(start_ms)
        while cursor <= end_ms:
            rows = await rest.get(
                "/api/v3/klines",
                params={
                    "symbol": symbol,
                    "interval": interval,
                    "startTime": cursor,
                    "endTime": int(end_ms),
                    "limit": KLINE_LIMIT,
                },
            )
            if not isinstance(rows, list) or not rows:
                break
            page = [Candle.from_kline(row) for row in rows]
            candles.extend(page)
            if len(rows) < KLINE_LIMIT:
                break
            cursor = page[-1].open_time + 1
        return candles

    async def place_market_order(self, symbol: str, side: Side, qty: float) -> Optional[OrderTicket]:
        rest = self._client()
        params = {
            "symbol": symbol,
            "side": side.value,
            "type": OrderType.MARKET.value,
            "quantity": format_qty(qty),
            "newOrderRespType": "FULL",
        }
        data = await rest.post("/api/v3/order", params=params, signed=True)
        return self._parse_order_ack(data, symbol=symbol, side=side, qty=qty)

    async def test_order(self, symbol: str, side: Side, qty: float) -> None:
        """Validate an order with the exchange without placing it; raises on rejection."""
        rest = self._client()
        params = {
            "symbol": symbol,
            "side": side.value,
            "type": OrderType.MARKET.value,
            "quantity": format_qty(qty),
        }
        await rest.post("/api/v3/order/test", params=params, signed=True)

    async def fetch_order(self, symbol: str, order_id: int) -> Optional[OrderTicket]:
        rest = self._client()
        data = await rest.get(
            "/api/v3/order",
            params={"symbol": symbol, "orderId": order_id},
            signed=True,
        )
        return self._parse_order_ack(data, symbol=symbol)

    async def cancel_order(self, symbol: str, order_id: int) -> None:
        rest = self._client()
        await rest.delete(
            "/api/v3/order",
            params={"symbol": symbol, "orderId": order_id},
            signed=True,
        )

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    def _parse_order_ack(
        self,
        payload: Any,
        symbol: str = "",
        side: Optional[Side] = None,
        qty: float = 0.0,
    ) -> Optional[OrderTicket]:
        if not isinstance(payload, dict):
            return None
        executed = self._as_float(payload.get("executedQty")) or 0.0
        quote = self._as_float(payload.get("cummulativeQuoteQty")) or 0.0
        price = self._as_float(payload.get("price")) or None
        if not price and executed > 0 and quote > 0:
            price = quote / executed
        raw_side = payload.get("side")
        raw_type = payload.get("type")
        return OrderTicket(
            symbol=payload.get("symbol") or symbol,
            side=Side(raw_side.upper()) if raw_side else side,
            type=OrderType(raw_type.upper()) if raw_type else OrderType.MARKET,
            quantity=self._as_float(payload.get("origQty")) or qty,
            status=OrderStatus.parse(payload.get("status")),
            price=price,
            executed_qty=executed,
            quote_qty=quote,
            order_id=self._as_int(payload.get("orderId")),
            client_order_id=payload.get("clientOrderId"),
            transact_time=self._as_int(
                payload.get("transactTime") or payload.get("updateTime") or payload.get("time")
            ),
            raw=payload,
        )

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
