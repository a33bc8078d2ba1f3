from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from strategy.trade_types import Side


class OrderStatus(Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    PENDING_CANCEL = "PENDING_CANCEL"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @classmethod
    def parse(cls, value: Any) -> 'OrderStatus':
        if isinstance(value, OrderStatus):
            return value
        text = str(value or '').upper()
        # Binance also reports EXPIRED_IN_MATCH for self-trade prevention.
        if text.startswith('EXPIRED'):
            return cls.EXPIRED
        return cls(text)

    @property
    def is_terminal(self) -> bool:
        return self in (
            OrderStatus.FILLED,
            OrderStatus.CANCELED,
            OrderStatus.REJECTED,
            OrderStatus.EXPIRED,
        )


class OrderType(Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


@dataclass
class OrderTicket:
    """Normalized view of an order acknowledgement across live and paper flows."""

    symbol: str
    side: Side
    type: OrderType
    quantity: float
    status: OrderStatus
    price: Optional[float] = None
    executed_qty: float = 0.0
    quote_qty: float = 0.0
    order_id: Optional[int] = None
    client_order_id: Optional[str] = None
    transact_time: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.order_id is not None:
            return str(self.order_id)
        if self.client_order_id:
            return self.client_order_id
        return "order"

    @property
    def avg_price(self) -> Optional[float]:
        if self.executed_qty > 0 and self.quote_qty > 0:
            return self.quote_qty / self.executed_qty
        return self.price

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.type.value,
            "status": self.status.value,
            "quantity": self.quantity,
            "price": self.price,
            "executed_qty": self.executed_qty,
            "quote_qty": self.quote_qty,
            "order_id": self.order_id,
            "client_order_id": self.client_order_id,
            "transact_time": self.transact_time,
        }
        if self.raw:
            data["raw"] = self.raw
        return data
