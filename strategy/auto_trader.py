import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, List, Optional

from api.metrics import metrics
from monitoring.async_utils import cancel_task
from orchestration.channels import Channel
from risk.order_book import OrderBook
from strategy.execution import ExecutionManager, is_filled
from strategy.execution_types import OrderStatus, OrderTicket
from strategy.trade_types import FillReport, Position, Side, TradeDecision


logger = logging.getLogger(__name__)


class OrderLifecycle(Enum):
    DECISION_RECEIVED = "DECISION_RECEIVED"
    ORDER_SUBMITTED = "ORDER_SUBMITTED"
    FILLED = "FILLED"
    REJECTED = "REJECTED"
    ERROR = "ERROR"


_REJECTED_STATUSES = (OrderStatus.REJECTED, OrderStatus.CANCELED, OrderStatus.EXPIRED)
# Most recent orders kept for inspection.
ORDER_HISTORY = 500


@dataclass
class PendingOrder:
    decision: TradeDecision
    state: OrderLifecycle = OrderLifecycle.DECISION_RECEIVED
    quantity: float = 0.0
    ticket: Optional[OrderTicket] = None
    reason: Optional[str] = None
    received_at: float = field(default_factory=time.monotonic)
    history: List[OrderLifecycle] = field(default_factory=list)

    def __post_init__(self):
        self.history.append(self.state)

    def advance(self, state: OrderLifecycle, reason: Optional[str] = None) -> None:
        self.state = state
        self.history.append(state)
        if reason is not None:
            self.reason = reason

    @property
    def is_terminal(self) -> bool:
        return self.state in (OrderLifecycle.FILLED, OrderLifecycle.REJECTED, OrderLifecycle.ERROR)


class AutoTrader:
    """Turns decisions into orders, one at a time, and reports fills back.

    Only a FILLED order produces a :class:`FillReport`; every other outcome is
    logged as an error and leaves the driver's position PENDING.
    """

    def __init__(self, order_book: OrderBook, execution: ExecutionManager, event_logger,
                 decisions: Channel, fills: Channel):
        self.order_book = order_book
        self.execution = execution
        self.event_logger = event_logger
        self.decisions = decisions
        self.fills = fills
        self.orders: Deque[PendingOrder] = deque(maxlen=ORDER_HISTORY)
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._consume())
        return self._task

    async def _consume(self):
        async for decision in self.decisions:
            if self._stopped:
                break
            await self.handle_decision(decision)

    async def handle_decision(self, decision: TradeDecision) -> PendingOrder:
        order = PendingOrder(decision)
        self.orders.append(order)

        if not isinstance(decision.side, Side):
            return self._fail(order, OrderLifecycle.ERROR, f"unrecognized decision side {decision.side!r}")
        metrics.record_decision(decision.side.value)

        qty = self.order_book.get_trade_qty(Position.parse(decision.side.value), decision.price)
        order.quantity = qty
        reason = self.order_book.check_order(qty, decision.price)
        if reason is not None:
            return self._fail(order, OrderLifecycle.REJECTED, f"{decision.side.value} order rejected locally: {reason}")

        order.advance(OrderLifecycle.ORDER_SUBMITTED)
        metrics.record_order_submitted(decision.side.value)
        logger.info(
            "Submitting %s %s %s @ %s (simulation=%s)",
            decision.side.value,
            qty,
            decision.symbol,
            decision.price,
            decision.is_simulation,
        )
        try:
            ticket = await self.execution.execute(decision, qty)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._fail(order, OrderLifecycle.ERROR, f"{decision.side.value} order submission failed: {exc}")
        order.ticket = ticket

        if not is_filled(ticket):
            if ticket.executed_qty > 0:
                # Partial fills still moved the account.
                await self.order_book.update_balances()
            state = OrderLifecycle.REJECTED if ticket.status in _REJECTED_STATUSES else OrderLifecycle.ERROR
            return self._fail(
                order,
                state,
                f"{decision.side.value} order {ticket.id} ended {ticket.status.value} "
                f"(executed {ticket.executed_qty}/{ticket.quantity})",
            )

        self.order_book.apply_fill(ticket)
        await self.order_book.update_balances()

        price = ticket.avg_price or decision.price
        report = FillReport(
            side=ticket.side,
            price=price,
            quantity=ticket.executed_qty,
            order_id=ticket.id,
            timestamp=ticket.transact_time or decision.timestamp,
        )
        order.advance(OrderLifecycle.FILLED)
        metrics.record_order_filled(ticket.side.value, time.monotonic() - order.received_at)
        self.event_logger.log_order(ticket.side.value, ticket.executed_qty, price, ticket.id, ticket.status.value)
        self.fills.try_publish(report)
        return order

    def _fail(self, order: PendingOrder, state: OrderLifecycle, reason: str) -> PendingOrder:
        order.advance(state, reason)
        metrics.record_order_failure(state.value.lower())
        self.event_logger.log_error(reason)
        return order

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.decisions.close()
        await cancel_task(self._task)
        self._task = None
