import asyncio
import logging
from typing import Any, Optional

from strategy.execution_types import OrderStatus, OrderTicket
from strategy.simulators.paper import PaperExchange
from strategy.trade_types import TradeDecision
from strategy.transports.binance import BinanceAPIError, BinanceTransport


logger = logging.getLogger(__name__)


class ExecutionManager:
    """Route market orders to the live spot transport or the paper exchange.

    ``execute`` returns the last observed ticket. Live orders that are still
    NEW or PARTIALLY_FILLED are polled until they reach a terminal status or
    ``order_timeout_s`` elapses; submission failures propagate to the caller.
    """

    def __init__(
        self,
        transport: BinanceTransport,
        paper: Optional[PaperExchange] = None,
        simulation: bool = True,
        validate_simulated: bool = False,
        order_timeout_s: float = 30.0,
        poll_interval_s: float = 1.0,
    ):
        if simulation and paper is None:
            raise ValueError("simulation mode needs a paper exchange")
        self.transport = transport
        self.paper = paper
        self.simulation = simulation
        self.validate_simulated = validate_simulated
        self.order_timeout_s = float(order_timeout_s)
        self.poll_interval_s = float(poll_interval_s)

    @classmethod
    def from_config(cls, transport: BinanceTransport, paper: Optional[PaperExchange],
                    execution_cfg: Any) -> 'ExecutionManager':
        return cls(
            transport,
            paper,
            simulation=bool(execution_cfg.get('simulation', True)),
            validate_simulated=bool(execution_cfg.get('validate_simulated_orders', False)),
            order_timeout_s=float(execution_cfg.get('order_timeout_s', 30)),
            poll_interval_s=float(execution_cfg.get('order_poll_interval_s', 1.0)),
        )

    async def execute(self, decision: TradeDecision, qty: float) -> OrderTicket:
        if self.simulation:
            return await self._execute_paper(decision, qty)
        return await self._execute_live(decision, qty)

    async def _execute_paper(self, decision: TradeDecision, qty: float) -> OrderTicket:
        if self.validate_simulated and self.transport.has_credentials:
            try:
                await self.transport.test_order(decision.symbol, decision.side, qty)
            except Exception as exc:
                self._log_transport_error("test order", exc)
                raise
        return await self.paper.place_market_order(decision.symbol, decision.side, qty, decision.price)

    async def _execute_live(self, decision: TradeDecision, qty: float) -> OrderTicket:
        try:
            ticket = await self.transport.place_market_order(decision.symbol, decision.side, qty)
        except Exception as exc:
            self._log_transport_error("market order", exc)
            raise
        if ticket is None:
            raise RuntimeError("empty order acknowledgement")
        return await self._await_terminal(ticket)

    async def _await_terminal(self, ticket: OrderTicket) -> OrderTicket:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.order_timeout_s
        while not ticket.status.is_terminal:
            if loop.time() >= deadline:
                logger.warning(
                    "Order %s still %s after %.0fs; cancelling",
                    ticket.id,
                    ticket.status.value,
                    self.order_timeout_s,
                )
                await self._cancel(ticket)
                # A fill can land between the last poll and the cancel.
                try:
                    latest = await self.transport.fetch_order(ticket.symbol, ticket.order_id)
                except Exception as exc:
                    self._log_transport_error(f"order status {ticket.id}", exc)
                    latest = None
                if latest is not None:
                    ticket = latest
                break
            await asyncio.sleep(self.poll_interval_s)
            try:
                latest = await self.transport.fetch_order(ticket.symbol, ticket.order_id)
            except Exception as exc:
                self._log_transport_error(f"order status {ticket.id}", exc)
                continue
            if latest is not None:
                ticket = latest
        return ticket

    async def _cancel(self, ticket: OrderTicket) -> None:
        if ticket.order_id is None:
            return
        try:
            await self.transport.cancel_order(ticket.symbol, ticket.order_id)
        except Exception as exc:
            self._log_transport_error(f"cancel order {ticket.id}", exc)

    async def close(self):
        await self.transport.close()

    def _log_transport_error(self, action: str, error: Exception) -> None:
        if isinstance(error, BinanceAPIError):
            logger.error(
                "Binance %s failed (code=%s, msg=%s)",
                action,
                error.code,
                error.msg,
            )
        else:
            logger.error("%s failed: %s", action, error)


def is_filled(ticket: Optional[OrderTicket]) -> bool:
    return ticket is not None and ticket.status is OrderStatus.FILLED
