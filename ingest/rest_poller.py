import asyncio
import logging
from typing import Any


logger = logging.getLogger(__name__)


class BalancePoller:
    """Periodically refresh the order book's balances from the account endpoint."""

    def __init__(self, order_book: Any, interval_s: float = 300, max_fails: int = 3):
        self.order_book = order_book
        self.interval_s = float(interval_s)
        self.max_fails = max_fails
        self.fail_count = 0
        self.running = False

    async def poll_balances(self):
        try:
            while self.running:
                try:
                    await asyncio.sleep(self.interval_s)
                except asyncio.CancelledError:
                    break
                if not self.running:
                    break

                ok = await self.order_book.update_balances()
                if ok:
                    self.fail_count = 0
                    continue

                self.fail_count += 1
                logger.warning(
                    "Balance refresh failed (%s/%s)",
                    self.fail_count,
                    self.max_fails,
                )
                if self.fail_count >= self.max_fails:
                    logger.error(
                        "Balance refresh failed %s times in a row; sizing uses last known balances",
                        self.fail_count,
                    )
        finally:
            self.running = False

    async def start(self):
        self.running = True
        await self.poll_balances()

    async def stop(self):
        self.running = False
