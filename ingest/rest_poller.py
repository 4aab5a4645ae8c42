import asyncio
import logging
from typing import Dict, Optional, Tuple

from ingest.backpack_rest import BackpackAPIError, TransportError
from ingest.channels import Broadcast
from ingest.messages import OrderEvent


logger = logging.getLogger(__name__)


class OrderHistoryPoller:
    """Fill confirmation over REST: republishes order-history changes as ``OrderEvent``s.

    Polls ``/wapi/v1/history/orders`` and publishes an event each time an
    order's (status, executed quantity) pair differs from the last poll. Only
    events observed after the first poll are published; the first poll seeds
    the baseline.
    """

    def __init__(
        self,
        symbol: str,
        transport,
        order_events: Broadcast[OrderEvent],
        interval_s: float = 1.0,
        limit: int = 20,
    ):
        self.symbol = symbol
        self.transport = transport
        self.order_events = order_events
        self.interval_s = interval_s
        self.limit = limit
        self.running = False
        self.fail_count = 0
        self._seen: Dict[str, Tuple[str, Optional[str]]] = {}
        self._seeded = False

    async def poll_once(self) -> int:
        """Fetch history once; returns the number of events published."""
        orders = await self.transport.get_order_history(self.symbol, self.limit)
        published = 0
        current: Dict[str, Tuple[str, Optional[str]]] = {}
        for order in orders:
            state = (order.status, order.executed_quantity)
            previous = self._seen.get(order.id)
            current[order.id] = state
            if not self._seeded or previous == state:
                continue
            self.order_events.publish(
                OrderEvent(
                    event_type="orderHistory",
                    symbol=order.symbol or self.symbol,
                    order_id=order.id,
                    status=order.status,
                    executed_quantity=order.executed_quantity,
                )
            )
            published += 1
        # orders that left the history window do not come back
        self._seen = current
        self._seeded = True
        return published

    async def start(self):
        self.running = True
        try:
            while self.running:
                try:
                    await self.poll_once()
                    self.fail_count = 0
                except asyncio.CancelledError:
                    break
                except (BackpackAPIError, TransportError) as e:
                    self.fail_count += 1
                    logger.warning(
                        "Order history poll failed (%s consecutive): %s",
                        self.fail_count,
                        e,
                    )

                try:
                    await asyncio.sleep(self.interval_s)
                except asyncio.CancelledError:
                    break
        finally:
            self.running = False

    async def stop(self):
        self.running = False
