"""
Order lifecycle for one trade phase.

Each attempt places a single post-only limit order at the touch, then races
the order-event broadcast against a fixed timeout. Events are drained before
the timer is honoured, so an event that is ready when the deadline passes
still counts. The resolution rules are:

* filled (in the placement response or by event): the phase is done;
* partially filled at timeout: cancel the rest; an opening phase accepts the
  partial fill, a closing phase re-reads positions and repeats until flat;
* cancelled or expired by the exchange: the opening phase retries unless
  something executed, the closing phase re-reads positions;
* nothing filled at timeout: cancel and retry with a fresh price.

The subscription is taken after the placement call returns. A fill event
published in between is lost, which is why an immediately ``Filled``
placement response short-circuits the wait.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional, Tuple

from api.metrics import metrics
from config.settings import Settings
from ingest.channels import Broadcast, ChannelClosed, LatestValueReader
from ingest.messages import OrderEvent, PriceSnapshot
from strategy.execution_types import (
    SIDE_ASK,
    SIDE_BID,
    STATUS_FILLED,
    STATUS_PARTIALLY_FILLED,
    TERMINAL_FAILURE_STATUSES,
    Order,
    Position,
    is_nonzero_qty,
)
from strategy.transports.backpack import BackpackAPIError, BackpackTransport, TransportError


logger = logging.getLogger(__name__)


class StateInconsistency(Exception):
    """Position state could not be confirmed where trading further would be unsafe."""


class Phase(Enum):
    OPEN = "open"
    CLOSE = "close"


class FillStatus(Enum):
    PENDING = "pending"
    PARTIALLY_FILLED = "partially_filled"
    FULLY_FILLED = "fully_filled"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PhaseProfile:
    side: str
    reduce_only: Optional[bool]
    label: str


PHASE_PROFILES = {
    # open orders omit reduceOnly; the exchange treats it as false
    Phase.OPEN: PhaseProfile(side=SIDE_ASK, reduce_only=None, label="SHORT"),
    Phase.CLOSE: PhaseProfile(side=SIDE_BID, reduce_only=True, label="CLOSE"),
}


@dataclass
class PhaseResult:
    phase: Phase
    attempts: int
    order_id: Optional[str] = None
    status: Optional[FillStatus] = None
    executed_quantity: Optional[str] = None
    # closing phase found no short position to close
    no_position: bool = False


class OrderLifecycleController:
    def __init__(
        self,
        settings: Settings,
        transport: BackpackTransport,
        prices: LatestValueReader[PriceSnapshot],
        order_events: Broadcast[OrderEvent],
    ):
        self.symbol = settings.symbol
        self.execution = settings.execution
        self.transport = transport
        self.prices = prices
        self.order_events = order_events

    async def open_short(self) -> PhaseResult:
        return await self.run_phase(Phase.OPEN)

    async def close_short(self) -> PhaseResult:
        return await self.run_phase(Phase.CLOSE)

    async def run_phase(self, phase: Phase) -> PhaseResult:
        started = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            result = await self._attempt(phase, attempt)
            if result is not None:
                metrics.record_phase_duration(phase.value, time.monotonic() - started)
                return result

    def _timeout(self, phase: Phase) -> float:
        if phase is Phase.OPEN:
            return self.execution.open_timeout_s
        return self.execution.close_timeout_s

    async def _attempt(self, phase: Phase, attempt: int) -> Optional[PhaseResult]:
        profile = PHASE_PROFILES[phase]
        snapshot = await self.prices.wait_for_change()
        raw_price = snapshot.best_ask_price if profile.side == SIDE_ASK else snapshot.best_bid_price

        if phase is Phase.OPEN:
            quantity = self.execution.quantity
        else:
            quantity = await self._close_quantity()
            if quantity is None:
                logger.info("No short position on %s; close phase is a no-op", self.symbol)
                metrics.record_attempt(phase.value, "no_position")
                return PhaseResult(phase=phase, attempts=attempt, no_position=True)

        price = self._format_price(raw_price, profile.side)
        order = await self._place(profile, quantity, price)

        if order.is_filled:
            logger.info("%s order %s filled immediately", profile.label, order.id)
            metrics.record_immediate_fill()
            metrics.record_attempt(phase.value, "filled")
            return PhaseResult(
                phase=phase,
                attempts=attempt,
                order_id=order.id,
                status=FillStatus.FULLY_FILLED,
                executed_quantity=order.executed_quantity or order.quantity,
            )

        timeout = self._timeout(phase)
        logger.info(
            "Waiting for %s order %s to fill (%.1fs timeout)",
            profile.label,
            order.id,
            timeout,
        )
        status, executed = await self._await_fill(order, timeout)
        metrics.record_attempt(phase.value, status.value)
        result = PhaseResult(
            phase=phase,
            attempts=attempt,
            order_id=order.id,
            status=status,
            executed_quantity=executed,
        )

        if status is FillStatus.FULLY_FILLED:
            logger.info("%s order %s fully filled", profile.label, order.id)
            return result

        if status is FillStatus.PENDING:
            logger.info("%s order %s still pending; cancelling and re-placing", profile.label, order.id)
            await self._cancel_best_effort(order.id)
            return None

        if status is FillStatus.PARTIALLY_FILLED:
            logger.info("%s order %s partially filled; cancelling remainder", profile.label, order.id)
            await self._cancel_best_effort(order.id)
            if phase is Phase.OPEN:
                return result
        else:
            logger.info("%s order %s ended as cancelled/expired", profile.label, order.id)
            if phase is Phase.OPEN:
                # a partially executed order that the exchange then cancelled
                # still opened a position
                if is_nonzero_qty(executed):
                    return result
                return None

        if await self._position_is_flat():
            logger.info("Position on %s is flat; close phase complete", self.symbol)
            return result
        logger.info("Short position on %s still open; re-placing close order", self.symbol)
        return None

    async def _place(self, profile: PhaseProfile, quantity: str, price: str) -> Order:
        logger.info("Placing %s order: %s %s @ %s", profile.label, profile.side, quantity, price)
        try:
            order = await self.transport.place_order(
                self.symbol,
                profile.side,
                quantity,
                price,
                post_only=True,
                reduce_only=profile.reduce_only,
            )
        except (BackpackAPIError, TransportError) as exc:
            metrics.record_order_rejected(profile.side)
            logger.error("%s order placement failed: %s", profile.label, exc)
            raise
        metrics.record_order_placed(profile.side)
        return order

    async def _await_fill(self, order: Order, timeout: float) -> Tuple[FillStatus, Optional[str]]:
        status = FillStatus.PENDING
        if order.status == STATUS_PARTIALLY_FILLED:
            status = FillStatus.PARTIALLY_FILLED
        executed = order.executed_quantity

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        with self.order_events.subscribe() as listener:
            while True:
                event = listener.try_recv()
                if event is None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        break
                    try:
                        event = await asyncio.wait_for(listener.recv(), remaining)
                    except asyncio.TimeoutError:
                        # an event that became ready together with the timer wins
                        event = listener.try_recv()
                        if event is None:
                            break
                    except ChannelClosed:
                        await asyncio.sleep(max(0.0, deadline - loop.time()))
                        break

                if event.order_id != order.id:
                    continue
                if event.executed_quantity is not None:
                    executed = event.executed_quantity
                if event.status == STATUS_FILLED:
                    status = FillStatus.FULLY_FILLED
                    break
                if event.status == STATUS_PARTIALLY_FILLED:
                    status = FillStatus.PARTIALLY_FILLED
                elif event.status in TERMINAL_FAILURE_STATUSES:
                    status = FillStatus.CANCELLED
                    break

            if listener.lagged:
                logger.warning("Order listener lagged; %s events dropped", listener.lagged)
                metrics.record_order_event_lag(listener.lagged)
        return status, executed

    async def _cancel_best_effort(self, order_id: str) -> None:
        try:
            await self.transport.cancel_order(self.symbol, order_id)
        except (BackpackAPIError, TransportError) as exc:
            metrics.record_cancel(False)
            logger.warning("Failed to cancel order %s: %s", order_id, exc)
            return
        metrics.record_cancel(True)

    def _open_short(self, positions: List[Position]) -> Optional[Position]:
        for position in positions:
            if position.symbol == self.symbol and position.side == SIDE_ASK and position.is_open:
                return position
        return None

    async def _close_quantity(self) -> Optional[str]:
        """Live short size to close, ``None`` when there is nothing to close."""
        try:
            positions = await self.transport.get_positions()
        except (BackpackAPIError, TransportError) as exc:
            metrics.record_position_query(False)
            if self.execution.fallback_on_sizing_query_failure:
                logger.warning(
                    "Position query before close failed: %s; falling back to configured quantity %s",
                    exc,
                    self.execution.quantity,
                )
                return self.execution.quantity
            logger.critical("Position query before close failed: %s", exc)
            raise StateInconsistency(f"Failed to size close order: {exc}") from exc
        metrics.record_position_query(True)
        short = self._open_short(positions)
        return short.quantity if short is not None else None

    async def _position_is_flat(self) -> bool:
        try:
            positions = await self.transport.get_positions()
        except (BackpackAPIError, TransportError) as exc:
            metrics.record_position_query(False)
            if self.execution.fatal_on_reconcile_query_failure:
                logger.critical("Failed to get positions during close reconciliation: %s", exc)
                raise StateInconsistency(f"Failed to get positions: {exc}") from exc
            logger.warning("Position query failed during reconciliation: %s; retrying close", exc)
            return False
        metrics.record_position_query(True)
        return self._open_short(positions) is None

    def _format_price(self, price: str, side: str) -> str:
        decimals = self.execution.price_decimals
        if decimals is None:
            return price
        try:
            value = Decimal(price)
        except InvalidOperation:
            return price
        # asks round up, bids round down
        rounding = ROUND_CEILING if side == SIDE_ASK else ROUND_FLOOR
        quantum = Decimal(1).scaleb(-decimals)
        return format(value.quantize(quantum, rounding=rounding), "f")
