import asyncio
import logging
from typing import Optional

from api.metrics import metrics
from config.settings import Settings
from ingest.channels import LatestValueReader
from ingest.messages import PriceSnapshot
from strategy.execution import OrderLifecycleController, PhaseResult
from strategy.transports.backpack import BackpackAPIError, BackpackTransport, TransportError


logger = logging.getLogger(__name__)


class StrategyOrchestrator:
    """Open a short, wait, close it with a reduce-only bid, wait, repeat."""

    def __init__(
        self,
        settings: Settings,
        transport: BackpackTransport,
        controller: OrderLifecycleController,
        prices: LatestValueReader[PriceSnapshot],
    ):
        self.settings = settings
        self.transport = transport
        self.controller = controller
        self.prices = prices
        self.phase_interval_s = settings.execution.phase_interval_s
        self.cycles = 0

    async def initialize(self) -> None:
        """Set account leverage. Any failure is fatal; the bot must not trade without it."""
        leverage = self.settings.exchange.leverage
        try:
            await self.transport.set_leverage(leverage)
        except (BackpackAPIError, TransportError) as exc:
            logger.critical("Failed to set leverage to %s: %s", leverage, exc)
            raise
        logger.info("Leverage limit set to %s", leverage)

    def _log_phase(self, result: PhaseResult) -> None:
        logger.info(
            "%s phase complete after %s attempt(s) (order=%s, status=%s, executed=%s)",
            result.phase.value.upper(),
            result.attempts,
            result.order_id,
            result.status.value if result.status else "none",
            result.executed_quantity,
        )

    async def run(self, max_cycles: Optional[int] = None) -> None:
        logger.info("Waiting for the first price update...")
        await self.prices.wait_for_change()
        logger.info("Got initial price; starting strategy loop")

        while max_cycles is None or self.cycles < max_cycles:
            logger.info("--- Begin SHORT cycle %s ---", self.cycles + 1)
            self._log_phase(await self.controller.open_short())

            logger.info("SHORT phase complete; sleeping %ss before close", self.phase_interval_s)
            await asyncio.sleep(self.phase_interval_s)

            logger.info("--- Begin CLOSE cycle %s ---", self.cycles + 1)
            self._log_phase(await self.controller.close_short())

            self.cycles += 1
            metrics.record_cycle()
            if max_cycles is not None and self.cycles >= max_cycles:
                break
            logger.info("CLOSE phase complete; sleeping %ss before next short", self.phase_interval_s)
            await asyncio.sleep(self.phase_interval_s)
