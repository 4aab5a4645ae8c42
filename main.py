import asyncio
import logging
import sys
from typing import Dict, Optional

from api.alerts import AlertWebhook
from api.metrics import start_metrics_server
from config import Settings, config
from config.settings import ConfigurationError
from ingest.backpack_auth import Credentials, RequestSigner
from ingest.backpack_rest import BackpackRESTClient
from ingest.channels import Broadcast, LatestValue
from ingest.messages import OrderEvent, PriceSnapshot
from ingest.rest_poller import OrderHistoryPoller
from ingest.websocket_client import MarketFeed
from monitoring.async_utils import run_until_first_exit
from monitoring.logging_utils import setup_logging
from orchestration.orchestrator import StrategyOrchestrator
from strategy.execution import OrderLifecycleController
from strategy.transports.backpack import BackpackTransport


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire the feed, the gateway and the strategy, then run until one side exits.

    The strategy task decides the outcome. A feed exit is logged and stops
    the process but is not by itself reported as a failure.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        credentials = Credentials.from_base64(settings.exchange.api_key, settings.exchange.api_secret)
        self.signer = RequestSigner(credentials, window_ms=settings.exchange.signing_window_ms)
        self.rest = BackpackRESTClient(
            self.signer,
            base_url=settings.exchange.base_url,
            timeout_s=settings.exchange.http_timeout_s,
        )
        self.transport = BackpackTransport(self.rest)

        self.prices: LatestValue[PriceSnapshot] = LatestValue()
        self.order_events: Broadcast[OrderEvent] = Broadcast(settings.execution.order_event_buffer)

        self.feed = MarketFeed(
            settings.symbol,
            self.signer,
            self.prices,
            self.order_events,
            ws_url=settings.exchange.ws_url,
            reconnect_attempts=settings.websocket.reconnect_attempts,
            reconnect_backoff=settings.websocket.reconnect_backoff,
        )
        self.poller: Optional[OrderHistoryPoller] = None
        if settings.poller.enabled:
            self.poller = OrderHistoryPoller(
                settings.symbol,
                self.transport,
                self.order_events,
                interval_s=settings.poller.interval_s,
                limit=settings.poller.limit,
            )

        price_reader = self.prices.reader()
        self.controller = OrderLifecycleController(settings, self.transport, price_reader, self.order_events)
        self.orchestrator = StrategyOrchestrator(settings, self.transport, self.controller, price_reader)
        self.alerts = AlertWebhook(settings.monitoring.alert_webhook)

    async def run(self) -> int:
        """Returns the process exit status."""
        start_metrics_server(self.settings.monitoring.prometheus_port)
        try:
            await self.orchestrator.initialize()
        except Exception as exc:
            await self.alerts.fatal_alert('startup', str(exc))
            await self.transport.close()
            return 1

        tasks: Dict[str, asyncio.Task] = {
            'feed': asyncio.create_task(self.feed.run(), name='market-feed'),
            'strategy': asyncio.create_task(self.orchestrator.run(), name='strategy'),
        }
        if self.poller is not None:
            tasks['poller'] = asyncio.create_task(self.poller.start(), name='order-history-poller')

        name, task = await run_until_first_exit(tasks, cleanup=self.stop)
        if task.cancelled():
            logger.warning("%s task was cancelled", name)
            return 0
        exc = task.exception()

        if name == 'strategy':
            if exc is None:
                logger.info("Strategy task completed successfully")
                return 0
            logger.error("Strategy task failed: %s", exc, exc_info=exc)
            await self.alerts.fatal_alert('strategy', str(exc))
            return 1

        if name == 'poller':
            reason = str(exc) if exc is not None else 'stopped'
            logger.error("Order history poller exited: %s", reason, exc_info=exc)
            await self.alerts.fatal_alert('poller', reason)
            return 1

        reason = str(exc) if exc is not None else 'stream ended'
        logger.error("Market feed exited: %s", reason)
        await self.alerts.feed_exit_alert(reason)
        return 0

    async def stop(self):
        await self.feed.stop()
        if self.poller is not None:
            await self.poller.stop()
        await self.transport.close()


async def main() -> int:
    try:
        settings = Settings.from_config(config)
    except ConfigurationError as exc:
        setup_logging()
        logger.critical("Configuration error: %s", exc)
        return 1
    setup_logging(settings.monitoring.log_level, settings.monitoring.log_format)
    try:
        system = TradingSystem(settings)
    except ConfigurationError as exc:
        logger.critical("Configuration error: %s", exc)
        return 1
    try:
        return await system.run()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()
        return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
