import asyncio
import json
import logging
import random
from typing import Any, Callable, Dict, List, Optional, Sequence

import websockets
from websockets.exceptions import WebSocketException

from api.metrics import metrics
from .backpack_auth import RequestSigner
from .backpack_rest import TransportError
from .channels import Broadcast, LatestValue
from .messages import (
    ORDER_UPDATE_STREAM,
    TICKER_STREAM_PREFIX,
    OrderEvent,
    PriceSnapshot,
    decode_book_ticker,
    decode_order_update,
    parse_frame,
)


logger = logging.getLogger(__name__)

DEFAULT_WS_URL = "wss://ws.backpack.exchange/"


class MarketFeed:
    """Streaming connection that feeds the price slot and the order-event broadcast.

    Owns the websocket exclusively. With ``reconnect_attempts=0`` the feed
    returns on stream end and raises ``TransportError`` on the first
    transport failure; a positive value reconnects and re-subscribes up to
    that many consecutive times.
    """

    def __init__(
        self,
        symbol: str,
        signer: RequestSigner,
        prices: LatestValue[PriceSnapshot],
        order_events: Broadcast[OrderEvent],
        ws_url: str = DEFAULT_WS_URL,
        reconnect_attempts: int = 0,
        reconnect_backoff: Sequence[float] = (1.0, 2.0, 5.0),
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.symbol = symbol
        self.signer = signer
        self.prices = prices
        self.order_events = order_events
        self.ws_url = ws_url
        self.reconnect_attempts = max(0, int(reconnect_attempts))
        self.reconnect_backoff = list(reconnect_backoff) or [1.0]
        self._connect = connect or websockets.connect
        self.running = False
        self._failures = 0

    @property
    def ticker_topic(self) -> str:
        return f"{TICKER_STREAM_PREFIX}.{self.symbol}"

    def subscription_frames(self) -> List[Dict[str, Any]]:
        return [
            {"method": "SUBSCRIBE", "params": [self.ticker_topic]},
            {
                "method": "SUBSCRIBE",
                "params": [ORDER_UPDATE_STREAM],
                # signed fresh for every (re)connect
                "signature": self.signer.ws_signature(),
            },
        ]

    async def _subscribe(self, ws) -> None:
        for frame in self.subscription_frames():
            await ws.send(json.dumps(frame))
            logger.info("Subscribed to %s", frame["params"][0])

    def handle_message(self, text: str) -> Optional[str]:
        """Route one inbound text frame. Returns ``"ticker"``, ``"order"`` or ``None``."""
        frame = parse_frame(text)
        if frame is None:
            metrics.record_feed_message("ignored")
            return None

        ticker = decode_book_ticker(frame)
        if ticker is not None:
            self.prices.publish(ticker)
            metrics.update_book(ticker.best_bid_price, ticker.best_ask_price)
            metrics.record_feed_message("ticker")
            return "ticker"

        update = decode_order_update(frame)
        if update is not None:
            receivers = self.order_events.publish(update)
            if receivers == 0:
                logger.debug("Order event %s/%s had no listener", update.order_id, update.status)
            metrics.record_feed_message("order")
            return "order"

        metrics.record_feed_message("ignored")
        return None

    async def _run_once(self) -> None:
        logger.info("Connecting to WebSocket at %s", self.ws_url)
        async with self._connect(self.ws_url) as ws:
            logger.info("WebSocket connected")
            await self._subscribe(ws)
            async for raw in ws:
                if not self.running:
                    break
                if not isinstance(raw, str):
                    continue
                if self.handle_message(raw) is not None:
                    self._failures = 0

    async def _backoff(self) -> None:
        index = min(self._failures - 1, len(self.reconnect_backoff) - 1)
        delay = self.reconnect_backoff[index] + random.uniform(0, 0.5)
        logger.info(
            "Reconnecting in %.1fs (attempt %s/%s)",
            delay,
            self._failures,
            self.reconnect_attempts,
        )
        await asyncio.sleep(delay)

    async def run(self) -> None:
        self.running = True
        try:
            while self.running:
                failure: Optional[BaseException] = None
                try:
                    await self._run_once()
                except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
                    failure = exc
                    logger.error("WebSocket error: %s", exc)
                else:
                    if not self.running:
                        return
                    logger.warning("WebSocket stream ended")

                self._failures += 1
                if self._failures > self.reconnect_attempts:
                    if failure is not None:
                        raise TransportError("market_feed", failure) from failure
                    return
                await self._backoff()
        finally:
            self.running = False

    async def stop(self) -> None:
        self.running = False
