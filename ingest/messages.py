"""Typed stream payloads and the decoders that recognise them."""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

TICKER_STREAM_PREFIX = "bookTicker"
ORDER_UPDATE_STREAM = "account.orderUpdate"


@dataclass(frozen=True)
class PriceSnapshot:
    symbol: str
    best_ask_price: str
    best_bid_price: str
    event_time: int
    best_ask_qty: Optional[str] = None
    best_bid_qty: Optional[str] = None


@dataclass(frozen=True)
class OrderEvent:
    event_type: str
    symbol: str
    order_id: str
    status: str
    fill_quantity: Optional[str] = None
    executed_quantity: Optional[str] = None


def parse_frame(text: str) -> Optional[Dict[str, Any]]:
    """Return ``{"stream": ..., "data": {...}}`` frames, ``None`` for anything else."""
    try:
        frame = json.loads(text)
    except (TypeError, ValueError):
        return None
    if not isinstance(frame, dict):
        return None
    if not isinstance(frame.get("stream"), str) or not isinstance(frame.get("data"), dict):
        return None
    return frame


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def decode_book_ticker(frame: Dict[str, Any]) -> Optional[PriceSnapshot]:
    if not frame["stream"].startswith(TICKER_STREAM_PREFIX):
        return None
    data = frame["data"]
    try:
        return PriceSnapshot(
            symbol=str(data["s"]),
            best_ask_price=str(data["a"]),
            best_bid_price=str(data["b"]),
            event_time=int(data["E"]),
            best_ask_qty=_opt_str(data.get("A")),
            best_bid_qty=_opt_str(data.get("B")),
        )
    except (KeyError, TypeError, ValueError):
        return None


def decode_order_update(frame: Dict[str, Any]) -> Optional[OrderEvent]:
    if not frame["stream"].startswith(ORDER_UPDATE_STREAM):
        return None
    data = frame["data"]
    try:
        return OrderEvent(
            event_type=str(data["e"]),
            symbol=str(data["s"]),
            order_id=str(data["i"]),
            status=str(data["X"]),
            fill_quantity=_opt_str(data.get("l")),
            executed_quantity=_opt_str(data.get("z")),
        )
    except (KeyError, TypeError):
        return None
