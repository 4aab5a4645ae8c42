import logging
from typing import Any, Dict, List, Optional

from ingest.backpack_rest import BackpackAPIError, BackpackRESTClient, TransportError

from strategy.execution_types import SIDE_ASK, SIDE_BID, Order, Position


__all__ = ["BackpackTransport", "BackpackAPIError", "TransportError"]

logger = logging.getLogger(__name__)

ORDER_PATH = "/api/v1/order"
POSITIONS_PATH = "/api/v1/positions"
ACCOUNT_PATH = "/api/v1/account"
ORDER_HISTORY_PATH = "/wapi/v1/history/orders"


class BackpackTransport:
    """Typed order, position and account calls. Failures surface to the caller unretried."""

    def __init__(self, rest: BackpackRESTClient) -> None:
        self._rest = rest

    async def place_order(
        self,
        symbol: str,
        side: str,
        quantity: str,
        price: str,
        post_only: bool = True,
        reduce_only: Optional[bool] = None,
    ) -> Order:
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side,
            "orderType": "Limit",
            "quantity": quantity,
            "price": price,
            "postOnly": post_only,
        }
        if reduce_only is not None:
            params["reduceOnly"] = reduce_only
        data = await self._rest.post(ORDER_PATH, "orderExecute", params=params, operation="place_order")
        order = self._parse_order(data)
        if order is None:
            raise BackpackAPIError("place_order", 200, str(data), msg="unrecognised order response")
        return order

    async def cancel_order(self, symbol: str, order_id: str) -> Optional[Order]:
        params = {"symbol": symbol, "orderId": order_id}
        data = await self._rest.delete(ORDER_PATH, "orderCancel", params=params, operation="cancel_order")
        return self._parse_order(data)

    async def get_positions(self) -> List[Position]:
        data = await self._rest.get(POSITIONS_PATH, "positionQueryAll", operation="get_positions")
        if not isinstance(data, list):
            raise BackpackAPIError("get_positions", 200, str(data), msg="expected a list of positions")
        positions: List[Position] = []
        for item in data:
            position = self._parse_position(item)
            if position is not None:
                positions.append(position)
        return positions

    async def set_leverage(self, leverage: str) -> None:
        await self._rest.patch(
            ACCOUNT_PATH,
            "accountUpdate",
            params={"leverageLimit": str(leverage)},
            operation="set_leverage",
        )

    async def get_order_history(self, symbol: str, limit: int = 20) -> List[Order]:
        data = await self._rest.get(
            ORDER_HISTORY_PATH,
            "orderHistoryQueryAll",
            params={"symbol": symbol, "limit": int(limit)},
            operation="get_order_history",
        )
        if not isinstance(data, list):
            return []
        orders: List[Order] = []
        for item in data:
            order = self._parse_order(item)
            if order is not None:
                orders.append(order)
        return orders

    async def close(self) -> None:
        await self._rest.close()

    def _parse_order(self, payload: Any) -> Optional[Order]:
        if not isinstance(payload, dict) or payload.get("id") is None:
            return None
        return Order(
            id=str(payload["id"]),
            symbol=str(payload.get("symbol", "")),
            side=str(payload.get("side", "")),
            quantity=self._as_str(payload.get("quantity")) or "0",
            status=str(payload.get("status", "")),
            price=self._as_str(payload.get("price")),
            executed_quantity=self._as_str(payload.get("executedQuantity")),
            post_only=bool(payload.get("postOnly", False)),
            reduce_only=payload.get("reduceOnly"),
            raw=payload,
        )

    def _parse_position(self, payload: Any) -> Optional[Position]:
        if not isinstance(payload, dict) or not payload.get("symbol"):
            return None
        side = payload.get("side")
        quantity = self._as_str(payload.get("quantity"))
        if side is None or quantity is None:
            # Futures positions report a signed net quantity instead
            net = self._as_str(payload.get("netQuantity"))
            if net is None:
                return None
            net = net.strip()
            side = SIDE_ASK if net.startswith("-") else SIDE_BID
            quantity = net.lstrip("-+")
        return Position(symbol=str(payload["symbol"]), side=str(side), quantity=quantity, raw=payload)

    @staticmethod
    def _as_str(value: Any) -> Optional[str]:
        if value is None:
            return None
        return str(value)
