from dataclasses import dataclass, field
from typing import Any, Dict, Optional


SIDE_ASK = "Ask"
SIDE_BID = "Bid"

STATUS_NEW = "New"
STATUS_PARTIALLY_FILLED = "PartiallyFilled"
STATUS_FILLED = "Filled"
STATUS_CANCELLED = "Cancelled"
STATUS_EXPIRED = "Expired"

TERMINAL_FAILURE_STATUSES = frozenset({STATUS_CANCELLED, STATUS_EXPIRED})

QTY_EPSILON = 1e-12


def is_nonzero_qty(quantity: Optional[str]) -> bool:
    """True when the quantity string parses to a magnitude above 1e-12.

    ``"0.000000"`` and unparsable text are treated as zero; sign is ignored.
    """
    if quantity is None:
        return False
    try:
        value = float(str(quantity).strip())
    except ValueError:
        return False
    if value != value:  # NaN
        return False
    return abs(value) > QTY_EPSILON


@dataclass
class Order:
    """Normalized view of an order acknowledgement or cancel response."""

    id: str
    symbol: str
    side: str
    quantity: str
    status: str
    price: Optional[str] = None
    executed_quantity: Optional[str] = None
    post_only: bool = False
    reduce_only: Optional[bool] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_filled(self) -> bool:
        return self.status == STATUS_FILLED


@dataclass
class Position:
    """Exchange-reported open position. ``side`` is ``Ask`` for a short."""

    symbol: str
    side: str
    quantity: str
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return is_nonzero_qty(self.quantity)
