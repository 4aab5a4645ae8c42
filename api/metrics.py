import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _as_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class MetricsCollector:
    def __init__(self):
        self.orders_placed = Counter('orders_placed_total', 'Total orders placed', ['side'])
        self.orders_rejected = Counter('orders_rejected_total', 'Order placements rejected or failed', ['side'])
        self.orders_filled_immediately = Counter(
            'orders_filled_immediately_total',
            'Orders reported Filled in the placement response',
        )
        self.orders_cancelled = Counter('orders_cancelled_total', 'Cancel requests by result', ['result'])
        self.attempt_outcomes = Counter(
            'order_attempt_outcomes_total',
            'Lifecycle attempt outcomes',
            ['phase', 'outcome'],
        )
        self.phase_duration = Histogram(
            'phase_duration_seconds',
            'Wall time from phase start to phase completion',
            ['phase'],
            buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800),
        )
        self.position_queries = Counter('position_queries_total', 'Position queries by result', ['result'])

        self.feed_messages = Counter('feed_messages_total', 'Inbound stream frames by classification', ['kind'])
        self.order_event_lag = Counter('order_event_lag_total', 'Order events dropped by a lagging subscriber')
        self.best_bid = Gauge('best_bid_price', 'Latest best bid')
        self.best_ask = Gauge('best_ask_price', 'Latest best ask')
        self.cycles_completed = Counter('cycles_completed_total', 'Completed open/close cycles')

    def record_order_placed(self, side: str):
        self.orders_placed.labels(side=side).inc()

    def record_order_rejected(self, side: str):
        self.orders_rejected.labels(side=side).inc()

    def record_immediate_fill(self):
        self.orders_filled_immediately.inc()

    def record_cancel(self, ok: bool):
        self.orders_cancelled.labels(result='ok' if ok else 'failed').inc()

    def record_attempt(self, phase: str, outcome: str):
        self.attempt_outcomes.labels(phase=phase, outcome=outcome).inc()

    def record_phase_duration(self, phase: str, seconds: float):
        self.phase_duration.labels(phase=phase).observe(max(0.0, seconds))

    def record_position_query(self, ok: bool):
        self.position_queries.labels(result='ok' if ok else 'failed').inc()

    def record_feed_message(self, kind: str):
        self.feed_messages.labels(kind=kind).inc()

    def record_order_event_lag(self, dropped: int):
        if dropped > 0:
            self.order_event_lag.inc(dropped)

    def update_book(self, bid, ask):
        bid_value = _as_float(bid)
        ask_value = _as_float(ask)
        if bid_value is not None:
            self.best_bid.set(bid_value)
        if ask_value is not None:
            self.best_ask.set(ask_value)

    def record_cycle(self):
        self.cycles_completed.inc()


def start_metrics_server(port: Optional[int], port_scan_limit: int = 0) -> Optional[int]:
    """Start the Prometheus exporter once. ``None`` disables it."""
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if port is None:
        return None
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
    last_error: Optional[OSError] = None
    for offset in range(max(0, port_scan_limit) + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error
    return None


metrics = MetricsCollector()
