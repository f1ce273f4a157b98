import errno
import logging
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None

TRADING_STATES = ('IDLE', 'ENTRY_PENDING', 'IN_POSITION', 'EXIT_PENDING', 'COOLDOWN', 'HALTED')


def _get_port_scan_limit() -> int:
    try:
        return int(config.monitoring.get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.ticks_processed = Counter('ticks_processed_total', 'Total trade ticks aggregated')
        self.ticks_dropped = Counter('ticks_dropped_total', 'Total ticks dropped as stale')
        self.candles_closed = Counter('candles_closed_total', 'Total candles closed', ['source'])
        self.orderbook_updates = Counter('orderbook_updates_total', 'Total orderbook updates')

        self.current_price = Gauge('current_price', 'Last traded price')
        self.spread_bps = Gauge('spread_bps', 'Top-of-book spread in basis points')
        self.trading_state = Gauge('trading_state', 'Current trading state (1 = active)', ['state'])

        self.orders_placed = Counter('orders_placed_total', 'Total orders placed', ['side'])
        self.orders_filled = Counter('orders_filled_total', 'Total orders filled', ['side'])
        self.orders_failed = Counter('orders_failed_total', 'Total failed or unfilled orders', ['side'])
        self.order_fill_latency = Histogram(
            'order_fill_latency_seconds',
            'Latency from order placement to confirmed fill',
            buckets=(0.25, 0.5, 1, 2, 5, 10, 30, 60),
        )
        self.entries_rejected = Counter('entries_rejected_total', 'Entry signals rejected before ordering', ['reason'])

        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')
        self.equity = Gauge('account_equity', 'Current account equity')
        self.position_qty = Gauge('position_qty', 'Open position quantity')

        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects')
        self.kill_switch_triggers = Counter('kill_switch_triggers_total', 'Total kill switch triggers', ['reason'])
        self.candles_reconciled = Counter('candles_reconciled_total', 'Candles overwritten by exchange history')

    def record_tick(self):
        self.ticks_processed.inc()

    def record_drop(self):
        self.ticks_dropped.inc()

    def record_candle(self, source: str = 'ws'):
        self.candles_closed.labels(source=source).inc()

    def record_orderbook_update(self, spread_bps: Optional[float] = None):
        self.orderbook_updates.inc()
        if spread_bps is not None:
            self.spread_bps.set(spread_bps)

    def update_price(self, price: float):
        self.current_price.set(price)

    def update_state(self, state: str):
        for name in TRADING_STATES:
            self.trading_state.labels(state=name).set(1 if name == state else 0)

    def record_order_placed(self, side: str):
        self.orders_placed.labels(side=side).inc()

    def record_order_filled(self, side: str, latency_seconds: Optional[float] = None):
        self.orders_filled.labels(side=side).inc()
        if latency_seconds is not None:
            self.order_fill_latency.observe(latency_seconds)

    def record_order_failed(self, side: str):
        self.orders_failed.labels(side=side).inc()

    def record_entry_rejected(self, reason: str):
        # Reasons carry numbers; keep the label set small
        self.entries_rejected.labels(reason=reason.split(':')[0]).inc()

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def update_equity(self, equity: float):
        self.equity.set(equity)

    def update_position(self, qty: float):
        self.position_qty.set(qty)

    def record_reconnect(self):
        self.reconnect_count.inc()

    def record_kill_switch(self, reason: str):
        self.kill_switch_triggers.labels(reason=reason.split(':')[0]).inc()

    def record_reconciled(self, count: int):
        if count:
            self.candles_reconciled.inc(count)


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
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
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
