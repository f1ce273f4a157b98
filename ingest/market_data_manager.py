import asyncio
import logging
import math
import time
from typing import List, Optional

from backtest.report import build_trade_log
from config import config
from ingest.bithumb_rest import GatewayAPIError
from ingest.candle_aggregator import CandleAggregator
from ingest.market_types import Candle, OrderBook, Tick
from ingest.websocket_client import WS_CONNECTED, WS_RECONNECTING, WebSocketClient
from monitoring.async_utils import run_periodic, run_tasks_with_cleanup


logger = logging.getLogger(__name__)

MAX_BACKFILL_BARS = 200


def now_ms() -> int:
    return int(time.time() * 1000)


class MarketDataManager:
    """Route stream payloads into the aggregator, the store, the engine and the dashboard.

    Closed candles go through a queue so that exactly one candle is handled
    by the engine at a time, whether it came from the live stream, a
    wall-clock flush or a reconnect backfill.
    """

    def __init__(self, gateway, engine, store, context, risk_manager=None, audit=None,
                 metrics=None, ws_client: Optional[WebSocketClient] = None):
        self.gateway = gateway
        self.engine = engine
        self.store = store
        self.context = context
        self.risk_manager = risk_manager
        self.audit = audit
        self.metrics = metrics

        candles_cfg = config.candles
        self.bucket_ms = int(candles_cfg.get('bucket_seconds', 300)) * 1000
        self.history_bars = int(candles_cfg.get('history_bars', 200))
        self.warmup_bars = int(candles_cfg.get('warmup_bars', 60))
        self.flush_check_s = float(candles_cfg.get('flush_check_s', 10))
        self.reconcile_interval_s = float(candles_cfg.get('reconcile_interval_s', 1800))
        self.reconcile_tolerance = float(candles_cfg.get('reconcile_tolerance_krw', 1))

        self.ws_client = ws_client or WebSocketClient(metrics=metrics)
        self.aggregator = CandleAggregator(self._on_candle_closed, bucket_ms=self.bucket_ms)
        self.candle_queue: asyncio.Queue = asyncio.Queue()
        self.last_disconnect_ts: Optional[float] = None
        self.running = False

        self.ws_client.register_handler('tick', self.on_tick)
        self.ws_client.register_handler('orderbook', self.on_orderbook)
        self.ws_client.register_handler('state', self.on_ws_state)

    # Stream handlers

    async def on_tick(self, tick: Tick) -> None:
        if self.metrics is not None:
            self.metrics.record_tick()
            self.metrics.update_price(tick.price)
        self.context.set_last_price(tick.price)
        dropped = self.aggregator.dropped_count
        self.aggregator.feed(tick)
        if self.metrics is not None and self.aggregator.dropped_count > dropped:
            self.metrics.record_drop()

    async def on_orderbook(self, book: OrderBook) -> None:
        self.engine.on_order_book(book)
        if self.metrics is not None:
            self.metrics.record_orderbook_update(book.spread_bps())

    async def on_ws_state(self, state: str) -> None:
        self.context.set_ws_state(state)
        if self.audit is not None:
            self.audit.info('ws', 'STATE_CHANGE', state)

        if state == WS_RECONNECTING:
            if self.last_disconnect_ts is None:
                self.last_disconnect_ts = time.time()
            return

        if state == WS_CONNECTED:
            await self._refresh_orderbook()
            if self.last_disconnect_ts is not None:
                gap_s = time.time() - self.last_disconnect_ts
                self.last_disconnect_ts = None
                if gap_s * 1000 >= self.bucket_ms:
                    await self.backfill(gap_s)

    def _on_candle_closed(self, candle: Candle) -> None:
        logger.debug("Candle closed ts=%s o=%.0f h=%.0f l=%.0f c=%.0f v=%.4f",
                     candle.timestamp, candle.open, candle.high, candle.low, candle.close, candle.volume)
        self.candle_queue.put_nowait((candle, 'ws'))

    # Candle processing

    async def consume_candles(self) -> None:
        while True:
            candle, source = await self.candle_queue.get()
            try:
                await self.process_candle(candle, source)
            except Exception:
                logger.exception("Candle processing failed for %s", candle.timestamp)
            finally:
                self.candle_queue.task_done()

    async def process_candle(self, candle: Candle, source: str = 'ws') -> None:
        if source == 'ws':
            await self.store.upsert_candle(candle)
        self.context.add_candle(candle)
        if self.metrics is not None:
            self.metrics.record_candle(source)

        await self.engine.on_candle(candle)

        events = self.engine.get_event_log()
        self.context.set_events(events)
        self.context.set_trades(build_trade_log(events))
        self.context.set_equity(self.engine.equity)

    # REST jobs

    async def bootstrap(self) -> List[Candle]:
        """Load history, warm the engine up and seed the dashboard."""
        await self.update_virtual_asset_warning()
        candles = await self.gateway.get_candles(self.history_bars)
        if not candles:
            logger.warning("No history candles available for warmup")
            return []

        await self.store.upsert_many(candles)
        warmup = await self.store.get_latest(min(self.warmup_bars, len(candles)))
        self.engine.warmup(warmup)
        self.context.set_candles(await self.store.get_latest(self.history_bars))
        self.context.set_last_price(warmup[-1].close)
        logger.info("Engine warmup from %s REST candles", len(warmup))
        return candles

    async def update_virtual_asset_warning(self) -> None:
        if self.risk_manager is None:
            return
        try:
            active = await self.gateway.get_virtual_asset_warning()
        except (GatewayAPIError, asyncio.TimeoutError, OSError) as exc:
            logger.debug("Virtual asset warning fetch failed, assuming inactive: %s", exc)
            active = False
        self.risk_manager.set_virtual_asset_warning(active)
        if active:
            logger.warning("Virtual asset warning active, new entries blocked")

    async def reconcile(self) -> int:
        fixed = 0
        candles = await self.gateway.get_candles(self.history_bars)
        if candles:
            fixed = await self.store.reconcile(candles, self.reconcile_tolerance)
            if fixed:
                if self.audit is not None:
                    self.audit.info('reconcile', 'FIXED', f"{fixed} candles corrected")
                if self.metrics is not None:
                    self.metrics.record_reconciled(fixed)
        await self.update_virtual_asset_warning()
        return fixed

    async def backfill(self, gap_s: float) -> int:
        """Fetch candles missed during a disconnect and feed the new ones to the engine."""
        bars = min(math.ceil(gap_s * 1000 / self.bucket_ms) + 2, MAX_BACKFILL_BARS)
        logger.info("Backfilling %s candles after %.0fs stream gap", bars, gap_s)
        try:
            candles = await self.gateway.get_candles(bars)
        except (GatewayAPIError, asyncio.TimeoutError, OSError) as exc:
            logger.error("Candle backfill failed: %s", exc)
            return 0
        if not candles:
            return 0

        fixed = await self.store.reconcile(candles, self.reconcile_tolerance)
        if fixed and self.audit is not None:
            self.audit.info('backfill', 'FIXED', f"{fixed} candles backfilled after reconnect")

        last_ts = self.aggregator.last_closed_timestamp or 0
        missed = [c for c in candles if c.timestamp > last_ts]
        # The newest REST bar is usually still forming; the stream will close it
        open_bucket = self.aggregator.bucket_start(now_ms())
        missed = [c for c in missed if c.timestamp < open_bucket]
        for candle in missed:
            self.candle_queue.put_nowait((candle, 'backfill'))
        logger.info("Backfill complete: %s fetched, %s fed", len(candles), len(missed))
        return len(missed)

    async def _refresh_orderbook(self) -> None:
        try:
            book = await self.gateway.get_orderbook()
        except (GatewayAPIError, asyncio.TimeoutError, OSError) as exc:
            logger.debug("Orderbook snapshot failed: %s", exc)
            return
        if book is not None:
            self.engine.on_order_book(book)

    async def _flush_expired(self) -> None:
        self.aggregator.flush_if_expired(now_ms())

    # Lifecycle

    async def start(self) -> None:
        self.running = True
        tasks = [
            asyncio.create_task(self.ws_client.run()),
            asyncio.create_task(self.consume_candles()),
            asyncio.create_task(run_periodic(self.flush_check_s, self._flush_expired, 'candle_flush')),
            asyncio.create_task(run_periodic(self.reconcile_interval_s, self.reconcile, 'candle_reconcile')),
        ]
        await run_tasks_with_cleanup(tasks)

    async def stop(self) -> None:
        self.running = False
        await self.ws_client.stop()
        candle = self.aggregator.flush()
        if candle is not None:
            await self.store.upsert_candle(candle)
            logger.info("Flushed open candle %s on shutdown", candle.timestamp)
