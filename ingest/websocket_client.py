import asyncio
import json
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from config import config
from ingest.market_types import OrderBook, OrderBookLevel, Tick


logger = logging.getLogger(__name__)

WS_CONNECTING = 'CONNECTING'
WS_CONNECTED = 'CONNECTED'
WS_RECONNECTING = 'RECONNECTING'
WS_CLOSED = 'CLOSED'


class WebSocketClient:
    """Bithumb v1 public stream client for trades and order book updates.

    Registered handlers are awaited in message order: ``tick`` receives a
    ``Tick``, ``orderbook`` an ``OrderBook`` and ``state`` the connection
    state name on every change.
    """

    def __init__(self, url: Optional[str] = None, market: Optional[str] = None, metrics=None):
        self.url = url or config.exchange.get('ws_url', 'wss://ws-api.bithumb.com/websocket/v1')
        self.market = market or config.exchange.get('market', 'KRW-BTC')
        self.base_delay_s = float(config.exchange.get('ws_reconnect_base_s', 1.0))
        self.max_delay_s = float(config.exchange.get('ws_reconnect_max_s', 60.0))
        self.ping_interval = float(config.exchange.get('ws_ping_interval_s', 30.0))
        self.metrics = metrics

        self.handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {}
        self.running = False
        self.state = WS_CLOSED
        self.reconnect_attempts = 0
        self.gap_start_ts: Optional[float] = None
        self._ws = None

    def register_handler(self, stream_type: str, handler: Callable[[Any], Awaitable[None]]):
        self.handlers[stream_type] = handler

    async def _set_state(self, state: str) -> None:
        if state == self.state:
            return
        self.state = state
        logger.info("WebSocket state -> %s", state)
        if 'state' in self.handlers:
            await self.handlers['state'](state)

    def subscription(self) -> list:
        ticket = f"btc-bot-{int(time.time() * 1000)}"
        return [
            {'ticket': ticket},
            {'type': 'trade', 'codes': [self.market], 'isOnlyRealtime': True},
            {'type': 'orderbook', 'codes': [self.market], 'isOnlyRealtime': True},
        ]

    def reconnect_delay(self, attempt: int) -> float:
        return min(self.base_delay_s * (2 ** attempt), self.max_delay_s)

    async def _handle_reconnect(self) -> None:
        await self._set_state(WS_RECONNECTING)
        if self.gap_start_ts is None:
            self.gap_start_ts = time.time()
        if self.metrics is not None:
            self.metrics.record_reconnect()
        delay = self.reconnect_delay(self.reconnect_attempts) + random.uniform(0, 0.5)
        self.reconnect_attempts += 1
        logger.info("Reconnecting in %.1fs (attempt %s)", delay, self.reconnect_attempts)
        await asyncio.sleep(delay)

    async def run(self):
        self.running = True
        while self.running:
            try:
                await self._set_state(WS_CONNECTING)
                async with websockets.connect(self.url, ping_interval=self.ping_interval) as ws:
                    self._ws = ws
                    await ws.send(json.dumps(self.subscription()))
                    logger.info("Subscribed to trade/orderbook for %s", self.market)
                    self.reconnect_attempts = 0
                    if self.gap_start_ts is not None:
                        logger.info("Stream reconnected after %.1fs gap", time.time() - self.gap_start_ts)
                        self.gap_start_ts = None
                    await self._set_state(WS_CONNECTED)

                    async for raw in ws:
                        await self.handle_message(raw)
                        if not self.running:
                            break
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Stream error: %s", e)
            finally:
                self._ws = None

            if self.running:
                await self._handle_reconnect()

        await self._set_state(WS_CLOSED)

    async def handle_message(self, raw) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.error("Failed to parse stream message: %s", exc)
            return
        if not isinstance(msg, dict) or 'status' in msg:
            return

        kind = msg.get('type')
        if kind == 'trade':
            tick = self.parse_trade(msg, self.market)
            if tick is not None and 'tick' in self.handlers:
                await self.handlers['tick'](tick)
        elif kind == 'orderbook':
            book = self.parse_orderbook(msg)
            if book is not None and 'orderbook' in self.handlers:
                await self.handlers['orderbook'](book)

    @staticmethod
    def parse_trade(msg: Dict[str, Any], default_market: str = 'KRW-BTC') -> Optional[Tick]:
        price = float(msg.get('trade_price') or 0)
        volume = float(msg.get('trade_volume') or 0)
        if price <= 0 or volume <= 0:
            return None
        return Tick(
            symbol=msg.get('code') or default_market,
            price=price,
            volume=volume,
            timestamp=int(msg.get('trade_timestamp') or time.time() * 1000),
            side='BUY' if msg.get('ask_bid') == 'BID' else 'SELL',
        )

    @staticmethod
    def parse_orderbook(msg: Dict[str, Any]) -> Optional[OrderBook]:
        units = msg.get('orderbook_units') or []
        if not units:
            return None
        bids = []
        asks = []
        for unit in units:
            if unit.get('bid_price') is not None and unit.get('bid_size') is not None:
                bids.append(OrderBookLevel(float(unit['bid_price']), float(unit['bid_size'])))
            if unit.get('ask_price') is not None and unit.get('ask_size') is not None:
                asks.append(OrderBookLevel(float(unit['ask_price']), float(unit['ask_size'])))
        bids.sort(key=lambda level: level.price, reverse=True)
        asks.sort(key=lambda level: level.price)
        return OrderBook(bids=bids, asks=asks, timestamp=int(msg.get('timestamp') or time.time() * 1000))

    async def stop(self):
        self.running = False
        if self._ws is not None:
            await self._ws.close()
