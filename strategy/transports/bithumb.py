import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config import config
from ingest.bithumb_rest import BithumbRESTClient, GatewayAPIError, GatewayAuthError
from ingest.market_types import Candle, OrderBook, OrderBookLevel, Ticker


__all__ = [
    "BithumbGateway",
    "Balance",
    "OrderChance",
    "OrderInfo",
    "OrderResult",
    "GatewayAPIError",
    "GatewayAuthError",
]

logger = logging.getLogger(__name__)

ORDER_STATE_DONE = "done"
ORDER_STATE_CANCEL = "cancel"


@dataclass(frozen=True)
class OrderResult:
    success: bool
    order_id: str = ""
    message: Optional[str] = None


@dataclass(frozen=True)
class Balance:
    total_krw: float
    available_krw: float
    total_btc: float
    available_btc: float


@dataclass(frozen=True)
class OrderInfo:
    order_id: str
    side: str
    ord_type: str
    price: float
    volume: float
    state: str
    executed_volume: float
    paid_fee: float = 0.0
    trades: List[Dict[str, float]] = field(default_factory=list)
    created_at: Optional[str] = None

    def average_price(self) -> Optional[float]:
        """Volume-weighted fill price, or None when nothing executed."""
        if self.trades:
            qty = sum(t["volume"] for t in self.trades)
            if qty > 0:
                return sum(t["price"] * t["volume"] for t in self.trades) / qty
        # Market buys carry the KRW amount in ``price``
        if self.ord_type == "price" and self.executed_volume > 0 and self.price > 0:
            return self.price / self.executed_volume
        return None


@dataclass(frozen=True)
class OrderChance:
    market_state: str
    min_total: float
    max_total: Optional[float]
    available_krw: float

    @property
    def is_active(self) -> bool:
        return self.market_state == "active"


class BithumbGateway:
    """Typed adapter over the Bithumb v1 REST API for a single market."""

    def __init__(self, rest: Optional[BithumbRESTClient] = None, market: Optional[str] = None) -> None:
        self._rest = rest
        self.market = market or config.exchange.get("market", "KRW-BTC")
        self._lock = asyncio.Lock()

    def _client(self) -> BithumbRESTClient:
        if self._rest is None:
            self._rest = BithumbRESTClient()
        return self._rest

    @property
    def has_credentials(self) -> bool:
        return self._client().has_credentials

    # Public

    async def get_ticker(self) -> Optional[Ticker]:
        data = await self._client().get("/v1/ticker", params={"markets": self.market})
        item = self._first(data)
        if item is None:
            return None
        return Ticker(
            trade_price=self._as_float(item.get("trade_price")),
            opening_price=self._as_float(item.get("opening_price")),
            high_price=self._as_float(item.get("high_price")),
            low_price=self._as_float(item.get("low_price")),
            timestamp=int(item.get("timestamp") or 0),
        )

    async def get_orderbook(self) -> Optional[OrderBook]:
        data = await self._client().get("/v1/orderbook", params={"markets": self.market})
        item = self._first(data)
        if item is None:
            return None
        return self.parse_orderbook(item)

    async def get_candles(self, count: int = 200, unit: int = 5) -> List[Candle]:
        data = await self._client().get(
            f"/v1/candles/minutes/{unit}",
            params={"market": self.market, "count": count},
        )
        if isinstance(data, dict):
            data = data.get("data")
        if not isinstance(data, list):
            return []
        candles = [c for c in (self._parse_candle(item) for item in data) if c is not None]
        candles.sort(key=lambda c: c.timestamp)
        return candles

    async def get_virtual_asset_warning(self) -> bool:
        data = await self._client().get("/v1/market/virtual_asset_warning")
        items = data.get("data") if isinstance(data, dict) else data
        if not isinstance(items, list):
            return False
        for item in items:
            code = item.get("market") if isinstance(item, dict) else item
            if code == self.market:
                return True
        return False

    # Private

    async def get_balance(self) -> Balance:
        data = await self._client().get("/v1/accounts", signed=True)
        accounts = data.get("data") if isinstance(data, dict) else data
        totals = {"KRW": (0.0, 0.0), "BTC": (0.0, 0.0)}
        for acc in accounts or []:
            currency = acc.get("currency")
            if currency not in totals:
                continue
            balance = self._as_float(acc.get("balance"))
            locked = self._as_float(acc.get("locked"))
            totals[currency] = (balance + locked, balance)
        return Balance(
            total_krw=totals["KRW"][0],
            available_krw=totals["KRW"][1],
            total_btc=totals["BTC"][0],
            available_btc=totals["BTC"][1],
        )

    async def get_order_chance(self) -> Optional[OrderChance]:
        try:
            data = await self._client().get("/v1/orders/chance", params={"market": self.market}, signed=True)
        except GatewayAuthError:
            raise
        except (GatewayAPIError, asyncio.TimeoutError) as exc:
            logger.warning("Order chance lookup failed: %s", exc)
            return None
        if not isinstance(data, dict):
            return None
        market = data.get("market") or {}
        bid = market.get("bid") or {}
        bid_account = data.get("bid_account") or {}
        max_total = market.get("max_total")
        return OrderChance(
            market_state=str(market.get("state") or "active"),
            min_total=self._as_float(bid.get("min_total")),
            max_total=self._as_float(max_total) if max_total is not None else None,
            available_krw=self._as_float(bid_account.get("balance")),
        )

    async def market_buy(self, krw_amount: float) -> OrderResult:
        body = {
            "market": self.market,
            "side": "bid",
            "ord_type": "price",
            "price": str(int(math.floor(krw_amount))),
        }
        return await self._place(body)

    async def market_sell(self, qty: float) -> OrderResult:
        body = {
            "market": self.market,
            "side": "ask",
            "ord_type": "market",
            "volume": f"{qty:.8f}",
        }
        return await self._place(body)

    async def cancel_order(self, order_id: str) -> bool:
        try:
            await self._client().delete("/v1/order", params={"uuid": order_id})
        except GatewayAuthError:
            raise
        except (GatewayAPIError, asyncio.TimeoutError) as exc:
            logger.warning("Cancel %s failed: %s", order_id, exc)
            return False
        logger.info("Order %s cancelled", order_id)
        return True

    async def get_order(self, order_id: str) -> Optional[OrderInfo]:
        data = await self._client().get("/v1/order", params={"uuid": order_id}, signed=True)
        if not isinstance(data, dict) or not data:
            return None
        return self._parse_order(data, order_id)

    async def get_orders(self, state: Optional[str] = None, limit: int = 100) -> List[OrderInfo]:
        data = await self._client().get(
            "/v1/orders",
            params={"market": self.market, "state": state, "limit": limit},
            signed=True,
        )
        items = data.get("data") if isinstance(data, dict) else data
        if not isinstance(items, list):
            return []
        return [self._parse_order(item) for item in items if isinstance(item, dict)]

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    async def _place(self, body: Dict[str, Any]) -> OrderResult:
        try:
            data = await self._client().post("/v1/orders", body=body)
        except GatewayAuthError as exc:
            logger.error("Order rejected by auth: %s", exc)
            return OrderResult(success=False, message=str(exc))
        except (GatewayAPIError, asyncio.TimeoutError, OSError) as exc:
            logger.warning("Order %s %s failed: %s", body["side"], body["ord_type"], exc)
            return OrderResult(success=False, message=str(exc))

        if isinstance(data, dict) and data.get("uuid"):
            order_id = str(data["uuid"])
            logger.info("Order placed %s (%s %s)", order_id, body["side"], body["ord_type"])
            return OrderResult(success=True, order_id=order_id)

        message = "Empty response"
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict) and err.get("message"):
                message = str(err["message"])
            elif data.get("message"):
                message = str(data["message"])
        logger.warning("Order failed: %s", message)
        return OrderResult(success=False, message=message)

    # Parsing

    @staticmethod
    def parse_orderbook(item: Dict[str, Any]) -> OrderBook:
        bids: List[OrderBookLevel] = []
        asks: List[OrderBookLevel] = []
        for unit in item.get("orderbook_units") or []:
            bids.append(OrderBookLevel(float(unit.get("bid_price", 0)), float(unit.get("bid_size", 0))))
            asks.append(OrderBookLevel(float(unit.get("ask_price", 0)), float(unit.get("ask_size", 0))))
        return OrderBook(bids=bids, asks=asks, timestamp=int(item.get("timestamp") or 0))

    def _parse_candle(self, item: Any) -> Optional[Candle]:
        if not isinstance(item, dict):
            return None
        raw_ts = item.get("candle_date_time_utc")
        if not raw_ts:
            return None
        dt = datetime.fromisoformat(str(raw_ts)).replace(tzinfo=timezone.utc)
        return Candle(
            timestamp=int(dt.timestamp() * 1000),
            open=self._as_float(item.get("opening_price")),
            high=self._as_float(item.get("high_price")),
            low=self._as_float(item.get("low_price")),
            close=self._as_float(item.get("trade_price")),
            volume=self._as_float(item.get("candle_acc_trade_volume")),
        )

    def _parse_order(self, data: Dict[str, Any], fallback_id: str = "") -> OrderInfo:
        trades = []
        for trade in data.get("trades") or []:
            volume = self._as_float(trade.get("volume"))
            if volume > 0:
                trades.append({"price": self._as_float(trade.get("price")), "volume": volume})
        return OrderInfo(
            order_id=str(data.get("uuid") or fallback_id),
            side=str(data.get("side") or ""),
            ord_type=str(data.get("ord_type") or ""),
            price=self._as_float(data.get("price")),
            volume=self._as_float(data.get("volume")),
            state=str(data.get("state") or ""),
            executed_volume=self._as_float(data.get("executed_volume")),
            paid_fee=self._as_float(data.get("paid_fee")),
            trades=trades,
            created_at=data.get("created_at"),
        )

    @staticmethod
    def _first(data: Any) -> Optional[Dict[str, Any]]:
        if isinstance(data, dict):
            data = data.get("data", [data])
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0]
        return None

    @staticmethod
    def _as_float(value: Any) -> float:
        if value is None or value == "":
            return 0.0
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0
