from typing import Optional

from ingest.market_types import Candle
from strategy.execution_types import Fill, Order, OrderSide, OrderType


class FillModel:
    """Touch-based order matching against a completed bar.

    MARKET fills at the bar open with adverse slippage, LIMIT fills when the
    bar trades through the limit, and STOP fills when the bar reaches the stop
    (at the open on a gap, clamped to the bar range).
    """

    def __init__(self, fee_rate: float = 0.0005, slippage_bps: float = 5):
        self.fee_rate = fee_rate
        self.slippage_bps = slippage_bps

    def try_fill(self, order: Order, candle: Candle) -> Optional[Fill]:
        if order.type is OrderType.MARKET:
            return self._fill_market(order, candle)
        if order.type is OrderType.LIMIT:
            return self._fill_limit(order, candle)
        if order.type is OrderType.STOP:
            return self._fill_stop(order, candle)
        raise ValueError(f"Unsupported order type: {order.type}")

    def _slippage(self, reference: float) -> float:
        return reference * (self.slippage_bps / 10000)

    def _fill_market(self, order: Order, candle: Candle) -> Fill:
        slippage = self._slippage(candle.open)
        if order.side is OrderSide.BUY:
            price = candle.open + slippage
        else:
            price = candle.open - slippage
        return self._create_fill(order, price, candle.timestamp)

    def _fill_limit(self, order: Order, candle: Candle) -> Optional[Fill]:
        if order.side is OrderSide.BUY:
            if candle.low <= order.price:
                return self._create_fill(order, min(order.price, candle.open), candle.timestamp)
        elif candle.high >= order.price:
            return self._create_fill(order, max(order.price, candle.open), candle.timestamp)
        return None

    def _fill_stop(self, order: Order, candle: Candle) -> Optional[Fill]:
        slippage = self._slippage(candle.open)
        if order.side is OrderSide.SELL:
            if candle.low > order.price:
                return None
            # Gap down through the stop fills at the open
            if candle.open <= order.price:
                price = candle.open - slippage
            else:
                price = order.price - slippage
            return self._create_fill(order, max(price, candle.low), candle.timestamp)

        if candle.high < order.price:
            return None
        if candle.open >= order.price:
            price = candle.open + slippage
        else:
            price = order.price + slippage
        return self._create_fill(order, min(price, candle.high), candle.timestamp)

    def _create_fill(self, order: Order, price: float, timestamp: int) -> Fill:
        if order.side is OrderSide.BUY:
            qty = order.qty / price
        else:
            qty = order.qty
        return Fill(
            order_id=order.id,
            side=order.side,
            price=price,
            qty=qty,
            fee=qty * price * self.fee_rate,
            timestamp=timestamp,
        )
