#!/usr/bin/env python
"""
Unit tests for indicators, candle aggregation, the event bus and fill simulation
"""
import sys
sys.path.insert(0, '.')

import pytest

from analytics.indicators import ATR, EMA, DonchianChannel
from ingest.candle_aggregator import CandleAggregator
from ingest.market_types import Candle, OrderBook, OrderBookLevel, Tick
from orchestration.event_bus import EventBus
from strategy.base import SignalAction, StrategySignal
from strategy.events import CandleEvent, EventType, SignalEvent
from strategy.execution_types import Fill, Order, OrderSide, OrderType
from strategy.simulators.fill_model import FillModel

BUCKET_MS = 5 * 60 * 1000


def _candle(ts, o, h, l, c, v=1.0):
    return Candle(ts, o, h, l, c, v)


def test_atr_seed_and_wilder_smoothing():
    print("Testing ATR...")
    atr = ATR(3)
    atr.update(_candle(0, 110, 120, 100, 110))
    atr.update(_candle(1, 110, 120, 100, 110))
    assert not atr.is_ready
    atr.update(_candle(2, 110, 120, 100, 110))
    assert atr.is_ready
    assert atr.value == pytest.approx(20.0)

    atr.update(_candle(3, 110, 115, 105, 110))
    assert atr.value == pytest.approx(50 / 3)
    print(f"✓ ATR: {atr.value:.2f}")


def test_atr_uses_previous_close_for_gaps():
    atr = ATR(1)
    atr.update(_candle(0, 100, 100, 100, 100))
    # Gap up: high - prev close dominates the bar range
    atr.update(_candle(1, 130, 135, 125, 130))
    assert atr.value == pytest.approx(35.0)


def test_atr_rejects_bad_period():
    with pytest.raises(ValueError):
        ATR(0)


def test_donchian_channel_window():
    dc = DonchianChannel(3)
    dc.update(_candle(0, 10, 12, 8, 10))
    dc.update(_candle(1, 10, 15, 9, 10))
    assert not dc.is_ready
    upper, lower, middle = dc.update(_candle(2, 10, 11, 7, 10))
    assert (upper, lower, middle) == (15, 7, 11)

    upper, lower, _ = dc.update(_candle(3, 10, 10, 9, 10))
    assert upper == 15 and lower == 7
    upper, lower, _ = dc.update(_candle(4, 10, 10, 9, 10))
    assert upper == 11 and lower == 7


def test_ema_seeds_with_mean():
    ema = EMA(3)
    for value in (1, 2, 3):
        ema.update(value)
    assert ema.is_ready
    assert ema.value == pytest.approx(2.0)
    ema.update(6)
    assert ema.value == pytest.approx(4.0)


def test_aggregator_builds_bar_and_drops_stale_ticks():
    print("Testing CandleAggregator...")
    closed = []
    agg = CandleAggregator(closed.append, bucket_ms=BUCKET_MS)

    base = 1_700_000_100_000
    start = agg.bucket_start(base)
    for i, (price, volume) in enumerate(zip([100, 120, 80, 110], [1, 2, 1, 3])):
        agg.feed(Tick('KRW-BTC', price, volume, start + 1000 * (i + 1)))
    assert closed == []

    agg.feed(Tick('KRW-BTC', 111, 1, start + BUCKET_MS + 10))
    assert len(closed) == 1
    bar = closed[0]
    assert bar.timestamp == start
    assert (bar.open, bar.high, bar.low, bar.close, bar.volume) == (100, 120, 80, 110, 7)
    assert bar.is_consistent()

    agg.feed(Tick('KRW-BTC', 90, 5, start + 500))
    assert agg.dropped_count == 1
    assert len(closed) == 1
    assert agg.get_stats() == {'tick_count': 5, 'dropped_count': 1}
    print(f"✓ Aggregator: {bar}")


def test_aggregator_out_of_order_within_bucket_updates_bar():
    closed = []
    agg = CandleAggregator(closed.append, bucket_ms=BUCKET_MS)
    agg.feed(Tick('KRW-BTC', 100, 1, 2000))
    agg.feed(Tick('KRW-BTC', 95, 1, 1000))
    bar = agg.flush()
    assert bar.low == 95
    assert bar.close == 95
    assert agg.last_closed_timestamp == 0


def test_aggregator_wall_clock_flush():
    closed = []
    agg = CandleAggregator(closed.append, bucket_ms=BUCKET_MS)
    agg.feed(Tick('KRW-BTC', 100, 1, 1000))
    assert agg.flush_if_expired(BUCKET_MS - 1) is None
    bar = agg.flush_if_expired(BUCKET_MS)
    assert bar is not None and closed == [bar]

    # A tick for the bar that was just flushed must not reopen it
    agg.feed(Tick('KRW-BTC', 101, 1, 2000))
    assert agg.dropped_count == 1
    assert agg.flush() is None


def test_event_bus_dispatch_and_log():
    bus = EventBus()
    seen = []
    everything = []
    bus.on(EventType.SIGNAL, seen.append)
    bus.on_any(everything.append)

    candle_event = CandleEvent(timestamp=1, candle=_candle(1, 1, 1, 1, 1))
    signal_event = SignalEvent(timestamp=1, signal=StrategySignal(SignalAction.LONG_ENTRY))
    bus.emit(candle_event)
    bus.emit(signal_event)

    assert seen == [signal_event]
    assert everything == [candle_event, signal_event]
    assert bus.get_log() == (candle_event, signal_event)
    assert len(bus) == 2

    bus.reset()
    assert bus.get_log() == ()
    bus.emit(signal_event)
    assert seen == [signal_event]


def test_fill_model_market_buy_slippage():
    print("Testing FillModel...")
    model = FillModel(fee_rate=0.0005, slippage_bps=5)
    order = Order('o1', OrderSide.BUY, OrderType.MARKET, 0.0, 1_000_000, created_at=0)
    fill = model.try_fill(order, _candle(300_000, 100, 105, 95, 102))
    assert fill.price == pytest.approx(100.05)
    assert fill.qty == pytest.approx(1_000_000 / 100.05)
    assert fill.fee == pytest.approx(1_000_000 * 0.0005)
    assert fill.timestamp == 300_000
    print(f"✓ Market buy fill at {fill.price}")


def test_fill_model_market_sell_uses_base_qty():
    model = FillModel(fee_rate=0.0, slippage_bps=10)
    order = Order('o2', OrderSide.SELL, OrderType.MARKET, 0.0, 0.5, created_at=0)
    fill = model.try_fill(order, _candle(0, 200, 210, 190, 205))
    assert fill.price == pytest.approx(199.8)
    assert fill.qty == 0.5


def test_fill_model_limit_touch():
    model = FillModel(fee_rate=0.0, slippage_bps=0)
    buy = Order('l1', OrderSide.BUY, OrderType.LIMIT, 95.0, 950, created_at=0)
    assert model.try_fill(buy, _candle(0, 100, 105, 96, 100)) is None
    fill = model.try_fill(buy, _candle(0, 100, 105, 94, 100))
    assert fill.price == 95.0

    sell = Order('l2', OrderSide.SELL, OrderType.LIMIT, 104.0, 1.0, created_at=0)
    assert model.try_fill(sell, _candle(0, 100, 103, 95, 100)) is None
    # Gap above the limit fills at the better open
    fill = model.try_fill(sell, _candle(0, 106, 108, 105, 107))
    assert fill.price == 106.0


def test_fill_model_sell_stop_gap_fills_at_open():
    model = FillModel(fee_rate=0.0, slippage_bps=0)
    stop = Order('s1', OrderSide.SELL, OrderType.STOP, 95.0, 1.0, created_at=0)
    assert model.try_fill(stop, _candle(0, 100, 101, 96, 99)) is None
    assert model.try_fill(stop, _candle(0, 100, 101, 94, 96)).price == 95.0
    assert model.try_fill(stop, _candle(0, 90, 92, 88, 91)).price == 90.0


def test_fill_model_sell_stop_slippage_clamped_to_low():
    model = FillModel(fee_rate=0.0, slippage_bps=100)
    stop = Order('s2', OrderSide.SELL, OrderType.STOP, 95.0, 1.0, created_at=0)
    assert model.try_fill(stop, _candle(0, 100, 101, 94.5, 96)).price == pytest.approx(94.5)
    assert model.try_fill(stop, _candle(0, 100, 101, 93, 96)).price == pytest.approx(94.0)
    assert model.try_fill(stop, _candle(0, 90, 92, 89.5, 91)).price == pytest.approx(89.5)


def test_fill_model_buy_stop_mirrors_sell():
    model = FillModel(fee_rate=0.0, slippage_bps=100)
    stop = Order('s3', OrderSide.BUY, OrderType.STOP, 105.0, 1_050, created_at=0)
    assert model.try_fill(stop, _candle(0, 100, 104, 99, 103)) is None

    fill = model.try_fill(stop, _candle(0, 100, 105.5, 99, 105))
    assert fill.price == pytest.approx(105.5)
    assert fill.qty == pytest.approx(1_050 / 105.5)

    assert model.try_fill(stop, _candle(0, 100, 110, 99, 108)).price == pytest.approx(106.0)
    # Gap up through the stop fills off the open, still capped at the high
    assert model.try_fill(stop, _candle(0, 108, 109, 107, 108)).price == pytest.approx(109.0)
    assert model.try_fill(stop, _candle(0, 108, 112, 107, 110)).price == pytest.approx(109.08)


def test_fill_rejects_non_positive_qty():
    with pytest.raises(ValueError):
        Fill('x', OrderSide.BUY, 100.0, 0.0, 0.0, 0)


def test_order_book_spread():
    book = OrderBook(
        bids=[OrderBookLevel(99.0, 1.0)],
        asks=[OrderBookLevel(101.0, 1.0)],
    )
    assert book.best_bid == 99.0
    assert book.best_ask == 101.0
    assert book.spread_bps() == pytest.approx(200.0)
    assert OrderBook().spread_bps() is None


if __name__ == "__main__":
    test_atr_seed_and_wilder_smoothing()
    test_aggregator_builds_bar_and_drops_stale_ticks()
    test_fill_model_market_buy_slippage()
    print("\nAll core tests passed")
