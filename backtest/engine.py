import logging
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from analytics.indicators import ATR
from backtest.report import BacktestReport, EquityPoint, build_report, build_trade_log
from config import config
from ingest.market_types import Candle
from orchestration.event_bus import EventBus
from strategy.base import SignalAction, Strategy
from strategy.events import (
    CandleEvent,
    OrderCancelledEvent,
    OrderCreatedEvent,
    OrderFilledEvent,
    SignalEvent,
    TradingEvent,
)
from strategy.execution_types import Fill, Order, OrderSide, OrderStatus, OrderType
from strategy.position_manager import PositionManager
from strategy.simulators.fill_model import FillModel


logger = logging.getLogger(__name__)


class BacktestEngine:
    """Deterministic bar-by-bar replay of a strategy over closed candles.

    Orders created on a bar fill against the next bar through the fill model.
    Stops are checked every bar and fill at the breached stop price. A position
    still open at the end is closed at the last close.
    """

    def __init__(self, settings: Optional[Mapping[str, Any]] = None,
                 initial_capital: Optional[float] = None,
                 atr_period: Optional[int] = None,
                 trailing_stop_atr_multiplier: Optional[float] = None):
        cfg = settings if settings is not None else config.backtest
        self.initial_capital = float(
            initial_capital if initial_capital is not None else config.capital.get('initial_krw', 10_000_000)
        )
        self.position_size_pct = float(cfg.get('position_size_pct', 1.0))
        self.fee_rate = float(cfg.get('fee_rate', 0.0005))
        slippage_bps = float(cfg.get('slippage_bps', 5))
        if atr_period is None:
            atr_period = config.strategy.get('atr_period', 14)

        self.bus = EventBus()
        self.fill_model = FillModel(fee_rate=self.fee_rate, slippage_bps=slippage_bps)
        self.position_manager = PositionManager(self.bus, trailing_stop_atr_multiplier)
        self.atr = ATR(int(atr_period))

        self.equity = self.initial_capital
        self.equity_curve: List[EquityPoint] = []
        self.pending_orders: List[Order] = []
        self._order_seq = 0
        self._bar_index = 0

    def run(self, candles: Sequence[Candle], strategy: Strategy) -> BacktestReport:
        self.reset(strategy)

        for candle in candles:
            self._process_candle(candle, strategy)
            self._bar_index += 1

        if self.position_manager.has_position and candles:
            self._force_close(candles[-1], strategy)

        trades = build_trade_log(self.bus.get_log())
        report = build_report(trades, self.equity_curve, self.initial_capital, self.equity)
        logger.info(
            "Backtest finished: bars=%s trades=%s pnl=%.0f end_equity=%.0f",
            self._bar_index, report.total_trades, report.total_pnl, self.equity,
        )
        return report

    def get_event_log(self) -> Tuple[TradingEvent, ...]:
        return self.bus.get_log()

    def reset(self, strategy: Optional[Strategy] = None) -> None:
        self.bus.reset()
        self.position_manager.reset()
        self.atr.reset()
        if strategy is not None:
            strategy.reset()
        self.equity = self.initial_capital
        self.equity_curve = []
        self.pending_orders = []
        self._order_seq = 0
        self._bar_index = 0

    def _process_candle(self, candle: Candle, strategy: Strategy) -> None:
        self.bus.emit(CandleEvent(timestamp=candle.timestamp, candle=candle))
        self.atr.update(candle)

        self._process_pending_orders(candle, strategy)

        stopped = False
        if self.position_manager.has_position and self.atr.is_ready:
            stop_price = self.position_manager.update_stops(candle, self.atr.value)
            if stop_price is not None:
                self._execute_stop(candle, stop_price, strategy)
                stopped = True

        if not stopped and (self.position_manager.has_position or not self._has_open_buy()):
            signal = strategy.on_candle(candle)
            self.bus.emit(SignalEvent(timestamp=candle.timestamp, signal=signal))

            if signal.action is SignalAction.LONG_ENTRY and not self.position_manager.has_position:
                notional = self.equity * self.position_size_pct
                self._create_order(OrderSide.BUY, notional, candle.timestamp, signal.stop_loss)
            elif signal.action is SignalAction.LONG_EXIT and self.position_manager.has_position:
                self._create_order(OrderSide.SELL, self.position_manager.current.qty, candle.timestamp)

        position = self.position_manager.current
        holdings = position.qty * candle.close if position else 0.0
        self.equity_curve.append(EquityPoint(timestamp=candle.timestamp, equity=self.equity + holdings))

    def _process_pending_orders(self, candle: Candle, strategy: Strategy) -> None:
        remaining: List[Order] = []
        for order in self.pending_orders:
            fill = self.fill_model.try_fill(order, candle)
            if fill is None:
                remaining.append(order)
                continue

            order.status = OrderStatus.FILLED
            self.bus.emit(OrderFilledEvent(timestamp=candle.timestamp, fill=fill))
            if fill.side is OrderSide.BUY:
                atr = self.atr.value if self.atr.is_ready else 0.0
                self.position_manager.open_position(fill, order.stop_loss or 0.0, atr)
                self.equity -= fill.qty * fill.price + fill.fee
            else:
                self.position_manager.close_position(fill)
                self.equity += fill.qty * fill.price - fill.fee
                strategy.notify_position_closed()
        self.pending_orders = remaining

    def _execute_stop(self, candle: Candle, stop_price: float, strategy: Strategy) -> None:
        self._close_at(candle, stop_price, f"stop-{self._next_id()}")

        remaining = []
        for order in self.pending_orders:
            if order.side is OrderSide.SELL:
                order.status = OrderStatus.CANCELLED
                self.bus.emit(OrderCancelledEvent(timestamp=candle.timestamp, order_id=order.id))
            else:
                remaining.append(order)
        self.pending_orders = remaining
        strategy.notify_position_closed()

    def _force_close(self, candle: Candle, strategy: Strategy) -> None:
        self._close_at(candle, candle.close, f"force-close-{self._next_id()}")
        strategy.notify_position_closed()

    def _close_at(self, candle: Candle, price: float, order_id: str) -> None:
        qty = self.position_manager.current.qty
        fill = Fill(
            order_id=order_id,
            side=OrderSide.SELL,
            price=price,
            qty=qty,
            fee=qty * price * self.fee_rate,
            timestamp=candle.timestamp,
        )
        self.bus.emit(OrderFilledEvent(timestamp=candle.timestamp, fill=fill))
        self.position_manager.close_position(fill)
        self.equity += fill.qty * fill.price - fill.fee

    def _create_order(self, side: OrderSide, qty: float, timestamp: int,
                      stop_loss: Optional[float] = None) -> None:
        order = Order(
            id=f"ord-{self._next_id()}",
            side=side,
            type=OrderType.MARKET,
            price=0.0,
            qty=qty,
            created_at=timestamp,
            stop_loss=stop_loss,
        )
        self.pending_orders.append(order)
        self.bus.emit(OrderCreatedEvent(timestamp=timestamp, order=order))

    def _has_open_buy(self) -> bool:
        return any(o.side is OrderSide.BUY and o.status is OrderStatus.PENDING for o in self.pending_orders)

    def _next_id(self) -> int:
        seq = self._order_seq
        self._order_seq += 1
        return seq
