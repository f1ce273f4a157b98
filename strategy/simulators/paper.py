import logging

from ingest.market_types import Candle
from risk.kill_switch import KillSwitch
from risk.position_sizer import calc_position_size
from risk.state_machine import TradingState
from strategy.base import SignalAction
from strategy.engine_base import CandleEngine
from strategy.events import CandleEvent, OrderFilledEvent, SignalEvent
from strategy.execution_types import Fill, OrderSide


logger = logging.getLogger(__name__)


class PaperEngine(CandleEngine):
    """Live-candle engine with simulated fills.

    Fills price off the last order book (buy at ask, sell at bid) plus
    slippage, or off the candle close when no book has arrived yet. Risk
    checks and state transitions follow the live engine exactly.
    """

    mode = 'PAPER'

    def __init__(self, strategy, state_machine, risk_manager, kill_switch: KillSwitch = None, **kwargs):
        super().__init__(strategy, state_machine, risk_manager, **kwargs)
        if kill_switch is None:
            kill_switch = KillSwitch(state_machine, audit=self.audit, metrics=self.metrics)
        self.kill_switch = kill_switch

    async def on_candle(self, candle: Candle) -> None:
        if not self.state_machine.is_active() or self.kill_switch.is_activated():
            return
        try:
            await self._handle_candle(candle)
        except Exception as exc:
            logger.exception("Paper engine failed on candle %s", candle.timestamp)
            self._audit('ERROR', 'CANDLE_ERROR', str(exc))
            await self.kill_switch.activate(f"Unhandled error: {exc}")
            if self.alerts is not None:
                await self.alerts.error_alert('paper_engine', str(exc))

    async def _handle_candle(self, candle: Candle) -> None:
        self._resume_position()
        self._leave_cooldown()
        self.bus.emit(CandleEvent(timestamp=candle.timestamp, candle=candle))
        self.atr.update(candle)

        if self.position_manager.has_position and self.atr.is_ready:
            stop_price = self.position_manager.update_stops(candle, self.atr.value)
            self._publish_position()
            if stop_price is not None:
                self._execute_stop(candle, stop_price)
                return

        signal = self.strategy.on_candle(candle)
        self.bus.emit(SignalEvent(timestamp=candle.timestamp, signal=signal))

        if not self.get_auto():
            if signal.action is not SignalAction.NONE:
                logger.info("Auto trading off, ignoring %s", signal.action.value)
            return

        if signal.action is SignalAction.LONG_ENTRY and self.state_machine.is_idle():
            self._try_entry(candle)
        elif signal.action is SignalAction.LONG_EXIT and self.state_machine.is_in_position():
            self._try_exit(candle)

    def resolve_fill_price(self, side: OrderSide, close: float) -> float:
        slippage = close * (self.slippage_bps / 10000)
        book = self.last_order_book
        if book is not None and book.best_ask is not None and book.best_bid is not None:
            if side is OrderSide.BUY:
                return book.best_ask + slippage
            return book.best_bid - slippage
        if side is OrderSide.BUY:
            return close + slippage
        return close - slippage

    def _try_entry(self, candle: Candle) -> None:
        if self.kill_switch.is_activated() or self.position_manager.has_position:
            return
        if not self.atr.is_ready:
            return

        check = self.risk_manager.check_entry(
            spread=self.calc_spread_bps(),
            atr=self.atr.value,
            equity=self.equity,
            now=self.clock(),
        )
        if not check.allowed:
            logger.info("Entry blocked: %s", check.reason)
            if self.metrics is not None:
                self.metrics.record_entry_rejected(check.reason)
            return

        sizing = calc_position_size(self.equity, candle.close, self.atr.value)
        if sizing.qty <= 0 or sizing.krw_amount <= 0:
            logger.info("Entry skipped: position size is zero")
            return

        self.state_machine.transition(TradingState.ENTRY_PENDING)
        price = self.resolve_fill_price(OrderSide.BUY, candle.close)
        fill = Fill(
            order_id=f"paper-buy-{candle.timestamp}",
            side=OrderSide.BUY,
            price=price,
            qty=sizing.qty,
            fee=sizing.qty * price * self.fee_rate,
            timestamp=candle.timestamp,
        )
        self.bus.emit(OrderFilledEvent(timestamp=candle.timestamp, fill=fill))
        self.position_manager.open_position(fill, sizing.stop_loss, self.atr.value)
        self.equity -= fill.qty * fill.price + fill.fee
        self._record_order(True, 'BUY')
        self.state_machine.transition(TradingState.IN_POSITION)

        self._audit('INFO', 'ENTRY', {'price': price, 'qty': fill.qty, 'stop_loss': sizing.stop_loss})
        logger.info("Paper entry qty=%.8f price=%.0f stop=%.0f equity=%.0f",
                    fill.qty, price, sizing.stop_loss, self.equity)
        self._publish_position()

    def _try_exit(self, candle: Candle) -> None:
        position = self.position_manager.current
        if position is None:
            return

        self.state_machine.transition(TradingState.EXIT_PENDING)
        price = self.resolve_fill_price(OrderSide.SELL, candle.close)
        trade = self._close(candle, price, f"paper-sell-{candle.timestamp}", position.qty)
        self.state_machine.transition(TradingState.IDLE)

        self._audit('INFO', 'EXIT', {'price': price, 'pnl': trade.pnl, 'pnl_pct': trade.pnl_pct})
        logger.info("Paper exit price=%.0f pnl=%.0f equity=%.0f", price, trade.pnl, self.equity)
        self._publish_position()

    def _execute_stop(self, candle: Candle, stop_price: float) -> None:
        position = self.position_manager.current
        trade = self._close(candle, stop_price, f"paper-stop-{candle.timestamp}", position.qty)
        if self.state_machine.can_transition(TradingState.COOLDOWN):
            self.state_machine.transition(TradingState.COOLDOWN)
        else:
            self.state_machine.transition(TradingState.IDLE)

        self._audit('INFO', 'STOP_HIT', {'stop_price': stop_price, 'pnl': trade.pnl})
        logger.info("Paper stop hit price=%.0f pnl=%.0f equity=%.0f", stop_price, trade.pnl, self.equity)
        self._publish_position()

    def _close(self, candle: Candle, price: float, order_id: str, qty: float):
        fill = Fill(
            order_id=order_id,
            side=OrderSide.SELL,
            price=price,
            qty=qty,
            fee=qty * price * self.fee_rate,
            timestamp=candle.timestamp,
        )
        self.bus.emit(OrderFilledEvent(timestamp=candle.timestamp, fill=fill))
        trade = self.position_manager.close_position(fill)
        self.equity += fill.qty * fill.price - fill.fee
        self._record_order(True, 'SELL')
        self._record_close(trade)
        return trade
