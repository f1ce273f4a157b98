import asyncio
import logging
import time
from typing import Any, Mapping, Optional

from config import config
from ingest.bithumb_rest import GatewayAPIError, GatewayAuthError
from ingest.market_types import Candle
from risk.kill_switch import KillSwitch
from risk.position_sizer import calc_position_size
from risk.state_machine import TradingState
from strategy.base import SignalAction
from strategy.engine_base import CandleEngine
from strategy.events import CandleEvent, OrderFilledEvent, SignalEvent
from strategy.execution_types import Fill, OrderSide, Position
from strategy.order_poller import wait_for_fill
from strategy.transports.bithumb import ORDER_STATE_CANCEL, ORDER_STATE_DONE, BithumbGateway


logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (GatewayAPIError, asyncio.TimeoutError, OSError)


class LiveEngine(CandleEngine):
    """Candle-driven engine that executes real market orders through the gateway.

    Candle handling is serialized with a lock so an entry or exit sequence in
    flight always completes before the next candle is looked at. Unhandled
    errors and failed exits are escalated to the kill switch.
    """

    mode = 'LIVE'

    def __init__(self, strategy, state_machine, risk_manager, gateway: BithumbGateway,
                 kill_switch: KillSwitch, audit=None, mode_manager=None, get_auto=None,
                 settings: Optional[Mapping[str, Any]] = None,
                 initial_equity: Optional[float] = None,
                 metrics=None, alerts=None, **kwargs):
        super().__init__(strategy, state_machine, risk_manager, audit=audit,
                         mode_manager=mode_manager, get_auto=get_auto, settings=settings,
                         initial_equity=initial_equity, metrics=metrics, alerts=alerts, **kwargs)
        cfg = settings if settings is not None else config.execution
        self.gateway = gateway
        self.kill_switch = kill_switch
        self.max_position_krw = float(config.risk.get('max_position_krw', 500_000))
        self.order_fail_rate_kill_pct = float(config.risk.get('order_fail_rate_kill_pct', 50))
        self.atr_stop_multiplier = float(config.strategy.get('atr_stop_multiplier', 2.0))
        self.fill_timeout_s = float(cfg.get('fill_timeout_s', 30))
        self.poll_intervals_s = tuple(cfg.get('poll_intervals_s', (0.5, 1.0, 2.0)))
        self.max_price_drift_pct = float(cfg.get('max_price_drift_pct', 0.5))
        self.min_liquidation_btc = float(cfg.get('min_liquidation_btc', 0.00001))
        self.held_qty = 0.0
        self._lock = asyncio.Lock()

    async def on_candle(self, candle: Candle) -> None:
        async with self._lock:
            if not self.state_machine.is_active() or self.kill_switch.is_activated():
                return
            try:
                await self._handle_candle(candle)
            except Exception as exc:
                logger.exception("Live engine failed on candle %s", candle.timestamp)
                self._audit('CRITICAL', 'CANDLE_ERROR', str(exc))
                await self.kill_switch.activate(f"Unhandled error: {exc}")
                if self.alerts is not None:
                    await self.alerts.error_alert('live_engine', str(exc))

    async def _handle_candle(self, candle: Candle) -> None:
        if self.state_machine.is_idle() and self.position_manager.has_position:
            # Left over from a halt: drop it if liquidated, otherwise manage it again
            await self.sync_balance()
            self._resume_position()
        self._leave_cooldown()
        self.bus.emit(CandleEvent(timestamp=candle.timestamp, candle=candle))
        self.atr.update(candle)

        if self.position_manager.has_position and self.atr.is_ready:
            stop_price = self.position_manager.update_stops(candle, self.atr.value)
            self._publish_position()
            if stop_price is not None and self.state_machine.is_in_position():
                logger.warning("Stop hit at %.0f (low=%.0f)", stop_price, candle.low)
                await self._execute_exit(candle, 'Stop loss hit', stop_hit=True)
                return

        signal = self.strategy.on_candle(candle)
        self.bus.emit(SignalEvent(timestamp=candle.timestamp, signal=signal))

        if not self.get_auto():
            if signal.action is not SignalAction.NONE:
                logger.info("Auto trading off, ignoring %s", signal.action.value)
            return

        if signal.action is SignalAction.LONG_ENTRY:
            await self._execute_entry(candle)
        elif signal.action is SignalAction.LONG_EXIT and self.state_machine.is_in_position():
            await self._execute_exit(candle, signal.reason or 'Exit signal')

    # Entry

    async def _execute_entry(self, candle: Candle) -> None:
        if not self.state_machine.is_idle() or self.kill_switch.is_activated():
            return
        if self.position_manager.has_position:
            logger.error("Entry refused: a position is still tracked locally")
            self._audit('ERROR', 'ENTRY_BLOCKED', 'Position already tracked')
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
            self._audit('INFO', 'ENTRY_BLOCKED', check.reason)
            if self.metrics is not None:
                self.metrics.record_entry_rejected(check.reason)
            return

        sizing = calc_position_size(self.equity, candle.close, self.atr.value)
        if sizing.qty <= 0 or sizing.krw_amount <= 0:
            logger.info("Entry skipped: position size is zero")
            return

        if not await self._price_within_drift(candle):
            return

        order_krw = await self._clamp_order_krw(min(sizing.krw_amount, self.max_position_krw))
        if order_krw <= 0:
            return

        if self.kill_switch.is_activated() or not self.state_machine.is_idle():
            logger.warning("Entry abandoned: kill switch or state changed during pre-trade checks")
            return
        self.state_machine.transition(TradingState.ENTRY_PENDING)
        self._audit('INFO', 'ENTRY_ATTEMPT', {'krw': order_krw, 'close': candle.close, 'stop_loss': sizing.stop_loss})
        started = time.monotonic()

        result = await self.gateway.market_buy(order_krw)
        if not result.success:
            await self._entry_failed(f"Buy order failed: {result.message}")
            return
        if self.metrics is not None:
            self.metrics.record_order_placed('BUY')

        fill_result = await wait_for_fill(self.gateway, result.order_id, self.fill_timeout_s, self.poll_intervals_s)
        filled = fill_result.filled or (fill_result.status == ORDER_STATE_CANCEL and fill_result.filled_qty > 0)
        if not filled:
            await self._entry_failed(f"Buy order {result.order_id} not filled ({fill_result.status})")
            return

        if self.kill_switch.is_activated():
            logger.critical("Buy %s filled while kill switch active, liquidating", result.order_id)
            self._record_order(True, 'BUY')
            self._audit('CRITICAL', 'ENTRY_FILLED_WHILE_HALTED', {'order_id': result.order_id})
            await self.kill_switch.liquidate()
            return

        self._record_order(True, 'BUY')
        balance = await self._refresh_balance()

        entry_price = None
        if fill_result.order is not None:
            entry_price = fill_result.order.average_price()
        if not entry_price:
            logger.warning("Average fill price unavailable for %s, using candle close", result.order_id)
            entry_price = candle.close

        qty = fill_result.filled_qty
        if qty <= 0 and balance is not None:
            qty = balance.total_btc
        fee = fill_result.order.paid_fee if fill_result.order is not None else qty * entry_price * self.fee_rate

        fill = Fill(
            order_id=result.order_id,
            side=OrderSide.BUY,
            price=entry_price,
            qty=qty,
            fee=fee,
            timestamp=candle.timestamp,
        )
        self.bus.emit(OrderFilledEvent(timestamp=candle.timestamp, fill=fill))
        self.position_manager.open_position(fill, sizing.stop_loss, self.atr.value)
        self.state_machine.transition(TradingState.IN_POSITION)

        latency = time.monotonic() - started
        if self.metrics is not None:
            self.metrics.record_order_filled('BUY', latency)
        self._audit('INFO', 'ENTRY', {
            'order_id': result.order_id, 'price': entry_price, 'qty': qty,
            'stop_loss': sizing.stop_loss, 'latency_s': round(latency, 3),
        })
        logger.info("Live entry qty=%.8f price=%.0f stop=%.0f", qty, entry_price, sizing.stop_loss)
        if self.alerts is not None:
            await self.alerts.entry_alert(qty, entry_price, sizing.stop_loss)
        self._publish_position()

    async def _price_within_drift(self, candle: Candle) -> bool:
        try:
            ticker = await self.gateway.get_ticker()
        except GatewayAuthError:
            raise
        except TRANSIENT_ERRORS as exc:
            logger.warning("Ticker unavailable, skipping entry: %s", exc)
            return False
        if ticker is None or ticker.trade_price <= 0:
            logger.warning("Ticker unavailable, skipping entry")
            return False

        drift_pct = abs(ticker.trade_price - candle.close) / candle.close * 100
        if drift_pct > self.max_price_drift_pct:
            reason = f"Price drift {drift_pct:.2f}% > {self.max_price_drift_pct}%"
            logger.warning("Entry skipped: %s", reason)
            self._audit('WARN', 'ENTRY_BLOCKED', reason)
            if self.metrics is not None:
                self.metrics.record_entry_rejected('price_drift')
            return False
        return True

    async def _clamp_order_krw(self, order_krw: float) -> float:
        chance = await self.gateway.get_order_chance()
        if chance is None:
            return order_krw
        if not chance.is_active:
            logger.warning("Market state is %s, skipping entry", chance.market_state)
            return 0.0
        if chance.max_total is not None and chance.max_total > 0:
            order_krw = min(order_krw, chance.max_total)
        if chance.available_krw > 0:
            order_krw = min(order_krw, chance.available_krw)
        if order_krw < chance.min_total:
            logger.info("Entry skipped: order %.0f KRW below exchange minimum %.0f", order_krw, chance.min_total)
            return 0.0
        return order_krw

    async def _entry_failed(self, message: str) -> None:
        logger.warning(message)
        self._record_order(False, 'BUY')
        if self.state_machine.current is TradingState.ENTRY_PENDING:
            self.state_machine.transition(TradingState.IDLE)
        self._audit('WARN', 'ENTRY_FAILED', message)

        fail_rate = self.risk_manager.get_order_fail_rate()
        if fail_rate > self.order_fail_rate_kill_pct:
            await self.kill_switch.activate(f"High order failure rate: {fail_rate:.0f}%")

    # Exit

    async def _execute_exit(self, candle: Candle, reason: str, stop_hit: bool = False) -> None:
        position = self.position_manager.current
        if position is None:
            return

        self.state_machine.transition(TradingState.EXIT_PENDING)
        self._audit('INFO', 'EXIT_ATTEMPT', {'qty': position.qty, 'reason': reason})
        started = time.monotonic()

        result = await self.gateway.market_sell(position.qty)
        if not result.success:
            await self._exit_failed(f"Exit order failed: {result.message}")
            return
        if self.metrics is not None:
            self.metrics.record_order_placed('SELL')

        fill_result = await wait_for_fill(self.gateway, result.order_id, self.fill_timeout_s, self.poll_intervals_s)
        if not fill_result.filled:
            await self._exit_failed(f"Exit order not filled: {result.order_id} ({fill_result.status})")
            return

        exit_price = None
        if fill_result.order is not None:
            exit_price = fill_result.order.average_price()
        if not exit_price:
            exit_price = candle.close
        qty = fill_result.filled_qty or position.qty
        fee = fill_result.order.paid_fee if fill_result.order is not None else qty * exit_price * self.fee_rate

        fill = Fill(
            order_id=result.order_id,
            side=OrderSide.SELL,
            price=exit_price,
            qty=qty,
            fee=fee,
            timestamp=candle.timestamp,
        )
        self.bus.emit(OrderFilledEvent(timestamp=candle.timestamp, fill=fill))
        trade = self.position_manager.close_position(fill)
        self._record_order(True, 'SELL')

        balance = await self._refresh_balance()
        if balance is None:
            self.equity += qty * exit_price - fee
        self._record_close(trade)

        if not self.kill_switch.is_activated():
            if stop_hit:
                self.state_machine.transition(TradingState.COOLDOWN)
            else:
                self.state_machine.transition(TradingState.IDLE)

        if self.metrics is not None:
            self.metrics.record_order_filled('SELL', time.monotonic() - started)
        self._audit('INFO', 'STOP_HIT' if stop_hit else 'EXIT', {
            'order_id': result.order_id, 'price': exit_price, 'qty': qty,
            'pnl': trade.pnl, 'pnl_pct': trade.pnl_pct, 'reason': reason,
        })
        logger.info("Live exit price=%.0f pnl=%.0f (%s)", exit_price, trade.pnl, reason)
        if self.alerts is not None:
            await self.alerts.exit_alert(qty, exit_price, trade.pnl, reason)
        self._publish_position()

    async def _exit_failed(self, message: str) -> None:
        logger.critical(message)
        self._record_order(False, 'SELL')
        self._audit('CRITICAL', 'EXIT_FAILED', message)
        if self.kill_switch.is_activated():
            await self.kill_switch.liquidate()
        else:
            await self.kill_switch.activate(message, liquidate=True)

    # Balance and reconciliation

    async def _refresh_balance(self):
        try:
            balance = await self.gateway.get_balance()
        except GatewayAuthError:
            raise
        except TRANSIENT_ERRORS as exc:
            logger.warning("Balance refresh failed: %s", exc)
            return None
        self.equity = balance.available_krw
        self.held_qty = balance.total_btc
        return balance

    async def sync_balance(self) -> None:
        """Refresh equity and held quantity; drop a position the exchange no longer holds."""
        try:
            balance = await self.gateway.get_balance()
        except GatewayAPIError as exc:
            logger.error("Balance sync failed: %s", exc)
            return

        self.equity = balance.available_krw
        self.held_qty = balance.total_btc
        logger.debug("Balance synced krw=%.0f btc=%.8f", balance.available_krw, balance.total_btc)

        if self.position_manager.has_position and balance.total_btc <= self.min_liquidation_btc:
            logger.warning("Position no longer held on the exchange, clearing local position")
            self._audit('WARN', 'POSITION_CLEARED', {'total_btc': balance.total_btc})
            self.position_manager.reset()
            if self.state_machine.is_in_position():
                self.state_machine.transition(TradingState.IDLE)
        self._publish_position()

    async def reconcile_open_orders(self) -> None:
        """Cancel stale open orders and re-adopt a BTC balance held from a previous run."""
        open_orders = await self.gateway.get_orders(state='wait')
        for order in open_orders:
            cancelled = await self.gateway.cancel_order(order.order_id)
            logger.warning("Stale open order %s (%s %s) cancelled=%s",
                           order.order_id, order.side, order.ord_type, cancelled)
            self._audit('WARN', 'STALE_ORDER', {'order_id': order.order_id, 'side': order.side, 'cancelled': cancelled})

        balance = await self.gateway.get_balance()
        self.equity = balance.available_krw
        self.held_qty = balance.total_btc
        if balance.total_btc <= self.min_liquidation_btc or self.position_manager.has_position:
            self._publish_position()
            return

        entry_price = await self._recover_entry_price()
        if entry_price is None:
            logger.error("Held %.8f BTC but no entry price could be recovered", balance.total_btc)
            self._audit('ERROR', 'RECOVERY_FAILED', {'total_btc': balance.total_btc})
            return

        if self.atr.is_ready:
            stop_loss = float(int(entry_price - self.atr.value * self.atr_stop_multiplier))
            trailing = max(stop_loss, entry_price - self.atr.value * self.position_manager.trailing_multiplier)
        else:
            logger.warning("ATR not ready, recovered position has no stop until the next candle")
            stop_loss = 0.0
            trailing = 0.0

        self.position_manager.restore(Position(
            entry_price=entry_price,
            qty=balance.total_btc,
            entry_time=self.clock(),
            stop_loss=stop_loss,
            trailing_stop=trailing,
            high_water_mark=entry_price,
        ))
        if self.state_machine.is_idle():
            self.state_machine.transition(TradingState.ENTRY_PENDING)
            self.state_machine.transition(TradingState.IN_POSITION)

        logger.warning("Recovered position qty=%.8f entry=%.0f stop=%.0f", balance.total_btc, entry_price, stop_loss)
        self._audit('WARN', 'POSITION_RECOVERED', {
            'qty': balance.total_btc, 'entry_price': entry_price, 'stop_loss': stop_loss,
        })
        self._publish_position()

    async def _recover_entry_price(self) -> Optional[float]:
        try:
            done = await self.gateway.get_orders(state=ORDER_STATE_DONE, limit=20)
        except GatewayAuthError:
            raise
        except TRANSIENT_ERRORS as exc:
            logger.warning("Done-order lookup failed: %s", exc)
            done = []

        for order in done:
            if order.side != 'bid':
                continue
            price = order.average_price()
            if price:
                return price

        ticker = await self.gateway.get_ticker()
        if ticker is not None and ticker.trade_price > 0:
            logger.warning("Entry price not found in done orders, using ticker %.0f", ticker.trade_price)
            return ticker.trade_price
        return None
