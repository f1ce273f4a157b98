import logging
import time
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple

from analytics.indicators import ATR
from api.dashboard import PositionSnapshot
from config import config
from ingest.market_types import Candle, OrderBook
from orchestration.event_bus import EventBus
from risk.risk_manager import RiskManager
from risk.state_machine import TradingState, TradingStateMachine
from strategy.base import Strategy
from strategy.events import TradingEvent
from strategy.execution_types import ClosedTrade
from strategy.position_manager import PositionManager


logger = logging.getLogger(__name__)

PositionListener = Callable[[Optional[PositionSnapshot]], None]


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class CandleEngine:
    """Shared plumbing for the candle-driven paper and live engines.

    Owns the event bus, the position manager and the stop ATR, and keeps the
    order-book snapshot the spread filter and paper fills read from.
    """

    mode = 'PAPER'

    def __init__(self, strategy: Strategy, state_machine: TradingStateMachine,
                 risk_manager: RiskManager, audit=None, mode_manager=None,
                 get_auto: Optional[Callable[[], bool]] = None,
                 settings: Optional[Mapping[str, Any]] = None,
                 initial_equity: Optional[float] = None,
                 metrics=None, alerts=None,
                 clock: Callable[[], int] = wall_clock_ms):
        cfg = settings if settings is not None else config.execution
        self.fee_rate = float(cfg.get('fee_rate', 0.0025))
        self.slippage_bps = float(cfg.get('slippage_bps', 5))

        self.strategy = strategy
        self.state_machine = state_machine
        self.risk_manager = risk_manager
        self.audit = audit
        self.mode_manager = mode_manager
        self.metrics = metrics
        self.alerts = alerts
        self.get_auto = get_auto or (lambda: True)
        self.clock = clock

        self.bus = EventBus()
        self.position_manager = PositionManager(self.bus)
        self.atr = ATR(int(config.strategy.get('atr_period', 14)))
        self.equity = float(
            initial_equity if initial_equity is not None else config.capital.get('initial_krw', 10_000_000)
        )
        self.last_order_book: Optional[OrderBook] = None
        self._position_listeners: List[PositionListener] = []

    def warmup(self, candles: Iterable[Candle]) -> None:
        """Feed history to the ATR and the strategy; signals are discarded."""
        count = 0
        for candle in candles:
            self.atr.update(candle)
            self.strategy.on_candle(candle)
            count += 1
        logger.info("%s engine warmed up with %s candles (atr_ready=%s)", self.mode, count, self.atr.is_ready)

    def on_order_book(self, order_book: OrderBook) -> None:
        self.last_order_book = order_book

    def calc_spread_bps(self) -> float:
        if self.last_order_book is None:
            return self.risk_manager.min_spread_bps
        spread = self.last_order_book.spread_bps()
        if spread is None:
            return self.risk_manager.min_spread_bps
        return spread

    def get_event_log(self) -> Tuple[TradingEvent, ...]:
        return self.bus.get_log()

    def position_snapshot(self) -> Optional[PositionSnapshot]:
        return PositionSnapshot.from_position(self.position_manager.current, self.equity)

    def add_position_listener(self, listener: PositionListener) -> None:
        self._position_listeners.append(listener)

    def has_position(self) -> bool:
        return self.position_manager.has_position

    def _publish_position(self) -> None:
        snapshot = self.position_snapshot()
        if self.metrics is not None:
            self.metrics.update_position(snapshot.qty if snapshot else 0.0)
            self.metrics.update_equity(self.equity)
        for listener in list(self._position_listeners):
            listener(snapshot)

    def _leave_cooldown(self) -> None:
        if self.state_machine.current is TradingState.COOLDOWN:
            self.state_machine.transition(TradingState.IDLE)

    def _resume_position(self) -> None:
        """Put a position that outlived a halt back under stop management."""
        if not self.state_machine.is_idle() or not self.position_manager.has_position:
            return
        position = self.position_manager.current
        logger.warning("Resuming position qty=%.8f entry=%.0f after reset", position.qty, position.entry_price)
        self._audit('WARN', 'POSITION_RESUMED', {'qty': position.qty, 'entry_price': position.entry_price})
        self.state_machine.transition(TradingState.ENTRY_PENDING)
        self.state_machine.transition(TradingState.IN_POSITION)
        self._publish_position()

    def _record_order(self, success: bool, side: str) -> None:
        self.risk_manager.record_order(success, now=self.clock())
        if self.mode_manager is not None:
            self.mode_manager.record_order(success)
        if self.metrics is not None:
            if success:
                self.metrics.record_order_filled(side)
            else:
                self.metrics.record_order_failed(side)

    def _record_close(self, trade: ClosedTrade) -> None:
        self.risk_manager.record_trade(trade.pnl, now=self.clock())
        if self.mode_manager is not None:
            self.mode_manager.record_trade(trade.pnl, self.equity)
        if self.metrics is not None:
            self.metrics.record_pnl(trade.pnl)
        self.strategy.notify_position_closed()

    def _audit(self, level: str, action: str, detail: Any = None) -> None:
        if self.audit is not None:
            self.audit.log(level, self.mode.lower(), action, detail, self.mode)
