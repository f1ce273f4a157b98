"""Read-only projections of engine state for the dashboard API.

``AppContext`` is the single owner of the shared mutable view (last price,
candles, mode, auto/kill flags, timeline, trades, position). Each field has
one writer; readers register with ``subscribe`` to hear about changes.
"""
import logging
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from ingest.market_types import Candle
from strategy.events import EventType, TradingEvent
from strategy.execution_types import Position


logger = logging.getLogger(__name__)

ChangeListener = Callable[[str], None]


@dataclass(frozen=True)
class PositionSnapshot:
    status: str
    qty: float
    entry_price: float
    stop_loss: float
    trailing_stop: float
    entry_time: int
    equity: float

    @classmethod
    def from_position(cls, position: Optional[Position], equity: float) -> Optional['PositionSnapshot']:
        if position is None:
            return None
        return cls(
            status='LONG',
            qty=position.qty,
            entry_price=position.entry_price,
            stop_loss=position.stop_loss,
            trailing_stop=position.trailing_stop,
            entry_time=position.entry_time,
            equity=equity,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TimelineEvent:
    id: str
    ts: int
    type: str
    summary: str
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def to_timeline(events: Iterable[TradingEvent]) -> List[TimelineEvent]:
    """Convert an engine event log to timeline DTOs; candles are skipped."""
    out: List[TimelineEvent] = []
    for idx, e in enumerate(events, start=1):
        eid = f"ev-{idx}"
        if e.type is EventType.CANDLE:
            continue
        if e.type is EventType.SIGNAL:
            item = TimelineEvent(eid, e.timestamp, 'signal', e.signal.action.value, e.signal.reason)
        elif e.type is EventType.ORDER_CREATED:
            price = f"{e.order.price:,.0f}" if e.order.price else 'MARKET'
            item = TimelineEvent(eid, e.timestamp, 'order',
                                 f"{e.order.side.value} {e.order.qty:g} @ {price}", f"Order {e.order.id}")
        elif e.type is EventType.ORDER_FILLED:
            item = TimelineEvent(eid, e.timestamp, 'fill',
                                 f"FILL {e.fill.side.value} {e.fill.qty:.6f} BTC @ {e.fill.price:,.0f}",
                                 f"Order {e.fill.order_id}")
        elif e.type is EventType.ORDER_CANCELLED:
            item = TimelineEvent(eid, e.timestamp, 'log', f"Cancel {e.order_id}")
        elif e.type is EventType.POSITION_OPENED:
            item = TimelineEvent(eid, e.timestamp, 'order',
                                 f"LONG entry {e.position.qty:.6f} BTC @ {e.position.entry_price:,.0f}",
                                 f"Stop {e.position.effective_stop:,.0f} KRW")
        elif e.type is EventType.POSITION_CLOSED:
            item = TimelineEvent(eid, e.timestamp, 'fill',
                                 f"Exit {e.qty:.6f} BTC @ {e.exit_price:,.0f} PnL {e.pnl:+,.0f} KRW",
                                 f"Exit {e.exit_price:,.0f} ({e.pnl_pct:+.2f}%)")
        else:
            item = TimelineEvent(eid, e.timestamp, 'log',
                                 f"Stop {e.stop_loss:,.0f} / trailing {e.trailing_stop:,.0f}")
        out.append(item)
    return out


class AppContext:
    def __init__(self, mode: str = 'PAPER', max_candles: int = 200, max_events: int = 500):
        self.mode = mode
        self.auto = True
        self.kill = False
        self.kill_reason: Optional[str] = None
        self.ws_state = 'CLOSED'
        self.last_price = 0.0
        self.last_candle: Optional[Candle] = None
        self._candles: Deque[Candle] = deque(maxlen=max_candles)
        self.max_events = max_events
        self.events: List[TimelineEvent] = []
        self.trades: List[Dict[str, Any]] = []
        self.position: Optional[PositionSnapshot] = None
        self.equity = 0.0
        self._listeners: List[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _changed(self, name: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(name)
            except Exception:
                logger.exception("Dashboard listener failed on %s", name)

    @property
    def candles(self) -> List[Candle]:
        return list(self._candles)

    def set_last_price(self, price: float) -> None:
        self.last_price = price
        self._changed('price')

    def set_candles(self, candles: Iterable[Candle]) -> None:
        self._candles.clear()
        self._candles.extend(candles)
        self.last_candle = self._candles[-1] if self._candles else None
        self._changed('candles')

    def add_candle(self, candle: Candle) -> None:
        if self._candles and self._candles[-1].timestamp == candle.timestamp:
            self._candles[-1] = candle
        else:
            self._candles.append(candle)
        self.last_candle = candle
        self._changed('candles')

    def set_ws_state(self, state: str) -> None:
        self.ws_state = state
        self._changed('ws_state')

    def set_mode(self, mode: str) -> None:
        self.mode = mode
        self._changed('mode')

    def set_auto(self, on: bool) -> None:
        self.auto = bool(on)
        self._changed('auto')

    def get_auto(self) -> bool:
        return self.auto

    def set_kill(self, on: bool, reason: Optional[str] = None) -> None:
        self.kill = bool(on)
        self.kill_reason = reason if on else None
        self._changed('kill')

    def set_events(self, events: Iterable[TradingEvent]) -> None:
        self.events = to_timeline(events)[-self.max_events:]
        self._changed('events')

    def set_trades(self, trades: Iterable[Any]) -> None:
        self.trades = [t.to_dict() if hasattr(t, 'to_dict') else dict(t) for t in trades]
        self._changed('trades')

    def set_position(self, snapshot: Optional[PositionSnapshot]) -> None:
        self.position = snapshot
        if snapshot is not None:
            self.equity = snapshot.equity
        self._changed('position')

    def set_equity(self, equity: float) -> None:
        self.equity = equity
        self._changed('equity')

    def state(self) -> Dict[str, Any]:
        return {
            'mode': self.mode,
            'auto': self.auto,
            'kill': self.kill,
            'kill_reason': self.kill_reason,
            'ws_state': self.ws_state,
            'last_price': self.last_price,
            'last_candle': self.last_candle.to_dict() if self.last_candle else None,
            'candles': [c.to_dict() for c in self._candles],
            'equity': self.equity,
            'position': self.position.to_dict() if self.position else None,
        }
