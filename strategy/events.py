"""Tagged trading events emitted by the engines.

Each event is a frozen dataclass whose ``type`` class attribute names its
``EventType``; handlers dispatch on that tag.
"""
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Union

from ingest.market_types import Candle
from strategy.base import StrategySignal
from strategy.execution_types import Fill, Order, Position


class EventType(Enum):
    CANDLE = "CANDLE"
    SIGNAL = "SIGNAL"
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_FILLED = "ORDER_FILLED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    POSITION_OPENED = "POSITION_OPENED"
    POSITION_CLOSED = "POSITION_CLOSED"
    STOP_UPDATED = "STOP_UPDATED"


@dataclass(frozen=True)
class CandleEvent:
    timestamp: int
    candle: Candle
    type: ClassVar[EventType] = EventType.CANDLE


@dataclass(frozen=True)
class SignalEvent:
    timestamp: int
    signal: StrategySignal
    type: ClassVar[EventType] = EventType.SIGNAL


@dataclass(frozen=True)
class OrderCreatedEvent:
    timestamp: int
    order: Order
    type: ClassVar[EventType] = EventType.ORDER_CREATED


@dataclass(frozen=True)
class OrderFilledEvent:
    timestamp: int
    fill: Fill
    type: ClassVar[EventType] = EventType.ORDER_FILLED


@dataclass(frozen=True)
class OrderCancelledEvent:
    timestamp: int
    order_id: str
    type: ClassVar[EventType] = EventType.ORDER_CANCELLED


@dataclass(frozen=True)
class PositionOpenedEvent:
    timestamp: int
    position: Position
    type: ClassVar[EventType] = EventType.POSITION_OPENED


@dataclass(frozen=True)
class PositionClosedEvent:
    timestamp: int
    entry_price: float
    exit_price: float
    qty: float
    pnl: float
    pnl_pct: float
    type: ClassVar[EventType] = EventType.POSITION_CLOSED


@dataclass(frozen=True)
class StopUpdatedEvent:
    timestamp: int
    stop_loss: float
    trailing_stop: float
    type: ClassVar[EventType] = EventType.STOP_UPDATED


TradingEvent = Union[
    CandleEvent,
    SignalEvent,
    OrderCreatedEvent,
    OrderFilledEvent,
    OrderCancelledEvent,
    PositionOpenedEvent,
    PositionClosedEvent,
    StopUpdatedEvent,
]
