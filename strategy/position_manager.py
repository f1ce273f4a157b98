import dataclasses
import logging
from typing import Optional

from config import config
from ingest.market_types import Candle
from orchestration.event_bus import EventBus
from strategy.events import PositionClosedEvent, PositionOpenedEvent, StopUpdatedEvent
from strategy.execution_types import ClosedTrade, Fill, Position


logger = logging.getLogger(__name__)


class PositionError(RuntimeError):
    """Raised when the single-position rule would be broken."""


class PositionManager:
    """Owns the single open long position and its initial/trailing stops."""

    def __init__(self, bus: EventBus, trailing_stop_atr_multiplier: Optional[float] = None):
        self.bus = bus
        if trailing_stop_atr_multiplier is None:
            trailing_stop_atr_multiplier = config.strategy.get('trailing_stop_atr_multiplier', 3.0)
        self.trailing_multiplier = float(trailing_stop_atr_multiplier)
        self._position: Optional[Position] = None

    @property
    def has_position(self) -> bool:
        return self._position is not None

    @property
    def current(self) -> Optional[Position]:
        if self._position is None:
            return None
        return dataclasses.replace(self._position)

    def open_position(self, fill: Fill, stop_loss: float, atr: float) -> Position:
        if self._position is not None:
            raise PositionError("Already in position: single position rule violated")

        trailing = fill.price - atr * self.trailing_multiplier
        self._position = Position(
            entry_price=fill.price,
            qty=fill.qty,
            entry_time=fill.timestamp,
            stop_loss=stop_loss,
            trailing_stop=max(stop_loss, trailing),
            high_water_mark=fill.price,
        )
        logger.debug(
            "Position opened qty=%.8f entry=%.0f stop=%.0f trailing=%.0f",
            fill.qty, fill.price, stop_loss, self._position.trailing_stop,
        )
        self.bus.emit(PositionOpenedEvent(timestamp=fill.timestamp, position=self.current))
        return self.current

    def restore(self, position: Position) -> None:
        """Adopt a position recovered from the exchange without emitting an open event."""
        if self._position is not None:
            raise PositionError("Already in position: cannot restore another")
        self._position = dataclasses.replace(position)

    def close_position(self, fill: Fill) -> ClosedTrade:
        if self._position is None:
            raise PositionError("No position to close")

        pos = self._position
        pnl = (fill.price - pos.entry_price) * pos.qty - fill.fee
        pnl_pct = (fill.price - pos.entry_price) / pos.entry_price * 100 if pos.entry_price else 0.0

        self.bus.emit(PositionClosedEvent(
            timestamp=fill.timestamp,
            entry_price=pos.entry_price,
            exit_price=fill.price,
            qty=pos.qty,
            pnl=pnl,
            pnl_pct=pnl_pct,
        ))
        self._position = None
        return ClosedTrade(pnl=pnl, pnl_pct=pnl_pct)

    def update_stops(self, candle: Candle, atr: float) -> Optional[float]:
        """Ratchet the trailing stop on a new high; return the stop price if the bar breached it."""
        pos = self._position
        if pos is None:
            return None

        if candle.high > pos.high_water_mark:
            pos.high_water_mark = candle.high
            new_trailing = candle.high - atr * self.trailing_multiplier
            if new_trailing > pos.trailing_stop:
                pos.trailing_stop = new_trailing
                self.bus.emit(StopUpdatedEvent(
                    timestamp=candle.timestamp,
                    stop_loss=pos.stop_loss,
                    trailing_stop=pos.trailing_stop,
                ))

        effective = pos.effective_stop
        if candle.low <= effective:
            return effective
        return None

    def reset(self) -> None:
        self._position = None
