from collections import defaultdict
from typing import Callable, DefaultDict, List, Tuple

from strategy.events import EventType, TradingEvent

EventHandler = Callable[[TradingEvent], None]


class EventBus:
    """Synchronous typed publish/subscribe with a replayable emission log."""

    def __init__(self):
        self._handlers: DefaultDict[EventType, List[EventHandler]] = defaultdict(list)
        self._log: List[TradingEvent] = []

    def on(self, event_type: EventType, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def on_any(self, handler: EventHandler) -> None:
        for event_type in EventType:
            self._handlers[event_type].append(handler)

    def emit(self, event: TradingEvent) -> None:
        self._log.append(event)
        for handler in list(self._handlers.get(event.type, ())):
            handler(event)

    def get_log(self) -> Tuple[TradingEvent, ...]:
        return tuple(self._log)

    def __len__(self) -> int:
        return len(self._log)

    def clear_log(self) -> None:
        self._log = []

    def reset(self) -> None:
        self._handlers.clear()
        self._log = []
