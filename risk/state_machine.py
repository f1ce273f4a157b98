import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, FrozenSet, List, Tuple


logger = logging.getLogger(__name__)


class TradingState(Enum):
    IDLE = "IDLE"
    ENTRY_PENDING = "ENTRY_PENDING"
    IN_POSITION = "IN_POSITION"
    EXIT_PENDING = "EXIT_PENDING"
    COOLDOWN = "COOLDOWN"
    HALTED = "HALTED"


VALID_TRANSITIONS: FrozenSet[Tuple[TradingState, TradingState]] = frozenset({
    (TradingState.IDLE, TradingState.ENTRY_PENDING),
    (TradingState.ENTRY_PENDING, TradingState.IN_POSITION),
    (TradingState.ENTRY_PENDING, TradingState.IDLE),
    (TradingState.IN_POSITION, TradingState.EXIT_PENDING),
    (TradingState.IN_POSITION, TradingState.IDLE),
    (TradingState.IN_POSITION, TradingState.COOLDOWN),
    (TradingState.EXIT_PENDING, TradingState.IDLE),
    (TradingState.EXIT_PENDING, TradingState.COOLDOWN),
    (TradingState.COOLDOWN, TradingState.IDLE),
    (TradingState.IDLE, TradingState.HALTED),
    (TradingState.ENTRY_PENDING, TradingState.HALTED),
    (TradingState.IN_POSITION, TradingState.HALTED),
    (TradingState.EXIT_PENDING, TradingState.HALTED),
    (TradingState.COOLDOWN, TradingState.HALTED),
    (TradingState.HALTED, TradingState.IDLE),
})

MAX_HISTORY = 100
HISTORY_KEEP = 50


class InvalidTransition(RuntimeError):
    def __init__(self, from_state: TradingState, to_state: TradingState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid state transition: {from_state.value} -> {to_state.value}")


@dataclass(frozen=True)
class StateChange:
    from_state: TradingState
    to_state: TradingState
    at: float


class TradingStateMachine:
    """Lifecycle gate every order-affecting action passes through."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._state = TradingState.IDLE
        self._entered_at = clock()
        self._history: List[StateChange] = []
        self._listeners: List[Callable[[TradingState, TradingState], None]] = []

    @property
    def current(self) -> TradingState:
        return self._state

    @property
    def state_age(self) -> float:
        return self._clock() - self._entered_at

    def add_listener(self, listener: Callable[[TradingState, TradingState], None]) -> None:
        self._listeners.append(listener)

    def transition(self, to: TradingState) -> None:
        if self._state is to:
            return
        if (self._state, to) not in VALID_TRANSITIONS:
            logger.error("Invalid state transition %s -> %s", self._state.value, to.value)
            raise InvalidTransition(self._state, to)

        from_state = self._state
        now = self._clock()
        logger.info("State transition %s -> %s", from_state.value, to.value)
        self._history.append(StateChange(from_state, to, now))
        if len(self._history) > MAX_HISTORY:
            self._history = self._history[-HISTORY_KEEP:]
        self._state = to
        self._entered_at = now
        for listener in list(self._listeners):
            listener(from_state, to)

    def can_transition(self, to: TradingState) -> bool:
        return (self._state, to) in VALID_TRANSITIONS

    def is_active(self) -> bool:
        return self._state is not TradingState.HALTED

    def is_idle(self) -> bool:
        return self._state is TradingState.IDLE

    def is_in_position(self) -> bool:
        return self._state is TradingState.IN_POSITION

    def get_history(self) -> Tuple[StateChange, ...]:
        return tuple(self._history)

    def reset(self) -> None:
        self._state = TradingState.IDLE
        self._entered_at = self._clock()
        self._history = []
