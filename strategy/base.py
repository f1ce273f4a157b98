from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ingest.market_types import Candle


class SignalAction(Enum):
    LONG_ENTRY = "LONG_ENTRY"
    LONG_EXIT = "LONG_EXIT"
    NONE = "NONE"


@dataclass(frozen=True)
class StrategySignal:
    action: SignalAction = SignalAction.NONE
    stop_loss: Optional[float] = None
    reason: Optional[str] = None


class Strategy(ABC):
    """Pluggable signal source consumed by every engine."""

    name: str = 'strategy'

    @property
    def params(self) -> Dict[str, Any]:
        return {}

    @abstractmethod
    def on_candle(self, candle: Candle) -> StrategySignal:
        ...

    @abstractmethod
    def reset(self) -> None:
        ...

    def notify_position_closed(self) -> None:
        """Called after any close (signal, stop, liquidation); no-op by default."""
        return None
