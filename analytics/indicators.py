from collections import deque
from typing import Deque, List, Optional, Tuple

from ingest.market_types import Candle


class ATR:
    """Average True Range with Wilder smoothing.

    The first ``period`` true ranges are averaged to seed the value; after that
    ``ATR = (ATR_prev * (period - 1) + TR) / period``.
    """

    def __init__(self, period: int):
        if period < 1:
            raise ValueError("ATR period must be >= 1")
        self.period = period
        self._prev_close: Optional[float] = None
        self._seed: List[float] = []
        self._value = 0.0
        self._ready = False

    def update(self, candle: Candle) -> float:
        tr = self._true_range(candle)
        self._prev_close = candle.close

        if not self._ready:
            self._seed.append(tr)
            if len(self._seed) == self.period:
                self._value = sum(self._seed) / self.period
                self._ready = True
        else:
            self._value = (self._value * (self.period - 1) + tr) / self.period
        return self._value

    @property
    def value(self) -> float:
        return self._value

    @property
    def is_ready(self) -> bool:
        return self._ready

    def _true_range(self, candle: Candle) -> float:
        if self._prev_close is None:
            return candle.high - candle.low
        return max(
            candle.high - candle.low,
            abs(candle.high - self._prev_close),
            abs(candle.low - self._prev_close),
        )

    def reset(self) -> None:
        self._prev_close = None
        self._seed = []
        self._value = 0.0
        self._ready = False


class DonchianChannel:
    def __init__(self, period: int):
        if period < 1:
            raise ValueError("Donchian period must be >= 1")
        self.period = period
        self._highs: Deque[float] = deque(maxlen=period)
        self._lows: Deque[float] = deque(maxlen=period)
        self.upper = 0.0
        self.lower = 0.0
        self.middle = 0.0

    def update(self, candle: Candle) -> Tuple[float, float, float]:
        self._highs.append(candle.high)
        self._lows.append(candle.low)
        if self.is_ready:
            self.upper = max(self._highs)
            self.lower = min(self._lows)
            self.middle = (self.upper + self.lower) / 2
        return self.upper, self.lower, self.middle

    @property
    def is_ready(self) -> bool:
        return len(self._highs) == self.period

    def reset(self) -> None:
        self._highs.clear()
        self._lows.clear()
        self.upper = 0.0
        self.lower = 0.0
        self.middle = 0.0


class EMA:
    """Exponential moving average seeded with the simple mean of the first ``period`` values."""

    def __init__(self, period: int):
        if period < 1:
            raise ValueError("EMA period must be >= 1")
        self.period = period
        self.multiplier = 2 / (period + 1)
        self._value = 0.0
        self._count = 0
        self._sum = 0.0
        self._ready = False

    def update(self, value: float) -> float:
        if not self._ready:
            self._sum += value
            self._count += 1
            self._value = self._sum / self._count
            if self._count == self.period:
                self._ready = True
        else:
            self._value = (value - self._value) * self.multiplier + self._value
        return self._value

    @property
    def value(self) -> float:
        return self._value

    @property
    def is_ready(self) -> bool:
        return self._ready

    def reset(self) -> None:
        self._value = 0.0
        self._count = 0
        self._sum = 0.0
        self._ready = False
