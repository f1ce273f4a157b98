import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ingest.market_types import Candle, Tick


logger = logging.getLogger(__name__)

CandleHandler = Callable[[Candle], None]


@dataclass
class _OpenBar:
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    def freeze(self) -> Candle:
        return Candle(self.timestamp, self.open, self.high, self.low, self.close, self.volume)


class CandleAggregator:
    """Build fixed-width OHLCV bars from trade ticks.

    Ticks older than the open bar's bucket are dropped and counted; ticks from
    a newer bucket close the open bar first. Out-of-order ticks within the same
    bucket still update the bar.
    """

    def __init__(self, on_close: CandleHandler, bucket_ms: int = 5 * 60 * 1000):
        if bucket_ms <= 0:
            raise ValueError("bucket_ms must be positive")
        self.on_close = on_close
        self.bucket_ms = bucket_ms
        self._current: Optional[_OpenBar] = None
        self._last_closed_ts: Optional[int] = None
        self.tick_count = 0
        self.dropped_count = 0

    def bucket_start(self, ts: int) -> int:
        return (ts // self.bucket_ms) * self.bucket_ms

    def feed(self, tick: Tick) -> None:
        window = self.bucket_start(tick.timestamp)
        current = self._current

        if current is None:
            if self._last_closed_ts is not None and window <= self._last_closed_ts:
                self.dropped_count += 1
                logger.debug("Dropped tick for already closed bar %s", window)
                return
            self._current = self._new_bar(window, tick)
            self.tick_count += 1
            return

        if window < current.timestamp:
            self.dropped_count += 1
            logger.debug("Dropped stale tick ts=%s (open bar %s)", tick.timestamp, current.timestamp)
            return

        if window > current.timestamp:
            self._close_current()
            self._current = self._new_bar(window, tick)
            self.tick_count += 1
            return

        if tick.price > current.high:
            current.high = tick.price
        if tick.price < current.low:
            current.low = tick.price
        current.close = tick.price
        current.volume += tick.volume
        self.tick_count += 1

    def flush_if_expired(self, now_ms: int) -> Optional[Candle]:
        if self._current is None:
            return None
        if now_ms >= self._current.timestamp + self.bucket_ms:
            return self._close_current()
        return None

    def flush(self) -> Optional[Candle]:
        if self._current is None:
            return None
        return self._close_current()

    @property
    def last_closed_timestamp(self) -> Optional[int]:
        return self._last_closed_ts

    def get_stats(self) -> Dict[str, int]:
        return {'tick_count': self.tick_count, 'dropped_count': self.dropped_count}

    def _close_current(self) -> Candle:
        candle = self._current.freeze()
        self._current = None
        self._last_closed_ts = candle.timestamp
        self.on_close(candle)
        return candle

    @staticmethod
    def _new_bar(window: int, tick: Tick) -> _OpenBar:
        return _OpenBar(window, tick.price, tick.price, tick.price, tick.price, tick.volume)
