from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Candle:
    """Closed OHLCV bar; ``timestamp`` is the bucket start in epoch milliseconds."""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    def is_consistent(self) -> bool:
        return (
            self.high >= max(self.open, self.close, self.low)
            and self.low <= min(self.open, self.close, self.high)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
        }


@dataclass(frozen=True)
class Tick:
    symbol: str
    price: float
    volume: float
    timestamp: int
    side: str = 'BUY'


@dataclass(frozen=True)
class OrderBookLevel:
    price: float
    qty: float


@dataclass(frozen=True)
class OrderBook:
    bids: List[OrderBookLevel] = field(default_factory=list)
    asks: List[OrderBookLevel] = field(default_factory=list)
    timestamp: int = 0

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0].price if self.asks else None

    def spread_bps(self) -> Optional[float]:
        bid, ask = self.best_bid, self.best_ask
        if bid is None or ask is None:
            return None
        mid = (bid + ask) / 2
        if mid <= 0:
            return 0.0
        return (ask - bid) / mid * 10000


@dataclass(frozen=True)
class Ticker:
    trade_price: float
    opening_price: float = 0.0
    high_price: float = 0.0
    low_price: float = 0.0
    timestamp: int = 0
