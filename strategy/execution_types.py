from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP = "STOP"


class OrderStatus(Enum):
    PENDING = "PENDING"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"


@dataclass
class Order:
    """An order attempt.

    For BUY orders ``qty`` is the quote-currency notional to spend; for SELL
    orders it is the base-asset quantity to sell.
    """

    id: str
    side: OrderSide
    type: OrderType
    price: float
    qty: float
    created_at: int
    status: OrderStatus = OrderStatus.PENDING
    stop_loss: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'side': self.side.value,
            'type': self.type.value,
            'price': self.price,
            'qty': self.qty,
            'created_at': self.created_at,
            'status': self.status.value,
            'stop_loss': self.stop_loss,
        }


@dataclass(frozen=True)
class Fill:
    order_id: str
    side: OrderSide
    price: float
    qty: float
    fee: float
    timestamp: int

    def __post_init__(self):
        if self.qty <= 0:
            raise ValueError(f"Fill qty must be positive, got {self.qty}")
        if self.fee < 0:
            raise ValueError(f"Fill fee must be non-negative, got {self.fee}")

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['side'] = self.side.value
        return data


@dataclass
class Position:
    entry_price: float
    qty: float
    entry_time: int
    stop_loss: float
    trailing_stop: float
    high_water_mark: float

    @property
    def effective_stop(self) -> float:
        return max(self.stop_loss, self.trailing_stop)

    def unrealized_pnl(self, price: float) -> float:
        return (price - self.entry_price) * self.qty

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PositionSizing:
    qty: float
    krw_amount: float
    risk_krw: float
    stop_loss: float


@dataclass(frozen=True)
class ClosedTrade:
    pnl: float
    pnl_pct: float
