import logging
import math
from typing import Any, Mapping, Optional

from config import config
from strategy.execution_types import PositionSizing


logger = logging.getLogger(__name__)

QTY_DECIMALS = 8


def _floor_qty(qty: float) -> float:
    scale = 10 ** QTY_DECIMALS
    return math.floor(qty * scale) / scale


def calc_position_size(equity: float, entry_price: float, atr: float,
                       atr_stop_multiplier: Optional[float] = None,
                       settings: Optional[Mapping[str, Any]] = None) -> PositionSizing:
    """Size a long entry so a stop-out loses a fixed fraction of equity.

    The stop sits ``atr * atr_stop_multiplier`` below the entry. The notional
    is capped by the configured maximum and by a fraction of equity.
    """
    cfg = settings if settings is not None else config.risk
    if atr_stop_multiplier is None:
        atr_stop_multiplier = config.strategy.get('atr_stop_multiplier', 2.0)
    risk_pct = float(cfg.get('risk_per_trade_pct', 0.01))
    max_position = float(cfg.get('max_position_krw', 500_000))
    equity_fraction = float(cfg.get('max_equity_fraction', 0.95))

    risk_krw = equity * risk_pct
    stop_distance = atr * atr_stop_multiplier
    if stop_distance <= 0 or entry_price <= 0:
        logger.warning("Cannot size position: stop_distance=%s entry=%s", stop_distance, entry_price)
        return PositionSizing(qty=0.0, krw_amount=0.0, risk_krw=0.0, stop_loss=0.0)

    qty = risk_krw / stop_distance
    krw_amount = qty * entry_price

    if krw_amount > max_position:
        krw_amount = max_position
        qty = krw_amount / entry_price

    equity_cap = equity * equity_fraction
    if krw_amount > equity_cap:
        krw_amount = equity_cap
        qty = krw_amount / entry_price

    return PositionSizing(
        qty=_floor_qty(qty),
        krw_amount=float(math.floor(krw_amount)),
        risk_krw=float(math.floor(risk_krw)),
        stop_loss=float(math.floor(entry_price - stop_distance)),
    )
