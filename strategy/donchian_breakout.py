import logging
from typing import Any, Dict, Mapping, Optional

from analytics.indicators import ATR, EMA, DonchianChannel
from config import config
from ingest.market_types import Candle
from strategy.base import SignalAction, Strategy, StrategySignal


logger = logging.getLogger(__name__)


class DonchianBreakout(Strategy):
    """Long-only Donchian channel breakout.

    Entry: close breaks above the previous bar's upper channel and, when the
    EMA filter is enabled, sits above the EMA.
    Exit: close falls below the previous bar's lower channel. Stops are the
    engines' job; this strategy only proposes the initial stop level.
    """

    name = 'DonchianBreakout'

    def __init__(self, settings: Optional[Mapping[str, Any]] = None):
        cfg = settings if settings is not None else config.strategy
        self.donchian_period = int(cfg.get('donchian_period', 20))
        self.atr_period = int(cfg.get('atr_period', 14))
        self.atr_stop_multiplier = float(cfg.get('atr_stop_multiplier', 2.0))
        self.ema_filter_period = int(cfg.get('ema_filter_period', 50))

        self.donchian = DonchianChannel(self.donchian_period)
        self.atr = ATR(self.atr_period)
        self.ema = EMA(self.ema_filter_period or 1)
        self.in_position = False
        self._prev_upper = 0.0
        self._prev_lower = 0.0

    @property
    def params(self) -> Dict[str, Any]:
        return {
            'donchian_period': self.donchian_period,
            'atr_period': self.atr_period,
            'atr_stop_multiplier': self.atr_stop_multiplier,
            'ema_filter_period': self.ema_filter_period,
        }

    def on_candle(self, candle: Candle) -> StrategySignal:
        prev_upper = self._prev_upper
        prev_lower = self._prev_lower

        upper, lower, _ = self.donchian.update(candle)
        self.atr.update(candle)
        self.ema.update(candle.close)
        self._prev_upper = upper
        self._prev_lower = lower

        if not self.donchian.is_ready or not self.atr.is_ready:
            return StrategySignal()

        if self.ema_filter_period > 0:
            trend_ok = self.ema.is_ready and candle.close > self.ema.value
        else:
            trend_ok = True

        if not self.in_position:
            if prev_upper > 0 and candle.close > prev_upper and trend_ok:
                self.in_position = True
                stop = candle.close - self.atr.value * self.atr_stop_multiplier
                return StrategySignal(
                    action=SignalAction.LONG_ENTRY,
                    stop_loss=stop,
                    reason=f"Donchian upper breakout: {candle.close} > {prev_upper}",
                )
        elif prev_lower > 0 and candle.close < prev_lower:
            self.in_position = False
            return StrategySignal(
                action=SignalAction.LONG_EXIT,
                reason=f"Donchian lower break: {candle.close} < {prev_lower}",
            )

        return StrategySignal()

    def notify_position_closed(self) -> None:
        self.in_position = False

    def reset(self) -> None:
        self.donchian.reset()
        self.atr.reset()
        self.ema.reset()
        self.in_position = False
        self._prev_upper = 0.0
        self._prev_lower = 0.0
