import logging
import math
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from config import config


logger = logging.getLogger(__name__)


def _utc_date(now_ms: float) -> str:
    return datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).strftime('%Y-%m-%d')


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class DailyStats:
    date: str
    trade_count: int = 0
    total_pnl: float = 0.0
    total_loss: float = 0.0
    order_count: int = 0
    order_fail_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RiskCheck:
    allowed: bool
    reason: Optional[str] = None


class RiskManager:
    """Pre-trade admission control.

    Checks run in a fixed order and the first failure wins: virtual asset warning,
    daily loss limit, daily trade limit, cooldown since the last trade, minimum
    spread, minimum volatility. Daily counters roll over on the UTC date.
    """

    def __init__(self, settings: Optional[Mapping[str, Any]] = None):
        cfg = settings if settings is not None else config.risk
        self.max_daily_loss_pct = float(cfg.get('max_daily_loss_pct', 0.03))
        self.max_daily_trades = int(cfg.get('max_daily_trades', 10))
        self.cooldown_minutes = float(cfg.get('cooldown_minutes', 30))
        self.min_spread_bps = float(cfg.get('min_spread_bps', 10))
        self.min_atr_krw = float(cfg.get('min_atr_krw', 50_000))

        self.daily_stats = DailyStats(date=_utc_date(_now_ms()))
        self.last_trade_time = 0
        self.virtual_asset_warning = False

    def set_virtual_asset_warning(self, active: bool) -> None:
        if active != self.virtual_asset_warning:
            logger.warning("Virtual asset warning %s", "raised" if active else "cleared")
        self.virtual_asset_warning = active

    def check_entry(self, spread: float, atr: float, equity: float,
                    now: Optional[int] = None) -> RiskCheck:
        now = _now_ms() if now is None else now
        self._roll_day(now)
        stats = self.daily_stats

        if self.virtual_asset_warning:
            return RiskCheck(False, "Virtual asset warning active (no new entries)")

        max_daily_loss = equity * self.max_daily_loss_pct
        if abs(stats.total_loss) >= max_daily_loss:
            logger.warning("Daily loss limit reached: loss=%.0f limit=%.0f", stats.total_loss, max_daily_loss)
            return RiskCheck(False, f"Daily loss limit reached: {stats.total_loss:.0f} KRW")

        if stats.trade_count >= self.max_daily_trades:
            return RiskCheck(False, f"Daily trade limit: {stats.trade_count}/{self.max_daily_trades}")

        cooldown_ms = self.cooldown_minutes * 60 * 1000
        elapsed = now - self.last_trade_time
        if elapsed < cooldown_ms:
            remaining = math.ceil((cooldown_ms - elapsed) / 60000)
            return RiskCheck(False, f"Cooldown: {remaining}min remaining")

        if spread < self.min_spread_bps:
            return RiskCheck(False, f"Spread too low: {spread:.1f} < {self.min_spread_bps:g} bps")

        if atr < self.min_atr_krw:
            return RiskCheck(False, f"ATR too low: {atr:.0f} < {self.min_atr_krw:.0f} KRW")

        return RiskCheck(True)

    def record_trade(self, pnl: float, now: Optional[int] = None) -> None:
        now = _now_ms() if now is None else now
        self._roll_day(now)
        self.daily_stats.trade_count += 1
        self.daily_stats.total_pnl += pnl
        if pnl < 0:
            self.daily_stats.total_loss += pnl
        self.last_trade_time = now

    def record_order(self, success: bool, now: Optional[int] = None) -> None:
        self._roll_day(_now_ms() if now is None else now)
        self.daily_stats.order_count += 1
        if not success:
            self.daily_stats.order_fail_count += 1

    def get_order_fail_rate(self) -> float:
        stats = self.daily_stats
        if stats.order_count == 0:
            return 0.0
        return stats.order_fail_count / stats.order_count * 100

    def get_daily_stats(self) -> DailyStats:
        return DailyStats(**self.daily_stats.to_dict())

    def reset(self) -> None:
        self.daily_stats = DailyStats(date=_utc_date(_now_ms()))
        self.last_trade_time = 0

    def _roll_day(self, now: int) -> None:
        today = _utc_date(now)
        if self.daily_stats.date == today:
            return
        closed = self.daily_stats
        logger.info(
            "Daily report %s: trades=%s pnl=%.0f loss=%.0f orders=%s failed=%s",
            closed.date,
            closed.trade_count,
            closed.total_pnl,
            closed.total_loss,
            closed.order_count,
            closed.order_fail_count,
        )
        self.daily_stats = DailyStats(date=today)
