import logging
import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from config import TRADING_MODES, config


logger = logging.getLogger(__name__)


@dataclass
class ModeStats:
    start_time: float = field(default_factory=time.time)
    trade_count: int = 0
    total_pnl: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    max_drawdown_pct: float = 0.0
    peak_equity: float = 0.0
    order_count: int = 0
    order_fail_count: int = 0

    @property
    def profit_factor(self) -> float:
        if self.gross_loss < 0:
            return self.gross_profit / abs(self.gross_loss)
        return math.inf if self.gross_profit > 0 else 0.0

    @property
    def order_fail_pct(self) -> float:
        if self.order_count == 0:
            return 0.0
        return self.order_fail_count / self.order_count * 100

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['profit_factor'] = self.profit_factor
        data['order_fail_pct'] = self.order_fail_pct
        return data


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reasons: List[str]


class ModeManager:
    """Tracks the running mode and gates BACKTEST -> PAPER -> LIVE promotion."""

    def __init__(self, audit=None, initial_mode: Optional[str] = None,
                 settings: Optional[Mapping[str, Any]] = None,
                 initial_equity: Optional[float] = None):
        self.audit = audit
        self.promotion = settings if settings is not None else config.promotion
        self.initial_equity = float(
            initial_equity if initial_equity is not None else config.capital.get('initial_krw', 10_000_000)
        )
        self.mode = (initial_mode or config.mode).upper()
        if self.mode not in TRADING_MODES:
            raise ValueError(f"Unknown mode {self.mode}")
        self.stats = self._new_stats()
        logger.info("Mode initialized: %s", self.mode)

    @property
    def current(self) -> str:
        return self.mode

    def check_paper_eligibility(self, profit_factor: float, max_drawdown_pct: float,
                                trade_count: int) -> Eligibility:
        """Out-of-sample backtest results required before paper trading."""
        p = self.promotion
        reasons = []
        if profit_factor < p.get('paper_min_pf', 1.2):
            reasons.append(f"PF {profit_factor:.2f} < {p.get('paper_min_pf', 1.2)}")
        if max_drawdown_pct > p.get('paper_max_mdd_pct', 20):
            reasons.append(f"MDD {max_drawdown_pct:.1f}% > {p.get('paper_max_mdd_pct', 20)}%")
        if trade_count < p.get('paper_min_trades', 200):
            reasons.append(f"Trades {trade_count} < {p.get('paper_min_trades', 200)}")
        return Eligibility(not reasons, reasons)

    def check_live_eligibility(self, now: Optional[float] = None) -> Eligibility:
        """Paper track record required before live trading."""
        p = self.promotion
        s = self.stats
        now = time.time() if now is None else now
        reasons = []

        elapsed_days = (now - s.start_time) / 86400
        if elapsed_days < p.get('paper_min_days', 14):
            reasons.append(f"Paper days {elapsed_days:.1f} < {p.get('paper_min_days', 14)}")
        if s.trade_count < p.get('paper_min_trades', 200):
            reasons.append(f"Trades {s.trade_count} < {p.get('paper_min_trades', 200)}")
        if s.profit_factor < p.get('paper_min_pf', 1.2):
            reasons.append(f"PF {s.profit_factor:.2f} < {p.get('paper_min_pf', 1.2)}")
        if s.max_drawdown_pct > p.get('paper_max_mdd_pct', 20):
            reasons.append(f"MDD {s.max_drawdown_pct:.1f}% > {p.get('paper_max_mdd_pct', 20)}%")
        if s.order_fail_pct > p.get('paper_max_order_fail_pct', 1):
            reasons.append(f"Order fail rate {s.order_fail_pct:.1f}% > {p.get('paper_max_order_fail_pct', 1)}%")
        return Eligibility(not reasons, reasons)

    def switch_mode(self, to: str) -> None:
        to = to.upper()
        if to not in TRADING_MODES:
            raise ValueError(f"Unknown mode {to}")
        from_mode = self.mode
        if from_mode == 'PAPER' and to == 'LIVE':
            check = self.check_live_eligibility()
            if not check.eligible:
                logger.warning("LIVE promotion denied: %s", "; ".join(check.reasons))
                raise RuntimeError(f"Cannot promote to LIVE: {'; '.join(check.reasons)}")

        logger.info("Mode switch %s -> %s", from_mode, to)
        if self.audit is not None:
            self.audit.info('mode', 'MODE_SWITCH', f"{from_mode} -> {to}", to)
        self.mode = to
        self.stats = self._new_stats()

    def record_trade(self, pnl: float, equity: float) -> None:
        s = self.stats
        s.trade_count += 1
        s.total_pnl += pnl
        if pnl > 0:
            s.gross_profit += pnl
        else:
            s.gross_loss += pnl
        s.peak_equity = max(s.peak_equity, equity)
        if s.peak_equity > 0:
            s.max_drawdown_pct = max(s.max_drawdown_pct, (s.peak_equity - equity) / s.peak_equity * 100)

    def record_order(self, success: bool) -> None:
        self.stats.order_count += 1
        if not success:
            self.stats.order_fail_count += 1

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.to_dict()

    def _new_stats(self) -> ModeStats:
        return ModeStats(peak_equity=self.initial_equity)
