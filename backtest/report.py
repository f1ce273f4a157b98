import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from strategy.events import EventType, TradingEvent


logger = logging.getLogger(__name__)

# 5-minute bars in a year
BARS_PER_YEAR = 105_120
MS_PER_YEAR = 365.25 * 24 * 3600 * 1000


@dataclass(frozen=True)
class TradeRecord:
    entry_time: int
    exit_time: int
    entry_price: float
    exit_price: float
    qty: float
    pnl: float
    pnl_pct: float
    holding_bars: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EquityPoint:
    timestamp: int
    equity: float


@dataclass(frozen=True)
class MonthlyPnl:
    year: int
    month: int
    pnl: float
    pnl_pct: float
    trade_count: int


@dataclass
class BacktestReport:
    total_trades: int
    win_count: int
    loss_count: int
    win_rate: float
    total_pnl: float
    total_return: float
    cagr: float
    max_drawdown: float
    profit_factor: float
    expectancy: float
    avg_win: float
    avg_loss: float
    max_consecutive_losses: int
    sharpe_ratio: float
    start_equity: float
    end_equity: float
    trades: List[TradeRecord] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    monthly_pnl: List[MonthlyPnl] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ('trades', 'equity_curve', 'monthly_pnl'):
            data.pop(key)
        return data


def build_trade_log(events: Sequence[TradingEvent]) -> List[TradeRecord]:
    """Pair POSITION_OPENED/POSITION_CLOSED events into trade records."""
    trades: List[TradeRecord] = []
    entry_time: Optional[int] = None
    entry_bar = 0
    bar_count = 0

    for event in events:
        if event.type is EventType.CANDLE:
            bar_count += 1
        elif event.type is EventType.POSITION_OPENED:
            entry_time = event.timestamp
            entry_bar = bar_count
        elif event.type is EventType.POSITION_CLOSED and entry_time is not None:
            trades.append(TradeRecord(
                entry_time=entry_time,
                exit_time=event.timestamp,
                entry_price=event.entry_price,
                exit_price=event.exit_price,
                qty=event.qty,
                pnl=event.pnl,
                pnl_pct=event.pnl_pct,
                holding_bars=bar_count - entry_bar,
                reason=_exit_reason(events, event.timestamp),
            ))
            entry_time = None

    return trades


def _exit_reason(events: Sequence[TradingEvent], timestamp: int) -> str:
    for event in events:
        if event.type is EventType.SIGNAL and event.timestamp == timestamp and event.signal.reason:
            return event.signal.reason
    for event in events:
        if event.type is EventType.ORDER_FILLED and event.timestamp == timestamp:
            order_id = event.fill.order_id
            if order_id.startswith('stop-') or order_id.startswith('paper-stop-'):
                return 'Stop loss hit'
            if order_id.startswith('force-close'):
                return 'End of data'
    return 'unknown'


def build_report(trades: List[TradeRecord], equity_curve: List[EquityPoint],
                 start_equity: float, end_equity: float) -> BacktestReport:
    pnls = np.array([t.pnl for t in trades], dtype=float)
    wins = pnls[pnls > 0]
    losses = pnls[pnls <= 0]

    total_pnl = float(pnls.sum()) if len(pnls) else 0.0
    gross_profit = float(wins.sum()) if len(wins) else 0.0
    gross_loss = float(abs(losses.sum())) if len(losses) else 0.0

    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    elif gross_profit > 0:
        profit_factor = math.inf
    else:
        profit_factor = 0.0

    n = len(trades)
    return BacktestReport(
        total_trades=n,
        win_count=len(wins),
        loss_count=len(losses),
        win_rate=len(wins) / n if n else 0.0,
        total_pnl=total_pnl,
        total_return=total_pnl / start_equity * 100 if start_equity > 0 else 0.0,
        cagr=calc_cagr(equity_curve, start_equity, end_equity),
        max_drawdown=calc_max_drawdown(equity_curve),
        profit_factor=profit_factor,
        expectancy=total_pnl / n if n else 0.0,
        avg_win=gross_profit / len(wins) if len(wins) else 0.0,
        avg_loss=gross_loss / len(losses) if len(losses) else 0.0,
        max_consecutive_losses=calc_max_consecutive_losses(trades),
        sharpe_ratio=calc_sharpe(trades),
        start_equity=start_equity,
        end_equity=end_equity,
        trades=list(trades),
        equity_curve=list(equity_curve),
        monthly_pnl=calc_monthly_pnl(trades),
    )


def calc_cagr(curve: List[EquityPoint], start_equity: float, end_equity: float) -> float:
    if len(curve) < 2 or start_equity <= 0 or end_equity <= 0:
        return 0.0
    years = (curve[-1].timestamp - curve[0].timestamp) / MS_PER_YEAR
    if years <= 0:
        return 0.0
    return ((end_equity / start_equity) ** (1 / years) - 1) * 100


def calc_max_drawdown(curve: List[EquityPoint]) -> float:
    if not curve:
        return 0.0
    equity = np.array([p.equity for p in curve], dtype=float)
    peaks = np.maximum.accumulate(equity)
    with np.errstate(divide='ignore', invalid='ignore'):
        drawdowns = np.where(peaks > 0, (peaks - equity) / peaks, 0.0)
    return float(drawdowns.max()) * 100


def calc_max_consecutive_losses(trades: List[TradeRecord]) -> int:
    longest = current = 0
    for trade in trades:
        if trade.pnl <= 0:
            current += 1
            longest = max(longest, current)
        else:
            current = 0
    return longest


def calc_sharpe(trades: List[TradeRecord]) -> float:
    """Per-trade Sharpe annualised by the average holding period in bars."""
    if len(trades) < 2:
        return 0.0
    returns = np.array([t.pnl_pct for t in trades], dtype=float)
    std = returns.std(ddof=1)
    if std == 0:
        return 0.0
    avg_bars = float(np.mean([t.holding_bars for t in trades]))
    trades_per_year = BARS_PER_YEAR / avg_bars if avg_bars > 0 else 1.0
    return float(returns.mean() / std * math.sqrt(trades_per_year))


def calc_monthly_pnl(trades: List[TradeRecord]) -> List[MonthlyPnl]:
    if not trades:
        return []
    df = pd.DataFrame({
        'exit_time': pd.to_datetime([t.exit_time for t in trades], unit='ms', utc=True),
        'pnl': [t.pnl for t in trades],
        'pnl_pct': [t.pnl_pct for t in trades],
    })
    df['year'] = df['exit_time'].dt.year
    df['month'] = df['exit_time'].dt.month
    grouped = (
        df.groupby(['year', 'month'], sort=True)
        .agg(pnl=('pnl', 'sum'), pnl_pct=('pnl_pct', 'sum'), trade_count=('pnl', 'size'))
        .reset_index()
    )
    return [
        MonthlyPnl(
            year=int(row.year),
            month=int(row.month),
            pnl=float(row.pnl),
            pnl_pct=float(row.pnl_pct),
            trade_count=int(row.trade_count),
        )
        for row in grouped.itertuples(index=False)
    ]


def format_report(report: BacktestReport) -> str:
    lines = [
        "=== Backtest Report ===",
        f"Trades:            {report.total_trades} (win {report.win_count} / loss {report.loss_count})",
        f"Win rate:          {report.win_rate * 100:.1f}%",
        f"Total PnL:         {report.total_pnl:,.0f} KRW ({report.total_return:.2f}%)",
        f"CAGR:              {report.cagr:.2f}%",
        f"Max drawdown:      {report.max_drawdown:.2f}%",
        f"Profit factor:     {report.profit_factor:.2f}",
        f"Expectancy:        {report.expectancy:,.0f} KRW",
        f"Avg win / loss:    {report.avg_win:,.0f} / {report.avg_loss:,.0f} KRW",
        f"Max consec. losses:{report.max_consecutive_losses:>3}",
        f"Sharpe:            {report.sharpe_ratio:.2f}",
        f"Equity:            {report.start_equity:,.0f} -> {report.end_equity:,.0f} KRW",
    ]
    if report.monthly_pnl:
        lines.append("--- Monthly PnL ---")
        for m in report.monthly_pnl:
            lines.append(f"{m.year}-{m.month:02d}: {m.pnl:>14,.0f} KRW  ({m.trade_count} trades)")
    return "\n".join(lines)
