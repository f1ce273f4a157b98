import logging
import math
from dataclasses import dataclass, field
from itertools import product
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np

from backtest.data_loader import walk_forward_split
from backtest.engine import BacktestEngine
from backtest.report import BacktestReport
from config import config
from ingest.market_types import Candle
from strategy.base import Strategy
from strategy.donchian_breakout import DonchianBreakout


logger = logging.getLogger(__name__)

# Ranking stand-in for an infinite profit factor (no losing trades)
INFINITE_PF_RANK = 1e9


@dataclass
class ParamRange:
    """Inclusive ``min..max`` range sampled every ``step``."""
    name: str
    min: float
    max: float
    step: float

    def values(self) -> List[float]:
        if self.step <= 0:
            raise ValueError(f"{self.name}: step must be positive")
        if self.max < self.min:
            raise ValueError(f"{self.name}: max is below min")
        count = int(math.floor((self.max - self.min) / self.step + 1e-9)) + 1
        values = [round(self.min + i * self.step, 8) for i in range(count)]
        if all(isinstance(v, int) for v in (self.min, self.max, self.step)):
            return [int(v) for v in values]
        return values


SWEEP_RANGES = [
    ParamRange('donchian_period', 10, 30, 10),
    ParamRange('atr_stop_multiplier', 2.0, 3.0, 0.5),
]

WALK_FORWARD_RANGES = [
    ParamRange('donchian_period', 10, 40, 5),
    ParamRange('atr_period', 10, 20, 5),
    ParamRange('atr_stop_multiplier', 1.5, 3.0, 0.5),
]


@dataclass
class SweepResult:
    params: Dict[str, Any]
    report: BacktestReport

    @property
    def rank(self) -> float:
        pf = self.report.profit_factor
        return INFINITE_PF_RANK if math.isinf(pf) else pf


@dataclass
class WalkForwardWindow:
    index: int
    train_start: int
    test_start: int
    best_params: Dict[str, Any]
    train_report: BacktestReport
    test_report: BacktestReport


@dataclass
class WalkForwardSummary:
    windows: List[WalkForwardWindow] = field(default_factory=list)
    combined_test_pnl: float = 0.0
    combined_test_return: float = 0.0
    avg_train_return: float = 0.0
    avg_test_return: float = 0.0
    robustness_ratio: float = 0.0


def generate_param_grid(ranges: Sequence[ParamRange]) -> List[Dict[str, Any]]:
    names = [r.name for r in ranges]
    return [dict(zip(names, combo)) for combo in product(*(r.values() for r in ranges))]


class Optimizer:
    """Grid sweep and walk-forward analysis of strategy parameters over BacktestEngine.

    Swept values override ``base_params``; anything not swept keeps the
    configured strategy value.
    """

    def __init__(self, base_params: Optional[Mapping[str, Any]] = None,
                 backtest_settings: Optional[Mapping[str, Any]] = None,
                 initial_capital: Optional[float] = None,
                 trailing_stop_atr_multiplier: Optional[float] = None,
                 strategy_factory: Callable[[Mapping[str, Any]], Strategy] = DonchianBreakout):
        self.base_params = dict(DonchianBreakout(base_params).params)
        self.backtest_settings = backtest_settings
        self.initial_capital = float(
            initial_capital if initial_capital is not None else config.capital.get('initial_krw', 10_000_000)
        )
        self.trailing_stop_atr_multiplier = trailing_stop_atr_multiplier
        self.strategy_factory = strategy_factory

    def evaluate_params(self, candles: Sequence[Candle], params: Mapping[str, Any]) -> SweepResult:
        merged = {**self.base_params, **params}
        engine = BacktestEngine(
            settings=self.backtest_settings,
            initial_capital=self.initial_capital,
            atr_period=int(merged['atr_period']),
            trailing_stop_atr_multiplier=self.trailing_stop_atr_multiplier,
        )
        report = engine.run(candles, self.strategy_factory(merged))
        return SweepResult(params=dict(params), report=report)

    def param_sweep(self, candles: Sequence[Candle], ranges: Sequence[ParamRange]) -> List[SweepResult]:
        """Backtest every combination; best profit factor first."""
        grid = generate_param_grid(ranges)
        logger.info("Sweeping %s parameter combinations over %s bars", len(grid), len(candles))

        results = [self.evaluate_params(candles, params) for params in grid]
        results.sort(key=lambda r: r.rank, reverse=True)
        if results:
            logger.info("Best params %s: pf=%.2f pnl=%.0f trades=%s",
                        results[0].params, results[0].report.profit_factor,
                        results[0].report.total_pnl, results[0].report.total_trades)
        return results

    def walk_forward(self, candles: List[Candle], ranges: Sequence[ParamRange],
                     train_bars: Optional[int] = None, test_bars: Optional[int] = None,
                     step_bars: Optional[int] = None) -> WalkForwardSummary:
        """Sweep each train window and replay its best params on the following test window."""
        if train_bars is None:
            train_bars = int(config.backtest.get('walk_forward_train_bars', 2016))
        if test_bars is None:
            test_bars = int(config.backtest.get('walk_forward_test_bars', 576))

        splits = walk_forward_split(candles, train_bars, test_bars, step_bars)
        if not splits:
            raise ValueError(
                f"Not enough candles for walk-forward: need {train_bars + test_bars}, have {len(candles)}"
            )

        windows = []
        for i, (train, test) in enumerate(splits):
            logger.info("Walk-forward window %s/%s: train=%s bars test=%s bars",
                        i + 1, len(splits), len(train), len(test))
            best = self.param_sweep(train, ranges)[0]
            test_result = self.evaluate_params(test, best.params)
            windows.append(WalkForwardWindow(
                index=i,
                train_start=train[0].timestamp,
                test_start=test[0].timestamp,
                best_params=best.params,
                train_report=best.report,
                test_report=test_result.report,
            ))
        return self.summarize_walk_forward(windows)

    def summarize_walk_forward(self, windows: List[WalkForwardWindow]) -> WalkForwardSummary:
        if not windows:
            return WalkForwardSummary()

        train_returns = np.array([w.train_report.total_return for w in windows], dtype=float)
        test_returns = np.array([w.test_report.total_return for w in windows], dtype=float)
        combined_pnl = float(sum(w.test_report.total_pnl for w in windows))
        avg_train = float(np.mean(train_returns))
        avg_test = float(np.mean(test_returns))

        summary = WalkForwardSummary(
            windows=windows,
            combined_test_pnl=combined_pnl,
            combined_test_return=combined_pnl / self.initial_capital * 100 if self.initial_capital > 0 else 0.0,
            avg_train_return=avg_train,
            avg_test_return=avg_test,
            robustness_ratio=avg_test / avg_train if avg_train != 0 else 0.0,
        )
        logger.info("Walk-forward: windows=%s test_pnl=%.0f avg_train=%.2f%% avg_test=%.2f%% robustness=%.2f",
                    len(windows), combined_pnl, avg_train, avg_test, summary.robustness_ratio)
        return summary


def _format_params(params: Mapping[str, Any]) -> str:
    return ", ".join(f"{k}={v}" for k, v in params.items())


def format_sweep_results(results: Sequence[SweepResult], top: int = 10) -> str:
    lines = [f"=== Parameter Sweep (top {min(top, len(results))} of {len(results)}) ==="]
    for i, result in enumerate(results[:top], 1):
        r = result.report
        lines.append(
            f"{i:>2}. {_format_params(result.params)} | trades {r.total_trades} "
            f"| pnl {r.total_pnl:,.0f} KRW ({r.total_return:.2f}%) | pf {r.profit_factor:.2f} "
            f"| mdd {r.max_drawdown:.2f}%"
        )
    return "\n".join(lines)


def format_walk_forward(summary: WalkForwardSummary) -> str:
    lines = ["=== Walk-Forward Analysis ==="]
    for w in summary.windows:
        lines.append(
            f"Window {w.index + 1}: {_format_params(w.best_params)} | "
            f"train {w.train_report.total_return:.2f}% | test {w.test_report.total_return:.2f}% "
            f"({w.test_report.total_trades} trades)"
        )
    lines.extend([
        f"Combined test PnL: {summary.combined_test_pnl:,.0f} KRW ({summary.combined_test_return:.2f}%)",
        f"Avg train return:  {summary.avg_train_return:.2f}%",
        f"Avg test return:   {summary.avg_test_return:.2f}%",
        f"Robustness ratio:  {summary.robustness_ratio:.2f}",
    ])
    return "\n".join(lines)
