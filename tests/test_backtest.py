#!/usr/bin/env python
"""
Backtest engine, report metrics and CSV loading tests
"""
import sys
sys.path.insert(0, '.')

import math

import pytest

from backtest.data_loader import load_candles_csv, split_in_out_sample, walk_forward_split
from backtest.engine import BacktestEngine
from backtest.optimizer import (
    SWEEP_RANGES,
    Optimizer,
    ParamRange,
    SweepResult,
    WalkForwardWindow,
    format_sweep_results,
    format_walk_forward,
    generate_param_grid,
)
from backtest.report import EquityPoint, TradeRecord, build_report, build_trade_log, format_report
from ingest.market_types import Candle
from strategy.donchian_breakout import DonchianBreakout
from strategy.events import EventType

BAR_MS = 5 * 60 * 1000
T0 = 1_704_067_200_000  # 2024-01-01 00:00 UTC

STRATEGY_SETTINGS = {
    'donchian_period': 10,
    'atr_period': 5,
    'atr_stop_multiplier': 2.0,
    'ema_filter_period': 0,
}
BACKTEST_SETTINGS = {'position_size_pct': 1.0, 'fee_rate': 0.0005, 'slippage_bps': 5}


def _bars(closes, start_price=100.0):
    candles = []
    prev = start_price
    for i, close in enumerate(closes):
        candles.append(Candle(T0 + i * BAR_MS, prev, max(prev, close) + 1, min(prev, close) - 1, close, 1.0))
        prev = close
    return candles


def _breakout_then_crash():
    flat = [100.0] * 30
    ramp = [100.0 + 2 * (i + 1) for i in range(40)]
    crash = [180.0 - 3 * (i + 1) for i in range(30)]
    return _bars(flat + ramp + crash)


def _engine():
    return BacktestEngine(settings=BACKTEST_SETTINGS, initial_capital=1_000_000,
                          atr_period=5, trailing_stop_atr_multiplier=3.0)


def test_breakout_trade_and_stop_exit():
    print("Testing BacktestEngine breakout...")
    candles = _breakout_then_crash()
    engine = _engine()
    report = engine.run(candles, DonchianBreakout(STRATEGY_SETTINGS))

    assert report.total_trades >= 1
    first = report.trades[0]
    assert first.exit_price > first.entry_price
    assert first.reason == 'Stop loss hit'
    assert len(report.equity_curve) == len(candles)
    assert not engine.position_manager.has_position

    closes = [e for e in engine.get_event_log() if e.type is EventType.POSITION_CLOSED]
    assert len(closes) == report.total_trades
    print(f"✓ {report.total_trades} trades, pnl {report.total_pnl:,.0f}")


def test_entry_fills_on_next_bar_open():
    candles = _breakout_then_crash()
    engine = _engine()
    engine.run(candles, DonchianBreakout(STRATEGY_SETTINGS))

    log = engine.get_event_log()
    created = next(e for e in log if e.type is EventType.ORDER_CREATED)
    filled = next(e for e in log if e.type is EventType.ORDER_FILLED)
    assert filled.timestamp == created.timestamp + BAR_MS
    fill_bar = next(c for c in candles if c.timestamp == filled.timestamp)
    assert filled.fill.price == pytest.approx(fill_bar.open * 1.0005)


def test_open_position_is_closed_at_end_of_data():
    candles = _bars([100.0] * 30 + [100.0 + 2 * (i + 1) for i in range(20)])
    engine = _engine()
    report = engine.run(candles, DonchianBreakout(STRATEGY_SETTINGS))

    assert report.total_trades == 1
    trade = report.trades[0]
    assert trade.reason == 'End of data'
    assert trade.exit_price == candles[-1].close
    assert not engine.position_manager.has_position


def test_backtest_is_deterministic():
    print("Testing determinism...")
    candles = _breakout_then_crash()
    first = _engine().run(candles, DonchianBreakout(STRATEGY_SETTINGS))
    second = _engine().run(candles, DonchianBreakout(STRATEGY_SETTINGS))

    assert first.summary() == second.summary()
    assert [t.to_dict() for t in first.trades] == [t.to_dict() for t in second.trades]
    assert first.equity_curve == second.equity_curve

    engine = _engine()
    strategy = DonchianBreakout(STRATEGY_SETTINGS)
    log_a = (engine.run(candles, strategy), engine.get_event_log())
    log_b = (engine.run(candles, strategy), engine.get_event_log())
    assert log_a[0].summary() == log_b[0].summary()
    assert log_a[1] == log_b[1]
    print("✓ Identical event logs and reports")


def test_no_trades_on_flat_market():
    report = _engine().run(_bars([100.0] * 50), DonchianBreakout(STRATEGY_SETTINGS))
    assert report.total_trades == 0
    assert report.end_equity == report.start_equity
    assert report.profit_factor == 0.0
    assert report.max_drawdown == 0.0


def _trade(exit_time, pnl, pnl_pct=1.0, bars=3):
    return TradeRecord(exit_time - BAR_MS * bars, exit_time, 100.0, 101.0, 1.0, pnl, pnl_pct, bars, 'test')


def test_report_metrics():
    jan = T0 + 86_400_000
    feb = T0 + 40 * 86_400_000
    trades = [_trade(jan, 100), _trade(jan + BAR_MS, -50, -0.5), _trade(feb, 200, 2.0), _trade(feb + BAR_MS, -50, -0.5)]
    curve = [EquityPoint(T0, 10_000), EquityPoint(jan, 12_000), EquityPoint(feb, 9_000), EquityPoint(feb + BAR_MS, 10_200)]

    report = build_report(trades, curve, 10_000, 10_200)
    assert report.win_count == 2
    assert report.loss_count == 2
    assert report.win_rate == 0.5
    assert report.total_pnl == 200
    assert report.total_return == pytest.approx(2.0)
    assert report.profit_factor == pytest.approx(3.0)
    assert report.expectancy == pytest.approx(50.0)
    assert report.avg_win == pytest.approx(150.0)
    assert report.avg_loss == pytest.approx(50.0)
    assert report.max_consecutive_losses == 1
    assert report.max_drawdown == pytest.approx(25.0)
    assert report.cagr > 0
    assert [(m.year, m.month, m.trade_count) for m in report.monthly_pnl] == [(2024, 1, 2), (2024, 2, 2)]
    assert report.monthly_pnl[1].pnl == pytest.approx(150.0)

    text = format_report(report)
    assert 'Profit factor:     3.00' in text
    assert '2024-02' in text


def test_report_all_wins_has_infinite_profit_factor():
    report = build_report([_trade(T0, 10), _trade(T0 + BAR_MS, 20)], [], 1_000, 1_030)
    assert math.isinf(report.profit_factor)
    assert report.max_drawdown == 0.0


def test_trade_log_from_events():
    candles = _breakout_then_crash()
    engine = _engine()
    report = engine.run(candles, DonchianBreakout(STRATEGY_SETTINGS))
    trades = build_trade_log(engine.get_event_log())
    assert trades == report.trades
    assert all(t.holding_bars > 0 for t in trades)


def test_load_candles_csv_sorts_and_converts(tmp_path):
    print("Testing CSV loader...")
    path = tmp_path / "candles.csv"
    path.write_text(
        "Timestamp,Open,High,Low,Close,Volume\n"
        "2024-01-01T00:05:00Z,101,103,100,102,2.5\n"
        "2024-01-01T00:00:00Z,100,102,99,101,1.5\n"
    )
    candles = load_candles_csv(path)
    assert [c.timestamp for c in candles] == [T0, T0 + BAR_MS]
    assert candles[0].close == 101.0
    assert candles[1].volume == 2.5


def test_load_candles_csv_epoch_seconds(tmp_path):
    path = tmp_path / "candles.csv"
    path.write_text(
        "timestamp,open,high,low,close,volume\n"
        "1704067200,100,102,99,101,1\n"
        "1704067500000,101,103,100,102,1\n"
    )
    candles = load_candles_csv(path)
    assert [c.timestamp for c in candles] == [T0, T0 + BAR_MS]


def test_load_candles_csv_rejects_bad_input(tmp_path):
    missing = tmp_path / "missing.csv"
    missing.write_text("timestamp,open,high,low,close\n1704067200000,1,2,0,1\n")
    with pytest.raises(ValueError, match='missing columns'):
        load_candles_csv(missing)

    dupes = tmp_path / "dupes.csv"
    dupes.write_text(
        "timestamp,open,high,low,close,volume\n"
        "1704067200000,100,102,99,101,1\n"
        "1704067200000,100,102,99,101,1\n"
    )
    with pytest.raises(ValueError, match='Duplicate timestamp'):
        load_candles_csv(dupes)

    inverted = tmp_path / "inverted.csv"
    inverted.write_text("timestamp,open,high,low,close,volume\n1704067200000,100,90,99,95,1\n")
    with pytest.raises(ValueError, match='inconsistent'):
        load_candles_csv(inverted)


def test_split_in_out_sample():
    candles = _bars([100.0] * 10)
    ins, oos = split_in_out_sample(candles, 0.3)
    assert len(ins) == 7 and len(oos) == 3
    assert ins[-1].timestamp < oos[0].timestamp
    with pytest.raises(ValueError):
        split_in_out_sample(candles, 1.0)


def test_walk_forward_split_windows():
    candles = _bars([100.0] * 10)
    windows = walk_forward_split(candles, train_bars=4, test_bars=2)
    assert len(windows) == 3
    train, test = windows[1]
    assert [c.timestamp for c in train] == [candles[i].timestamp for i in range(2, 6)]
    assert [c.timestamp for c in test] == [candles[6].timestamp, candles[7].timestamp]

    assert len(walk_forward_split(candles, 4, 2, step_bars=1)) == 5
    assert walk_forward_split(candles, 8, 3) == []
    with pytest.raises(ValueError):
        walk_forward_split(candles, 0, 2)


def test_param_range_values():
    assert ParamRange('donchian_period', 10, 30, 10).values() == [10, 20, 30]
    assert ParamRange('atr_stop_multiplier', 2.0, 3.0, 0.5).values() == [2.0, 2.5, 3.0]
    assert ParamRange('x', 0.1, 0.3, 0.1).values() == [0.1, 0.2, 0.3]
    assert ParamRange('x', 5, 5, 1).values() == [5]
    with pytest.raises(ValueError):
        ParamRange('x', 1, 2, 0).values()
    with pytest.raises(ValueError):
        ParamRange('x', 3, 2, 1).values()


def test_param_grid_is_cartesian_product():
    grid = generate_param_grid(SWEEP_RANGES)
    assert len(grid) == 9
    assert grid[0] == {'donchian_period': 10, 'atr_stop_multiplier': 2.0}
    assert grid[-1] == {'donchian_period': 30, 'atr_stop_multiplier': 3.0}
    assert len({tuple(p.items()) for p in grid}) == 9


def _optimizer():
    return Optimizer(base_params=STRATEGY_SETTINGS, backtest_settings=BACKTEST_SETTINGS,
                     initial_capital=1_000_000, trailing_stop_atr_multiplier=3.0)


def test_param_sweep_ranks_by_profit_factor():
    print("Testing parameter sweep...")
    candles = _breakout_then_crash()
    ranges = [ParamRange('donchian_period', 5, 15, 5), ParamRange('atr_stop_multiplier', 2.0, 3.0, 1.0)]
    results = _optimizer().param_sweep(candles, ranges)

    assert len(results) == 6
    ranks = [r.rank for r in results]
    assert ranks == sorted(ranks, reverse=True)

    # Unswept params come from the base settings
    baseline = next(r for r in results if r.params == {'donchian_period': 10, 'atr_stop_multiplier': 2.0})
    direct = _engine().run(candles, DonchianBreakout(STRATEGY_SETTINGS))
    assert baseline.report.total_pnl == pytest.approx(direct.total_pnl)
    assert baseline.report.total_trades == direct.total_trades

    text = format_sweep_results(results, top=3)
    assert 'top 3 of 6' in text
    assert text.count('\n') == 3
    print("✓ Sweep sorted best-first")


def test_sweep_ranks_infinite_profit_factor_first():
    all_wins = build_report([_trade(T0, 10)], [], 1_000, 1_010)
    mixed = build_report([_trade(T0, 30), _trade(T0 + BAR_MS, -10)], [], 1_000, 1_020)
    assert SweepResult({}, all_wins).rank == 1e9
    assert SweepResult({}, mixed).rank == pytest.approx(3.0)


def _window(index, train_pnl, test_pnl):
    train = build_report([_trade(T0, train_pnl)], [], 1_000_000, 1_000_000 + train_pnl)
    test = build_report([_trade(T0, test_pnl)], [], 1_000_000, 1_000_000 + test_pnl)
    return WalkForwardWindow(index, T0, T0 + BAR_MS, {'donchian_period': 10}, train, test)


def test_walk_forward_summary_robustness_ratio():
    optimizer = _optimizer()
    summary = optimizer.summarize_walk_forward([_window(0, 100_000, 40_000), _window(1, 100_000, 60_000)])
    assert summary.avg_train_return == pytest.approx(10.0)
    assert summary.avg_test_return == pytest.approx(5.0)
    assert summary.robustness_ratio == pytest.approx(0.5)
    assert summary.combined_test_pnl == pytest.approx(100_000)
    assert summary.combined_test_return == pytest.approx(10.0)

    flat = optimizer.summarize_walk_forward([_window(0, 0, 20_000)])
    assert flat.robustness_ratio == 0.0
    assert 'Robustness ratio:  0.50' in format_walk_forward(summary)


def test_walk_forward_runs_each_window():
    print("Testing walk-forward analysis...")
    candles = _breakout_then_crash()
    ranges = [ParamRange('donchian_period', 5, 10, 5)]
    summary = _optimizer().walk_forward(candles, ranges, train_bars=60, test_bars=20)

    assert len(summary.windows) == 2
    assert summary.windows[0].test_start == candles[60].timestamp
    assert summary.windows[1].train_start == candles[20].timestamp
    assert all(w.best_params['donchian_period'] in (5, 10) for w in summary.windows)
    assert summary.combined_test_pnl == pytest.approx(sum(w.test_report.total_pnl for w in summary.windows))
    print("✓ Two rolling windows evaluated")


def test_walk_forward_needs_one_full_window():
    with pytest.raises(ValueError, match='Not enough candles'):
        _optimizer().walk_forward(_bars([100.0] * 50), SWEEP_RANGES, train_bars=40, test_bars=20)


if __name__ == "__main__":
    test_breakout_trade_and_stop_exit()
    test_backtest_is_deterministic()
    test_param_sweep_ranks_by_profit_factor()
    test_walk_forward_runs_each_window()
    print("\nAll backtest tests passed")
