#!/usr/bin/env python
"""
Paper engine tests: simulated fills, stops and auto-trading toggle
"""
import sys
sys.path.insert(0, '.')

import asyncio

import pytest

from ingest.market_types import Candle, OrderBook, OrderBookLevel
from monitoring.audit_log import AuditLog
from orchestration.mode_manager import ModeManager
from risk.risk_manager import RiskManager
from risk.state_machine import TradingState, TradingStateMachine
from strategy.base import SignalAction, Strategy, StrategySignal
from strategy.events import EventType
from strategy.execution_types import OrderSide
from strategy.simulators.paper import PaperEngine

BAR_MS = 5 * 60 * 1000
T0 = 1_704_067_200_000
PRICE = 50_000_000.0

RISK_SETTINGS = {
    'max_daily_loss_pct': 0.03,
    'max_daily_trades': 10,
    'cooldown_minutes': 0,
    'min_spread_bps': 0,
    'min_atr_krw': 0,
}


class ScriptedStrategy(Strategy):
    def __init__(self):
        self.next_signal = StrategySignal()

    def on_candle(self, candle):
        signal, self.next_signal = self.next_signal, StrategySignal()
        return signal

    def reset(self):
        self.next_signal = StrategySignal()


def _flat(i, price=PRICE):
    return Candle(T0 + i * BAR_MS, price, price + 500_000, price - 500_000, price, 1.0)


def _build(auto=True):
    strategy = ScriptedStrategy()
    sm = TradingStateMachine()
    audit = AuditLog()
    modes = ModeManager(audit, 'PAPER', settings={}, initial_equity=10_000_000)
    engine = PaperEngine(
        strategy, sm, RiskManager(settings=RISK_SETTINGS),
        audit=audit, mode_manager=modes, get_auto=lambda: auto,
        settings={'fee_rate': 0.0025, 'slippage_bps': 5},
        initial_equity=10_000_000,
        clock=lambda: T0 + 3600 * 1000,
    )
    engine.warmup([_flat(i) for i in range(20)])
    return engine, strategy, sm, audit, modes


def test_paper_entry_uses_close_plus_slippage():
    print("Testing PaperEngine entry...")
    engine, strategy, sm, audit, _ = _build()
    strategy.next_signal = StrategySignal(SignalAction.LONG_ENTRY)
    asyncio.run(engine.on_candle(_flat(20)))

    assert sm.current is TradingState.IN_POSITION
    position = engine.position_manager.current
    expected_price = PRICE + PRICE * 0.0005
    assert position.entry_price == pytest.approx(expected_price)
    assert position.qty == pytest.approx(0.01)
    assert engine.equity == pytest.approx(10_000_000 - 0.01 * expected_price * 1.0025)

    fills = [e for e in engine.get_event_log() if e.type is EventType.ORDER_FILLED]
    assert fills[0].fill.order_id == f"paper-buy-{T0 + 20 * BAR_MS}"
    assert len(audit.find('ENTRY')) == 1
    print(f"✓ Paper entry at {position.entry_price:,.0f}")


def test_paper_fill_prices_off_order_book():
    engine, _, _, _, _ = _build()
    engine.on_order_book(OrderBook(
        bids=[OrderBookLevel(49_990_000, 1.0)],
        asks=[OrderBookLevel(50_010_000, 1.0)],
    ))
    slip = PRICE * 0.0005
    assert engine.resolve_fill_price(OrderSide.BUY, PRICE) == pytest.approx(50_010_000 + slip)
    assert engine.resolve_fill_price(OrderSide.SELL, PRICE) == pytest.approx(49_990_000 - slip)
    assert engine.calc_spread_bps() == pytest.approx(4.0)


def test_paper_exit_and_mode_stats():
    engine, strategy, sm, audit, modes = _build()
    strategy.next_signal = StrategySignal(SignalAction.LONG_ENTRY)
    asyncio.run(engine.on_candle(_flat(20)))

    strategy.next_signal = StrategySignal(SignalAction.LONG_EXIT, reason='exit')
    asyncio.run(engine.on_candle(_flat(21, price=52_000_000.0)))

    assert sm.current is TradingState.IDLE
    assert not engine.has_position()
    assert engine.equity > 10_000_000
    assert modes.stats.trade_count == 1
    assert modes.stats.order_count == 2
    assert len(audit.find('EXIT')) == 1


def test_paper_stop_goes_through_cooldown():
    engine, strategy, sm, audit, _ = _build()
    strategy.next_signal = StrategySignal(SignalAction.LONG_ENTRY)
    asyncio.run(engine.on_candle(_flat(20)))

    crash = Candle(T0 + 21 * BAR_MS, PRICE, PRICE, 47_000_000.0, 47_500_000.0, 1.0)
    asyncio.run(engine.on_candle(crash))
    assert sm.current is TradingState.COOLDOWN
    stop_fill = [e for e in engine.get_event_log() if e.type is EventType.ORDER_FILLED][-1]
    assert stop_fill.fill.order_id == f"paper-stop-{crash.timestamp}"
    assert stop_fill.fill.price == pytest.approx(48_000_000.0)
    assert len(audit.find('STOP_HIT')) == 1

    asyncio.run(engine.on_candle(_flat(22)))
    assert sm.current is TradingState.IDLE


def test_auto_off_ignores_signals():
    engine, strategy, sm, _, _ = _build(auto=False)
    strategy.next_signal = StrategySignal(SignalAction.LONG_ENTRY)
    asyncio.run(engine.on_candle(_flat(20)))
    assert sm.current is TradingState.IDLE
    signals = [e for e in engine.get_event_log() if e.type is EventType.SIGNAL]
    assert signals[-1].signal.action is SignalAction.LONG_ENTRY


def test_halted_engine_skips_candles():
    engine, strategy, sm, _, _ = _build()
    sm.transition(TradingState.HALTED)
    strategy.next_signal = StrategySignal(SignalAction.LONG_ENTRY)
    asyncio.run(engine.on_candle(_flat(20)))
    assert engine.get_event_log() == ()


def test_strategy_error_latches_kill_switch_and_reset_recovers():
    print("Testing paper error handling...")
    engine, strategy, sm, audit, _ = _build()

    def broken(candle):
        raise RuntimeError("indicator blew up")

    strategy.on_candle = broken
    asyncio.run(engine.on_candle(_flat(20)))
    assert sm.current is TradingState.HALTED
    assert engine.kill_switch.is_activated()
    assert len(audit.find('CANDLE_ERROR')) == 1

    engine.kill_switch.deactivate()
    assert sm.current is TradingState.IDLE
    del strategy.on_candle
    strategy.next_signal = StrategySignal(SignalAction.LONG_ENTRY)
    asyncio.run(engine.on_candle(_flat(21)))
    assert sm.current is TradingState.IN_POSITION
    print("✓ Reset clears the paper halt")


def test_reset_resumes_simulated_position():
    engine, strategy, sm, audit, _ = _build()
    strategy.next_signal = StrategySignal(SignalAction.LONG_ENTRY)
    asyncio.run(engine.on_candle(_flat(20)))

    asyncio.run(engine.kill_switch.activate('manual'))
    strategy.next_signal = StrategySignal(SignalAction.LONG_EXIT)
    asyncio.run(engine.on_candle(_flat(21)))
    assert engine.has_position()

    engine.kill_switch.deactivate()
    assert sm.current is TradingState.IDLE
    strategy.next_signal = StrategySignal(SignalAction.LONG_ENTRY)
    asyncio.run(engine.on_candle(_flat(22)))

    assert sm.current is TradingState.IN_POSITION
    assert len(audit.find('POSITION_RESUMED')) == 1
    fills = [e for e in engine.get_event_log() if e.type is EventType.ORDER_FILLED]
    assert len(fills) == 1


if __name__ == "__main__":
    test_paper_entry_uses_close_plus_slippage()
    test_paper_stop_goes_through_cooldown()
    print("\nAll paper engine tests passed")
