import argparse
import asyncio
import logging
import signal
import sys
import time
from typing import List, Optional

from api.alerts import alert_webhook
from api.dashboard import AppContext
from api.fastapi_server import create_app, serve_api
from api.metrics import metrics, start_metrics_server
from backtest.data_loader import load_candles_csv, split_in_out_sample
from backtest.engine import BacktestEngine
from backtest.optimizer import (
    SWEEP_RANGES,
    WALK_FORWARD_RANGES,
    Optimizer,
    format_sweep_results,
    format_walk_forward,
)
from backtest.report import format_report
from config import TRADING_MODES, config
from ingest.candle_store import create_candle_store
from ingest.market_data_manager import MarketDataManager
from monitoring.async_utils import cancel_tasks, run_periodic
from monitoring.audit_log import AuditLog
from monitoring.logging_utils import setup_logging
from orchestration.mode_manager import ModeManager
from risk.kill_switch import KillSwitch
from risk.risk_manager import RiskManager
from risk.state_machine import TradingStateMachine
from strategy.donchian_breakout import DonchianBreakout
from strategy.execution import LiveEngine
from strategy.simulators.paper import PaperEngine
from strategy.transports.bithumb import BithumbGateway


logger = logging.getLogger(__name__)

SHUTDOWN_LIQUIDATION_WAIT_S = 10.0


class TradingSystem:
    """Wire the market feed, the paper or live engine, the kill switch and the dashboard."""

    def __init__(self, mode: str, use_api: bool = True):
        self.mode = mode
        self.use_api = use_api and bool(config.api.get('enabled', True))
        self.running = False

        self.audit = AuditLog()
        self.context = AppContext(mode)
        self.state_machine = TradingStateMachine()
        self.risk_manager = RiskManager()
        self.mode_manager = ModeManager(self.audit, mode)
        self.strategy = DonchianBreakout()
        self.store = create_candle_store()
        self.gateway = BithumbGateway()

        live = mode == 'LIVE'
        self.kill_switch = KillSwitch(
            self.state_machine,
            gateway=self.gateway if live else None,
            audit=self.audit,
            alerts=alert_webhook,
            metrics=metrics,
        )
        engine_kwargs = dict(
            audit=self.audit,
            mode_manager=self.mode_manager,
            get_auto=self.context.get_auto,
            metrics=metrics,
            alerts=alert_webhook,
        )
        if live:
            self.engine = LiveEngine(self.strategy, self.state_machine, self.risk_manager,
                                     self.gateway, self.kill_switch, **engine_kwargs)
        else:
            self.engine = PaperEngine(self.strategy, self.state_machine, self.risk_manager,
                                      kill_switch=self.kill_switch, **engine_kwargs)

        self.market_data = MarketDataManager(
            self.gateway, self.engine, self.store, self.context,
            risk_manager=self.risk_manager, audit=self.audit, metrics=metrics,
        )

        self.engine.add_position_listener(self.context.set_position)
        self.kill_switch.add_listener(self.context.set_kill)
        self.state_machine.add_listener(lambda _from, to: metrics.update_state(to.value))
        self.audit.attach_sink(self.store.append_audit)

        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_reason = 'unknown'
        self._tty_state = None

    async def initialize(self):
        await self.store.initialize()
        if self.mode == 'LIVE':
            await self.engine.sync_balance()
            await self.engine.reconcile_open_orders()
        await self.market_data.bootstrap()
        self.context.set_mode(self.mode)
        self.context.set_equity(self.engine.equity)
        self.context.set_position(self.engine.position_snapshot())

    async def start(self):
        self.running = True
        self._stop_event = asyncio.Event()
        await self.initialize()

        start_metrics_server(int(config.monitoring.get('prometheus_port', 9108)))
        metrics.update_equity(self.engine.equity)
        metrics.update_state(self.state_machine.current.value)

        self.audit.info('main', 'BOT_STARTED', f"mode={self.mode}", self.mode)
        await alert_webhook.startup_alert(self.mode, self.engine.equity)

        self._tasks.append(asyncio.create_task(self.market_data.start()))
        if self.mode == 'LIVE':
            interval = float(config.candles.get('balance_sync_interval_s', 300))
            self._tasks.append(asyncio.create_task(run_periodic(interval, self.engine.sync_balance, 'balance_sync')))
        if self.use_api:
            api_task = asyncio.create_task(serve_api(create_app(self.context, self.kill_switch, self.audit)))
            api_task.add_done_callback(lambda _t: self.request_shutdown('api_stopped'))
            self._tasks.append(api_task)

        self._install_signal_handlers()
        self._install_keyboard()
        logger.info("Bot running in %s mode. Waiting for market data...", self.mode)

        await self._stop_event.wait()
        await self.stop(self._stop_reason)

    def request_shutdown(self, reason: str) -> None:
        if self._stop_event is None or self._stop_event.is_set():
            return
        logger.info("Shutdown requested (%s)", reason)
        self._stop_reason = reason
        self._stop_event.set()

    async def stop(self, reason: str = 'stop'):
        if not self.running:
            return
        self.running = False
        self.audit.info('main', 'SHUTDOWN', reason, self.mode)

        if self.mode == 'LIVE' and self.engine.has_position():
            logger.warning("Graceful shutdown: liquidating position")
            await self.kill_switch.activate('Graceful shutdown', True)
            await self._wait_for_flat()

        await alert_webhook.shutdown_alert(self.mode, reason)
        self._restore_keyboard()
        await self.market_data.stop()
        await cancel_tasks(self._tasks)
        self._tasks = []
        await self.gateway.close()
        await self.store.close()
        logger.info("Shutdown complete")

    async def _wait_for_flat(self):
        deadline = time.monotonic() + SHUTDOWN_LIQUIDATION_WAIT_S
        while self.engine.has_position() and time.monotonic() < deadline:
            await asyncio.sleep(0.5)
            await self.engine.sync_balance()
        if self.engine.has_position():
            logger.error("Graceful shutdown: position liquidation timed out")

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s not supported here", sig.name)

    def _install_keyboard(self):
        if not sys.stdin.isatty():
            return
        import termios
        import tty

        fd = sys.stdin.fileno()
        self._tty_state = termios.tcgetattr(fd)
        tty.setcbreak(fd)
        asyncio.get_running_loop().add_reader(fd, self._on_key)
        print(f"\n  Mode: {self.mode}\n  Keys: [k] Kill switch  [r] Reset  [q] Quit\n")

    def _restore_keyboard(self):
        if self._tty_state is None:
            return
        import termios

        fd = sys.stdin.fileno()
        asyncio.get_running_loop().remove_reader(fd)
        termios.tcsetattr(fd, termios.TCSADRAIN, self._tty_state)
        self._tty_state = None

    def _on_key(self):
        key = sys.stdin.read(1).lower()
        if key == 'k':
            logger.warning("Manual kill switch triggered")
            self._tasks.append(asyncio.create_task(self.kill_switch.activate('Manual kill (keyboard)')))
        elif key == 'r':
            logger.info("Manual kill switch reset")
            self.kill_switch.deactivate()
        elif key == 'q':
            self.request_shutdown('keyboard')


async def run_backtest(csv_path: Optional[str] = None, analysis: Optional[str] = None) -> int:
    if csv_path:
        candles = load_candles_csv(csv_path)
    else:
        gateway = BithumbGateway()
        try:
            candles = await gateway.get_candles(int(config.candles.get('history_bars', 200)))
        finally:
            await gateway.close()
    if not candles:
        logger.error("No candles to backtest")
        return 1

    if analysis == 'sweep':
        print(format_sweep_results(Optimizer().param_sweep(candles, SWEEP_RANGES)))
        return 0
    if analysis == 'walkforward':
        try:
            summary = Optimizer().walk_forward(candles, WALK_FORWARD_RANGES)
        except ValueError as exc:
            logger.error("Walk-forward failed: %s", exc)
            return 1
        print(format_walk_forward(summary))
        return 0

    engine = BacktestEngine()
    report = engine.run(candles, DonchianBreakout())
    print(format_report(report))

    _, out_sample = split_in_out_sample(candles, float(config.backtest.get('oos_ratio', 0.3)))
    if out_sample:
        oos = BacktestEngine().run(out_sample, DonchianBreakout())
        check = ModeManager(initial_mode='BACKTEST').check_paper_eligibility(
            oos.profit_factor, oos.max_drawdown, oos.total_trades,
        )
        if check.eligible:
            print("\nOut-of-sample: eligible for PAPER")
        else:
            print("\nOut-of-sample: not eligible for PAPER (" + "; ".join(check.reasons) + ")")
    return 0


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="BTC/KRW spot trading bot")
    parser.add_argument('--mode', type=str.upper, choices=TRADING_MODES, default=config.mode)
    parser.add_argument('--csv', help="candle CSV for BACKTEST mode")
    parser.add_argument('--analysis', choices=('sweep', 'walkforward'),
                        help="BACKTEST mode: parameter sweep or walk-forward analysis")
    parser.add_argument('--no-api', action='store_true', help="do not start the dashboard API")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    logger.info("Starting trading bot in %s mode", args.mode)

    if args.mode == 'BACKTEST':
        return await run_backtest(args.csv, args.analysis)

    if args.mode == 'LIVE' and not BithumbGateway().has_credentials:
        logger.error("Bithumb API keys required for LIVE mode")
        return 1

    system = TradingSystem(args.mode, use_api=not args.no_api)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop('interrupt')
    return 0


if __name__ == "__main__":
    setup_logging(config.monitoring.get('log_level', 'INFO'))
    sys.exit(asyncio.run(main()))
