import logging
from typing import Callable, List, Optional

from config import config
from risk.state_machine import TradingState, TradingStateMachine


logger = logging.getLogger(__name__)


class KillSwitch:
    """Global emergency latch that halts order flow and can force a liquidation.

    Activation is idempotent. Liquidation failures are logged and audited but
    never raised to the caller.
    """

    def __init__(self, state_machine: TradingStateMachine, gateway=None,
                 audit=None, alerts=None, metrics=None,
                 min_liquidation_btc: Optional[float] = None):
        self.state_machine = state_machine
        self.gateway = gateway
        self.audit = audit
        self.alerts = alerts
        self.metrics = metrics
        if min_liquidation_btc is None:
            min_liquidation_btc = config.execution.get('min_liquidation_btc', 0.00001)
        self.min_liquidation_btc = float(min_liquidation_btc)
        self._activated = False
        self.reason: Optional[str] = None
        self.liquidation_attempts = 0
        self._listeners: List[Callable[[bool, Optional[str]], None]] = []

    def is_activated(self) -> bool:
        return self._activated

    def add_listener(self, listener: Callable[[bool, Optional[str]], None]) -> None:
        self._listeners.append(listener)

    async def activate(self, reason: str, liquidate: bool = False) -> None:
        if self._activated:
            logger.debug("Kill switch already active, ignoring: %s", reason)
            return
        self._activated = True
        self.reason = reason
        logger.critical("KILL SWITCH ACTIVATED: %s (liquidate=%s)", reason, liquidate)

        self.state_machine.transition(TradingState.HALTED)
        if self.audit is not None:
            self.audit.critical('kill_switch', 'activate', {'reason': reason, 'liquidate': liquidate})
        if self.metrics is not None:
            self.metrics.record_kill_switch(reason)
        self._notify()

        if liquidate and self.gateway is not None:
            await self.liquidate()

        if self.alerts is not None:
            try:
                await self.alerts.kill_switch_alert(reason)
            except Exception as exc:
                logger.error("Kill switch alert failed: %s", exc)

    def deactivate(self) -> None:
        if not self._activated:
            return
        self._activated = False
        self.reason = None
        logger.warning("Kill switch deactivated")
        if self.state_machine.current is TradingState.HALTED:
            self.state_machine.transition(TradingState.IDLE)
        if self.audit is not None:
            self.audit.warn('kill_switch', 'deactivate')
        self._notify()

    async def liquidate(self) -> bool:
        """Market-sell the whole available balance; failures are recorded, not raised.

        Returns True when nothing is left to sell or the sell order was accepted.
        """
        self.liquidation_attempts += 1
        try:
            balance = await self.gateway.get_balance()
            qty = balance.available_btc
            if qty <= self.min_liquidation_btc:
                logger.info("Nothing to liquidate (available_btc=%.8f)", qty)
                return True
            result = await self.gateway.market_sell(qty)
        except Exception as exc:
            logger.exception("Liquidation failed: %s", exc)
            if self.audit is not None:
                self.audit.critical('kill_switch', 'liquidation_failed', {'error': str(exc)})
            return False

        if result.success:
            logger.warning("Liquidation order placed %s for %.8f BTC", result.order_id, qty)
            if self.audit is not None:
                self.audit.critical('kill_switch', 'liquidated', {'order_id': result.order_id, 'qty': qty})
            return True

        logger.error("Liquidation order rejected: %s", result.message)
        if self.audit is not None:
            self.audit.critical('kill_switch', 'liquidation_failed', {'error': result.message, 'qty': qty})
        return False

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._activated, self.reason)
