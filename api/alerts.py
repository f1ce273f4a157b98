import logging
import time
import aiohttp
from typing import Dict
from config import config


logger = logging.getLogger(__name__)

class AlertWebhook:
    def __init__(self):
        url = config.monitoring.get('alert_webhook')
        # Treat empty or placeholder URLs as disabled
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                        metadata: Dict = None):
        if not self.enabled:
            logger.warning(
                "[Alert] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': int(time.time() * 1000),
            'metadata': metadata or {}
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=5)
                ) as response:
                    if response.status >= 300:
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def startup_alert(self, mode: str, equity: float):
        await self.send_alert(
            'startup',
            f'Bot started in {mode} mode (equity {equity:,.0f} KRW)',
            'info',
            {'mode': mode, 'equity': equity}
        )

    async def shutdown_alert(self, mode: str, reason: str):
        await self.send_alert(
            'shutdown',
            f'Bot stopped in {mode} mode: {reason}',
            'info',
            {'mode': mode, 'reason': reason}
        )

    async def entry_alert(self, qty: float, price: float, stop_loss: float):
        await self.send_alert(
            'entry',
            f'Long entry {qty:.8f} BTC @ {price:,.0f} (stop {stop_loss:,.0f})',
            'info',
            {'qty': qty, 'price': price, 'stop_loss': stop_loss}
        )

    async def exit_alert(self, qty: float, price: float, pnl: float, reason: str):
        await self.send_alert(
            'exit',
            f'Exit {qty:.8f} BTC @ {price:,.0f} pnl={pnl:,.0f} ({reason})',
            'info',
            {'qty': qty, 'price': price, 'pnl': pnl, 'reason': reason}
        )

    async def kill_switch_alert(self, reason: str):
        await self.send_alert(
            'kill_switch',
            f'Kill switch triggered: {reason}',
            'critical',
            {'reason': reason}
        )

    async def error_alert(self, where: str, error: str):
        await self.send_alert(
            'error',
            f'{where}: {error}',
            'critical',
            {'where': where}
        )

alert_webhook = AlertWebhook()
