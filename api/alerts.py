import asyncio
import logging
import time
from typing import Callable, Dict, Optional

import aiohttp

from config import config


logger = logging.getLogger(__name__)

# Event-log prefixes and the severity they are pushed with.
EVENT_SEVERITY = {
    'START': 'info',
    'STOP': 'info',
    'ORDER': 'info',
    'ERROR': 'critical',
}


class AlertWebhook:
    """Chat webhook sink for trading-session events.

    Delivery is best effort: failures are logged and reported as ``False``,
    never raised. Identical messages inside ``repeat_window_s`` are sent once,
    so a stuck order loop cannot flood the channel. ``enabled`` can be toggled
    at runtime to mute alerts without touching the config.
    """

    def __init__(self, url: Optional[str] = None, timeout_s: float = 5.0,
                 repeat_window_s: float = 60.0, clock: Callable[[], float] = time.monotonic):
        if url is None:
            url = config.monitoring.get('alert_webhook')
        # Empty or placeholder URLs leave alerts disabled
        self.webhook_url = url if url and 'your-webhook-url' not in str(url) else None
        self.enabled = self.webhook_url is not None
        self.timeout_s = timeout_s
        self.repeat_window_s = repeat_window_s
        self._clock = clock
        self._last_sent: Dict[str, float] = {}

    def _is_repeat(self, message: str) -> bool:
        now = self._clock()
        self._last_sent = {
            sent: ts for sent, ts in self._last_sent.items() if now - ts < self.repeat_window_s
        }
        if message in self._last_sent:
            return True
        self._last_sent[message] = now
        return False

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Optional[Dict] = None) -> bool:
        if not self.enabled:
            logger.debug("[Alert] %s: %s - %s", severity.upper(), alert_type, message)
            return False
        if self._is_repeat(message):
            logger.debug("[Alert] repeat suppressed: %s", message)
            return False

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {},
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s),
                ) as response:
                    if response.status >= 300:
                        logger.error("[Alert] Webhook failed with status %s", response.status)
                        return False
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("[Alert] Webhook error: %s", e)
            return False

    async def notify(self, message: str) -> bool:
        """Push one event-log line; the leading word picks the severity."""
        event = message.split(' ', 1)[0]
        severity = EVENT_SEVERITY.get(event, 'warning')
        return await self.send_alert(event.lower() or 'event', message, severity)

    async def startup_failed_alert(self, reason: str) -> bool:
        return await self.send_alert(
            'startup_failed',
            f'Trading system failed to start: {reason}',
            'critical',
            {'reason': reason},
        )


alert_webhook = AlertWebhook()
