"""
Alert Manager for high-scoring transactions.

Sends one notification per transaction within a cooldown window, so a
provisional score and its corrections do not alert twice. Alerts go to
Telegram when credentials are configured and to the log otherwise.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import aiohttp

from txradar.config import AlertingConfig
from txradar.core.models import SATS_PER_BTC, AlertTier, ScoredTx
from txradar.core.publisher import PublishedMessage

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"

Sender = Callable[[str], Awaitable[bool]]


@dataclass
class AlertRecord:
    """Tracks when an alert was last sent."""

    key: str
    last_sent: float  # monotonic seconds
    count: int = 1


class AlertManager:
    """
    Publisher listener that alerts on ScoredTx at or above min_score.

    The cooldown decision is taken synchronously when the score is
    published; delivery runs in a background task so a slow notification
    endpoint never holds up the pipeline.

    Usage:
        alerts = AlertManager(config.alerting)
        publisher.add_listener(alerts.on_message)
        ...
        await alerts.close()
    """

    def __init__(
        self,
        config: Optional[AlertingConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sender: Optional[Sender] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            config: Threshold, cooldown and Telegram credentials
            session: Shared aiohttp session (one is created when needed)
            sender: Replaces delivery entirely; used by tests
            clock: Monotonic clock for the cooldown
        """
        self.config = config or AlertingConfig()
        self._session = session
        self._owns_session = session is None
        self._sender = sender
        self._clock = clock

        self._sent_alerts: Dict[str, AlertRecord] = {}
        self._tasks: set[asyncio.Task] = set()

        self.sent = 0
        self.failed = 0
        self.deduplicated = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def on_message(self, message: PublishedMessage) -> None:
        """Publisher listener. Ignores everything but ScoredTx."""
        if not isinstance(message, ScoredTx):
            return
        if not self.should_alert(message):
            return

        task = asyncio.create_task(self._deliver(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def should_alert(self, scored: ScoredTx) -> bool:
        """Threshold and per-txid cooldown check; records the alert when it passes."""
        if not self.config.enabled:
            return False
        if scored.score < self.config.min_score:
            return False

        now = self._clock()
        self._expire(now)

        key = f"tx_{scored.txid}"
        if not self._should_send(key, now):
            self.deduplicated += 1
            logger.debug(f"Deduplicated alert: {key}")
            return False

        self._record_sent(key, now)
        return True

    async def _deliver(self, scored: ScoredTx) -> None:
        text = self.format_alert(scored)
        if await self._send(text):
            self.sent += 1
        else:
            self.failed += 1

    @staticmethod
    def format_alert(scored: ScoredTx) -> str:
        analyzed = scored.analyzed
        marker = {
            AlertTier.CRITICAL: "🚨",
            AlertTier.HIGH: "⚠️",
        }.get(scored.tier, "")
        title = f"{marker} TxRadar {scored.tier.value.upper()}".strip()

        value = analyzed.total_input_value / SATS_PER_BTC
        body = f"{scored.score:.0f} | {value:.4f} BTC | {scored.txid[:8]}"
        flow = analyzed.exchange_flow
        if flow is not None and flow.to_exchange:
            body += " | to exchange"
        if not analyzed.prevouts_resolved:
            body += " | provisional"
        return f"*{title}*\n\n{body}"

    async def _send(self, text: str) -> bool:
        if self._sender is not None:
            try:
                return await self._sender(text)
            except Exception as e:
                logger.error(f"Alert sender error: {e}")
                return False

        if not self.config.telegram_configured:
            logger.warning(f"ALERT {text}")
            return True

        return await self._send_telegram(text)

    async def _send_telegram(self, text: str) -> bool:
        if self._session is None:
            self._session = aiohttp.ClientSession()

        url = f"{TELEGRAM_API_URL}/bot{self.config.telegram_bot_token}/sendMessage"
        payload = {
            "chat_id": self.config.telegram_chat_id,
            "text": text,
            "parse_mode": "Markdown",
        }
        try:
            async with self._session.post(
                url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.config.send_timeout),
            ) as response:
                response.raise_for_status()
            logger.info(f"Sent Telegram alert: {text[:50]}...")
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to send Telegram alert: {e}")
            return False

    def _should_send(self, key: str, now: float) -> bool:
        record = self._sent_alerts.get(key)
        if record is None:
            return True
        return (now - record.last_sent) >= self.config.cooldown_seconds

    def _record_sent(self, key: str, now: float) -> None:
        record = self._sent_alerts.get(key)
        if record is not None:
            record.last_sent = now
            record.count += 1
        else:
            self._sent_alerts[key] = AlertRecord(key=key, last_sent=now)

    def _expire(self, now: float) -> None:
        cooldown = self.config.cooldown_seconds
        expired = [k for k, r in self._sent_alerts.items() if now - r.last_sent >= cooldown]
        for key in expired:
            del self._sent_alerts[key]

    def get_alert_stats(self) -> Dict[str, int]:
        return {
            "tracked": len(self._sent_alerts),
            "sent": self.sent,
            "failed": self.failed,
            "deduplicated": self.deduplicated,
        }

    async def close(self, timeout: float = 5.0) -> None:
        """Wait briefly for in-flight deliveries, then release the session."""
        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Abandoned {len(pending)} undelivered alerts")
                await asyncio.gather(*pending, return_exceptions=True)

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
