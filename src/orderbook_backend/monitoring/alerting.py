"""
Alert Manager for Telegram notifications.

Sends operator alerts for degraded states with deduplication to prevent
spam. The loudest one is a conditional order that was claimed but whose
order insert failed: it cannot be re-claimed and needs remediation.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)


@dataclass
class AlertRecord:
    """Tracks when an alert was last sent."""

    key: str
    last_sent: float  # Unix timestamp
    count: int = 1


class AlertManager:
    """
    Manages alerts with deduplication.

    Sends alerts via Telegram and prevents duplicate alerts
    within a cooldown window. Without credentials, alerts are only logged.

    Usage:
        manager = AlertManager(
            telegram_bot_token="...",
            telegram_chat_id="...",
        )

        manager.alert_orphaned_trigger("bsc", conditional_order_id, "insert failed")
        manager.alert_network_unavailable("base", "chain id mismatch")
    """

    DEFAULT_COOLDOWN = 300  # 5 minutes

    def __init__(
        self,
        telegram_bot_token: Optional[str] = None,
        telegram_chat_id: Optional[str] = None,
        default_cooldown: int = DEFAULT_COOLDOWN,
        clock: Callable[[], float] = time.time,
        _telegram_api: Optional[Any] = None,  # For testing
    ) -> None:
        """
        Initialize the alert manager.

        Args:
            telegram_bot_token: Bot token from @BotFather
            telegram_chat_id: Chat ID to send messages to
            default_cooldown: Default cooldown between duplicate alerts
            clock: Time source for cooldowns
            _telegram_api: Injected API client for testing
        """
        self._bot_token = telegram_bot_token
        self._chat_id = telegram_chat_id
        self._default_cooldown = default_cooldown
        self._clock = clock
        self._telegram_api = _telegram_api

        self._sent_alerts: Dict[str, AlertRecord] = {}

    @property
    def enabled(self) -> bool:
        return bool(self._telegram_api or (self._bot_token and self._chat_id))

    def send_alert(
        self,
        title: str,
        message: str,
        dedup_key: Optional[str] = None,
        cooldown_seconds: Optional[int] = None,
        priority: str = "normal",
    ) -> bool:
        """
        Send an alert via Telegram.

        Args:
            title: Alert title
            message: Alert message body
            dedup_key: Key for deduplication (None to skip dedup)
            cooldown_seconds: Cooldown for this specific alert
            priority: Priority level ("low", "normal", "high", "critical")

        Returns:
            True if alert was sent, False if deduplicated or not delivered
        """
        if dedup_key:
            cooldown = cooldown_seconds or self._default_cooldown
            if not self._should_send(dedup_key, cooldown):
                logger.debug(f"Deduplicated alert: {dedup_key}")
                return False

        formatted = self._format_message(title, message, priority)
        success = self._send_telegram(formatted)

        if dedup_key and success:
            self._record_sent(dedup_key)

        return success

    def alert_orphaned_trigger(
        self,
        network: str,
        conditional_order_id: str,
        error: str,
        order_id: Optional[str] = None,
    ) -> bool:
        """
        A conditional order was triggered but no order was created.

        Logged at error level whether or not Telegram is configured.
        """
        logger.error(
            f"{network}: conditional order {conditional_order_id} triggered "
            f"without resulting order (order_id={order_id}): {error}"
        )
        message = f"""
Network: {network}
Conditional order: {conditional_order_id}
Intended order: {order_id or '-'}
Error: {error}
Action Required: create the order manually or cancel the conditional order
"""
        return self.send_alert(
            title="🚨 Triggered Without Resulting Order",
            message=message,
            dedup_key=f"orphan_{network}_{conditional_order_id}",
            cooldown_seconds=3600,
            priority="critical",
        )

    def alert_orphans_found(self, network: str, count: int) -> bool:
        """Periodic reminder that orphaned triggers are still unresolved."""
        return self.send_alert(
            title="⚠️ Orphaned Conditional Orders",
            message=f"Network: {network}\nUnresolved orphaned triggers: {count}",
            dedup_key=f"orphans_{network}",
            cooldown_seconds=3600,
            priority="high",
        )

    def alert_network_unavailable(self, network: str, reason: str) -> bool:
        """A configured network could not be connected at startup."""
        return self.send_alert(
            title=f"🔴 Network Unavailable: {network}",
            message=f"Network: {network}\nReason: {reason}",
            dedup_key=f"network_{network}",
            cooldown_seconds=3600,
            priority="high",
        )

    def _should_send(self, key: str, cooldown: int) -> bool:
        """Check if alert should be sent based on cooldown."""
        record = self._sent_alerts.get(key)
        if record is None:
            return True
        return (self._clock() - record.last_sent) >= cooldown

    def _record_sent(self, key: str) -> None:
        now = self._clock()

        if key in self._sent_alerts:
            self._sent_alerts[key].last_sent = now
            self._sent_alerts[key].count += 1
        else:
            self._sent_alerts[key] = AlertRecord(key=key, last_sent=now)

    def _format_message(self, title: str, message: str, priority: str) -> str:
        """Format alert message for Telegram."""
        priority_markers = {
            "critical": "🚨🚨🚨",
            "high": "⚠️",
            "normal": "",
            "low": "ℹ️",
        }

        marker = priority_markers.get(priority, "")
        header = f"{marker} *{title}*" if marker else f"*{title}*"

        return f"{header}\n\n{message.strip()}"

    def _send_telegram(self, text: str) -> bool:
        """Send message via Telegram API."""
        if self._telegram_api:
            try:
                self._telegram_api.send_message(
                    chat_id=self._chat_id,
                    text=text,
                    parse_mode="Markdown",
                )
                return True
            except Exception as e:
                logger.error(f"Telegram API error: {e}")
                return False

        if not self._bot_token or not self._chat_id:
            logger.debug("Telegram credentials not configured, alert only logged")
            return False

        url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"
        payload = {
            "chat_id": self._chat_id,
            "text": text,
            "parse_mode": "Markdown",
        }
        try:
            response = requests.post(url, json=payload, timeout=10)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to send Telegram alert: {e}")
            return False

        logger.info(f"Sent Telegram alert: {text[:50]}...")
        return True

    def get_alert_stats(self) -> Dict[str, int]:
        """Get statistics about sent alerts."""
        return {
            "unique_alerts": len(self._sent_alerts),
            "total_sent": sum(r.count for r in self._sent_alerts.values()),
        }
