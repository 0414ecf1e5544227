"""HortiFlow Notification Service — send alerts via log/Telegram/WhatsApp/webhook."""

import logging
import re
from typing import Any

import httpx

from hortiflow.core.config import Settings

logger = logging.getLogger("hortiflow.notification")

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")

_PRIORITY_PREFIX = {
    "low": "",
    "normal": "",
    "high": "⚠️ ",
    "critical": "🚨 ",
}


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Fill ``{{name}}`` placeholders. Unknown placeholders are left as written."""

    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in variables or variables[key] is None:
            return match.group(0)
        return str(variables[key])

    return _PLACEHOLDER.sub(replace, template)


class NotificationService:
    """Send notifications via multiple channels.

    All notifications are optional and configurable. With notifications
    disabled every channel degrades to logging.
    """

    def __init__(self, settings: Settings, timeout: float = 10.0):
        self.settings = settings
        self.timeout = timeout

    async def send_notification(
        self,
        message: str,
        title: str | None = None,
        channels: list[str] | None = None,
        priority: str = "normal",
        metadata: dict | None = None,
    ) -> dict[str, bool]:
        """Send via each requested channel.

        Returns per-channel success. A channel that fails never prevents the
        others from being attempted.
        """
        channels = channels or ["log"]
        text = self._format(message, title, priority)

        if not self.settings.notification_enabled:
            logger.info(f"[NOTIFICATION] {priority.upper()}: {text}")
            return {channel: True for channel in channels}

        results: dict[str, bool] = {}
        for channel in channels:
            match channel:
                case "log":
                    logger.info(f"[NOTIFICATION] {priority.upper()}: {text}")
                    results[channel] = True
                case "telegram":
                    results[channel] = await self.send_telegram(text)
                case "whatsapp":
                    results[channel] = await self.send_whatsapp(text)
                case "webhook":
                    results[channel] = await self.send_webhook(text, title, priority, metadata)
                case _:
                    logger.warning(f"Unknown notification channel: {channel!r}")
                    results[channel] = False

        if results and not any(results.values()):
            logger.error(f"All notification channels failed for message: {message[:50]}")
        return results

    def _format(self, message: str, title: str | None, priority: str) -> str:
        prefix = _PRIORITY_PREFIX.get(priority, "")
        if title:
            return f"{prefix}{title}\n\n{message}"
        return f"{prefix}{message}"

    async def send_telegram(self, message: str) -> bool:
        """Send via Telegram Bot API."""
        if not (self.settings.telegram_bot_token and self.settings.telegram_chat_id):
            logger.warning("Telegram channel requested but not configured")
            return False
        try:
            url = f"https://api.telegram.org/bot{self.settings.telegram_bot_token}/sendMessage"
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json={
                    "chat_id": self.settings.telegram_chat_id,
                    "text": f"🌱 HortiFlow\n\n{message}",
                    "parse_mode": "HTML",
                })
                resp.raise_for_status()
                logger.info("Telegram notification sent")
                return True
        except httpx.HTTPError as e:
            logger.error(f"Telegram notification failed: {e}")
            return False

    async def send_whatsapp(self, message: str) -> bool:
        """Send via WhatsApp API (Fonnte/WA Business)."""
        if not (self.settings.whatsapp_api_url and self.settings.whatsapp_api_key):
            logger.warning("WhatsApp channel requested but not configured")
            return False
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    self.settings.whatsapp_api_url,
                    headers={"Authorization": self.settings.whatsapp_api_key},
                    json={"message": f"🌱 HortiFlow\n\n{message}"},
                )
                resp.raise_for_status()
                logger.info("WhatsApp notification sent")
                return True
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp notification failed: {e}")
            return False

    async def send_webhook(
        self, message: str, title: str | None, priority: str, metadata: dict | None
    ) -> bool:
        """POST the notification as JSON to the configured notification webhook."""
        if not self.settings.notification_webhook_url:
            logger.warning("Webhook notification channel requested but not configured")
            return False
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.settings.notification_webhook_url, json={
                    "title": title,
                    "message": message,
                    "priority": priority,
                    "metadata": metadata or {},
                })
                resp.raise_for_status()
                logger.info("Webhook notification sent")
                return True
        except httpx.HTTPError as e:
            logger.error(f"Webhook notification failed: {e}")
            return False
