"""
Kestrel Slack Integration

Fire-and-forget delivery of user notifications (price alerts, alert rule
changes, trade confirmations) to a Slack incoming webhook. Without a
webhook configured, notifications are written to the log instead.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Optional, Set

import aiohttp

from config.settings import Settings, get_settings
from utils.logger import notify_logger as logger


class MessageType(str, Enum):
    """Slack message types with corresponding emoji and colors."""
    ALERT = "alert"
    TRADE = "trade"
    SYSTEM = "system"
    INFO = "info"


class NotificationSink(ABC):
    """Best-effort delivery of a title/message pair to the user."""

    @abstractmethod
    def notify(self, title: str, message: str, message_type: MessageType = MessageType.INFO) -> None:
        """Queue a notification; never raises and never blocks on delivery."""
        ...

    async def flush(self) -> None:
        """Wait for queued deliveries to finish."""
        return None


class SlackNotifier(NotificationSink):
    """
    Slack webhook notifier.

    ``notify`` schedules the HTTP call on the running event loop and returns
    immediately; delivery failures are logged and dropped.
    """

    MESSAGE_CONFIG = {
        MessageType.ALERT: {
            "emoji": "🔔",
            "color": "warning"
        },
        MessageType.TRADE: {
            "emoji": "✅",
            "color": "good"
        },
        MessageType.SYSTEM: {
            "emoji": "💥",
            "color": "#36a64f"
        },
        MessageType.INFO: {
            "emoji": "🔵",
            "color": "#439FE0"
        }
    }

    def __init__(self, settings: Optional[Settings] = None, timeout: float = 10.0):
        """Initialize Slack notifier with settings."""
        self.settings = settings or get_settings()
        self.webhook_url = self.settings.slack_webhook_url
        self.channel = self.settings.slack_channel
        self.enabled = bool(self.webhook_url)
        self.timeout = timeout
        self._pending: Set[asyncio.Task] = set()
        self.sent_count = 0
        self.failed_count = 0

        if not self.enabled:
            logger.info("Slack notifications disabled - no webhook URL configured")

    def notify(self, title: str, message: str, message_type: MessageType = MessageType.INFO) -> None:
        if not self.enabled:
            logger.info(f"NOTIFY: {title} - {message}", notification_type=message_type.value)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, notification dropped: {title}")
            return

        task = loop.create_task(self.send_message(title, message, message_type))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _build_payload(self, title: str, message: str, message_type: MessageType) -> dict:
        config = self.MESSAGE_CONFIG[message_type]
        return {
            "channel": self.channel,
            "username": self.settings.slack_username,
            "icon_emoji": self.settings.slack_icon_emoji,
            "attachments": [
                {
                    "color": config["color"],
                    "title": f"{config['emoji']} {title}",
                    "text": message,
                    "footer": f"{self.settings.app_name} v{self.settings.version}",
                    "ts": int(datetime.now().timestamp()),
                }
            ]
        }

    async def send_message(
        self,
        title: str,
        message: str,
        message_type: MessageType = MessageType.INFO
    ) -> bool:
        """
        Send a message to Slack.

        Args:
            title: Attachment title
            message: Main message content
            message_type: Type of message for emoji and color

        Returns:
            bool: True if message sent successfully
        """
        if not self.enabled:
            logger.debug(f"Slack disabled - would send: {title}")
            return False

        payload = self._build_payload(title, message, message_type)

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.webhook_url, json=payload) as response:
                    if response.status == 200:
                        self.sent_count += 1
                        logger.debug(f"Slack message sent: {message_type.value}")
                        return True

                    self.failed_count += 1
                    logger.error(f"Slack API error: {response.status}")
                    return False

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.failed_count += 1
            logger.error(f"Failed to send Slack message: {e}")
            return False

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def create_notifier(settings: Optional[Settings] = None) -> NotificationSink:
    """Build the configured notification sink."""
    return SlackNotifier(settings)
