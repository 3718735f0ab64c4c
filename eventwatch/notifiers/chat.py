"""
Telegram bot notifier.
"""

import html
import time
from typing import Any

import requests

from eventwatch.database.models import Channel, Impact
from eventwatch.rules.types import Notification
from .base import ChannelDeliveryFailure, DeliveryOutcome, Notifier

TELEGRAM_API = "https://api.telegram.org"


class TelegramNotifier(Notifier):
    """Sends notifications to a user's Telegram chat via the Bot API."""

    channel = Channel.CHAT

    IMPACT_EMOJI = {
        Impact.HIGH: "\U0001F534",  # red circle
        Impact.MEDIUM: "\U0001F7E1",  # yellow circle
        Impact.LOW: "\U0001F7E2",  # green circle
    }

    def __init__(self, bot_token: str, timeout: float = 10, enabled: bool = True):
        """
        Initialize Telegram notifier.

        Args:
            bot_token: Bot API token
            timeout: HTTP timeout in seconds
            enabled: Whether the channel is switched on for this deployment
        """
        super().__init__(enabled=enabled)
        self.bot_token = bot_token
        self.timeout = timeout

    @property
    def api_url(self) -> str:
        return f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage"

    def send(self, notification: Notification) -> DeliveryOutcome:
        """Send notification to Telegram."""
        try:
            chat_id = notification.subscriber.contact.chat_id
            if not chat_id:
                raise ChannelDeliveryFailure("No Telegram chat linked")
            if not self.bot_token:
                raise ChannelDeliveryFailure("Bot token not configured")

            response = self._send_message(self._create_payload(notification, chat_id))

            if response.ok:
                return DeliveryOutcome.delivered(self.channel)
            raise ChannelDeliveryFailure(f"HTTP {response.status_code}: {response.text}")

        except ChannelDeliveryFailure as e:
            return DeliveryOutcome.failed(self.channel, str(e))
        except requests.exceptions.Timeout:
            return DeliveryOutcome.failed(self.channel, "timeout")
        except requests.exceptions.ConnectionError as e:
            return DeliveryOutcome.failed(self.channel, f"Connection error: {str(e)}")
        except Exception as e:
            return DeliveryOutcome.failed(self.channel, str(e))

    def _send_message(self, payload: dict[str, Any]) -> requests.Response:
        """Send message with rate limit handling."""
        response = requests.post(self.api_url, json=payload, timeout=self.timeout)

        # Handle rate limiting
        if response.status_code == 429:
            time.sleep(self._retry_after(response))
            response = requests.post(self.api_url, json=payload, timeout=self.timeout)

        return response

    def _retry_after(self, response: requests.Response) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after is None:
            try:
                retry_after = response.json()["parameters"]["retry_after"]
            except (ValueError, KeyError, TypeError):
                retry_after = 1
        return float(retry_after)

    def _create_payload(self, notification: Notification, chat_id: str) -> dict[str, Any]:
        """Create Bot API sendMessage payload."""
        return {
            "chat_id": chat_id,
            "text": self._create_text(notification),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }

    def _create_text(self, notification: Notification) -> str:
        """Format the message as Telegram HTML."""
        event = notification.event
        emoji = self.IMPACT_EMOJI.get(event.impact, "")
        when = event.occurs_at.strftime("%Y-%m-%d %H:%M UTC")
        return (
            f"{emoji} <b>{html.escape(event.title)}</b>\n"
            f"{html.escape(notification.message)}\n\n"
            f"<i>{when} · {event.impact.value.title()} impact · "
            f"{html.escape(event.source)}</i>"
        )
