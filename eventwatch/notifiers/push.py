"""
Push notifier posting to per-user push gateway endpoints.
"""

import time
from typing import Any

import requests

from eventwatch.database.models import Channel, Impact
from eventwatch.rules.types import Notification
from .base import ChannelDeliveryFailure, DeliveryOutcome, Notifier

# Gateway statuses meaning the subscription no longer exists
EXPIRED_STATUSES = (404, 410)

IMPACT_URGENCY = {
    Impact.HIGH: "high",
    Impact.MEDIUM: "normal",
    Impact.LOW: "low",
}


class PushNotifier(Notifier):
    """Sends notifications to a user's registered push endpoint."""

    channel = Channel.PUSH

    def __init__(
        self,
        auth_token: str = "",
        ttl_seconds: int = 86400,
        timeout: float = 10,
        enabled: bool = True,
    ):
        """
        Initialize push notifier.

        Args:
            auth_token: Bearer token for the push gateway, if it needs one
            ttl_seconds: How long the gateway may hold an undelivered message
            timeout: HTTP timeout in seconds
            enabled: Whether the channel is switched on for this deployment
        """
        super().__init__(enabled=enabled)
        self.auth_token = auth_token
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout

    def send(self, notification: Notification) -> DeliveryOutcome:
        """Send notification to the user's push endpoint."""
        endpoint = notification.subscriber.contact.push_endpoint
        try:
            if not endpoint:
                raise ChannelDeliveryFailure("No push subscription on file")

            response = self._post(endpoint, self._create_payload(notification), notification)

            if response.ok:
                return DeliveryOutcome.delivered(self.channel)
            if response.status_code in EXPIRED_STATUSES:
                raise ChannelDeliveryFailure(
                    f"Push subscription expired (HTTP {response.status_code})"
                )
            raise ChannelDeliveryFailure(f"HTTP {response.status_code}: {response.text}")

        except ChannelDeliveryFailure as e:
            return DeliveryOutcome.failed(self.channel, str(e))
        except requests.exceptions.Timeout:
            return DeliveryOutcome.failed(self.channel, "timeout")
        except requests.exceptions.ConnectionError as e:
            return DeliveryOutcome.failed(self.channel, f"Connection error: {str(e)}")
        except Exception as e:
            return DeliveryOutcome.failed(self.channel, str(e))

    def _headers(self, notification: Notification) -> dict[str, str]:
        headers = {
            "TTL": str(self.ttl_seconds),
            "Urgency": IMPACT_URGENCY.get(notification.impact, "normal"),
        }
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _post(
        self, endpoint: str, payload: dict[str, Any], notification: Notification
    ) -> requests.Response:
        """Post with rate limit handling."""
        headers = self._headers(notification)
        response = requests.post(endpoint, json=payload, headers=headers, timeout=self.timeout)

        # Handle rate limiting
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "1")
            time.sleep(float(retry_after))
            response = requests.post(
                endpoint, json=payload, headers=headers, timeout=self.timeout
            )

        return response

    def _create_payload(self, notification: Notification) -> dict[str, Any]:
        """Create the push message body."""
        event = notification.event
        return {
            "title": f"Upcoming: {event.title}",
            "body": notification.message,
            "tag": f"{event.event_id}:{notification.lead_window_days}",
            "data": {
                "type": "UPCOMING_EVENT",
                "eventId": event.event_id,
                "eventDate": event.occurs_at.isoformat(),
                "category": event.category.value,
                "impact": event.impact.value,
                "leadWindowDays": notification.lead_window_days,
            },
        }
