"""
Base notifier classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from eventwatch.database.models import Channel
from eventwatch.rules.types import Notification


class ChannelDeliveryFailure(Exception):
    """Raised by a notifier when its transport rejects a message."""

    pass


class DeliveryStatus(str, Enum):
    """Per-channel delivery result."""

    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class DeliveryOutcome:
    """Result of a notification attempt on one channel."""

    status: DeliveryStatus
    channel: Channel
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is DeliveryStatus.DELIVERED

    @classmethod
    def delivered(cls, channel: Channel) -> "DeliveryOutcome":
        return cls(status=DeliveryStatus.DELIVERED, channel=channel)

    @classmethod
    def failed(cls, channel: Channel, reason: str) -> "DeliveryOutcome":
        return cls(status=DeliveryStatus.FAILED, channel=channel, error=reason)

    @classmethod
    def skipped(cls, channel: Channel, reason: str) -> "DeliveryOutcome":
        return cls(status=DeliveryStatus.SKIPPED, channel=channel, error=reason)


class Notifier(ABC):
    """Abstract base class for notifiers."""

    channel: Channel

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    @abstractmethod
    def send(self, notification: Notification) -> DeliveryOutcome:
        """
        Send a single notification.

        Args:
            notification: Notification carrying the user, contact and message

        Returns:
            DeliveryOutcome indicating success or failure
        """
        pass


class NotifierFactory:
    """Factory for creating notifier instances."""

    @staticmethod
    def create(config: dict[str, Any]) -> Notifier:
        """
        Create a notifier from configuration.

        Args:
            config: Notifier configuration dict

        Returns:
            Appropriate Notifier instance

        Raises:
            ValueError: If notifier type is unknown
        """
        notifier_type = config.get("type")

        if notifier_type == "email":
            from .email import EmailNotifier

            return EmailNotifier(
                smtp_host=config.get("smtp_host", ""),
                smtp_port=config.get("smtp_port", 587),
                smtp_user=config.get("smtp_user", ""),
                smtp_password=config.get("smtp_password", ""),
                from_address=config.get("from_address", ""),
                timeout=config.get("timeout", 10),
                enabled=config.get("enabled", True),
            )

        elif notifier_type == "push":
            from .push import PushNotifier

            return PushNotifier(
                auth_token=config.get("auth_token", ""),
                ttl_seconds=config.get("ttl_seconds", 86400),
                timeout=config.get("timeout", 10),
                enabled=config.get("enabled", True),
            )

        elif notifier_type == "chat":
            from .chat import TelegramNotifier

            return TelegramNotifier(
                bot_token=config.get("bot_token", ""),
                timeout=config.get("timeout", 10),
                enabled=config.get("enabled", True),
            )

        else:
            raise ValueError(f"Unknown notifier type: {notifier_type}")
