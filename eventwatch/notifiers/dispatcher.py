"""
Fan-out of one notification across its resolved channels.
"""

import logging
import threading
from concurrent import futures
from typing import Mapping

from eventwatch.database.models import Channel
from eventwatch.rules.types import Notification
from .base import DeliveryOutcome, Notifier

logger = logging.getLogger(__name__)


class ChannelDispatcher:
    """Sends a notification on every resolved channel independently."""

    def __init__(
        self,
        notifiers: Mapping[Channel, Notifier],
        timeout_seconds: float = 10.0,
    ):
        """
        Initialize dispatcher.

        Args:
            notifiers: Configured notifier per channel
            timeout_seconds: Per-channel delivery deadline
        """
        self.notifiers = dict(notifiers)
        self.timeout_seconds = timeout_seconds

    def dispatch(self, notification: Notification) -> dict[Channel, DeliveryOutcome]:
        """
        Attempt delivery on every channel of the notification.

        A failing, slow or missing channel never prevents the others from
        being attempted. Nothing here raises for a channel problem.

        Returns:
            Outcome per resolved channel
        """
        outcomes: dict[Channel, DeliveryOutcome] = {}
        pending = {}

        for channel in notification.channels:
            notifier = self.notifiers.get(channel)
            if notifier is None:
                outcomes[channel] = DeliveryOutcome.skipped(channel, "no notifier configured")
            elif not notifier.enabled:
                outcomes[channel] = DeliveryOutcome.skipped(channel, "channel disabled")
            elif not notification.subscriber.contact.address_for(channel):
                outcomes[channel] = DeliveryOutcome.skipped(channel, "no address on file")
            else:
                pending[channel] = self._start(channel, notifier, notification)

        if pending:
            futures.wait(pending.values(), timeout=self.timeout_seconds)

        for channel, future in pending.items():
            if not future.done():
                # The sender thread keeps running; its late result is discarded
                outcomes[channel] = DeliveryOutcome.failed(channel, "timeout")
                continue
            try:
                outcomes[channel] = future.result()
            except Exception as e:
                outcomes[channel] = DeliveryOutcome.failed(channel, str(e) or type(e).__name__)

        for channel, outcome in outcomes.items():
            if not outcome.success:
                logger.info(
                    f"{channel.value} {outcome.status.value} for user "
                    f"{notification.user_id} / {notification.event.event_id}: {outcome.error}"
                )

        # Keep the notification's channel order
        return {channel: outcomes[channel] for channel in notification.channels}

    def _start(
        self, channel: Channel, notifier: Notifier, notification: Notification
    ) -> futures.Future:
        """Run one send on its own daemon thread, so it starts right away."""
        future: futures.Future = futures.Future()
        future.set_running_or_notify_cancel()

        def run():
            try:
                future.set_result(notifier.send(notification))
            except Exception as e:
                future.set_exception(e)

        threading.Thread(
            target=run,
            name=f"channel-{channel.value}-{notification.user_id}",
            daemon=True,
        ).start()
        return future
