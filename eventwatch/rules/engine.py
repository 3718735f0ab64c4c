"""
Eligibility matching between upcoming events and subscriber policies.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Iterator
from zoneinfo import ZoneInfo

from eventwatch.database.models import Channel, Event, Subscriber
from .types import Notification, build_message

logger = logging.getLogger(__name__)

# Re-export for convenience
__all__ = ["EligibilityMatcher", "Notification"]


class EligibilityMatcher:
    """Decides which subscribers should hear about an event right now."""

    def __init__(self, calendar_tz: str = "UTC"):
        """
        Initialize matcher.

        Args:
            calendar_tz: Timezone whose calendar days lead windows count
        """
        self.zone = ZoneInfo(calendar_tz)

    def days_until(self, event: Event, now: datetime) -> int:
        """Whole calendar days from now to the event; negative once past."""
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        event_day = event.occurs_at.astimezone(self.zone).date()
        today = now.astimezone(self.zone).date()
        return (event_day - today).days

    def match(
        self,
        event: Event,
        subscribers: Iterable[Subscriber],
        now: datetime,
    ) -> Iterator[Notification]:
        """
        Lazily yield one candidate per eligible subscriber.

        Already-notified pairs are yielded again on every run; filtering
        those out is the dedup ledger's job.

        Args:
            event: Upcoming event
            subscribers: Active policies with account channel opt-in
            now: Current time

        Yields:
            Notification annotated with the matched lead window and the
            resolved channel list
        """
        days_until = self.days_until(event, now)
        if days_until < 0:
            return

        for subscriber in subscribers:
            policy = subscriber.policy
            if days_until not in policy.lead_windows_days:
                continue
            if not policy.impact_filter.admits(event.impact):
                continue

            resolved = policy.resolve_channels(subscriber.enabled_channels)
            if not resolved:
                logger.debug(
                    f"User {subscriber.user_id} has no enabled channels for {event.event_id}"
                )
                continue

            yield Notification(
                event=event,
                subscriber=subscriber,
                lead_window_days=days_until,
                channels=tuple(c for c in Channel if c in resolved),
                message=build_message(event, days_until),
            )

    def match_all(
        self,
        events: Iterable[Event],
        subscribers: Iterable[Subscriber],
        now: datetime,
    ) -> Iterator[Notification]:
        """Chain match() over several events."""
        subscribers = list(subscribers)
        for event in events:
            yield from self.match(event, subscribers, now)

    def approaching(
        self, events: Iterable[Event], now: datetime, horizon_days: int = 7
    ) -> list[tuple[Event, int]]:
        """Events within the horizon with their days-until, soonest first."""
        pairs = []
        for event in events:
            days = self.days_until(event, now)
            if 0 <= days <= horizon_days:
                pairs.append((event, days))
        return sorted(pairs, key=lambda pair: (pair[1], pair[0].occurs_at))
