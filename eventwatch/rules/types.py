"""
Notification candidates produced by the eligibility matcher.
"""

from dataclasses import dataclass

from eventwatch.database.models import Channel, Event, Impact, Subscriber


@dataclass(frozen=True)
class Notification:
    """One user's reminder for one event at one lead window. Never persisted."""

    event: Event
    subscriber: Subscriber
    lead_window_days: int
    channels: tuple[Channel, ...]
    message: str

    @property
    def user_id(self) -> int:
        return self.subscriber.user_id

    @property
    def dedup_key(self) -> tuple[str, int, int]:
        return (self.event.event_id, self.user_id, self.lead_window_days)

    @property
    def impact(self) -> Impact:
        return self.event.impact


def format_lead_time(days: int) -> str:
    if days == 0:
        return "today"
    if days == 1:
        return "tomorrow"
    return f"in {days} days"


def build_message(event: Event, days_until: int) -> str:
    """Human-readable reminder text shared by every channel."""
    text = f"{event.title} is likely to impact the market {format_lead_time(days_until)}."
    if event.description:
        text = f"{text} {event.description}"
    return text
