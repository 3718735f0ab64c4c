"""
Data models for the eventwatch engine.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Iterable, Optional


class Category(str, Enum):
    """Market event category."""

    FED = "fed"
    CRYPTO = "crypto"
    REGULATION = "regulation"
    EARNINGS = "earnings"
    OTHER = "other"


class Impact(str, Enum):
    """Expected market impact of an event."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ImpactFilter(str, Enum):
    """Subscriber-level severity gate."""

    ALL = "all"
    HIGH_ONLY = "high_only"
    HIGH_AND_MEDIUM = "high_and_medium"

    def admits(self, impact: Impact) -> bool:
        """Whether an event with this impact passes the filter."""
        if self is ImpactFilter.HIGH_ONLY:
            return impact is Impact.HIGH
        if self is ImpactFilter.HIGH_AND_MEDIUM:
            return impact is not Impact.LOW
        return True


class Channel(str, Enum):
    """Notification transport."""

    EMAIL = "email"
    PUSH = "push"
    CHAT = "chat"


def make_event_id(type_key: str, local_date: date) -> str:
    """Derive the stable event id from the type key and its calendar date."""
    return f"{type_key}-{local_date.isoformat()}"


@dataclass(frozen=True)
class Event:
    """A projected market event. Identity and occurs_at never change."""

    event_id: str
    title: str
    description: str
    category: Category
    impact: Impact
    occurs_at: datetime  # timezone-aware
    source: str
    ignored: bool = False
    created_at: Optional[datetime] = None


def _parse_channels(channels: Iterable) -> frozenset[Channel]:
    return frozenset(Channel(c) for c in channels)


@dataclass(frozen=True)
class NotificationPolicy:
    """A subscriber's lead windows, channels and impact filter."""

    lead_windows_days: frozenset[int]
    channels: frozenset[Channel]
    impact_filter: ImpactFilter = ImpactFilter.ALL

    def __post_init__(self):
        windows = frozenset(self.lead_windows_days)
        for days in windows:
            if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
                raise ValueError(f"Lead window must be a positive integer: {days!r}")
        # Normalize plain iterables / strings into the canonical types
        object.__setattr__(self, "lead_windows_days", windows)
        object.__setattr__(self, "channels", _parse_channels(self.channels))
        object.__setattr__(self, "impact_filter", ImpactFilter(self.impact_filter))

    def resolve_channels(self, account_enabled: Iterable[Channel]) -> frozenset[Channel]:
        """Policy channels the account has independently opted into."""
        return self.channels & frozenset(account_enabled)


@dataclass(frozen=True)
class Contact:
    """Per-channel delivery addresses for a user."""

    email: Optional[str] = None
    push_endpoint: Optional[str] = None
    chat_id: Optional[str] = None

    def address_for(self, channel: Channel) -> Optional[str]:
        if channel is Channel.EMAIL:
            return self.email
        if channel is Channel.PUSH:
            return self.push_endpoint
        return self.chat_id


@dataclass(frozen=True)
class Subscriber:
    """One row of the policy source."""

    user_id: int
    policy: NotificationPolicy
    enabled_channels: frozenset[Channel]
    contact: Contact = field(default_factory=Contact)


@dataclass
class User:
    """User account with per-channel opt-in flags."""

    id: Optional[int] = None
    email: Optional[str] = None
    push_endpoint: Optional[str] = None
    chat_id: Optional[str] = None
    email_enabled: bool = False
    push_enabled: bool = False
    chat_enabled: bool = False
    created_at: Optional[datetime] = None

    @property
    def enabled_channels(self) -> frozenset[Channel]:
        """Account-level channel opt-in as one set."""
        flags = {
            Channel.EMAIL: self.email_enabled,
            Channel.PUSH: self.push_enabled,
            Channel.CHAT: self.chat_enabled,
        }
        return frozenset(channel for channel, on in flags.items() if on)

    @property
    def contact(self) -> Contact:
        return Contact(
            email=self.email,
            push_endpoint=self.push_endpoint,
            chat_id=self.chat_id,
        )


@dataclass
class DispatchRecord:
    """Dedup ledger entry; one per (event_id, user_id, lead_window_days)."""

    event_id: str
    user_id: int
    lead_window_days: int
    created_at: datetime
    event_occurs_at: datetime
    channels_sent: set[Channel] = field(default_factory=set)

    @property
    def key(self) -> tuple[str, int, int]:
        return (self.event_id, self.user_id, self.lead_window_days)
