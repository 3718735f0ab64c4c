"""
Pytest configuration and shared fixtures.
"""

import pytest
from datetime import datetime, timezone

from eventwatch.database.connection import Database
from eventwatch.database.models import (
    Category,
    Channel,
    Contact,
    Event,
    Impact,
    ImpactFilter,
    NotificationPolicy,
    Subscriber,
)
from eventwatch.rules.types import Notification, build_message


@pytest.fixture
def db():
    """Create in-memory database with schema."""
    db = Database(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def now():
    """Sunday 2025-09-14 08:00 in New York."""
    return datetime(2025, 9, 14, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fomc_event():
    """The 2025-09-17 FOMC decision, 14:00 ET."""
    return Event(
        event_id="FOMC-2025-09-17",
        title="FOMC Meeting",
        description="Federal Open Market Committee meeting to discuss monetary policy",
        category=Category.FED,
        impact=Impact.HIGH,
        occurs_at=datetime(2025, 9, 17, 18, 0, tzinfo=timezone.utc),
        source="Federal Reserve",
    )


@pytest.fixture
def make_event():
    """Factory for events with sensible defaults."""

    def _make(event_id="TEST-2025-09-20", impact=Impact.MEDIUM, occurs_at=None, **kwargs):
        return Event(
            event_id=event_id,
            title=kwargs.pop("title", "Test Event"),
            description=kwargs.pop("description", "Something happens"),
            category=kwargs.pop("category", Category.OTHER),
            impact=impact,
            occurs_at=occurs_at or datetime(2025, 9, 20, 14, 0, tzinfo=timezone.utc),
            source=kwargs.pop("source", "Test"),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_subscriber():
    """Factory for subscribers opted into every channel they list."""

    def _make(
        user_id=1,
        windows=(1, 3),
        channels=(Channel.EMAIL,),
        impact_filter=ImpactFilter.ALL,
        enabled_channels=None,
        contact=None,
    ):
        return Subscriber(
            user_id=user_id,
            policy=NotificationPolicy(
                lead_windows_days=frozenset(windows),
                channels=frozenset(channels),
                impact_filter=impact_filter,
            ),
            enabled_channels=frozenset(
                channels if enabled_channels is None else enabled_channels
            ),
            contact=contact
            or Contact(
                email=f"user{user_id}@example.com",
                push_endpoint=f"https://push.example.com/sub/{user_id}",
                chat_id=str(1000 + user_id),
            ),
        )

    return _make


@pytest.fixture
def make_notification(fomc_event, make_subscriber):
    """Factory for a notification about the FOMC event."""

    def _make(channels=(Channel.EMAIL,), lead_window_days=3, subscriber=None, event=None):
        event = event or fomc_event
        subscriber = subscriber or make_subscriber(channels=channels)
        return Notification(
            event=event,
            subscriber=subscriber,
            lead_window_days=lead_window_days,
            channels=tuple(channels),
            message=build_message(event, lead_window_days),
        )

    return _make
