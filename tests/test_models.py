"""
Data model tests.
Tests for events, policies, subscribers and message formatting.
"""

import pytest
from datetime import date

from eventwatch.database.models import (
    Channel,
    Contact,
    DispatchRecord,
    Impact,
    ImpactFilter,
    NotificationPolicy,
    User,
    make_event_id,
)
from eventwatch.rules.types import build_message, format_lead_time


class TestEventIdentity:
    """Test stable event ids."""

    def test_event_id_from_type_and_date(self):
        """Should combine the type key and the local calendar date."""
        assert make_event_id("FOMC", date(2025, 9, 17)) == "FOMC-2025-09-17"

    def test_event_is_immutable(self, fomc_event):
        """Should not allow changing occurs_at after creation."""
        with pytest.raises(AttributeError):
            fomc_event.occurs_at = None


class TestImpactFilter:
    """Test impact filter semantics."""

    @pytest.mark.parametrize(
        "impact_filter,admitted",
        [
            (ImpactFilter.ALL, {Impact.HIGH, Impact.MEDIUM, Impact.LOW}),
            (ImpactFilter.HIGH_ONLY, {Impact.HIGH}),
            (ImpactFilter.HIGH_AND_MEDIUM, {Impact.HIGH, Impact.MEDIUM}),
        ],
    )
    def test_admits(self, impact_filter, admitted):
        """Should admit exactly the impacts the filter names."""
        assert {i for i in Impact if impact_filter.admits(i)} == admitted


class TestNotificationPolicy:
    """Test NotificationPolicy validation."""

    def test_normalizes_values(self):
        """Should accept plain strings and lists."""
        policy = NotificationPolicy(
            lead_windows_days=[1, 3], channels=["email", "chat"], impact_filter="high_only"
        )
        assert policy.lead_windows_days == frozenset({1, 3})
        assert policy.channels == frozenset({Channel.EMAIL, Channel.CHAT})
        assert policy.impact_filter is ImpactFilter.HIGH_ONLY

    @pytest.mark.parametrize("window", [0, -1, True, 1.5])
    def test_rejects_invalid_window(self, window):
        """Should reject non-positive or non-integer windows."""
        with pytest.raises(ValueError):
            NotificationPolicy(lead_windows_days=[window], channels=["email"])

    def test_rejects_unknown_channel(self):
        """Should reject channels outside the known set."""
        with pytest.raises(ValueError):
            NotificationPolicy(lead_windows_days=[1], channels=["sms"])

    def test_resolve_channels_is_intersection(self):
        """Should keep only channels the account also enabled."""
        policy = NotificationPolicy(
            lead_windows_days=[1], channels=[Channel.EMAIL, Channel.PUSH]
        )
        assert policy.resolve_channels({Channel.PUSH, Channel.CHAT}) == {Channel.PUSH}

    def test_resolve_channels_can_be_empty(self):
        """Should not fall back to default channels."""
        policy = NotificationPolicy(lead_windows_days=[1], channels=[Channel.EMAIL])
        assert policy.resolve_channels(set()) == frozenset()


class TestUserModel:
    """Test User model."""

    def test_enabled_channels(self):
        """Should collect the opted-in channels."""
        user = User(email="a@example.com", email_enabled=True, chat_enabled=True)
        assert user.enabled_channels == {Channel.EMAIL, Channel.CHAT}

    def test_contact(self):
        """Should expose addresses as a Contact."""
        user = User(email="a@example.com", chat_id="42")
        assert user.contact == Contact(email="a@example.com", chat_id="42")
        assert user.contact.address_for(Channel.PUSH) is None
        assert user.contact.address_for(Channel.CHAT) == "42"


class TestDispatchRecord:
    """Test DispatchRecord model."""

    def test_key(self, now, fomc_event):
        """Should key records by event, user and window."""
        record = DispatchRecord(
            event_id=fomc_event.event_id,
            user_id=7,
            lead_window_days=3,
            created_at=now,
            event_occurs_at=fomc_event.occurs_at,
        )
        assert record.key == ("FOMC-2025-09-17", 7, 3)
        assert record.channels_sent == set()


class TestMessages:
    """Test human-readable message text."""

    @pytest.mark.parametrize(
        "days,expected", [(0, "today"), (1, "tomorrow"), (3, "in 3 days")]
    )
    def test_format_lead_time(self, days, expected):
        """Should phrase the lead time naturally."""
        assert format_lead_time(days) == expected

    def test_build_message(self, fomc_event):
        """Should include title, lead time and description."""
        message = build_message(fomc_event, 3)
        assert message.startswith("FOMC Meeting is likely to impact the market in 3 days.")
        assert "monetary policy" in message
