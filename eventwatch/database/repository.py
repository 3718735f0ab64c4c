"""
Repository classes for CRUD operations.
"""

import functools
import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from .connection import Database, StoreUnavailable
from .models import (
    Category,
    Channel,
    DispatchRecord,
    Event,
    Impact,
    NotificationPolicy,
    Subscriber,
    User,
)

logger = logging.getLogger(__name__)


def _store_errors(method):
    """Surface sqlite failures as StoreUnavailable."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"{method.__qualname__} failed: {e}") from e

    return wrapper


def _to_db(dt: datetime) -> str:
    """Normalize to a UTC ISO string; these compare correctly as text."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def _from_db(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _channels_to_db(channels: Iterable[Channel]) -> str:
    return json.dumps(sorted(Channel(c).value for c in channels))


def _channels_from_db(value: str) -> set[Channel]:
    return {Channel(c) for c in json.loads(value)}


class EventRepository:
    """Persists projected events; owns event identity."""

    def __init__(self, db: Database):
        self.db = db

    @_store_errors
    def upsert(self, event: Event, now: Optional[datetime] = None) -> bool:
        """
        Insert an event unless its id already exists.

        Existing rows are never modified, so a re-projected event keeps its
        original occurs_at and ignored flag.

        Returns:
            True if a new row was inserted
        """
        created_at = event.created_at or now or datetime.now(timezone.utc)
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO events
            (event_id, title, description, category, impact, occurs_at, source,
             ignored, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(event_id) DO NOTHING
            """,
            (
                event.event_id,
                event.title,
                event.description,
                event.category.value,
                event.impact.value,
                _to_db(event.occurs_at),
                event.source,
                1 if event.ignored else 0,
                _to_db(created_at),
            ),
        )
        self.db.connection.commit()
        return cursor.rowcount == 1

    @_store_errors
    def get_by_id(self, event_id: str) -> Optional[Event]:
        """Get event by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM events WHERE event_id = ?", (event_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    @_store_errors
    def list_upcoming(self, limit: int, now: datetime) -> list[Event]:
        """Future, non-ignored events ordered by occurs_at."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM events
            WHERE occurs_at > ? AND ignored = 0
            ORDER BY occurs_at ASC, event_id ASC
            LIMIT ?
            """,
            (_to_db(now), limit),
        )
        return [self._row_to_event(row) for row in cursor.fetchall()]

    @_store_errors
    def list_all_upcoming(self, limit: int, now: datetime) -> list[Event]:
        """Future events including ignored ones."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM events
            WHERE occurs_at > ?
            ORDER BY occurs_at ASC, event_id ASC
            LIMIT ?
            """,
            (_to_db(now), limit),
        )
        return [self._row_to_event(row) for row in cursor.fetchall()]

    @_store_errors
    def mark_ignored(self, event_id: str) -> bool:
        """Suppress an event without deleting it."""
        return self._set_ignored(event_id, True)

    @_store_errors
    def unignore(self, event_id: str) -> bool:
        return self._set_ignored(event_id, False)

    def _set_ignored(self, event_id: str, ignored: bool) -> bool:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "UPDATE events SET ignored = ? WHERE event_id = ?",
            (1 if ignored else 0, event_id),
        )
        self.db.connection.commit()
        return cursor.rowcount > 0

    @_store_errors
    def delete(self, event_id: str) -> bool:
        """Delete an event (administrative only)."""
        cursor = self.db.connection.cursor()
        cursor.execute("DELETE FROM events WHERE event_id = ?", (event_id,))
        self.db.connection.commit()
        return cursor.rowcount > 0

    def summarize(self, now: datetime, limit: int = 50) -> dict[str, Any]:
        """Impact counts and the next high-impact event."""
        events = self.list_upcoming(limit, now)
        counts = {impact: 0 for impact in Impact}
        for event in events:
            counts[event.impact] += 1
        next_high = next((e for e in events if e.impact is Impact.HIGH), None)
        return {
            "total_events": len(events),
            "high_impact": counts[Impact.HIGH],
            "medium_impact": counts[Impact.MEDIUM],
            "low_impact": counts[Impact.LOW],
            "next_high_impact_event": next_high,
            "events": events[:10],
        }

    def _row_to_event(self, row) -> Event:
        """Convert database row to Event."""
        return Event(
            event_id=row["event_id"],
            title=row["title"],
            description=row["description"],
            category=Category(row["category"]),
            impact=Impact(row["impact"]),
            occurs_at=_from_db(row["occurs_at"]),
            source=row["source"],
            ignored=bool(row["ignored"]),
            created_at=_from_db(row["created_at"]),
        )


class UserRepository:
    """CRUD operations for users."""

    def __init__(self, db: Database):
        self.db = db

    @_store_errors
    def create(self, user: User) -> User:
        """Create a new user."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO users
            (email, push_endpoint, chat_id, email_enabled, push_enabled, chat_enabled)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                user.email,
                user.push_endpoint,
                user.chat_id,
                int(user.email_enabled),
                int(user.push_enabled),
                int(user.chat_enabled),
            ),
        )
        self.db.connection.commit()
        user.id = cursor.lastrowid
        return user

    @_store_errors
    def get_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    @_store_errors
    def update(self, user: User) -> None:
        """Update user contact details and channel opt-in."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            UPDATE users
            SET email = ?, push_endpoint = ?, chat_id = ?,
                email_enabled = ?, push_enabled = ?, chat_enabled = ?
            WHERE id = ?
            """,
            (
                user.email,
                user.push_endpoint,
                user.chat_id,
                int(user.email_enabled),
                int(user.push_enabled),
                int(user.chat_enabled),
                user.id,
            ),
        )
        self.db.connection.commit()

    @_store_errors
    def delete(self, user_id: int) -> None:
        """Delete user."""
        cursor = self.db.connection.cursor()
        cursor.execute("DELETE FROM users WHERE id = ?", (user_id,))
        self.db.connection.commit()

    @_store_errors
    def list_all(self) -> list[User]:
        """List all users."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM users ORDER BY id")
        return [self._row_to_user(row) for row in cursor.fetchall()]

    def _row_to_user(self, row) -> User:
        return _row_to_user(row)


def _row_to_user(row) -> User:
    """Convert database row to User."""
    return User(
        id=row["id"],
        email=row["email"],
        push_endpoint=row["push_endpoint"],
        chat_id=row["chat_id"],
        email_enabled=bool(row["email_enabled"]),
        push_enabled=bool(row["push_enabled"]),
        chat_enabled=bool(row["chat_enabled"]),
        created_at=row["created_at"],
    )


class PolicyRepository:
    """Notification policies; the policy source for dispatch cycles."""

    def __init__(self, db: Database):
        self.db = db

    @_store_errors
    def set_policy(
        self, user_id: int, policy: NotificationPolicy, enabled: bool = True
    ) -> None:
        """Create or replace a user's policy."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO notification_policies
            (user_id, lead_windows, channels, impact_filter, enabled)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                lead_windows = excluded.lead_windows,
                channels = excluded.channels,
                impact_filter = excluded.impact_filter,
                enabled = excluded.enabled
            """,
            (
                user_id,
                json.dumps(sorted(policy.lead_windows_days)),
                _channels_to_db(policy.channels),
                policy.impact_filter.value,
                1 if enabled else 0,
            ),
        )
        self.db.connection.commit()

    @_store_errors
    def get_policy(self, user_id: int) -> Optional[NotificationPolicy]:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT * FROM notification_policies WHERE user_id = ?", (user_id,)
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_policy(row)

    @_store_errors
    def list_active_policies(self) -> list[Subscriber]:
        """
        Enabled policies joined with account channel opt-in and contacts.

        Rows whose stored policy no longer validates are logged and skipped;
        they never abort the caller.
        """
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT u.*, p.lead_windows, p.channels, p.impact_filter
            FROM notification_policies p
            JOIN users u ON u.id = p.user_id
            WHERE p.enabled = 1
            ORDER BY u.id
            """
        )
        subscribers = []
        for row in cursor.fetchall():
            try:
                policy = self._row_to_policy(row)
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping invalid policy for user {row['id']}: {e}")
                continue
            user = _row_to_user(row)
            subscribers.append(
                Subscriber(
                    user_id=user.id,
                    policy=policy,
                    enabled_channels=user.enabled_channels,
                    contact=user.contact,
                )
            )
        return subscribers

    def _row_to_policy(self, row) -> NotificationPolicy:
        return NotificationPolicy(
            lead_windows_days=frozenset(json.loads(row["lead_windows"])),
            channels=frozenset(json.loads(row["channels"])),
            impact_filter=row["impact_filter"],
        )


class DispatchLedger:
    """Idempotency ledger: one claim per (event, user, lead window)."""

    def __init__(self, db: Database):
        self.db = db

    @_store_errors
    def try_claim(
        self,
        event_id: str,
        user_id: int,
        lead_window_days: int,
        event_occurs_at: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Atomically claim the right to notify.

        The primary key makes the insert the linearization point: among any
        number of concurrent or retried callers exactly one sees True.

        Returns:
            True if this call inserted the record, False if it already existed
        """
        created_at = now or datetime.now(timezone.utc)
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO dispatch_records
            (event_id, user_id, lead_window_days, created_at, event_occurs_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(event_id, user_id, lead_window_days) DO NOTHING
            """,
            (
                event_id,
                user_id,
                lead_window_days,
                _to_db(created_at),
                _to_db(event_occurs_at),
            ),
        )
        self.db.connection.commit()
        return cursor.rowcount == 1

    @_store_errors
    def record_delivery(
        self, key: tuple[str, int, int], channels: Iterable[Channel]
    ) -> None:
        """Store the channels that reported Delivered for an owned claim."""
        event_id, user_id, lead_window_days = key
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            UPDATE dispatch_records
            SET channels_sent = ?
            WHERE event_id = ? AND user_id = ? AND lead_window_days = ?
            """,
            (_channels_to_db(channels), event_id, user_id, lead_window_days),
        )
        self.db.connection.commit()

    @_store_errors
    def get(self, key: tuple[str, int, int]) -> Optional[DispatchRecord]:
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM dispatch_records
            WHERE event_id = ? AND user_id = ? AND lead_window_days = ?
            """,
            key,
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    @_store_errors
    def list_for_user(self, user_id: int, limit: int = 50) -> list[DispatchRecord]:
        """Get dispatch history for a user, newest first."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM dispatch_records
            WHERE user_id = ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (user_id, limit),
        )
        return [self._row_to_record(row) for row in cursor.fetchall()]

    @_store_errors
    def prune(self, now: datetime, horizon_days: int) -> int:
        """
        Delete records older than the horizon whose event already happened.

        Returns:
            Number of records removed
        """
        cutoff = now - timedelta(days=horizon_days)
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            DELETE FROM dispatch_records
            WHERE created_at < ? AND event_occurs_at <= ?
            """,
            (_to_db(cutoff), _to_db(now)),
        )
        self.db.connection.commit()
        return cursor.rowcount

    @staticmethod
    def retention_horizon_days(
        subscribers: Iterable[Subscriber], margin_days: int
    ) -> int:
        """Longest configured lead window plus a safety margin."""
        longest = max(
            (max(s.policy.lead_windows_days, default=0) for s in subscribers),
            default=0,
        )
        return longest + margin_days

    def _row_to_record(self, row) -> DispatchRecord:
        return DispatchRecord(
            event_id=row["event_id"],
            user_id=row["user_id"],
            lead_window_days=row["lead_window_days"],
            created_at=_from_db(row["created_at"]),
            event_occurs_at=_from_db(row["event_occurs_at"]),
            channels_sent=_channels_from_db(row["channels_sent"]),
        )
