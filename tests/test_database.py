"""
Database layer tests.
Tests for SQLite connection, schema creation and the repositories.
"""

import pytest
import sqlite3
import threading
from datetime import timedelta
from pathlib import Path

from eventwatch.database.connection import Database, StoreUnavailable
from eventwatch.database.models import (
    Channel,
    Impact,
    ImpactFilter,
    NotificationPolicy,
    User,
)
from eventwatch.database.repository import (
    DispatchLedger,
    EventRepository,
    PolicyRepository,
    UserRepository,
)


class TestDatabaseConnection:
    """Test database connection and initialization."""

    def test_create_in_memory_database(self):
        """Should create an in-memory SQLite database."""
        db = Database(":memory:")
        assert db.connection is not None

    def test_create_file_database(self, tmp_path: Path):
        """Should create a file-based SQLite database and its directory."""
        db_path = tmp_path / "nested" / "test.db"
        db = Database(str(db_path))
        db.initialize()
        assert db_path.exists()
        db.close()

    def test_initialize_schema(self, db):
        """Should create all required tables on initialization."""
        cursor = db.connection.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row[0] for row in cursor.fetchall()}

        assert {"events", "users", "notification_policies", "dispatch_records"}.issubset(
            tables
        )

    def test_initialize_is_idempotent(self, db):
        """Should not fail when run twice."""
        db.initialize()

    def test_close_connection(self):
        """Should properly close database connection."""
        db = Database(":memory:")
        db.close()
        with pytest.raises(sqlite3.ProgrammingError):
            db.connection.execute("SELECT 1")

    def test_unopenable_path(self, tmp_path: Path):
        """Should raise StoreUnavailable when the file cannot be opened."""
        with pytest.raises(StoreUnavailable):
            db = Database(str(tmp_path))
            db.initialize()


class TestEventRepository:
    """Test the event store."""

    @pytest.fixture
    def repo(self, db):
        return EventRepository(db)

    def test_upsert_and_get(self, repo, fomc_event, now):
        """Should persist every field."""
        assert repo.upsert(fomc_event, now=now) is True

        stored = repo.get_by_id("FOMC-2025-09-17")
        assert stored.title == fomc_event.title
        assert stored.impact is Impact.HIGH
        assert stored.occurs_at == fomc_event.occurs_at
        assert stored.ignored is False
        assert stored.created_at == now

    def test_upsert_never_overwrites(self, repo, make_event, now):
        """Should keep the original row on a repeated upsert."""
        original = make_event(event_id="X-2025-09-20")
        moved = make_event(
            event_id="X-2025-09-20", occurs_at=original.occurs_at + timedelta(hours=3)
        )

        assert repo.upsert(original, now=now) is True
        assert repo.upsert(moved, now=now) is False
        assert repo.get_by_id("X-2025-09-20").occurs_at == original.occurs_at

    def test_get_missing(self, repo):
        """Should return None for unknown ids."""
        assert repo.get_by_id("NOPE") is None

    def test_list_upcoming_order_and_filter(self, repo, make_event, now):
        """Should list future, non-ignored events soonest first."""
        base = now + timedelta(days=1)
        repo.upsert(make_event(event_id="B", occurs_at=base), now=now)
        repo.upsert(make_event(event_id="A", occurs_at=base), now=now)
        repo.upsert(make_event(event_id="C", occurs_at=base - timedelta(hours=1)), now=now)
        repo.upsert(make_event(event_id="PAST", occurs_at=now - timedelta(hours=1)), now=now)
        repo.upsert(make_event(event_id="NOW", occurs_at=now), now=now)
        repo.upsert(
            make_event(event_id="HIDDEN", occurs_at=base, ignored=True), now=now
        )

        upcoming = repo.list_upcoming(10, now)

        assert [e.event_id for e in upcoming] == ["C", "A", "B"]

    def test_list_upcoming_limit(self, repo, make_event, now):
        """Should honour the limit."""
        for day in range(1, 6):
            repo.upsert(
                make_event(event_id=f"E{day}", occurs_at=now + timedelta(days=day)), now=now
            )
        assert [e.event_id for e in repo.list_upcoming(2, now)] == ["E1", "E2"]

    def test_ignore_and_unignore(self, repo, fomc_event, now):
        """Should hide ignored events from upcoming lists only."""
        repo.upsert(fomc_event, now=now)

        assert repo.mark_ignored(fomc_event.event_id) is True
        assert repo.list_upcoming(10, now) == []
        assert len(repo.list_all_upcoming(10, now)) == 1

        assert repo.unignore(fomc_event.event_id) is True
        assert len(repo.list_upcoming(10, now)) == 1
        assert repo.mark_ignored("NOPE") is False

    def test_delete(self, repo, fomc_event, now):
        """Should delete an event."""
        repo.upsert(fomc_event, now=now)
        assert repo.delete(fomc_event.event_id) is True
        assert repo.get_by_id(fomc_event.event_id) is None
        assert repo.delete(fomc_event.event_id) is False

    def test_summarize(self, repo, make_event, fomc_event, now):
        """Should count impacts and find the next high impact event."""
        repo.upsert(make_event(event_id="LOW", impact=Impact.LOW,
                               occurs_at=now + timedelta(hours=2)), now=now)
        repo.upsert(fomc_event, now=now)
        repo.upsert(make_event(event_id="MED", impact=Impact.MEDIUM,
                               occurs_at=now + timedelta(days=10)), now=now)

        summary = repo.summarize(now)

        assert summary["total_events"] == 3
        assert summary["high_impact"] == 1
        assert summary["medium_impact"] == 1
        assert summary["low_impact"] == 1
        assert summary["next_high_impact_event"].event_id == "FOMC-2025-09-17"

    def test_store_errors_are_wrapped(self, repo, now):
        """Should surface sqlite errors as StoreUnavailable."""
        repo.db.connection.execute("DROP TABLE events")
        with pytest.raises(StoreUnavailable):
            repo.list_upcoming(10, now)


class TestUserRepository:
    """Test User CRUD operations."""

    @pytest.fixture
    def repo(self, db):
        return UserRepository(db)

    def test_create_user(self, repo):
        """Should create a new user."""
        created = repo.create(User(email="test@example.com", email_enabled=True))
        assert created.id is not None

        user = repo.get_by_id(created.id)
        assert user.email == "test@example.com"
        assert user.enabled_channels == {Channel.EMAIL}

    def test_update_user(self, repo):
        """Should update contact details and opt-in."""
        user = repo.create(User(email="test@example.com", email_enabled=True))
        user.chat_id = "42"
        user.chat_enabled = True
        repo.update(user)

        updated = repo.get_by_id(user.id)
        assert updated.chat_id == "42"
        assert updated.enabled_channels == {Channel.EMAIL, Channel.CHAT}

    def test_delete_user(self, repo):
        """Should delete user."""
        user = repo.create(User(email="test@example.com"))
        repo.delete(user.id)
        assert repo.get_by_id(user.id) is None

    def test_list_all(self, repo):
        """Should list users in id order."""
        repo.create(User(email="a@example.com"))
        repo.create(User(email="b@example.com"))
        assert [u.email for u in repo.list_all()] == ["a@example.com", "b@example.com"]


class TestPolicyRepository:
    """Test the policy source."""

    @pytest.fixture
    def users(self, db):
        return UserRepository(db)

    @pytest.fixture
    def repo(self, db):
        return PolicyRepository(db)

    def test_set_and_get_policy(self, users, repo):
        """Should store and replace a policy."""
        user = users.create(User(email="a@example.com", email_enabled=True))
        repo.set_policy(user.id, NotificationPolicy([1, 3], ["email"]))
        repo.set_policy(user.id, NotificationPolicy([7], ["push"], "high_only"))

        policy = repo.get_policy(user.id)
        assert policy.lead_windows_days == {7}
        assert policy.channels == {Channel.PUSH}
        assert policy.impact_filter is ImpactFilter.HIGH_ONLY

    def test_list_active_policies(self, users, repo):
        """Should join policies with account opt-in and contacts."""
        alice = users.create(
            User(email="a@example.com", chat_id="10", email_enabled=True, chat_enabled=True)
        )
        bob = users.create(User(email="b@example.com", email_enabled=True))
        users.create(User(email="c@example.com"))
        repo.set_policy(alice.id, NotificationPolicy([1, 3], ["email", "chat"]))
        repo.set_policy(bob.id, NotificationPolicy([1], ["email"]), enabled=False)

        subscribers = repo.list_active_policies()

        assert [s.user_id for s in subscribers] == [alice.id]
        assert subscribers[0].enabled_channels == {Channel.EMAIL, Channel.CHAT}
        assert subscribers[0].contact.chat_id == "10"
        assert subscribers[0].policy.lead_windows_days == {1, 3}

    def test_invalid_policy_row_is_skipped(self, db, users, repo):
        """Should skip rows that no longer validate without failing the rest."""
        good = users.create(User(email="a@example.com", email_enabled=True))
        bad = users.create(User(email="b@example.com", email_enabled=True))
        repo.set_policy(good.id, NotificationPolicy([1], ["email"]))
        db.connection.execute(
            "INSERT INTO notification_policies (user_id, lead_windows, channels) "
            "VALUES (?, ?, ?)",
            (bad.id, "[0]", '["email"]'),
        )

        assert [s.user_id for s in repo.list_active_policies()] == [good.id]

    def test_policy_deleted_with_user(self, users, repo):
        """Should cascade policy deletion."""
        user = users.create(User(email="a@example.com"))
        repo.set_policy(user.id, NotificationPolicy([1], ["email"]))
        users.delete(user.id)
        assert repo.get_policy(user.id) is None


class TestDispatchLedger:
    """Test the dedup ledger."""

    @pytest.fixture
    def ledger(self, db):
        return DispatchLedger(db)

    def test_claim_once(self, ledger, fomc_event, now):
        """Should grant the first claim and refuse every later one."""
        args = (fomc_event.event_id, 1, 3, fomc_event.occurs_at)

        assert ledger.try_claim(*args, now=now) is True
        assert ledger.try_claim(*args, now=now) is False
        assert ledger.try_claim(*args, now=now + timedelta(hours=1)) is False

    def test_claims_are_per_window_and_user(self, ledger, fomc_event, now):
        """Should treat each (event, user, window) independently."""
        occurs = fomc_event.occurs_at
        assert ledger.try_claim("FOMC-2025-09-17", 1, 3, occurs, now=now) is True
        assert ledger.try_claim("FOMC-2025-09-17", 1, 1, occurs, now=now) is True
        assert ledger.try_claim("FOMC-2025-09-17", 2, 3, occurs, now=now) is True

    def test_concurrent_claims(self, tmp_path: Path, fomc_event, now):
        """Should let exactly one of many concurrent callers win."""
        db_path = str(tmp_path / "ledger.db")
        setup = Database(db_path)
        setup.initialize()
        setup.close()

        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def claim():
            db = Database(db_path)
            try:
                barrier.wait()
                won = DispatchLedger(db).try_claim(
                    fomc_event.event_id, 1, 3, fomc_event.occurs_at, now=now
                )
                with lock:
                    results.append(won)
            finally:
                db.close()

        threads = [threading.Thread(target=claim) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == [False] * 7 + [True]

    def test_record_delivery(self, ledger, fomc_event, now):
        """Should store the delivered channels on the claim."""
        key = (fomc_event.event_id, 1, 3)
        ledger.try_claim(*key, fomc_event.occurs_at, now=now)
        ledger.record_delivery(key, [Channel.EMAIL, Channel.CHAT])

        record = ledger.get(key)
        assert record.channels_sent == {Channel.EMAIL, Channel.CHAT}
        assert record.created_at == now
        assert record.event_occurs_at == fomc_event.occurs_at

    def test_list_for_user(self, ledger, fomc_event, now):
        """Should list a user's history newest first."""
        ledger.try_claim(fomc_event.event_id, 1, 3, fomc_event.occurs_at, now=now)
        ledger.try_claim(
            fomc_event.event_id, 1, 1, fomc_event.occurs_at, now=now + timedelta(days=2)
        )
        ledger.try_claim(fomc_event.event_id, 2, 3, fomc_event.occurs_at, now=now)

        history = ledger.list_for_user(1)
        assert [r.lead_window_days for r in history] == [1, 3]

    def test_prune_keeps_future_events(self, ledger, now):
        """Should only prune old records whose event already happened."""
        long_ago = now - timedelta(days=60)
        ledger.try_claim("PAST", 1, 3, now - timedelta(days=57), now=long_ago)
        ledger.try_claim("FUTURE", 1, 90, now + timedelta(days=30), now=long_ago)
        ledger.try_claim("RECENT", 1, 1, now - timedelta(days=1), now=now - timedelta(days=2))

        removed = ledger.prune(now, horizon_days=10)

        assert removed == 1
        assert ledger.get(("PAST", 1, 3)) is None
        assert ledger.get(("FUTURE", 1, 90)) is not None
        assert ledger.get(("RECENT", 1, 1)) is not None

    def test_retention_horizon(self, make_subscriber):
        """Should use the longest lead window plus the margin."""
        subscribers = [make_subscriber(windows=(1, 3)), make_subscriber(windows=(14,))]
        assert DispatchLedger.retention_horizon_days(subscribers, 7) == 21
        assert DispatchLedger.retention_horizon_days([], 7) == 7
