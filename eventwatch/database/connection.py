"""
SQLite database connection and schema management.
"""

import sqlite3
from pathlib import Path
from typing import Optional


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be read or written."""

    pass


class Database:
    """SQLite database connection manager."""

    def __init__(self, db_path: str, busy_timeout: float = 30.0):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
            busy_timeout: Seconds to wait on a lock held by another connection.
        """
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._connection: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            if self.db_path != ":memory:":
                # Ensure parent directory exists
                path = Path(self.db_path)
                path.parent.mkdir(parents=True, exist_ok=True)

            self._connection = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                # Lets overlapping cycles in other processes read while one writes
                self._connection.execute("PRAGMA journal_mode = WAL")
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailable(f"Cannot open database {self.db_path}: {e}") from e

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        try:
            self._create_schema()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot initialize {self.db_path}: {e}") from e

    def _create_schema(self) -> None:
        cursor = self.connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS events (
                event_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                category TEXT NOT NULL,
                impact TEXT NOT NULL,
                occurs_at TEXT NOT NULL,
                source TEXT NOT NULL DEFAULT '',
                ignored INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT,
                push_endpoint TEXT,
                chat_id TEXT,
                email_enabled INTEGER NOT NULL DEFAULT 0,
                push_enabled INTEGER NOT NULL DEFAULT 0,
                chat_enabled INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS notification_policies (
                user_id INTEGER PRIMARY KEY,
                lead_windows TEXT NOT NULL,
                channels TEXT NOT NULL,
                impact_filter TEXT NOT NULL DEFAULT 'all',
                enabled INTEGER NOT NULL DEFAULT 1,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)

        # The primary key is the claim: one row per notification ever owned
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS dispatch_records (
                event_id TEXT NOT NULL,
                user_id INTEGER NOT NULL,
                lead_window_days INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                event_occurs_at TEXT NOT NULL,
                channels_sent TEXT NOT NULL DEFAULT '[]',
                PRIMARY KEY (event_id, user_id, lead_window_days)
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_events_occurs_at ON events(occurs_at)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_dispatch_records_user
            ON dispatch_records(user_id, created_at)
        """)

        self.connection.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None
