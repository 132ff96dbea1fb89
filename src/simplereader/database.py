"""SQLite database operations for SimpleReader."""

import json
import sqlite3
from dataclasses import asdict, fields
from datetime import datetime

from simplereader.models import Settings, Subscription, utcnow

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    url TEXT UNIQUE NOT NULL,
    title TEXT NOT NULL,
    added_at TEXT NOT NULL,
    starred INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS items (
    feed_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    title TEXT NOT NULL,
    link TEXT,
    content TEXT,
    pub_date TEXT,
    published_at TEXT,
    read INTEGER DEFAULT 0,
    fetched_at TEXT NOT NULL,
    sort_at TEXT NOT NULL,
    PRIMARY KEY (feed_id, item_id)
);

CREATE INDEX IF NOT EXISTS idx_items_feed_sort ON items(feed_id, sort_at);
CREATE INDEX IF NOT EXISTS idx_items_read ON items(read);

CREATE TABLE IF NOT EXISTS validators (
    feed_id TEXT PRIMARY KEY,
    etag TEXT,
    last_modified TEXT,
    site_link TEXT
);
"""

LAST_REFRESHED_KEY = "last_refreshed"


class SubscriptionError(Exception):
    """Base class for subscription registry errors."""


class DuplicateSubscriptionError(SubscriptionError):
    """Raised when subscribing to a URL that is already registered."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Already subscribed to this feed: {url}")


class NotFoundError(SubscriptionError):
    """Raised when a feed id does not name a registered subscription."""

    def __init__(self, feed_id: str):
        self.feed_id = feed_id
        super().__init__(f"No feed found with id '{feed_id}'")


class Database:
    """SQLite database manager shared by the registry and the stores."""

    def __init__(self, db_path: str, default_settings: Settings | None = None):
        self.db_path = db_path
        self.default_settings = default_settings or Settings()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and initialize schema."""
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    # --- Settings ---

    def get_settings(self) -> Settings:
        """Return persisted settings, filling gaps from the defaults."""
        rows = self.conn.execute("SELECT key, value FROM settings").fetchall()
        stored = {r["key"]: json.loads(r["value"]) for r in rows}
        known = {f.name for f in fields(Settings)}
        values = asdict(self.default_settings)
        values.update({k: v for k, v in stored.items() if k in known})
        return Settings(**values)

    def save_settings(self, settings: Settings) -> None:
        with self.conn:
            self.conn.executemany(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                [(k, json.dumps(v)) for k, v in asdict(settings).items()],
            )

    # --- Local state ---

    def get_last_refreshed(self) -> str | None:
        """ISO-8601 time the last refresh cycle completed, if any."""
        row = self.conn.execute(
            "SELECT value FROM state WHERE key = ?", (LAST_REFRESHED_KEY,)
        ).fetchone()
        return row["value"] if row else None

    def set_last_refreshed(self, timestamp: str) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO state (key, value) VALUES (?, ?)",
                (LAST_REFRESHED_KEY, timestamp),
            )


class SubscriptionRegistry:
    """The ordered list of subscribed feeds."""

    def __init__(self, db: Database):
        self.db = db

    def list_all(self) -> list[Subscription]:
        """Return all subscriptions in the order they were added."""
        rows = self.db.conn.execute(
            "SELECT * FROM subscriptions ORDER BY rowid"
        ).fetchall()
        return [_row_to_subscription(r) for r in rows]

    def get(self, feed_id: str) -> Subscription | None:
        row = self.db.conn.execute(
            "SELECT * FROM subscriptions WHERE id = ?", (feed_id,)
        ).fetchone()
        return _row_to_subscription(row) if row else None

    def get_by_url(self, url: str) -> Subscription | None:
        row = self.db.conn.execute(
            "SELECT * FROM subscriptions WHERE url = ?", (url,)
        ).fetchone()
        return _row_to_subscription(row) if row else None

    def find(self, identifier: str) -> list[Subscription]:
        """Find subscriptions by id, exact URL, or title substring."""
        rows = self.db.conn.execute(
            """SELECT * FROM subscriptions
               WHERE id = ? OR url = ? OR title LIKE ? COLLATE NOCASE
               ORDER BY rowid""",
            (identifier, identifier, f"%{identifier}%"),
        ).fetchall()
        return [_row_to_subscription(r) for r in rows]

    def add(self, subscription: Subscription) -> Subscription:
        """Insert a subscription.

        Raises:
            DuplicateSubscriptionError: If the URL is already registered.
                Nothing is written in that case.
        """
        try:
            with self.db.conn:
                self.db.conn.execute(
                    """INSERT INTO subscriptions (id, url, title, added_at, starred)
                       VALUES (?, ?, ?, ?, ?)""",
                    (
                        subscription.id,
                        subscription.url,
                        subscription.title,
                        _dt_to_str(subscription.added_at),
                        int(subscription.starred),
                    ),
                )
        except sqlite3.IntegrityError:
            raise DuplicateSubscriptionError(subscription.url)
        return subscription

    def delete(self, feed_id: str) -> bool:
        """Delete a subscription record. Returns True if one was removed."""
        with self.db.conn:
            cursor = self.db.conn.execute(
                "DELETE FROM subscriptions WHERE id = ?", (feed_id,)
            )
        return cursor.rowcount > 0

    def set_starred(self, feed_id: str, starred: bool) -> None:
        with self.db.conn:
            cursor = self.db.conn.execute(
                "UPDATE subscriptions SET starred = ? WHERE id = ?",
                (int(starred), feed_id),
            )
        if cursor.rowcount == 0:
            raise NotFoundError(feed_id)


# --- Helper functions ---


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for storage."""
    return dt.isoformat() if dt else None


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    """Convert a database row to a Subscription dataclass."""
    return Subscription(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        added_at=_str_to_dt(row["added_at"]) or utcnow(),
        starred=bool(row["starred"]),
    )
