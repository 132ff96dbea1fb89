"""Per-feed item partitions and the validator map."""

import sqlite3
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from simplereader.database import Database, _dt_to_str, _str_to_dt
from simplereader.models import Item, ValidatorRecord, utcnow

CAP = 200


def parse_date_string(value: str | None) -> datetime | None:
    """Parse an ISO 8601 or RFC 822 date string to an aware UTC datetime.

    Returns None when the string is unreadable or its instant falls
    outside the representable range once shifted to UTC.
    """
    if not value:
        return None
    value = value.strip()
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError, OverflowError):
            return None
    return _as_utc(parsed)


def _as_utc(when: datetime) -> datetime | None:
    if when.tzinfo is None:
        return when.replace(tzinfo=timezone.utc)
    try:
        return when.astimezone(timezone.utc)
    except OverflowError:
        return None


def effective_timestamp(item: Item) -> datetime:
    """The instant used to rank an item for eviction.

    The source publication date wins; items without a readable one rank
    by when they were fetched.
    """
    when = None
    if item.published_at is not None:
        when = _as_utc(item.published_at)
    if when is None:
        when = parse_date_string(item.pub_date)
    if when is None:
        when = _as_utc(item.fetched_at or utcnow()) or utcnow()
    return when


def _sort_key(item: Item) -> str:
    # Fixed-width UTC form so SQLite can order the column as text
    return effective_timestamp(item).isoformat(timespec="microseconds")


class ItemStore:
    """Bounded, deduplicated article collections, one partition per feed.

    Every write touches exactly one partition.
    """

    def __init__(self, db: Database, cap: int = CAP):
        self.db = db
        self.cap = cap

    def put(self, feed_id: str, items: list[Item]) -> int:
        """Insert items not already in the partition, then trim it to the cap.

        An item whose id is already present is left exactly as first
        recorded. Returns the number of newly inserted items that survived
        the trim.
        """
        conn = self.db.conn
        with conn:
            new_ids = []
            for item in items:
                cursor = conn.execute(
                    """INSERT OR IGNORE INTO items (feed_id, item_id, title, link,
                       content, pub_date, published_at, read, fetched_at, sort_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        feed_id,
                        item.id,
                        item.title,
                        item.link,
                        item.content,
                        item.pub_date,
                        _dt_to_str(item.published_at),
                        int(item.read),
                        _dt_to_str(item.fetched_at),
                        _sort_key(item),
                    ),
                )
                if cursor.rowcount:
                    new_ids.append(item.id)
            evicted = self._evict(conn, feed_id)

        if not evicted:
            return len(new_ids)
        kept = self._existing_ids(feed_id, new_ids)
        return len(kept)

    def _evict(self, conn: sqlite3.Connection, feed_id: str) -> int:
        """Drop everything but the newest ``cap`` items. Returns rows removed."""
        cursor = conn.execute(
            """DELETE FROM items WHERE feed_id = ? AND item_id NOT IN (
                   SELECT item_id FROM items WHERE feed_id = ?
                   ORDER BY sort_at DESC, rowid DESC LIMIT ?
               )""",
            (feed_id, feed_id, self.cap),
        )
        return cursor.rowcount

    def _existing_ids(self, feed_id: str, item_ids: list[str]) -> set[str]:
        if not item_ids:
            return set()
        placeholders = ",".join("?" for _ in item_ids)
        rows = self.db.conn.execute(
            f"SELECT item_id FROM items WHERE feed_id = ? AND item_id IN ({placeholders})",
            [feed_id, *item_ids],
        ).fetchall()
        return {r["item_id"] for r in rows}

    def get_all(self, feed_id: str | None = None) -> list[Item]:
        """Items of one partition, or of every partition, newest first."""
        if feed_id is None:
            rows = self.db.conn.execute(
                "SELECT * FROM items ORDER BY sort_at DESC"
            ).fetchall()
        else:
            rows = self.db.conn.execute(
                "SELECT * FROM items WHERE feed_id = ? ORDER BY sort_at DESC",
                (feed_id,),
            ).fetchall()
        return [_row_to_item(r) for r in rows]

    def count(self, feed_id: str) -> int:
        row = self.db.conn.execute(
            "SELECT COUNT(*) AS cnt FROM items WHERE feed_id = ?", (feed_id,)
        ).fetchone()
        return row["cnt"] if row else 0

    def count_unread(self) -> int:
        """Unread items across all partitions."""
        row = self.db.conn.execute(
            "SELECT COUNT(*) AS cnt FROM items WHERE read = 0"
        ).fetchone()
        return row["cnt"] if row else 0

    def set_read(self, feed_id: str, item_id: str, read: bool = True) -> bool:
        """Set one item's read flag. Returns False if the item is unknown."""
        with self.db.conn:
            cursor = self.db.conn.execute(
                "UPDATE items SET read = ? WHERE feed_id = ? AND item_id = ?",
                (int(read), feed_id, item_id),
            )
        return cursor.rowcount > 0

    def mark_partition_read(self, feed_id: str) -> int:
        """Mark every item in one partition read. Returns count changed."""
        with self.db.conn:
            cursor = self.db.conn.execute(
                "UPDATE items SET read = 1 WHERE feed_id = ? AND read = 0",
                (feed_id,),
            )
        return cursor.rowcount

    def delete_partition(self, feed_id: str) -> int:
        """Remove a whole partition. Returns count of items removed."""
        with self.db.conn:
            cursor = self.db.conn.execute(
                "DELETE FROM items WHERE feed_id = ?", (feed_id,)
            )
        return cursor.rowcount


class ValidatorStore:
    """Conditional-fetch tokens for every feed, written as one map."""

    def __init__(self, db: Database):
        self.db = db

    def get_all(self) -> dict[str, ValidatorRecord]:
        """Mapping of feed id to its last-seen validators.

        Feeds never fetched with validators are absent.
        """
        rows = self.db.conn.execute("SELECT * FROM validators").fetchall()
        return {
            r["feed_id"]: ValidatorRecord(
                feed_id=r["feed_id"],
                etag=r["etag"],
                last_modified=r["last_modified"],
                site_link=r["site_link"],
            )
            for r in rows
        }

    def replace_all(self, mapping: dict[str, ValidatorRecord]) -> None:
        """Overwrite the whole persisted map in a single transaction."""
        with self.db.conn:
            self.db.conn.execute("DELETE FROM validators")
            self.db.conn.executemany(
                """INSERT INTO validators (feed_id, etag, last_modified, site_link)
                   VALUES (?, ?, ?, ?)""",
                [
                    (feed_id, v.etag, v.last_modified, v.site_link)
                    for feed_id, v in mapping.items()
                ],
            )


def _row_to_item(row: sqlite3.Row) -> Item:
    """Convert a database row to an Item dataclass."""
    return Item(
        id=row["item_id"],
        feed_id=row["feed_id"],
        title=row["title"],
        link=row["link"],
        content=row["content"],
        pub_date=row["pub_date"],
        published_at=_str_to_dt(row["published_at"]),
        read=bool(row["read"]),
        fetched_at=_str_to_dt(row["fetched_at"]) or utcnow(),
    )
