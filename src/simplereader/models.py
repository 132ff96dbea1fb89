"""Data models for SimpleReader."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Subscription:
    """Represents a subscribed RSS/Atom/RDF source."""

    url: str
    title: str
    added_at: datetime = field(default_factory=utcnow)
    starred: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class Item:
    """Represents a single normalized article from a feed.

    ``pub_date`` is the date string exactly as the source reported it;
    ``published_at`` is the same instant parsed to UTC when the parser
    could read it.
    """

    id: str
    title: str
    link: str | None = None
    content: str | None = None
    pub_date: str | None = None
    published_at: datetime | None = None
    feed_id: str | None = None
    read: bool = False
    fetched_at: datetime = field(default_factory=utcnow)


@dataclass
class ValidatorRecord:
    """Conditional-fetch tokens last seen for one feed."""

    feed_id: str | None = None
    etag: str | None = None
    last_modified: str | None = None
    site_link: str | None = None

    def is_empty(self) -> bool:
        return not (self.etag or self.last_modified or self.site_link)


@dataclass
class NormalizedFeed:
    """Result of fetching and normalizing one feed document."""

    title: str
    dialect: str
    description: str | None = None
    site_link: str | None = None
    etag: str | None = None
    last_modified: str | None = None
    items: list[Item] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def validator(self, feed_id: str) -> ValidatorRecord | None:
        """Validators carried by this response, or None if it had none."""
        record = ValidatorRecord(
            feed_id=feed_id,
            etag=self.etag,
            last_modified=self.last_modified,
            site_link=self.site_link,
        )
        return None if record.is_empty() else record


class NoChange:
    """Sentinel returned when the server reports the feed unchanged."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_CHANGE"

    def __bool__(self) -> bool:
        return False


NO_CHANGE = NoChange()


@dataclass
class Settings:
    """User preferences kept in the small, synchronized tier."""

    refresh_interval_minutes: int = 30
    theme: str = "system"
    font_size: str = "medium"
    show_unread_only: bool = False


@dataclass
class RefreshSummary:
    """Outcome of one refresh cycle across all subscriptions."""

    refreshed: int = 0
    unchanged: int = 0
    failed: int = 0
    new_items: int = 0
    unread_count: int = 0
    completed_at: datetime | None = None
    errors: dict[str, str] = field(default_factory=dict)
