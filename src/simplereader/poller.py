"""Refresh orchestration and the background polling loop for SimpleReader."""

import asyncio
import logging
import os

import httpx

from simplereader.database import (
    Database,
    DuplicateSubscriptionError,
    NotFoundError,
    SubscriptionRegistry,
)
from simplereader.feed_parser import (
    DEFAULT_TIMEOUT,
    FeedError,
    HttpStatusError,
    NetworkError,
    fetch_feed,
)
from simplereader.models import (
    NO_CHANGE,
    Item,
    RefreshSummary,
    Subscription,
    ValidatorRecord,
    utcnow,
)
from simplereader.stores import ItemStore, ValidatorStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_MINUTES = 30
BADGE_LIMIT = 999


def badge_text(unread_count: int) -> str:
    """Label for the unread badge: empty at zero, capped above 999."""
    if unread_count <= 0:
        return ""
    if unread_count > BADGE_LIMIT:
        return f"{BADGE_LIMIT}+"
    return str(unread_count)


class Refresher:
    """Owns the registry and stores and runs every write against them.

    All methods must be called from the event loop that owns this object.
    Callers on other threads submit work to that loop instead of touching
    the stores directly.
    """

    def __init__(
        self,
        db: Database,
        client: httpx.AsyncClient | None = None,
        fetch_timeout: float = DEFAULT_TIMEOUT,
    ):
        self.db = db
        self.registry = SubscriptionRegistry(db)
        self.items = ItemStore(db)
        self.validators = ValidatorStore(db)
        self.client = client
        self.fetch_timeout = fetch_timeout
        self.unread_count = self.items.count_unread()
        self._cycle: asyncio.Task | None = None

    async def _fetch(self, url: str, validator: ValidatorRecord | None):
        try:
            return await asyncio.wait_for(
                fetch_feed(
                    url, validator, client=self.client, timeout=self.fetch_timeout
                ),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError:
            raise NetworkError(f"Timed out fetching {url}")

    # --- Refresh cycle ---

    async def refresh_all(self) -> RefreshSummary:
        """Refresh every subscription once, concurrently.

        A call made while a cycle is already running waits for and returns
        that cycle's result rather than starting another.
        """
        if self._cycle is None or self._cycle.done():
            self._cycle = asyncio.create_task(self._run_cycle())
        else:
            logger.info("Refresh already in progress, joining it")
        return await asyncio.shield(self._cycle)

    async def _run_cycle(self) -> RefreshSummary:
        subscriptions = self.registry.list_all()
        summary = RefreshSummary()
        if not subscriptions:
            logger.info("No subscriptions to refresh.")

        known = self.validators.get_all()
        staged: dict[str, ValidatorRecord] = {}

        await asyncio.gather(
            *(
                self._refresh_one(sub, known.get(sub.id), staged, summary)
                for sub in subscriptions
            )
        )

        # Re-read so subscriptions added or deleted during the cycle keep
        # their own validator writes; then a single replace.
        merged = self.validators.get_all()
        merged.update(staged)
        live = {sub.id for sub in self.registry.list_all()}
        self.validators.replace_all(
            {feed_id: v for feed_id, v in merged.items() if feed_id in live}
        )

        self.unread_count = self.items.count_unread()
        summary.unread_count = self.unread_count
        summary.completed_at = utcnow()
        self.db.set_last_refreshed(summary.completed_at.isoformat())

        logger.info(
            "Refresh cycle complete: %d updated, %d unchanged, %d failed, %d new items",
            summary.refreshed,
            summary.unchanged,
            summary.failed,
            summary.new_items,
        )
        return summary

    async def _refresh_one(
        self,
        sub: Subscription,
        validator: ValidatorRecord | None,
        staged: dict[str, ValidatorRecord],
        summary: RefreshSummary,
    ) -> None:
        """Fetch one source and record its items. Never raises."""
        try:
            result = await self._fetch(sub.url, validator)
            if result is NO_CHANGE:
                logger.debug("Feed '%s' not modified", sub.title)
                summary.unchanged += 1
                return

            if self.registry.get(sub.id) is None:
                logger.info("Feed '%s' was removed during refresh, dropping result", sub.title)
                return

            inserted = self.items.put(sub.id, _tag_items(result.items, sub.id))
        except FeedError as e:
            logger.warning("Feed '%s' error: %s", sub.title, e)
            summary.failed += 1
            summary.errors[sub.id] = str(e)
            return
        except Exception as e:
            logger.exception("Feed '%s' unexpected error", sub.title)
            summary.failed += 1
            summary.errors[sub.id] = str(e)
            return

        new_validator = result.validator(sub.id)
        if new_validator is not None:
            staged[sub.id] = new_validator

        summary.refreshed += 1
        summary.new_items += inserted
        if inserted:
            logger.info("Feed '%s': %d new items", sub.title, inserted)

    # --- Subscriptions ---

    async def add_subscription(self, url: str) -> tuple[Subscription, int]:
        """Validate a feed by fetching it, then subscribe to it.

        Returns:
            Tuple of (saved Subscription, count of imported items).

        Raises:
            DuplicateSubscriptionError: If already subscribed to this URL.
            FeedError: If the feed cannot be fetched or normalized. No
                subscription is created.
        """
        if self.registry.get_by_url(url) is not None:
            raise DuplicateSubscriptionError(url)

        logger.info("Adding new feed: %s", url)
        result = await self._fetch(url, None)
        if result is NO_CHANGE:
            raise HttpStatusError(304, "Server answered 304 to an unconditional request")

        subscription = self.registry.add(Subscription(url=url, title=result.title))
        try:
            inserted = self.items.put(subscription.id, _tag_items(result.items, subscription.id))
        except Exception:
            # Seeding failed: the subscription must not outlive it
            self.registry.delete(subscription.id)
            raise

        new_validator = result.validator(subscription.id)
        if new_validator is not None:
            current = self.validators.get_all()
            current[subscription.id] = new_validator
            self.validators.replace_all(current)

        self.unread_count = self.items.count_unread()
        return subscription, inserted

    async def delete_subscription(self, feed_id: str) -> Subscription:
        """Unsubscribe and drop the feed's items and validators.

        The registry entry goes last so an interruption leaves only
        unreferenced data behind.

        Raises:
            NotFoundError: If no subscription has this id.
        """
        subscription = self.registry.get(feed_id)
        if subscription is None:
            raise NotFoundError(feed_id)

        self.items.delete_partition(feed_id)
        current = self.validators.get_all()
        if current.pop(feed_id, None) is not None:
            self.validators.replace_all(current)
        self.unread_count = self.items.count_unread()
        self.registry.delete(feed_id)
        logger.info("Deleted feed '%s'", subscription.title)
        return subscription

    # --- Read state ---

    async def set_read(self, feed_id: str, item_id: str, read: bool = True) -> bool:
        changed = self.items.set_read(feed_id, item_id, read)
        self.unread_count = self.items.count_unread()
        return changed

    async def mark_feed_read(self, feed_id: str) -> int:
        if self.registry.get(feed_id) is None:
            raise NotFoundError(feed_id)
        marked = self.items.mark_partition_read(feed_id)
        self.unread_count = self.items.count_unread()
        return marked

    def status(self) -> dict:
        return {
            "unread_count": self.unread_count,
            "badge": badge_text(self.unread_count),
            "last_refreshed": self.db.get_last_refreshed(),
        }


def _tag_items(items: list[Item], feed_id: str) -> list[Item]:
    fetched_at = utcnow()
    for item in items:
        item.feed_id = feed_id
        item.fetched_at = fetched_at
    return items


def default_refresh_interval() -> int:
    return int(
        os.environ.get("RSS_REFRESH_INTERVAL_MINUTES", DEFAULT_REFRESH_INTERVAL_MINUTES)
    )


async def start_polling(refresher: Refresher) -> None:
    """Run the refresh loop indefinitely."""
    logger.info(
        "Poller started (interval: %d min)",
        refresher.db.get_settings().refresh_interval_minutes,
    )

    while True:
        try:
            await refresher.refresh_all()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Refresh cycle failed: %s", e)

        # Re-read each time so a changed setting applies to the next sleep
        interval = refresher.db.get_settings().refresh_interval_minutes
        await asyncio.sleep(max(interval, 1) * 60)
