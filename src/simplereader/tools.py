"""Agent tool implementations for SimpleReader.

Tools run on the agent's worker thread. Every one of them hands its work
to the event loop that owns the Refresher and waits for the answer, so
the stores only ever see one writer.
"""

import asyncio
import inspect
import json

from langchain_core.tools import tool

from simplereader.database import NotFoundError, SubscriptionError
from simplereader.feed_parser import FeedError
from simplereader.opml import OpmlError, generate_opml, import_subscriptions, parse_opml
from simplereader.poller import Refresher

# Module-level service reference, set during startup
_refresher: Refresher | None = None
_loop: asyncio.AbstractEventLoop | None = None


def set_refresher(refresher: Refresher, loop: asyncio.AbstractEventLoop) -> None:
    """Set the Refresher and its owning loop used by all tools."""
    global _refresher, _loop
    _refresher = refresher
    _loop = loop


def _get_refresher() -> Refresher:
    """Get the Refresher instance, raising if not set."""
    if _refresher is None or _loop is None:
        raise RuntimeError("Refresher not initialized. Call set_refresher() first.")
    return _refresher


def _submit(fn, *args, **kwargs):
    """Run ``fn`` on the owning loop and block until it finishes."""
    _get_refresher()

    async def call():
        result = fn(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    return asyncio.run_coroutine_threadsafe(call(), _loop).result()


def _resolve_feed(identifier: str):
    """Return (subscription, error_json) for a feed id, URL or title."""
    refresher = _get_refresher()
    matches = _submit(refresher.registry.find, identifier)
    if not matches:
        return None, json.dumps({
            "success": False,
            "error": f"No feed found matching '{identifier}'",
        })
    if len(matches) > 1:
        exact = [s for s in matches if identifier in (s.id, s.url)]
        if len(exact) != 1:
            return None, json.dumps({
                "success": False,
                "error": "Multiple feeds match. Please be more specific.",
                "matches": [s.title for s in matches],
            })
        matches = exact
    return matches[0], None


@tool
def refresh_feeds() -> str:
    """Refresh all subscribed feeds now."""
    refresher = _get_refresher()
    try:
        summary = _submit(refresher.refresh_all)
    except Exception as e:
        return json.dumps({"status": "error", "error": str(e)})

    return json.dumps({
        "status": "success",
        "updated": summary.refreshed,
        "unchanged": summary.unchanged,
        "failed": summary.failed,
        "new_items": summary.new_items,
        "unread_count": summary.unread_count,
    })


@tool
def subscribe_to_feed(url: str) -> str:
    """Subscribe to an RSS, Atom or RSS 1.0 feed by URL.

    Args:
        url: The URL of the feed to subscribe to.
    """
    refresher = _get_refresher()
    try:
        subscription, item_count = _submit(refresher.add_subscription, url)
    except (SubscriptionError, FeedError) as e:
        return json.dumps({"success": False, "error": str(e)})

    return json.dumps({
        "success": True,
        "feed": {
            "id": subscription.id,
            "title": subscription.title,
            "url": subscription.url,
            "item_count": item_count,
        },
    })


@tool
def unsubscribe_from_feed(feed_identifier: str) -> str:
    """Unsubscribe from a feed by its id, title or URL.

    Args:
        feed_identifier: The id, title or URL of the feed to unsubscribe from.
    """
    refresher = _get_refresher()
    feed, error = _resolve_feed(feed_identifier)
    if error:
        return error

    try:
        _submit(refresher.delete_subscription, feed.id)
    except NotFoundError as e:
        return json.dumps({"success": False, "error": str(e)})

    return json.dumps({"success": True, "feed_title": feed.title})


@tool
def list_feeds() -> str:
    """List all subscribed feeds with their id, title, url and unread count."""
    refresher = _get_refresher()
    subscriptions = _submit(refresher.registry.list_all)
    items = _submit(refresher.items.get_all)

    unread: dict[str, int] = {}
    for item in items:
        if not item.read:
            unread[item.feed_id] = unread.get(item.feed_id, 0) + 1

    return json.dumps({
        "feeds": [
            {
                "id": sub.id,
                "title": sub.title,
                "url": sub.url,
                "starred": sub.starred,
                "added_at": sub.added_at.isoformat(),
                "unread": unread.get(sub.id, 0),
            }
            for sub in subscriptions
        ],
        "total": len(subscriptions),
    })


@tool
def get_items(
    feed_identifier: str = "",
    unread_only: bool = False,
    limit: int = 20,
) -> str:
    """Get cached feed items, newest first.

    Args:
        feed_identifier: Optional filter by feed id, title or URL.
        unread_only: If true, only return unread items.
        limit: Maximum number of items to return (default 20).
    """
    refresher = _get_refresher()

    feed_id = None
    if feed_identifier:
        feed, error = _resolve_feed(feed_identifier)
        if error:
            return error
        feed_id = feed.id

    items = _submit(refresher.items.get_all, feed_id)
    if unread_only:
        items = [item for item in items if not item.read]

    return json.dumps({
        "items": [
            {
                "id": item.id,
                "feed_id": item.feed_id,
                "title": item.title,
                "link": item.link,
                "content": (item.content or "")[:200],
                "pub_date": item.pub_date,
                "read": item.read,
            }
            for item in items[:limit]
        ],
        "total": len(items),
        "has_more": len(items) > limit,
    })


@tool
def mark_as_read(feed_identifier: str, item_ids: list[str] | None = None) -> str:
    """Mark items in a feed as read, or the whole feed if no ids are given.

    Args:
        feed_identifier: The id, title or URL of the feed the items belong to.
        item_ids: Optional list of item ids within that feed.
    """
    return _set_read(feed_identifier, item_ids, read=True)


@tool
def mark_as_unread(feed_identifier: str, item_ids: list[str]) -> str:
    """Mark one or more items in a feed as unread.

    Args:
        feed_identifier: The id, title or URL of the feed the items belong to.
        item_ids: List of item ids within that feed.
    """
    return _set_read(feed_identifier, item_ids, read=False)


def _set_read(feed_identifier: str, item_ids: list[str] | None, read: bool) -> str:
    refresher = _get_refresher()
    feed, error = _resolve_feed(feed_identifier)
    if error:
        return error

    if not item_ids:
        if not read:
            return json.dumps({"success": False, "error": "Provide item_ids"})
        marked = _submit(refresher.mark_feed_read, feed.id)
    else:
        marked = sum(
            1 for item_id in item_ids
            if _submit(refresher.set_read, feed.id, item_id, read)
        )

    return json.dumps({
        "success": True,
        "items_marked": marked,
        "unread_count": refresher.unread_count,
    })


@tool
def get_status() -> str:
    """Report the unread count, badge label and last refresh time."""
    refresher = _get_refresher()
    return json.dumps(_submit(refresher.status))


@tool
def import_opml(document: str) -> str:
    """Subscribe to every feed listed in an OPML document.

    Args:
        document: The OPML XML text.
    """
    refresher = _get_refresher()
    try:
        entries = parse_opml(document)
    except OpmlError as e:
        return json.dumps({"success": False, "error": str(e)})

    summary = _submit(import_subscriptions, refresher, entries)
    return json.dumps({
        "success": True,
        "added": summary.added,
        "duplicates": summary.duplicates,
        "failed": summary.failed,
    })


@tool
def export_opml() -> str:
    """Export all subscriptions as an OPML document."""
    refresher = _get_refresher()
    return generate_opml(_submit(refresher.registry.list_all))
