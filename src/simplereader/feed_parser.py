"""RSS 2.0 / Atom / RSS 1.0 fetching and normalization using httpx and feedparser."""

import asyncio
import hashlib
import logging
from datetime import datetime, timezone
from time import struct_time
from urllib.parse import urlparse

import feedparser
import httpx

from simplereader.models import NO_CHANGE, Item, NoChange, NormalizedFeed, ValidatorRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
USER_AGENT = "SimpleReader/1.0 (+https://github.com/simplereader)"

HTTP_NOT_MODIFIED = 304

RSS2 = "rss2"
ATOM = "atom"
RSS1 = "rss1"

# feedparser version strings for RSS 1.0 / RDF documents. Every other
# "rss*" version comes from an <rss> root element.
_RDF_VERSIONS = ("rss090", "rss10")

# Ordered field-resolution tables. feedparser already maps each dialect's
# native element onto a common key (guid / atom:id / rdf:about -> "id",
# pubDate -> "published", atom:updated and dc:date -> "updated"), so each
# entry lists the common keys to try, first non-empty value wins.
ID_FIELDS = {
    RSS2: ("id", "link", "title"),
    ATOM: ("id", "link", "title"),
    RSS1: ("id", "link", "title"),
}

CONTENT_FIELDS = {
    RSS2: ("content", "summary"),
    ATOM: ("content", "summary"),
    RSS1: ("content", "summary"),
}

DATE_FIELDS = {
    RSS2: ("published", "updated"),
    ATOM: ("updated", "published"),
    RSS1: ("updated", "published"),
}


class FeedError(Exception):
    """Base class for errors raised while fetching or normalizing a feed."""


class NetworkError(FeedError):
    """Raised on transport failures, timeouts and unusable URLs."""


class HttpStatusError(FeedError):
    """Raised when the server answers with a non-2xx, non-304 status."""

    def __init__(self, status: int, message: str | None = None):
        self.status = status
        super().__init__(message or f"Could not reach URL: HTTP {status}")


class ParseError(FeedError):
    """Raised when a recognized feed document has no usable feed container."""


class UnknownFormatError(FeedError):
    """Raised when a document is not RSS 2.0, Atom or RSS 1.0."""


async def fetch_feed(
    url: str,
    validator: ValidatorRecord | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> NormalizedFeed | NoChange:
    """Conditionally fetch a feed and normalize it.

    Args:
        url: The feed URL to fetch.
        validator: Tokens from a previous fetch; sent as request
            preconditions when present. None or empty means an
            unconditional request.
        client: Shared HTTP client. A short-lived one is created if omitted.
        timeout: Request timeout in seconds.

    Returns:
        NormalizedFeed with feed metadata, response validators and items,
        or the NO_CHANGE sentinel if the server answered 304.

    Raises:
        NetworkError, HttpStatusError, ParseError, UnknownFormatError.
    """
    _validate_url(url)

    headers = {"User-Agent": USER_AGENT}
    if validator is not None:
        if validator.etag:
            headers["If-None-Match"] = validator.etag
        if validator.last_modified:
            headers["If-Modified-Since"] = validator.last_modified

    if client is None:
        async with httpx.AsyncClient() as owned:
            response = await _get(owned, url, headers, timeout)
    else:
        response = await _get(client, url, headers, timeout)

    if response.status_code == HTTP_NOT_MODIFIED:
        logger.debug("Not modified: %s", url)
        return NO_CHANGE

    if response.status_code in (401, 403):
        raise HttpStatusError(
            response.status_code,
            "Feed requires authentication. Ensure the URL is publicly accessible.",
        )
    if not response.is_success:
        raise HttpStatusError(response.status_code)

    feed = await asyncio.to_thread(normalize, response.content)
    feed.etag = response.headers.get("ETag")
    feed.last_modified = response.headers.get("Last-Modified")
    return feed


async def _get(
    client: httpx.AsyncClient, url: str, headers: dict, timeout: float
) -> httpx.Response:
    try:
        return await client.get(
            url, headers=headers, timeout=timeout, follow_redirects=True
        )
    except httpx.TimeoutException as e:
        raise NetworkError(f"Timed out fetching {url}") from e
    except httpx.HTTPError as e:
        raise NetworkError(f"Could not reach URL: {e}") from e


def normalize(document: bytes | str) -> NormalizedFeed:
    """Parse one feed document into a NormalizedFeed.

    The dialect is chosen by root structure in priority order RSS 2.0,
    Atom, RSS 1.0/RDF. Items keep document order and are all unread.
    """
    if isinstance(document, str):
        document = document.encode("utf-8")

    # Item content is stored exactly as the source wrote it
    parsed = feedparser.parse(
        document, sanitize_html=False, resolve_relative_uris=False
    )
    dialect = detect_dialect(parsed)

    if not parsed.feed and not parsed.entries:
        raise ParseError("Feed document has no channel or entries")

    warnings: list[str] = []
    if parsed.bozo:
        warnings.append(f"Feed has formatting issues: {parsed.bozo_exception}")

    items = _extract_items(parsed.entries, dialect, warnings)
    for warning in warnings:
        logger.debug(warning)

    return NormalizedFeed(
        title=parsed.feed.get("title") or "Untitled Feed",
        dialect=dialect,
        description=parsed.feed.get("description") or parsed.feed.get("subtitle"),
        site_link=parsed.feed.get("link"),
        items=items,
        warnings=warnings,
    )


def detect_dialect(parsed) -> str:
    """Map a feedparser result onto RSS2, ATOM or RSS1."""
    version = parsed.get("version") or ""

    if version.startswith("rss") and version not in _RDF_VERSIONS:
        return RSS2
    if version.startswith("atom"):
        return ATOM
    if version in _RDF_VERSIONS:
        return RSS1

    # Any other root, well-formed or not, is not a feed
    raise UnknownFormatError("URL does not point to a valid RSS or Atom feed")


def _validate_url(url: str) -> None:
    """Validate that the URL has a fetchable format."""
    try:
        result = urlparse(url)
    except ValueError:
        raise NetworkError("Invalid URL format")
    if not result.scheme or not result.netloc:
        raise NetworkError("Invalid URL format")
    if result.scheme not in ("http", "https"):
        raise NetworkError("Invalid URL format: only http and https are supported")


def _extract_items(entries: list, dialect: str, warnings: list[str]) -> list[Item]:
    """Build normalized Items from feedparser entries."""
    items = []
    for entry in entries:
        try:
            link = _resolve_link(entry, dialect)
            content = _first_value(entry, CONTENT_FIELDS[dialect])
            pub_date, published_at = _resolve_date(entry, dialect)
            items.append(
                Item(
                    id=_resolve_id(entry, dialect, link, content, pub_date),
                    title=entry.get("title") or "Untitled",
                    link=link,
                    content=content,
                    pub_date=pub_date,
                    published_at=published_at,
                    read=False,
                )
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            warnings.append(f"Skipping malformed entry: {e}")
    return items


def _first_value(entry, fields: tuple[str, ...]) -> str | None:
    for name in fields:
        value = entry.get(name)
        if name == "content" and value:
            # feedparser keeps content as a list of {type, value} parts
            value = value[0].get("value")
        if value:
            return value
    return None


def _resolve_id(
    entry, dialect: str, link: str | None, content: str | None, pub_date: str | None
) -> str:
    for name in ID_FIELDS[dialect]:
        value = link if name == "link" else entry.get(name)
        if value:
            return value
    # Nothing identifying: hash what we have so repeat deliveries still dedup.
    digest = hashlib.sha1(f"{content or ''}\x00{pub_date or ''}".encode()).hexdigest()
    return f"urn:simplereader:{digest}"


def _resolve_link(entry, dialect: str) -> str | None:
    if dialect == ATOM:
        # feedparser defaults a missing rel to "alternate"
        for link in entry.get("links") or []:
            if link.get("rel", "alternate") == "alternate" and link.get("href"):
                return link["href"]
    return entry.get("link")


def _resolve_date(entry, dialect: str) -> tuple[str | None, datetime | None]:
    """Return the source date string and its parsed UTC instant."""
    for name in DATE_FIELDS[dialect]:
        raw = _own_value(entry, name)
        if raw:
            return raw, _struct_to_datetime(_own_value(entry, f"{name}_parsed"))
    return None, None


def _own_value(entry, name: str):
    # Membership is checked on the entry's own keys; plain lookup of
    # "updated" silently answers with "published" instead.
    return entry[name] if name in entry else None


def _struct_to_datetime(time_struct) -> datetime | None:
    """Convert a feedparser UTC struct_time to an aware datetime."""
    if not isinstance(time_struct, struct_time):
        return None
    try:
        return datetime(*time_struct[:6], tzinfo=timezone.utc)
    except (ValueError, OverflowError):
        return None
