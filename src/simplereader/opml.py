"""OPML import and export for subscription lists."""

import asyncio
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from simplereader.database import DuplicateSubscriptionError
from simplereader.feed_parser import FeedError
from simplereader.models import Subscription

logger = logging.getLogger(__name__)

EXPORT_TITLE = "SimpleReader Export"
EXPORT_FOLDER = "SimpleReader Feeds"
DEFAULT_IMPORT_CONCURRENCY = 1


class OpmlError(Exception):
    """Raised when a document is not usable OPML."""


@dataclass
class OpmlEntry:
    title: str
    url: str


@dataclass
class ImportSummary:
    added: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def parse_opml(document: str | bytes) -> list[OpmlEntry]:
    """Flatten every feed outline in an OPML document, in document order.

    Folders nest to any depth; only outlines carrying ``xmlUrl`` are feeds.
    """
    try:
        root = ET.fromstring(document)
    except ET.ParseError as e:
        raise OpmlError(f"Invalid OPML: {e}") from e

    body = root.find("body") if root.tag == "opml" else None
    if body is None:
        raise OpmlError("Invalid OPML: missing <body>")

    entries = []
    for outline in body.iter("outline"):
        url = outline.get("xmlUrl")
        if url:
            title = outline.get("title") or outline.get("text") or "Untitled"
            entries.append(OpmlEntry(title=title, url=url))
    return entries


def generate_opml(subscriptions: list[Subscription]) -> str:
    """Render subscriptions as an OPML 2.0 document inside one folder."""
    opml = ET.Element("opml", version="2.0")
    head = ET.SubElement(opml, "head")
    ET.SubElement(head, "title").text = EXPORT_TITLE
    body = ET.SubElement(opml, "body")
    folder = ET.SubElement(body, "outline", text=EXPORT_FOLDER, title=EXPORT_FOLDER)
    for sub in subscriptions:
        ET.SubElement(
            folder,
            "outline",
            text=sub.title,
            title=sub.title,
            type="rss",
            xmlUrl=sub.url,
            htmlUrl=sub.url,
        )
    ET.indent(opml)
    return ET.tostring(opml, encoding="unicode", xml_declaration=True)


async def import_subscriptions(
    refresher,
    entries: list[OpmlEntry],
    concurrency: int = DEFAULT_IMPORT_CONCURRENCY,
) -> ImportSummary:
    """Subscribe to each entry, at most ``concurrency`` adds in flight."""
    semaphore = asyncio.Semaphore(max(concurrency, 1))
    summary = ImportSummary()

    async def add_one(entry: OpmlEntry) -> None:
        async with semaphore:
            try:
                await refresher.add_subscription(entry.url)
            except DuplicateSubscriptionError:
                summary.duplicates.append(entry.url)
            except FeedError as e:
                logger.warning("OPML import of '%s' failed: %s", entry.url, e)
                summary.failed[entry.url] = str(e)
            else:
                summary.added.append(entry.url)

    await asyncio.gather(*(add_one(entry) for entry in entries))
    logger.info(
        "OPML import: %d added, %d duplicates, %d failed",
        len(summary.added),
        len(summary.duplicates),
        len(summary.failed),
    )
    return summary
