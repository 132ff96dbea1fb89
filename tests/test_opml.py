"""Tests for OPML import and export."""

import asyncio

import pytest

from simplereader.models import Subscription
from simplereader.opml import (
    OpmlEntry,
    OpmlError,
    generate_opml,
    import_subscriptions,
    parse_opml,
)
from tests.conftest import SAMPLE_ATOM_XML, SAMPLE_RSS_XML

NESTED_OPML = """<?xml version="1.0" encoding="UTF-8"?>
<opml version="2.0">
  <head><title>My feeds</title></head>
  <body>
    <outline text="Top level" type="rss" xmlUrl="https://top.example/feed"/>
    <outline text="Tech">
      <outline title="Titled" text="ignored" type="rss" xmlUrl="https://tech.example/feed"/>
      <outline text="Deeper">
        <outline text="Deep feed" type="rss" xmlUrl="https://deep.example/feed"/>
      </outline>
    </outline>
    <outline type="rss" xmlUrl="https://untitled.example/feed"/>
  </body>
</opml>"""


class TestParseOpml:
    def test_flattens_nested_folders_in_order(self):
        assert parse_opml(NESTED_OPML) == [
            OpmlEntry(title="Top level", url="https://top.example/feed"),
            OpmlEntry(title="Titled", url="https://tech.example/feed"),
            OpmlEntry(title="Deep feed", url="https://deep.example/feed"),
            OpmlEntry(title="Untitled", url="https://untitled.example/feed"),
        ]

    def test_rejects_non_opml(self):
        with pytest.raises(OpmlError):
            parse_opml("<rss><channel/></rss>")

    def test_rejects_malformed_xml(self):
        with pytest.raises(OpmlError):
            parse_opml("<opml><body>")


class TestGenerateOpml:
    def test_export_parses_back_to_the_subscriptions(self):
        subs = [
            Subscription(url="https://a.example/feed", title="A"),
            Subscription(url="https://b.example/feed", title="B & Co"),
        ]

        document = generate_opml(subs)

        assert document.startswith("<?xml")
        assert parse_opml(document) == [
            OpmlEntry(title="A", url="https://a.example/feed"),
            OpmlEntry(title="B & Co", url="https://b.example/feed"),
        ]


class TestImportSubscriptions:
    @pytest.mark.asyncio
    async def test_adds_each_feed_and_reports_failures(self, refresher, feed_server):
        feed_server.serve("https://a.example/feed", SAMPLE_RSS_XML)
        feed_server.serve("https://b.example/feed", SAMPLE_ATOM_XML)
        feed_server.fail("https://down.example/feed")
        entries = [
            OpmlEntry(title="A", url="https://a.example/feed"),
            OpmlEntry(title="Down", url="https://down.example/feed"),
            OpmlEntry(title="B", url="https://b.example/feed"),
            OpmlEntry(title="A again", url="https://a.example/feed"),
        ]

        summary = await import_subscriptions(refresher, entries)

        assert summary.added == ["https://a.example/feed", "https://b.example/feed"]
        assert summary.duplicates == ["https://a.example/feed"]
        assert list(summary.failed) == ["https://down.example/feed"]
        assert [s.url for s in refresher.registry.list_all()] == [
            "https://a.example/feed",
            "https://b.example/feed",
        ]

    @pytest.mark.asyncio
    async def test_concurrency_limit(self):
        in_flight = 0
        peak = 0

        class CountingRefresher:
            async def add_subscription(self, url):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1

        entries = [OpmlEntry(title=str(n), url=f"https://{n}.example/feed") for n in range(5)]

        summary = await import_subscriptions(CountingRefresher(), entries, concurrency=2)

        assert peak == 2
        assert len(summary.added) == 5
