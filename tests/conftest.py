"""Shared test fixtures for SimpleReader tests."""

from collections.abc import AsyncGenerator
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from simplereader.database import Database, SubscriptionRegistry
from simplereader.poller import Refresher
from simplereader.stores import ItemStore, ValidatorStore


SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <description>Description of the first article</description>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <description>Description of the second article</description>
      <pubDate>Fri, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Atom Feed</title>
  <link href="https://example.com"/>
  <subtitle>A test Atom feed</subtitle>
  <id>urn:uuid:feed</id>
  <updated>2026-02-13T10:00:00Z</updated>
  <entry>
    <title>Atom Entry 1</title>
    <link rel="self" href="https://example.com/entry-1.atom"/>
    <link rel="alternate" href="https://example.com/entry-1"/>
    <id>urn:uuid:entry-1</id>
    <summary>Summary of entry 1</summary>
    <content>Full content of entry 1</content>
    <published>2026-02-12T08:00:00Z</published>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_RDF_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#"
         xmlns="http://purl.org/rss/1.0/"
         xmlns:dc="http://purl.org/dc/elements/1.1/">
  <channel rdf:about="https://example.com/">
    <title>Test RDF Feed</title>
    <link>https://example.com/</link>
    <description>A test RSS 1.0 feed</description>
  </channel>
  <item rdf:about="https://example.com/rdf-1">
    <title>RDF Item 1</title>
    <link>https://example.com/rdf-1</link>
    <description>Description of RDF item 1</description>
    <dc:date>2026-02-13T10:00:00Z</dc:date>
  </item>
</rdf:RDF>"""

# One item each: title "T", link https://x/1, content "C", 2024-01-01T00:00:00Z
CROSS_RSS2_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Cross</title>
    <link>https://x/</link>
    <description>Cross-format sample</description>
    <item>
      <title>T</title>
      <link>https://x/1</link>
      <guid isPermaLink="true">https://x/1</guid>
      <description>Short summary</description>
      <content:encoded>C</content:encoded>
      <pubDate>Mon, 01 Jan 2024 00:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

CROSS_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Cross</title>
  <link href="https://x/"/>
  <id>urn:cross</id>
  <updated>2024-01-01T00:00:00Z</updated>
  <entry>
    <title>T</title>
    <link href="https://x/1"/>
    <id>https://x/1</id>
    <content>C</content>
    <updated>2024-01-01T00:00:00Z</updated>
  </entry>
</feed>"""

CROSS_RDF_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#"
         xmlns="http://purl.org/rss/1.0/"
         xmlns:dc="http://purl.org/dc/elements/1.1/">
  <channel rdf:about="https://x/">
    <title>Cross</title>
    <link>https://x/</link>
    <description>Cross-format sample</description>
  </channel>
  <item rdf:about="https://x/1">
    <title>T</title>
    <link>https://x/1</link>
    <description>C</description>
    <dc:date>2024-01-01T00:00:00Z</dc:date>
  </item>
</rdf:RDF>"""

SAMPLE_MALFORMED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>
    <p>Unclosed paragraph
"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""


def rss_document(items: list[tuple[str, str]], title: str = "Generated Feed") -> str:
    """Build an RSS 2.0 document from (guid, pubDate) pairs."""
    entries = "".join(
        f"<item><title>Item {guid}</title><guid>{guid}</guid>"
        f"<link>https://example.com/{guid}</link><pubDate>{pub_date}</pubDate></item>"
        for guid, pub_date in items
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?><rss version="2.0"><channel>'
        f"<title>{title}</title><link>https://example.com</link>"
        f"<description>generated</description>{entries}</channel></rss>"
    )


class FakeFeedServer:
    """Serves canned feed documents through httpx.MockTransport."""

    def __init__(self):
        self.routes = {}
        self.requests: list[httpx.Request] = []

    def serve(
        self,
        url: str,
        body: str,
        etag: str | None = None,
        last_modified: str | None = None,
        status: int = 200,
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if etag and request.headers.get("If-None-Match") == etag:
                return httpx.Response(304)
            if last_modified and request.headers.get("If-Modified-Since") == last_modified:
                return httpx.Response(304)
            headers = {}
            if etag:
                headers["ETag"] = etag
            if last_modified:
                headers["Last-Modified"] = last_modified
            return httpx.Response(status, content=body.encode("utf-8"), headers=headers)

        self.routes[url] = handler

    def fail(self, url: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        self.routes[url] = handler

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404)
        return route(request)

    def requests_for(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))


@pytest.fixture
def db(tmp_path: Path):
    """A connected Database on a temporary file."""
    database = Database(str(tmp_path / "simplereader.db"))
    database.connect()
    yield database
    database.close()


@pytest.fixture
def registry(db) -> SubscriptionRegistry:
    return SubscriptionRegistry(db)


@pytest.fixture
def item_store(db) -> ItemStore:
    return ItemStore(db)


@pytest.fixture
def validator_store(db) -> ValidatorStore:
    return ValidatorStore(db)


@pytest.fixture
def feed_server() -> FakeFeedServer:
    return FakeFeedServer()


@pytest_asyncio.fixture
async def http_client(feed_server) -> AsyncGenerator[httpx.AsyncClient]:
    async with feed_server.client() as client:
        yield client


@pytest_asyncio.fixture
async def refresher(db, http_client) -> Refresher:
    return Refresher(db, client=http_client, fetch_timeout=5)


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_atom_xml():
    """Sample valid Atom XML."""
    return SAMPLE_ATOM_XML


@pytest.fixture
def sample_malformed_xml():
    """Sample XML that is cut off before its root closes."""
    return SAMPLE_MALFORMED_XML


@pytest.fixture
def sample_not_a_feed_xml():
    """Sample XML that is not a feed."""
    return SAMPLE_NOT_A_FEED_XML
