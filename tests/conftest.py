from typing import Dict, List, Optional, Union
from xml.sax.saxutils import escape

import pytest

from errors import FetchError, FetchErrorKind
from models import Content, FetchResult, Subscription


LOREM = (
    "The research team spent three years collecting measurements from the coastal stations, "
    "and the resulting dataset now covers every season since the project started. "
)


def article_html(title: str, paragraphs: int = 6, image: bool = True) -> str:
    """A plain news-style page that readability can score."""
    body = "".join(f"<p>{LOREM * 2}Paragraph {i} adds more detail about the findings.</p>" for i in range(paragraphs))
    img = (
        '<p><img src="https://example.com/img/chart.png" alt="Chart" title="Quarterly chart"></p>'
        if image else ""
    )
    return (
        f"<html><head><title>{title} | Example News</title>"
        '<meta name="author" content="Jane Doe">'
        '<meta name="description" content="A short description of the story.">'
        '<meta property="article:published_time" content="2024-03-05T10:00:00Z">'
        "</head><body>"
        '<nav><a href="/">Home</a> <a href="/about">About</a></nav>'
        f"<article><h1>{title}</h1>{body}{img}</article>"
        "<footer>Copyright Example News</footer>"
        "</body></html>"
    )


def rss_feed(items: List[Dict[str, str]]) -> str:
    """Render an RSS 2.0 document; item keys: title, link, guid, description, encoded, author, pubDate."""
    parts = []
    for item in items:
        fields = []
        if "title" in item:
            fields.append(f"<title>{escape(item['title'])}</title>")
        if "link" in item:
            fields.append(f"<link>{escape(item['link'])}</link>")
        if "guid" in item:
            fields.append(f'<guid isPermaLink="false">{escape(item["guid"])}</guid>')
        if "description" in item:
            fields.append(f"<description>{escape(item['description'])}</description>")
        if "encoded" in item:
            fields.append(f"<content:encoded><![CDATA[{item['encoded']}]]></content:encoded>")
        if "author" in item:
            fields.append(f"<dc:creator>{escape(item['author'])}</dc:creator>")
        if "pubDate" in item:
            fields.append(f"<pubDate>{item['pubDate']}</pubDate>")
        parts.append("<item>" + "".join(fields) + "</item>")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/" '
        'xmlns:dc="http://purl.org/dc/elements/1.1/">'
        "<channel><title>Example Feed</title><link>https://example.com/</link>"
        "<description>Example</description>"
        + "".join(parts)
        + "</channel></rss>"
    )


class FakeFetcher:
    """Serves canned feeds and pages; unknown pages are 404s."""

    def __init__(self, feeds: Optional[Dict[str, Union[str, FetchError]]] = None,
                 pages: Optional[Dict[str, str]] = None) -> None:
        self.feeds = feeds or {}
        self.pages = pages or {}
        self.page_requests: List[str] = []
        self.feed_requests: List[str] = []

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def fetch_feed(self, url: str, timeout=None):
        self.feed_requests.append(url)
        value = self.feeds.get(url)
        if value is None:
            return FetchError(FetchErrorKind.HTTP_STATUS, url, "HTTP 404", status=404)
        if isinstance(value, FetchError):
            return value
        return FetchResult(url=url, text=value, content_type="application/rss+xml")

    async def fetch(self, url: str, timeout=None, accept=None):
        self.page_requests.append(url)
        page = self.pages.get(url)
        if page is None:
            return FetchError(FetchErrorKind.HTTP_STATUS, url, "HTTP 404", status=404)
        return FetchResult(url=url, text=page, content_type="text/html")


class FakeContentStore:
    def __init__(self, existing: Optional[List[Content]] = None) -> None:
        self.items: List[Content] = list(existing or [])

    async def get_all(self) -> List[Content]:
        return list(self.items)

    async def create(self, content: Content) -> int:
        content.id = len(self.items) + 1
        self.items.append(content)
        return content.id


class FakeSubscriptionStore:
    def __init__(self, subscriptions: List[Subscription]) -> None:
        self.subscriptions = {s.id: s for s in subscriptions}
        self.updates: List[tuple] = []

    async def get_enabled_subscriptions(self) -> List[Subscription]:
        return [s for s in self.subscriptions.values() if s.enabled]

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self.subscriptions.get(subscription_id)

    async def update_subscription(self, subscription_id: str, changes: dict) -> bool:
        self.updates.append((subscription_id, changes))
        return True


class RecordingMetrics:
    def __init__(self) -> None:
        self.counts: Dict[str, int] = {}

    def increment(self, name: str, value: int = 1, **attributes: str) -> None:
        self.counts[name] = self.counts.get(name, 0) + value


@pytest.fixture
def content_store():
    return FakeContentStore()


@pytest.fixture
def metrics():
    return RecordingMetrics()
