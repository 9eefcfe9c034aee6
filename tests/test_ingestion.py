import asyncio
from datetime import datetime, timezone

import pytest

from config import config
from conftest import LOREM, FakeContentStore, FakeFetcher, article_html, rss_feed
from errors import FeedParseError, FetchError, FetchErrorKind
from extraction import ExtractionChain
from ingestion import (
    DedupIndex,
    FeedIngestor,
    matches_keywords,
    normalize_entry,
    parse_feed_text,
    resolve_body,
    synthesize_guid,
)
from models import Content, FeedItem, FetchResult, Source, Subscription


FEED_URL = "https://feeds.example.com/news.xml"
LONG_BODY = "<p>" + LOREM * 4 + "</p>"


def make_subscription(**overrides) -> Subscription:
    data = dict(
        id="example-news",
        name="Example News",
        company="Example Corp",
        sources=[Source(FEED_URL)],
        category_id="science",
    )
    data.update(overrides)
    return Subscription(**data)


def make_ingestor(fetcher, store=None, metrics=None) -> FeedIngestor:
    return FeedIngestor(fetcher, ExtractionChain(), store or FakeContentStore(), metrics=metrics)


def long_items(count: int, prefix: str = "story"):
    return [
        {
            "title": f"Story {i}",
            "link": f"https://example.com/{prefix}/{i}",
            "guid": f"{prefix}-{i}",
            "description": LONG_BODY,
        }
        for i in range(count)
    ]


@pytest.mark.asyncio
async def test_second_ingest_creates_nothing():
    store = FakeContentStore()
    fetcher = FakeFetcher(feeds={FEED_URL: rss_feed(long_items(3))})
    ingestor = make_ingestor(fetcher, store)
    subscription = make_subscription()

    first = await ingestor.ingest(Source(FEED_URL), subscription, await store.get_all())
    second = await ingestor.ingest(Source(FEED_URL), subscription, await store.get_all())

    assert first.stats.created == 3
    assert second.created == []
    assert second.stats.duplicates == 3
    assert len(store.items) == 3


@pytest.mark.asyncio
async def test_short_body_is_replaced_by_extracted_article():
    link = "https://example.com/ocean-study"
    page = article_html("Ocean Data Study")
    fetcher = FakeFetcher(
        feeds={FEED_URL: rss_feed([{"title": "Ocean Data Study", "link": link, "description": "Short teaser."}])},
        pages={link: page},
    )
    ingestor = make_ingestor(fetcher)

    result = await ingestor.ingest(Source(FEED_URL), make_subscription(), [])

    expected = await ExtractionChain().extract(FetchResult(url=link, text=page))
    assert fetcher.page_requests == [link]
    assert result.stats.backfilled == 1
    content = result.created[0]
    assert content.body == expected.body
    assert content.summary == "A short description of the story."
    assert content.author == "Jane Doe"


@pytest.mark.asyncio
async def test_long_body_skips_page_fetch():
    fetcher = FakeFetcher(feeds={FEED_URL: rss_feed(long_items(2))})
    ingestor = make_ingestor(fetcher)

    result = await ingestor.ingest(Source(FEED_URL), make_subscription(), [])

    assert fetcher.page_requests == []
    assert result.stats.created == 2
    assert "coastal stations" in result.created[0].body
    assert "<p>" not in result.created[0].body


@pytest.mark.asyncio
async def test_backfill_failure_keeps_feed_body():
    link = "https://example.com/missing"
    fetcher = FakeFetcher(
        feeds={FEED_URL: rss_feed([{"title": "Missing page", "link": link, "description": "<b>Teaser</b> text"}])},
    )
    ingestor = make_ingestor(fetcher)

    result = await ingestor.ingest(Source(FEED_URL), make_subscription(), [])

    assert fetcher.page_requests == [link]
    assert result.stats.backfill_failures == 1
    assert result.created[0].body == "**Teaser** text"
    assert result.created[0].summary == "Teaser text"


@pytest.mark.asyncio
async def test_keyword_filter_drops_non_matching_items():
    calm = "<p>" + "Sunny skies with a light breeze. " * 20 + "</p>"
    items = [
        {"title": "AI breakthrough", "link": "https://example.com/ai", "description": LONG_BODY},
        {"title": "Weather today", "link": "https://example.com/weather", "description": calm},
    ]
    fetcher = FakeFetcher(feeds={FEED_URL: rss_feed(items)})
    ingestor = make_ingestor(fetcher)

    result = await ingestor.ingest(Source(FEED_URL), make_subscription(keywords=["ai"]), [])

    assert [c.title for c in result.created] == ["AI breakthrough"]
    assert result.stats.filtered == 1


@pytest.mark.asyncio
async def test_content_fields_from_subscription():
    items = [{
        "title": "Story 0",
        "link": "https://example.com/story/0",
        "guid": "story-0",
        "description": LONG_BODY,
        "pubDate": "Tue, 05 Mar 2024 10:00:00 GMT",
        "author": "Sam Writer",
    }]
    fetcher = FakeFetcher(feeds={FEED_URL: rss_feed(items)})
    ingestor = make_ingestor(fetcher)

    result = await ingestor.ingest(Source(FEED_URL), make_subscription(), [])

    content = result.created[0]
    assert content.type == "url"
    assert content.source_url == "https://example.com/story/0"
    assert content.guid == "story-0"
    assert content.tags == ["Example Corp", "subscription", "rss"]
    assert content.category_ids == ["science"]
    assert content.author == "Sam Writer"
    assert content.publish_date == datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc)
    assert content.summary.endswith("...")


@pytest.mark.asyncio
async def test_only_first_entries_are_processed(monkeypatch):
    monkeypatch.setattr(config, "FEED_ITEM_LIMIT", 10)
    fetcher = FakeFetcher(feeds={FEED_URL: rss_feed(long_items(12))})
    ingestor = make_ingestor(fetcher)

    result = await ingestor.ingest(Source(FEED_URL), make_subscription(), [])

    assert result.stats.seen == 10
    assert result.stats.created == 10


@pytest.mark.asyncio
async def test_unparseable_feed_is_reported(metrics):
    fetcher = FakeFetcher(feeds={FEED_URL: "this is not a feed at all"})
    ingestor = make_ingestor(fetcher, metrics=metrics)

    result = await ingestor.ingest(Source(FEED_URL), make_subscription(), [])

    assert result.created == []
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], FeedParseError)
    assert metrics.counts["fetch.errors"] == 1


@pytest.mark.asyncio
async def test_fetch_error_is_reported():
    error = FetchError(FetchErrorKind.TIMEOUT, FEED_URL, "Request timed out")
    fetcher = FakeFetcher(feeds={FEED_URL: error})
    ingestor = make_ingestor(fetcher)

    result = await ingestor.ingest(Source(FEED_URL), make_subscription(), [])

    assert result.errors == [error]
    assert result.stats.seen == 0


@pytest.mark.asyncio
async def test_existing_guid_counts_as_duplicate():
    existing = [Content(title="Old", body="Old body", source_url="https://elsewhere.example.com/x", guid="story-0")]
    fetcher = FakeFetcher(feeds={FEED_URL: rss_feed(long_items(2))})
    ingestor = make_ingestor(fetcher)

    result = await ingestor.ingest(Source(FEED_URL), make_subscription(), existing)

    assert result.stats.duplicates == 1
    assert [c.guid for c in result.created] == ["story-1"]


@pytest.mark.asyncio
async def test_items_without_identity_get_stable_guid():
    items = [{"title": "Untitled note", "description": LONG_BODY, "pubDate": "Tue, 05 Mar 2024 10:00:00 GMT"}]
    store = FakeContentStore()
    fetcher = FakeFetcher(feeds={FEED_URL: rss_feed(items)})
    ingestor = make_ingestor(fetcher, store)

    first = await ingestor.ingest(Source(FEED_URL), make_subscription(), await store.get_all())
    second = await ingestor.ingest(Source(FEED_URL), make_subscription(), await store.get_all())

    expected_guid = synthesize_guid("Untitled note", "Tue, 05 Mar 2024 10:00:00 GMT")
    assert first.created[0].guid == expected_guid
    assert first.created[0].source_url == expected_guid
    assert second.stats.duplicates == 1


@pytest.mark.asyncio
async def test_concurrent_ingests_share_dedup_index():
    fetcher = FakeFetcher(feeds={FEED_URL: rss_feed(long_items(3))})
    store = FakeContentStore()
    ingestor = make_ingestor(fetcher, store)
    dedup = DedupIndex()

    results = await asyncio.gather(
        ingestor.ingest(Source(FEED_URL), make_subscription(id="a", name="A"), dedup),
        ingestor.ingest(Source(FEED_URL), make_subscription(id="b", name="B"), dedup),
    )

    assert sum(r.stats.created for r in results) == 3
    assert sum(r.stats.duplicates for r in results) == 3
    assert len(store.items) == 3


@pytest.mark.asyncio
async def test_item_filtered_by_one_subscription_is_stored_by_another():
    link = "https://example.com/ocean-data"
    fetcher = FakeFetcher(
        feeds={FEED_URL: rss_feed([{"title": "Ocean Data Study", "link": link, "description": "Short teaser."}])},
        pages={link: article_html("Ocean Data Study")},
    )
    store = FakeContentStore()
    ingestor = make_ingestor(fetcher, store)
    dedup = DedupIndex()

    picky, broad = await asyncio.gather(
        ingestor.ingest(Source(FEED_URL), make_subscription(id="picky", name="Picky", keywords=["zzzz-not-present"]), dedup),
        ingestor.ingest(Source(FEED_URL), make_subscription(id="broad", name="Broad"), dedup),
    )

    assert len(store.items) == 1
    assert picky.stats.created + broad.stats.created == 1
    assert broad.stats.created == 1
    assert broad.stats.duplicates == 0


@pytest.mark.asyncio
async def test_dedup_claim_and_release():
    dedup = DedupIndex([Content(title="Known", body="", source_url="https://example.com/known")])
    item = FeedItem(title="New", link="https://example.com/new", guid="new-1")

    assert dedup.is_known(FeedItem(title="Known", link="https://example.com/known"))
    assert not await dedup.claim(FeedItem(title="Known again", link="https://example.com/known"))
    assert await dedup.claim(item)
    await dedup.release(item)
    assert await dedup.claim(item)
    await dedup.commit(item)
    assert dedup.is_known(item)
    assert len(dedup) == 3


@pytest.mark.asyncio
async def test_claim_waits_and_takes_over_released_item():
    dedup = DedupIndex()
    item = FeedItem(title="New", link="https://example.com/new", guid="new-1")
    assert await dedup.claim(item)

    waiter = asyncio.create_task(dedup.claim(FeedItem(title="Same guid", guid="new-1")))
    await asyncio.sleep(0)
    assert not waiter.done()

    await dedup.release(item)
    assert await asyncio.wait_for(waiter, timeout=1) is True


@pytest.mark.asyncio
async def test_claim_waits_and_reports_committed_item_as_duplicate():
    dedup = DedupIndex()
    item = FeedItem(title="New", link="https://example.com/new", guid="new-1")
    assert await dedup.claim(item)

    waiter = asyncio.create_task(dedup.claim(FeedItem(title="Same link", link="https://example.com/new")))
    await asyncio.sleep(0)
    assert not waiter.done()

    await dedup.commit(item)
    assert await asyncio.wait_for(waiter, timeout=1) is False


def test_normalize_entry_prefers_encoded_content():
    feed = parse_feed_text(rss_feed([{
        "title": "  Spaced   title ",
        "link": "https://example.com/a",
        "description": "Excerpt only",
        "encoded": "<p>Full body</p>",
    }]))

    item = normalize_entry(feed.entries[0])

    assert item.title == "Spaced title"
    assert item.content_encoded == "<p>Full body</p>"
    assert resolve_body(item) == "<p>Full body</p>"


def test_normalize_entry_defaults_title():
    feed = parse_feed_text(rss_feed([{"link": "https://example.com/a", "description": "Body"}]))

    item = normalize_entry(feed.entries[0])

    assert item.title == "No Title"
    assert item.guid is None
    assert resolve_body(item) == "Body"


def test_matches_keywords():
    assert matches_keywords([], "Anything", "at all")
    assert matches_keywords(["  ", ""], "Anything", "at all")
    assert matches_keywords(["FSD"], "New release", "fsd beta notes")
    assert not matches_keywords(["battery"], "New release", "fsd beta notes")
