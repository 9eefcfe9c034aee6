#!/usr/bin/env python3
"""
Feed ingestion and deduplication.

FeedIngestor turns one subscription source into new Content records: it
fetches and parses the feed, resolves each entry's body, backfills short
bodies from the linked page, applies the subscription's keyword filter and
skips anything already in the library.
"""

from asyncio import Event, Lock, get_running_loop
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from hashlib import md5
from time import struct_time
from calendar import timegm
from typing import Any, Dict, Iterable, Optional, Set

import feedparser

from config import config, get_logger
from errors import ExtractionError, FeedParseError, FetchError, StoreError
from extraction import ExtractionChain
from fetcher import PageFetcher
from models import Content, ExtractedArticle, FeedItem, IngestResult, IngestStats, Source, Subscription
from telemetry import MetricsSink, NullMetrics, trace_span
from utils import (
    clean_html_to_markdown,
    first_non_empty,
    normalize_whitespace,
    parse_date_string,
    summary_prefix,
    visible_text,
)

logger = get_logger("ingestion")

SUBSCRIPTION_TAG = "subscription"
RSS_TAG = "rss"

DATE_FIELDS = ("published", "updated", "created", "modified", "date", "issued")


def _get_entry_value(entry, field: str) -> Any:
    """Safely fetch feedparser entry fields with attribute or dict access."""
    if not field or entry is None:
        return None
    getter = getattr(entry, 'get', None)
    if callable(getter):
        value = getter(field)
        if value is not None:
            return value
    return getattr(entry, field, None)


def _date_value_to_datetime(value: Any) -> Optional[datetime]:
    """Convert assorted date representations into an aware UTC datetime."""
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (struct_time, tuple, list)):
        try:
            # feedparser's *_parsed values are already normalized to UTC
            return datetime.fromtimestamp(timegm(tuple(value)), tz=timezone.utc)
        except (OverflowError, ValueError, OSError, TypeError):
            return None
    if isinstance(value, str):
        return parse_date_string(value)
    return None


def parse_entry_date(entry) -> Optional[datetime]:
    """Publication date of a feed entry, trying the usual fields in priority order."""
    for field in DATE_FIELDS:
        parsed = _date_value_to_datetime(_get_entry_value(entry, f"{field}_parsed"))
        if parsed:
            return parsed
        parsed = _date_value_to_datetime(_get_entry_value(entry, field))
        if parsed:
            return parsed
    return None


def _entry_content_value(entry) -> Optional[str]:
    """First non-empty body from ``entry.content`` (RSS content:encoded or Atom content)."""
    for content_item in _get_entry_value(entry, 'content') or []:
        value = content_item.get('value') if hasattr(content_item, 'get') else None
        if value and value.strip():
            return value
    return None


def synthesize_guid(title: str, published: Optional[str]) -> str:
    """Stable identity for entries that carry neither a link nor an id."""
    return md5(f"{title}{published or ''}".encode("utf-8")).hexdigest()


def normalize_entry(entry) -> FeedItem:
    """Build a FeedItem from a feedparser entry.

    feedparser folds RSS ``content:encoded`` and Atom ``content`` into
    ``entry.content``; ``summary`` and ``description`` are the excerpt fields.
    """
    title = normalize_whitespace(_get_entry_value(entry, 'title')) or "No Title"
    link = (_get_entry_value(entry, 'link') or "").strip() or None
    guid = (_get_entry_value(entry, 'id') or "").strip() or None
    if not link and not guid:
        guid = synthesize_guid(title, _get_entry_value(entry, 'published') or _get_entry_value(entry, 'updated'))

    author = first_non_empty(
        _get_entry_value(entry, 'author'),
        _get_entry_value(entry, 'dc_creator'),
        default=None,
    )
    return FeedItem(
        title=title,
        link=link,
        guid=guid,
        content_encoded=_entry_content_value(entry),
        content=_get_entry_value(entry, 'summary'),
        description=_get_entry_value(entry, 'description'),
        author=normalize_whitespace(author) or None,
        publish_date=parse_entry_date(entry),
    )


def parse_feed_text(text: str):
    """Run feedparser over already-decoded feed text.

    The text goes in as UTF-8 bytes with a matching charset header so
    feedparser neither treats it as a URL/path nor trusts a stale XML
    encoding declaration.
    """
    return feedparser.parse(
        text.encode("utf-8"),
        response_headers={"content-type": "application/xml; charset=utf-8"},
    )


def resolve_body(item: FeedItem) -> str:
    return first_non_empty(item.content_encoded, item.content, item.description, default="")


def matches_keywords(keywords: Iterable[str], title: str, body: str) -> bool:
    """True when there are no keywords or any keyword occurs in title + body (case-insensitive)."""
    keywords = [k for k in keywords or [] if k and k.strip()]
    if not keywords:
        return True
    haystack = f"{title} {body}".lower()
    return any(k.lower() in haystack for k in keywords)


class DedupIndex:
    """Identities of everything in the library plus items currently in flight.

    An item's identities are its link and GUID; an existing record's are its
    source URL and stored GUID. Any overlap with a stored record is a
    duplicate. Workers ``claim`` an item before doing any work on it and then
    ``commit`` (it was stored) or ``release`` (it was dropped). A worker whose
    item is claimed elsewhere waits for that claim to settle: a commit makes
    it a duplicate, a release hands the item over.
    """

    def __init__(self, contents: Iterable[Content] = ()) -> None:
        self._known: Set[str] = set()
        self._claimed: Dict[str, Event] = {}
        self._lock = Lock()
        for content in contents:
            self._known.update(self.content_keys(content))

    @staticmethod
    def content_keys(content: Content) -> Set[str]:
        return {k for k in (content.source_url, content.guid) if k}

    @staticmethod
    def item_keys(item: FeedItem) -> Set[str]:
        return {k for k in (item.link, item.guid) if k}

    def __len__(self) -> int:
        return len(self._known)

    def is_known(self, item: FeedItem) -> bool:
        return bool(self.item_keys(item) & self._known)

    async def claim(self, item: FeedItem) -> bool:
        """Reserve the item's identities; False once it is known to be stored.

        Waits while another worker holds a claim on any of the identities.
        """
        keys = self.item_keys(item)
        while True:
            async with self._lock:
                if self.is_known(item):
                    return False
                pending = next((self._claimed[k] for k in keys if k in self._claimed), None)
                if pending is None:
                    settled = Event()
                    for key in keys:
                        self._claimed[key] = settled
                    return True
            await pending.wait()

    def _settle(self, item: FeedItem) -> None:
        # Caller holds the lock
        for key in self.item_keys(item):
            settled = self._claimed.pop(key, None)
            if settled is not None:
                settled.set()

    async def commit(self, item: FeedItem, content: Optional[Content] = None) -> None:
        keys = self.item_keys(item)
        if content is not None:
            keys |= self.content_keys(content)
        async with self._lock:
            self._known.update(keys)
            self._settle(item)

    async def release(self, item: FeedItem) -> None:
        async with self._lock:
            self._settle(item)


class FeedIngestor:
    """Ingests RSS/Atom sources into the content store."""

    def __init__(
        self,
        fetcher: PageFetcher,
        chain: ExtractionChain,
        store,
        metrics: Optional[MetricsSink] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.fetcher = fetcher
        self.chain = chain
        self.store = store
        self.metrics = metrics or NullMetrics()
        self.executor = executor

    async def run_in_executor(self, func, *args) -> Any:
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    async def parse_feed(self, url: str, text: str):
        """Parse feed text; returns the entries list or a FeedParseError."""
        feed = await self.run_in_executor(parse_feed_text, text)
        entries = feed.get('entries') or []
        if feed.get('bozo') and not entries:
            reason = feed.get('bozo_exception') or "malformed feed"
            return FeedParseError(url, f"Could not parse feed: {reason}")
        if not entries and not feed.get('version'):
            return FeedParseError(url, "Document is not a recognizable RSS or Atom feed")
        return entries

    @trace_span(
        "ingestion.ingest",
        tracer_name="ingestion",
        attr_from_args=lambda self, source, subscription, existing_content=None: {
            "feed.url": source.url,
            "subscription.id": subscription.id,
        },
    )
    async def ingest(self, source: Source, subscription: Subscription, existing_content=None) -> IngestResult:
        """Ingest one source for a subscription.

        ``existing_content`` is either the library's current records or a
        shared DedupIndex. Source-level failures end up in ``errors``; nothing
        is raised for them.
        """
        result = IngestResult()
        dedup = existing_content if isinstance(existing_content, DedupIndex) else DedupIndex(existing_content or ())

        fetched = await self.fetcher.fetch_feed(source.url)
        if isinstance(fetched, FetchError):
            result.errors.append(fetched)
            return result

        entries = await self.parse_feed(source.url, fetched.text)
        if isinstance(entries, FeedParseError):
            logger.warning(f"{subscription.name}: {entries.describe()} ({source.url})")
            self.metrics.increment("fetch.errors", kind=entries.kind.value)
            result.errors.append(entries)
            return result

        if len(entries) > config.FEED_ITEM_LIMIT:
            logger.debug(f"{source.url}: processing first {config.FEED_ITEM_LIMIT} of {len(entries)} entries")

        for entry in entries[:config.FEED_ITEM_LIMIT]:
            item = normalize_entry(entry)
            result.stats.seen += 1
            await self._process_item(item, subscription, dedup, result)

        self._report(subscription, result.stats)
        logger.info(
            f"{subscription.name}: {source.url} seen={result.stats.seen} created={result.stats.created} "
            f"duplicates={result.stats.duplicates} filtered={result.stats.filtered} "
            f"backfilled={result.stats.backfilled} errors={len(result.errors)}"
        )
        return result

    async def _process_item(
        self, item: FeedItem, subscription: Subscription, dedup: DedupIndex, result: IngestResult
    ) -> None:
        if not await dedup.claim(item):
            logger.debug(f"Duplicate item skipped: {item.link or item.guid}")
            result.stats.duplicates += 1
            return

        committed = False
        try:
            content = await self._build_content(item, subscription, result.stats)
            if content is None:
                result.stats.filtered += 1
                return
            await self.store.create(content)
            await dedup.commit(item, content)
            committed = True
            result.created.append(content)
            result.stats.created += 1
        except StoreError as e:
            logger.error(f"Could not store item {item.link or item.guid}: {e}")
            result.errors.append(e)
        finally:
            if not committed:
                await dedup.release(item)

    async def _build_content(
        self, item: FeedItem, subscription: Subscription, stats: IngestStats
    ) -> Optional[Content]:
        """Resolve, backfill and filter an item; None means the keyword filter dropped it."""
        raw_body = resolve_body(item)
        body = None
        summary = summary_prefix(visible_text(raw_body), config.SUMMARY_PREFIX_LENGTH) or None
        author = item.author
        publish_date = item.publish_date

        if len(raw_body) < config.BACKFILL_MIN_LENGTH and item.link:
            article = await self._backfill(item.link)
            if article is not None:
                stats.backfilled += 1
                body = article.body
                summary = article.excerpt or summary_prefix(article.body, config.SUMMARY_PREFIX_LENGTH)
                author = author or article.author
                publish_date = publish_date or article.publish_date
            else:
                stats.backfill_failures += 1

        if body is None:
            body = clean_html_to_markdown(raw_body, base_url=item.link)

        if not matches_keywords(subscription.keywords, item.title, body):
            logger.debug(f"Item filtered by keywords {subscription.keywords}: {item.title}")
            return None

        return Content(
            type="url",
            title=item.title,
            body=body,
            source_url=item.link or item.guid,
            guid=item.guid,
            author=author,
            publish_date=publish_date,
            category_ids=[subscription.category_id] if subscription.category_id else [],
            tags=[subscription.company, SUBSCRIPTION_TAG, RSS_TAG],
            summary=summary,
        )

    async def _backfill(self, link: str) -> Optional[ExtractedArticle]:
        fetched = await self.fetcher.fetch(link)
        if isinstance(fetched, FetchError):
            logger.info(f"Backfill fetch failed for {link}, keeping feed body: {fetched.describe()}")
            return None
        article = await self.chain.extract(fetched)
        if isinstance(article, ExtractionError):
            logger.info(f"Backfill extraction failed for {link}, keeping feed body: {article.describe()}")
            return None
        return article

    def _report(self, subscription: Subscription, stats: IngestStats) -> None:
        attrs = {"subscription": subscription.id}
        self.metrics.increment("items.created", stats.created, **attrs)
        self.metrics.increment("items.duplicates", stats.duplicates, **attrs)
        self.metrics.increment("items.filtered", stats.filtered, **attrs)
        self.metrics.increment("items.backfilled", stats.backfilled, **attrs)
        self.metrics.increment("items.backfill_failures", stats.backfill_failures, **attrs)
