#!/usr/bin/env python3
"""
Article extraction from fetched web pages.

An ExtractionChain holds an ordered tuple of strategies. Site-specific
structural extractors for WeChat articles and Feishu/Lark documents come
first; a generic readability extractor handles everything else. The first
strategy that applies to the URL and yields enough body text wins, and its
HTML is converted to Markdown.
"""

import re
from asyncio import get_running_loop
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Callable, Iterable, List, Optional, Sequence, Union
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from lxml.etree import ParserError
from readability import Document
from readability.readability import Unparseable

from config import config, get_logger
from errors import ExtractionError, ExtractionErrorKind, FetchError
from fetcher import PageFetcher
from models import ExtractedArticle, FetchResult
from telemetry import trace_span
from utils import (
    clean_html_to_markdown,
    first_non_empty,
    normalize_whitespace,
    parse_date_string,
    summary_prefix,
    visible_text,
)

logger = get_logger("extraction")

NO_TITLE = "No Title"

StrategyOutcome = Union[ExtractedArticle, ExtractionError]


@dataclass(frozen=True)
class ExtractionStrategy:
    """One way of turning a page into an article.

    ``applies(url)`` decides whether the strategy is tried at all;
    ``extract(html, url)`` runs in a worker thread and returns an
    ExtractedArticle or an ExtractionError.
    """
    name: str
    applies: Callable[[str], bool]
    extract: Callable[[str, str], StrategyOutcome]


def _host(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def _host_matches(url: str, *domains: str) -> bool:
    host = _host(url)
    return any(host == d or host.endswith("." + d) for d in domains)


def _select_text(soup: BeautifulSoup, selectors: Iterable[str]) -> Optional[str]:
    """Text of the first selector that matches a non-empty element."""
    for selector in selectors:
        el = soup.select_one(selector)
        if el is None:
            continue
        text = normalize_whitespace(el.get_text(" "))
        if text:
            return text
    return None


def _meta_content(soup: BeautifulSoup, *selectors: str) -> Optional[str]:
    for selector in selectors:
        el = soup.select_one(selector)
        if el is not None and el.get("content"):
            value = normalize_whitespace(el["content"])
            if value:
                return value
    return None


def _strip(container, selectors: str) -> None:
    for el in container.select(selectors):
        el.decompose()


def _build_article(
    strategy: str,
    url: str,
    title: Optional[str],
    body_html: str,
    body_text: str,
    *,
    author: Optional[str] = None,
    excerpt: Optional[str] = None,
    publish_date=None,
    low_confidence: bool = False,
) -> StrategyOutcome:
    """Convert a chosen container to Markdown and apply the content threshold."""
    if len(body_text) < config.MIN_CONTENT_LENGTH:
        return ExtractionError(
            ExtractionErrorKind.NO_CONTENT, url,
            f"{strategy}: {len(body_text)} characters of text is below the {config.MIN_CONTENT_LENGTH} minimum",
        )
    body = clean_html_to_markdown(body_html, base_url=url)
    if not body.strip():
        return ExtractionError(ExtractionErrorKind.NO_CONTENT, url, f"{strategy}: conversion produced no text")
    return ExtractedArticle(
        title=title or NO_TITLE,
        body=body,
        author=author or None,
        excerpt=excerpt or summary_prefix(body_text, config.SUMMARY_PREFIX_LENGTH),
        publish_date=publish_date,
        strategy=strategy,
        low_confidence=low_confidence,
    )


# WeChat official account articles

WECHAT_TITLE_SELECTORS = ("#activity-name", ".rich_media_title", "title")
WECHAT_AUTHOR_SELECTORS = ("#js_name", ".rich_media_meta_text")
WECHAT_CONTAINER_SELECTORS = ("#js_content", ".rich_media_content")
WECHAT_STRIP = "script, style, mpvoice, iframe, video, audio"
_WECHAT_CT_RE = re.compile(r'var\s+ct\s*=\s*"(\d{9,11})"')


def extract_wechat(html: str, url: str) -> StrategyOutcome:
    soup = BeautifulSoup(html, "html.parser")

    # Lazy-loaded images only carry data-src until the page script runs
    for img in soup.select("img[data-src]"):
        img["src"] = img["data-src"]

    title = _select_text(soup, WECHAT_TITLE_SELECTORS)
    author = _select_text(soup, WECHAT_AUTHOR_SELECTORS)
    excerpt = _meta_content(soup, 'meta[property="og:description"]', 'meta[name="description"]')
    match = _WECHAT_CT_RE.search(html)
    publish_date = parse_date_string(match.group(1)) if match else None

    for selector in WECHAT_CONTAINER_SELECTORS:
        container = soup.select_one(selector)
        if container is None:
            continue
        _strip(container, WECHAT_STRIP)
        text = normalize_whitespace(container.get_text(" "))
        if len(text) < config.MIN_CONTENT_LENGTH:
            logger.debug(f"WeChat container {selector} too short ({len(text)} chars) for {url}")
            continue
        return _build_article(
            "wechat", url, title, container.decode_contents(), text,
            author=author, excerpt=excerpt, publish_date=publish_date,
        )

    return ExtractionError(ExtractionErrorKind.NO_CONTENT, url, "wechat: no content container with enough text")


# Feishu / Lark documents

FEISHU_TITLE_SELECTORS = ("title", "h1", '[data-testid="title"]', ".doc-title")
FEISHU_CONTAINER_SELECTORS = (
    '[data-testid="docx-content"]',
    '[data-testid="doc-content"]',
    ".doc-content",
    ".docx-content",
    '[class*="content"]',
    "article",
    "main",
    '[role="main"]',
)
FEISHU_STRIP = 'script, style, [class*="comment"], [class*="toolbar"]'
FEISHU_CONTAINER_MIN = 100
FEISHU_CONTAINER_FALLBACK_MIN = 50
_FEISHU_TITLE_SUFFIX_RE = re.compile(r"\s*[-–—|]\s*(飞书|Feishu|Lark).*$", re.IGNORECASE)


def extract_feishu(html: str, url: str) -> StrategyOutcome:
    """Feishu/Lark docs render differently per mode, so containers are probed in order.

    A container with more than 100 characters wins outright; otherwise the
    first with at least 50 is used (flagged low confidence). Failing both, the
    page's visible text is returned truncated and flagged low confidence.
    """
    soup = BeautifulSoup(html, "html.parser")
    _strip(soup, FEISHU_STRIP)

    title = _select_text(soup, FEISHU_TITLE_SELECTORS)
    if title:
        title = _FEISHU_TITLE_SUFFIX_RE.sub("", title).strip()

    chosen = None
    fallback = None
    for selector in FEISHU_CONTAINER_SELECTORS:
        container = soup.select_one(selector)
        if container is None:
            continue
        text = normalize_whitespace(container.get_text(" "))
        if len(text) > FEISHU_CONTAINER_MIN:
            chosen = (container, text)
            break
        if fallback is None and len(text) >= FEISHU_CONTAINER_FALLBACK_MIN:
            fallback = (container, text)

    if chosen is not None:
        container, text = chosen
        return _build_article("feishu", url, title, container.decode_contents(), text)

    if fallback is not None:
        container, text = fallback
        body = clean_html_to_markdown(container.decode_contents(), base_url=url)
        if body.strip():
            return ExtractedArticle(
                title=title or NO_TITLE,
                body=body,
                excerpt=summary_prefix(text, config.SUMMARY_PREFIX_LENGTH),
                strategy="feishu",
                low_confidence=True,
            )

    page_text = normalize_whitespace((soup.body or soup).get_text(" "))
    if len(page_text) < config.MIN_CONTENT_LENGTH:
        return ExtractionError(
            ExtractionErrorKind.NO_CONTENT, url, f"feishu: page text too short ({len(page_text)} chars)"
        )
    logger.info(f"Feishu document {url}: no content container matched, using page text")
    return ExtractedArticle(
        title=title or NO_TITLE,
        body=page_text[:config.FALLBACK_TEXT_LIMIT],
        excerpt=summary_prefix(page_text, config.SUMMARY_PREFIX_LENGTH),
        strategy="feishu",
        low_confidence=True,
    )


# Generic readability

READABILITY_AUTHOR_META = ('meta[name="author"]', 'meta[property="article:author"]')
READABILITY_AUTHOR_SELECTORS = ('[rel="author"]', ".byline")
READABILITY_EXCERPT_META = ('meta[name="description"]', 'meta[property="og:description"]')
READABILITY_DATE_META = ('meta[property="article:published_time"]', 'meta[name="pubdate"]')


def extract_readability(html: str, url: str) -> StrategyOutcome:
    try:
        document = Document(html)
        summary_html = document.summary(html_partial=True)
        short_title = document.short_title()
    except (Unparseable, ParserError, ValueError) as e:
        return ExtractionError(ExtractionErrorKind.PARSE_FAILURE, url, f"readability: {e}")

    soup = BeautifulSoup(html, "html.parser")
    title = short_title if short_title and short_title != "[no-title]" else None
    title = title or _select_text(soup, ("h1", "title"))

    author = first_non_empty(
        _meta_content(soup, *READABILITY_AUTHOR_META),
        _select_text(soup, READABILITY_AUTHOR_SELECTORS),
        default=None,
    )
    excerpt = _meta_content(soup, *READABILITY_EXCERPT_META)

    date_value = _meta_content(soup, *READABILITY_DATE_META)
    if not date_value:
        time_el = soup.select_one("time[datetime]")
        date_value = time_el.get("datetime") if time_el is not None else None
    publish_date = parse_date_string(date_value)

    return _build_article(
        "readability", url, title, summary_html, visible_text(summary_html),
        author=author, excerpt=excerpt, publish_date=publish_date,
    )


WECHAT = ExtractionStrategy("wechat", lambda url: _host_matches(url, "mp.weixin.qq.com"), extract_wechat)
FEISHU = ExtractionStrategy("feishu", lambda url: _host_matches(url, "feishu.cn", "larksuite.com"), extract_feishu)
READABILITY = ExtractionStrategy("readability", lambda url: True, extract_readability)

DEFAULT_STRATEGIES = (WECHAT, FEISHU, READABILITY)


class ExtractionChain:
    """Runs strategies in order until one produces an article.

    Parsing is CPU-bound, so each strategy runs in a thread pool executor.
    """

    def __init__(
        self,
        strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.strategies = tuple(strategies)
        self.executor = executor

    async def run_in_executor(self, func, *args):
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    @trace_span(
        "extraction.extract",
        tracer_name="extraction",
        attr_from_args=lambda self, fetch_result: {"http.url": fetch_result.url},
    )
    async def extract(self, fetch_result: FetchResult) -> StrategyOutcome:
        url = fetch_result.url
        failures: List[ExtractionError] = []
        for strategy in self.strategies:
            if not strategy.applies(url):
                continue
            outcome = await self.run_in_executor(strategy.extract, fetch_result.text, url)
            if isinstance(outcome, ExtractedArticle):
                logger.debug(f"Extracted {url} with {strategy.name} ({len(outcome.body)} chars)")
                return outcome
            logger.debug(f"Strategy {strategy.name} failed for {url}: {outcome.describe()}")
            failures.append(outcome)

        if failures and all(f.kind == ExtractionErrorKind.PARSE_FAILURE for f in failures):
            return ExtractionError(
                ExtractionErrorKind.PARSE_FAILURE, url, "; ".join(str(f) for f in failures)
            )
        return ExtractionError(
            ExtractionErrorKind.NO_CONTENT, url,
            "; ".join(str(f) for f in failures) or "no extraction strategy applies",
        )


async def scrape_url(
    url: str,
    fetcher: Optional[PageFetcher] = None,
    chain: Optional[ExtractionChain] = None,
) -> Union[ExtractedArticle, FetchError, ExtractionError]:
    """Fetch a single page and extract its article."""
    chain = chain or ExtractionChain()
    if fetcher is None:
        async with PageFetcher() as own_fetcher:
            fetched = await own_fetcher.fetch(url)
    else:
        fetched = await fetcher.fetch(url)

    if isinstance(fetched, FetchError):
        return fetched
    outcome = await chain.extract(fetched)
    if isinstance(outcome, ExtractionError):
        logger.warning(f"Could not extract article from {url}: {outcome.describe()}")
    return outcome
