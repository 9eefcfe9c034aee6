#!/usr/bin/env python3
"""
Utility classes and functions for the acquisition pipeline.

This module contains shared helpers used by the fetcher, the extraction chain
and feed ingestion: rate limiting, URL validation, field precedence, timestamp
conversion and HTML to Markdown conversion.
"""

from asyncio import Lock, sleep
from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from time import time
from typing import Any, Optional
import re
from urllib.parse import urljoin

import feedparser
from bs4 import BeautifulSoup
from markdownify import MarkdownConverter

from config import get_logger

logger = get_logger("utils")

_WHITESPACE_RE = re.compile(r"\s+")


class RateLimiter:
    """Spaces out calls so at most ``requests_per_minute`` start each minute (0 disables)."""

    def __init__(self, requests_per_minute: int):
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self.last_request_time = 0
        self._lock = Lock()

    async def acquire(self):
        if self.min_interval <= 0:
            return
        async with self._lock:
            wait_time = self.last_request_time + self.min_interval - time()
            if wait_time > 0:
                logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                await sleep(wait_time)
            self.last_request_time = time()


def validate_url(url: str) -> bool:
    """True for strings that look like absolute http(s) URLs."""
    if not url or not isinstance(url, str):
        return False
    url = url.strip()
    return url.startswith(('http://', 'https://')) and '.' in url


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def summary_prefix(text: str, length: int) -> str:
    """First ``length`` characters of ``text``, with "..." appended when cut."""
    if not text:
        return ""
    if len(text) <= length:
        return text
    return text[:length] + "..."


def first_non_empty(*values: Any, default: Any = "") -> Any:
    """Return the first value that is not None and not a blank string."""
    for value in values:
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return default


def normalize_whitespace(text: Optional[str]) -> str:
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", text).strip()


def visible_text(html_content: Optional[str]) -> str:
    """Whitespace-normalized text of an HTML fragment."""
    if not html_content:
        return ""
    soup = BeautifulSoup(html_content, 'html.parser')
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    return normalize_whitespace(soup.get_text(" "))


def parse_date_string(date_str: Optional[str]) -> Optional[datetime]:
    """Parse a date string in any of the formats feeds and pages use.

    Tries feedparser's date handlers, then RFC 2822, then ISO 8601, then a
    few loose formats. Returns an aware UTC datetime or None.
    """
    if not date_str or not isinstance(date_str, str):
        return None
    date_str = date_str.strip()
    if date_str.isdigit():
        return from_timestamp(date_str)

    try:
        time_struct = feedparser._parse_date(date_str)
        if time_struct:
            return datetime.fromtimestamp(timegm(time_struct), tz=timezone.utc)
    except (ValueError, TypeError, AttributeError, OverflowError, OSError):
        pass

    try:
        dt = parsedate_to_datetime(date_str)
    except (TypeError, ValueError, IndexError):
        dt = None
    if dt is None:
        try:
            dt = datetime.fromisoformat(date_str.replace("Z", "+00:00"))
        except ValueError:
            dt = None
    if dt is None:
        for fmt in ("%d %b %Y %H:%M:%S %z", "%d %b %Y %H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
            try:
                dt = datetime.strptime(date_str, fmt)
                break
            except ValueError:
                continue
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_timestamp(value: Optional[datetime]) -> Optional[int]:
    """Epoch seconds for a datetime; naive datetimes are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def from_timestamp(value: Any) -> Optional[datetime]:
    """UTC datetime from epoch seconds (int, float or numeric string)."""
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(float(value)), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning(f"Ignoring invalid timestamp value: {value!r}")
        return None


class LibraryMarkdownConverter(MarkdownConverter):
    """markdownify converter with the library's image rule.

    Images become ``![alt](src "title")``; images without a ``src`` are
    dropped entirely.
    """

    def convert_img(self, el, text, *args, **kwargs):
        src = (el.attrs.get('src') or '').strip()
        if not src:
            return ''
        alt = (el.attrs.get('alt') or '').replace('\n', ' ').strip()
        title = (el.attrs.get('title') or '').replace('"', "'").strip()
        title_part = f' "{title}"' if title else ''
        return f'![{alt}]({src}{title_part})'


def html_to_markdown(html_content: str) -> str:
    """Convert HTML to Markdown with ATX headings and fenced code blocks."""
    # wrap_width=0 keeps long URLs on one line
    converter = LibraryMarkdownConverter(heading_style="ATX", wrap_width=0, bullets="-")
    markdown = converter.convert(html_content)
    return re.sub(r"\n{3,}", "\n\n", markdown).strip()


_STRIPPED_TAGS = (
    "script", "style", "iframe", "form", "object", "embed", "noscript",
    "frame", "frameset", "applet", "meta", "base", "link",
    "video", "audio", "mpvoice",
)
_TRACKER_SRC_RE = re.compile(r'(pixel|tracker|counter|spacer|blank)', re.I)
_TINY_IMAGE_RE = re.compile(r'\.(gif|png)$', re.I)


def _is_tracking_image(img) -> bool:
    src = img.get('src', '')
    return bool(_TRACKER_SRC_RE.search(src)) or (
        bool(_TINY_IMAGE_RE.search(src)) and img.get('height') in ('0', '1')
    )


def _absolute_url(value: str, attr: str, base_url: Optional[str]) -> Optional[str]:
    if attr == 'href' and value.startswith('mailto:'):
        return value
    if value.startswith(('http://', 'https://')):
        return value
    if not base_url:
        return None
    try:
        resolved = urljoin(base_url, value)
    except ValueError:
        return None
    return resolved if resolved.startswith(('http://', 'https://')) else None


def _sanitize(soup: BeautifulSoup, base_url: Optional[str]) -> None:
    for tag in soup(list(_STRIPPED_TAGS)):
        tag.decompose()
    for img in soup.find_all('img'):
        if _is_tracking_image(img):
            img.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            name = attr.lower()
            if name.startswith('on') or (
                name in ('href', 'src') and str(tag[attr]).strip().lower().startswith('javascript:')
            ):
                del tag[attr]

    # Unresolvable links point nowhere; unresolvable images are dropped
    for tag in soup.find_all(['a', 'img']):
        for attr in ('href', 'src'):
            value = str(tag.get(attr, '')).strip()
            if not value:
                continue
            resolved = _absolute_url(value, attr, base_url)
            if resolved:
                tag[attr] = resolved
            elif attr == 'href':
                tag[attr] = '#'
            else:
                del tag[attr]


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize an HTML fragment and convert it to Markdown.

    Relative links and images are resolved against ``base_url``.
    """
    if not html_content:
        return ""
    try:
        soup = BeautifulSoup(html_content, 'html.parser')
        _sanitize(soup, base_url)
        return html_to_markdown(str(soup))
    except Exception as e:
        logger.error(f"Error cleaning HTML to Markdown: {e}")
        return normalize_whitespace(re.sub(r"<[^>]+>", " ", html_content))
