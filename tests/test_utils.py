from datetime import datetime, timezone
import time

import pytest

from utils import (
    RateLimiter,
    clean_html_to_markdown,
    first_non_empty,
    format_duration,
    html_to_markdown,
    parse_date_string,
    summary_prefix,
    validate_url,
    visible_text,
)


def test_clean_html_resolves_relative_urls_with_base():
    html = '<p><a href="details.html">Read more</a><img src="../img/photo.png" alt="Photo"/></p>'
    markdown = clean_html_to_markdown(html, base_url="https://example.com/articles/2025/")

    assert "[Read more](https://example.com/articles/2025/details.html)" in markdown
    assert "![Photo](https://example.com/articles/img/photo.png)" in markdown


def test_clean_html_relative_urls_without_base_neutralized():
    html = '<p><a href="details.html">Read more</a><img src="img/photo.png" alt="Photo"/></p>'
    markdown = clean_html_to_markdown(html)

    assert "[Read more](#)" in markdown
    assert "img/photo.png" not in markdown


def test_clean_html_strips_scripts_and_media():
    html = (
        '<p onclick="steal()">Hello</p><script>alert(1)</script>'
        '<video src="https://example.com/v.mp4"></video><mpvoice voice_encode_fileid="x"></mpvoice>'
        '<a href="javascript:alert(1)">bad</a>'
    )
    markdown = clean_html_to_markdown(html)

    assert "Hello" in markdown
    assert "alert" not in markdown
    assert "v.mp4" not in markdown


def test_image_rule_with_title():
    markdown = html_to_markdown('<img src="https://example.com/a.png" alt="A chart" title="Q1 results">')

    assert markdown == '![A chart](https://example.com/a.png "Q1 results")'


def test_image_without_src_is_dropped():
    assert html_to_markdown('<p>Before<img alt="ghost">After</p>') == "BeforeAfter"


def test_headings_and_code_blocks():
    markdown = html_to_markdown("<h2>Setup</h2><pre><code>pip install x</code></pre><ul><li>one</li></ul>")

    assert "## Setup" in markdown
    assert "```" in markdown
    assert "pip install x" in markdown
    assert "- one" in markdown
    assert "\n\n\n" not in markdown


def test_summary_prefix():
    assert summary_prefix("", 10) == ""
    assert summary_prefix("short", 10) == "short"
    assert summary_prefix("exactly10!", 10) == "exactly10!"
    assert summary_prefix("a" * 15, 10) == "a" * 10 + "..."


def test_first_non_empty():
    assert first_non_empty(None, "  ", "", "value", "later") == "value"
    assert first_non_empty(None, "") == ""
    assert first_non_empty(None, default=None) is None


def test_visible_text():
    assert visible_text("<p>Hello <b>world</b></p><script>x()</script>") == "Hello world"
    assert visible_text(None) == ""


@pytest.mark.parametrize("value", [
    "Tue, 05 Mar 2024 10:00:00 GMT",
    "Tue, 05 Mar 2024 18:00:00 +0800",
    "2024-03-05T10:00:00Z",
    "2024-03-05T10:00:00+00:00",
    "1709632800",
    "05 Mar 2024 10:00:00 +0000",
])
def test_parse_date_string_formats(value):
    assert parse_date_string(value) == datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc)


def test_parse_date_string_rejects_garbage():
    assert parse_date_string("sometime last week") is None
    assert parse_date_string("") is None
    assert parse_date_string(None) is None


def test_validate_url():
    assert validate_url("https://example.com/feed")
    assert not validate_url("ftp://example.com/feed")
    assert not validate_url("   ")


def test_format_duration():
    assert format_duration(0) == "0s"
    assert format_duration(3725) == "1h 2m 5s"


def test_clean_html_drops_tracking_pixels_and_handlers():
    html = (
        '<p>Body</p><img src="https://t.example.com/pixel.gif" alt="track">'
        '<img src="https://example.com/dot.gif" height="1" alt="dot">'
        '<a href=" JavaScript:void(0)" onmouseover="x()">link</a>'
        '<a href="mailto:desk@example.com">Email</a>'
    )
    markdown = clean_html_to_markdown(html)

    assert "pixel.gif" not in markdown
    assert "dot.gif" not in markdown
    assert "void" not in markdown
    assert "[Email](mailto:desk@example.com)" in markdown


@pytest.mark.asyncio
async def test_rate_limiter_spaces_requests():
    limiter = RateLimiter(600)
    started = time.monotonic()
    for _ in range(3):
        await limiter.acquire()

    assert time.monotonic() - started >= 0.15


@pytest.mark.asyncio
async def test_rate_limiter_disabled():
    limiter = RateLimiter(0)
    await limiter.acquire()
    assert limiter.last_request_time == 0
