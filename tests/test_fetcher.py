import asyncio

import pytest
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer

from config import config
from errors import FetchErrorKind
from fetcher import FEED_ACCEPT, PageFetcher
from models import FetchResult


def build_app(seen_headers: dict) -> web.Application:
    async def page(request):
        seen_headers.update(request.headers)
        return web.Response(text="<html><body><p>你好, world</p></body></html>", content_type="text/html")

    async def feed(request):
        seen_headers.update(request.headers)
        return web.Response(text="<rss version=\"2.0\"><channel></channel></rss>", content_type="application/rss+xml")

    async def missing(request):
        return web.Response(status=404, text="not here")

    async def slow(request):
        await asyncio.sleep(1)
        return web.Response(text="too late")

    async def moved(request):
        raise web.HTTPFound(location="/page")

    async def loop(request):
        raise web.HTTPFound(location="/loop")

    app = web.Application()
    app.router.add_get("/page", page)
    app.router.add_get("/feed.xml", feed)
    app.router.add_get("/missing", missing)
    app.router.add_get("/slow", slow)
    app.router.add_get("/moved", moved)
    app.router.add_get("/loop", loop)
    return app


async def start_server(seen_headers: dict) -> TestServer:
    server = TestServer(build_app(seen_headers))
    await server.start_server()
    return server


@pytest.mark.asyncio
async def test_fetch_page_with_browser_headers():
    seen = {}
    server = await start_server(seen)
    try:
        async with PageFetcher(requests_per_minute=0) as fetcher:
            result = await fetcher.fetch(str(server.make_url("/page")))
    finally:
        await server.close()

    assert isinstance(result, FetchResult)
    assert result.status == 200
    assert "你好" in result.text
    assert result.content_type.startswith("text/html")
    assert seen["User-Agent"] == config.USER_AGENT
    assert seen["Accept-Language"] == config.ACCEPT_LANGUAGE


@pytest.mark.asyncio
async def test_fetch_feed_sends_feed_accept():
    seen = {}
    server = await start_server(seen)
    try:
        async with PageFetcher(requests_per_minute=0) as fetcher:
            result = await fetcher.fetch_feed(str(server.make_url("/feed.xml")))
    finally:
        await server.close()

    assert isinstance(result, FetchResult)
    assert seen["Accept"] == FEED_ACCEPT


@pytest.mark.asyncio
async def test_redirect_reports_final_url():
    server = await start_server({})
    try:
        async with PageFetcher(requests_per_minute=0) as fetcher:
            result = await fetcher.fetch(str(server.make_url("/moved")))
    finally:
        await server.close()

    assert isinstance(result, FetchResult)
    assert result.url.endswith("/page")


@pytest.mark.asyncio
async def test_non_2xx_is_http_status_error(metrics):
    server = await start_server({})
    try:
        async with PageFetcher(requests_per_minute=0, metrics=metrics) as fetcher:
            result = await fetcher.fetch(str(server.make_url("/missing")))
    finally:
        await server.close()

    assert result.kind == FetchErrorKind.HTTP_STATUS
    assert result.status == 404
    assert metrics.counts["fetch.errors"] == 1


@pytest.mark.asyncio
async def test_timeout_is_classified():
    server = await start_server({})
    try:
        async with PageFetcher(requests_per_minute=0) as fetcher:
            result = await fetcher.fetch(str(server.make_url("/slow")), timeout=0.2)
    finally:
        await server.close()

    assert result.kind == FetchErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_redirect_loop_is_http_status_error():
    server = await start_server({})
    try:
        async with PageFetcher(requests_per_minute=0) as fetcher:
            result = await fetcher.fetch(str(server.make_url("/loop")))
    finally:
        await server.close()

    assert result.kind == FetchErrorKind.HTTP_STATUS


@pytest.mark.asyncio
async def test_connection_refused():
    async with PageFetcher(requests_per_minute=0) as fetcher:
        result = await fetcher.fetch("http://127.0.0.1:1/")

    assert result.kind == FetchErrorKind.CONNECTION_FAILED


@pytest.mark.asyncio
async def test_invalid_url_is_not_requested():
    async with PageFetcher(requests_per_minute=0) as fetcher:
        result = await fetcher.fetch("not a url")
        assert fetcher.request_count == 0

    assert result.kind == FetchErrorKind.UNKNOWN


@pytest.mark.asyncio
async def test_injected_session_is_left_open():
    async with ClientSession() as session:
        fetcher = PageFetcher(session, requests_per_minute=0)
        await fetcher.close()
        assert not session.closed
