"""Tests for the resource fetcher against a local aiohttp server."""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from kiosk_sync.cache import FetchError, ResourceFetcher


async def _echo_cache_headers(request):
    return web.json_response({
        "cacheControl": request.headers.get("Cache-Control"),
        "pragma": request.headers.get("Pragma"),
    })


async def _missing(request):
    return web.Response(status=404, text="nope")


def _app():
    app = web.Application()
    app.router.add_get("/headers", _echo_cache_headers)
    app.router.add_get("/missing", _missing)
    return app


def test_resolve_and_origin_check() -> None:
    fetcher = ResourceFetcher("http://kiosk.test/")
    assert fetcher.resolve("/custom.css") == "http://kiosk.test/custom.css"
    assert not fetcher.is_cross_origin("/custom.css")
    assert fetcher.is_cross_origin("https://cdn.test/video.mp4")


@pytest.mark.asyncio
async def test_cache_mode_sets_upstream_directives() -> None:
    async with TestServer(_app()) as server:
        fetcher = ResourceFetcher(str(server.make_url("/")))
        reload = await fetcher.fetch("/headers", cache_mode="reload")
        forced = await fetcher.fetch("/headers", cache_mode="force-cache")
        plain = await fetcher.fetch("/headers")

    assert reload.json_body() == {"cacheControl": "no-cache", "pragma": "no-cache"}
    assert forced.json_body()["cacheControl"] == "max-stale"
    assert plain.json_body()["cacheControl"] is None
    assert plain.content_type.startswith("application/json")


@pytest.mark.asyncio
async def test_error_status_is_a_response() -> None:
    async with TestServer(_app()) as server:
        fetcher = ResourceFetcher(str(server.make_url("/")))
        response = await fetcher.fetch("/missing", no_cors=True)

    assert response.status == 404
    assert not response.ok
    assert not response.opaque


@pytest.mark.asyncio
async def test_unreachable_origin_raises() -> None:
    fetcher = ResourceFetcher("http://127.0.0.1:9", timeout_s=2)
    with pytest.raises(FetchError):
        await fetcher.fetch("/index.html")
