"""Tests for the resource cache worker: install, activation and request routing."""

import pytest

from kiosk_sync.cache import CacheManifest, CacheRequest, CachedResponse, FetchError, WorkerState


async def _installed(make_worker, manifest):
    worker = make_worker(manifest)
    await worker.install()
    await worker.activate_caches()
    return worker


# ==================== Install / Activate ====================


@pytest.mark.asyncio
async def test_install_caches_critical_and_media(make_worker, manifest, cache_storage) -> None:
    worker = make_worker(manifest)
    report = await worker.install()

    assert worker.state == WorkerState.INSTALLED
    assert sorted(report.cached) == sorted(manifest.critical)
    assert report.failed == {}
    assert report.media_cached == ["/asset/video/1.mp4"]
    assert sorted(cache_storage.open("kiosk-survey-v12").keys()) == sorted(manifest.critical)
    assert cache_storage.open("kiosk-media-v1").keys() == ["/asset/video/1.mp4"]


@pytest.mark.asyncio
async def test_install_survives_individual_failures(make_worker, manifest, fetcher) -> None:
    """Install-time failure of one resource: install completes, activation proceeds."""
    fetcher.routes["/custom.css"] = FetchError("connection reset")
    fetcher.route("/main/index.js", b"", status=404)
    del fetcher.routes["/asset/video/1.mp4"]

    worker = make_worker(manifest)
    report = await worker.install()

    assert set(report.failed) == {"/custom.css", "/main/index.js"}
    assert "HTTP 404" in report.failed["/main/index.js"]
    assert sorted(report.cached) == ["/", "/index.html"]
    assert "/asset/video/1.mp4" in report.media_failed

    await worker.activate_caches()
    assert worker.state == WorkerState.ACTIVATED


@pytest.mark.asyncio
async def test_media_uses_no_cors_force_cache(make_worker, manifest, fetcher) -> None:
    worker = make_worker(manifest)
    await worker.install()

    media_calls = [c for c in fetcher.calls if c["url"] == "/asset/video/1.mp4"]
    assert media_calls[0]["cache_mode"] == "force-cache"
    assert media_calls[0]["no_cors"] is True


@pytest.mark.asyncio
async def test_opaque_media_is_accepted(make_worker, manifest, fetcher, cache_storage) -> None:
    fetcher.routes["/asset/video/1.mp4"] = CachedResponse(status=0, body=b"", opaque=True)
    worker = make_worker(manifest)
    report = await worker.install()

    assert report.media_cached == ["/asset/video/1.mp4"]
    assert cache_storage.open("kiosk-media-v1").match("/asset/video/1.mp4").opaque is True


@pytest.mark.asyncio
async def test_activation_purges_old_generations(make_worker, manifest, cache_storage) -> None:
    """After activating a bumped version only the new identifiers remain."""
    await _installed(make_worker, manifest)
    cache_storage.open("kiosk-runtime-v12").put("/late.js", CachedResponse(status=200, body=b"x"))
    cache_storage.open("someone-elses-cache")

    bumped = CacheManifest(version=13, media_version=2, critical=manifest.critical, media=manifest.media)
    worker = make_worker(bumped)
    await worker.install()
    deleted = await worker.activate_caches()

    assert set(cache_storage.keys()) == {"kiosk-survey-v13", "kiosk-media-v2"}
    assert "kiosk-survey-v12" in deleted
    assert "kiosk-runtime-v12" in deleted
    assert "someone-elses-cache" in deleted


@pytest.mark.asyncio
async def test_media_generation_survives_static_bump(make_worker, manifest, cache_storage, fetcher) -> None:
    await _installed(make_worker, manifest)
    fetcher.calls.clear()

    bumped = CacheManifest(version=13, media_version=1, critical=manifest.critical, media=manifest.media)
    await _installed(make_worker, bumped)

    assert "kiosk-media-v1" in cache_storage.keys()
    assert "/asset/video/1.mp4" not in fetcher.urls()


# ==================== Routing ====================


@pytest.mark.asyncio
async def test_navigation_serves_cached_shell_offline(make_worker, manifest, fetcher) -> None:
    worker = await _installed(make_worker, manifest)
    fetcher.routes.clear()

    response = await worker.handle_request(CacheRequest("/survey/step-3", mode="navigate"))

    assert response.status == 200
    assert response.body == b"<html>shell</html>"


@pytest.mark.asyncio
async def test_navigation_without_shell_or_network(make_worker, fetcher) -> None:
    worker = make_worker(CacheManifest(version=1, media_version=1))
    fetcher.routes.clear()

    response = await worker.handle_request(CacheRequest("/", mode="navigate"))

    assert response.status == 503
    assert response.body == b"Offline"


@pytest.mark.asyncio
async def test_api_network_first_passthrough(make_worker, manifest, fetcher) -> None:
    worker = await _installed(make_worker, manifest)
    fetcher.route("/api/questions", b'{"q": 1}', content_type="application/json")

    response = await worker.handle_request(CacheRequest("/api/questions"))

    assert response.status == 200
    assert response.json_body() == {"q": 1}


@pytest.mark.asyncio
async def test_api_error_status_is_wrapped(make_worker, manifest, fetcher) -> None:
    worker = await _installed(make_worker, manifest)
    fetcher.route("/api/questions", b"oops", status=502)

    response = await worker.handle_request(CacheRequest("/api/questions"))

    assert response.status == 502
    assert response.json_body() == {"error": "Server error", "status": 502, "offline": False}


@pytest.mark.asyncio
async def test_api_offline_is_synthesised(make_worker, manifest) -> None:
    worker = await _installed(make_worker, manifest)

    response = await worker.handle_request(CacheRequest("/api/submit-survey", method="POST", body=b"{}"))

    assert response.status == 503
    assert response.json_body() == {"error": "Offline - request queued", "offline": True}


@pytest.mark.asyncio
async def test_media_cache_first_then_network(make_worker, manifest, fetcher, cache_storage) -> None:
    worker = await _installed(make_worker, manifest)
    fetcher.calls.clear()

    hit = await worker.handle_request(CacheRequest("/asset/video/1.mp4"))
    assert hit.body == b"\x00\x00video"
    assert fetcher.calls == []

    fetcher.route("/asset/video/2.mp4", b"two", content_type="video/mp4")
    miss = await worker.handle_request(CacheRequest("/asset/video/2.mp4"))
    assert miss.body == b"two"
    assert fetcher.calls[-1]["cache_mode"] == "force-cache"
    assert cache_storage.open("kiosk-media-v1").match("/asset/video/2.mp4") is not None


@pytest.mark.asyncio
async def test_media_falls_back_to_runtime_then_503(make_worker, manifest, cache_storage) -> None:
    worker = await _installed(make_worker, manifest)
    cache_storage.open("kiosk-runtime-v12").put("/asset/video/3.mp4", CachedResponse(status=200, body=b"rt"))

    fallback = await worker.handle_request(CacheRequest("/asset/video/3.mp4"))
    assert fallback.body == b"rt"

    missing = await worker.handle_request(CacheRequest("/asset/video/9.mp4"))
    assert missing.status == 503
    assert missing.body == b"Video unavailable offline"


@pytest.mark.asyncio
async def test_get_cache_hit_returns_immediately_and_revalidates(make_worker, manifest, fetcher, cache_storage) -> None:
    worker = await _installed(make_worker, manifest)
    fetcher.route("/main/index.js", b"console.log('v2')")
    fetcher.calls.clear()

    response = await worker.handle_request(CacheRequest("/main/index.js"))
    assert response.body == b"console.log('v1')"

    await worker.drain()
    assert fetcher.urls() == ["/main/index.js"]
    assert cache_storage.open("kiosk-survey-v12").match("/main/index.js").body == b"console.log('v2')"


@pytest.mark.asyncio
async def test_revalidation_throttled_per_resource(make_worker, manifest, fetcher) -> None:
    worker = await _installed(make_worker, manifest)
    fetcher.calls.clear()

    for _ in range(5):
        await worker.handle_request(CacheRequest("/main/index.js"))
    await worker.drain()

    assert fetcher.urls() == ["/main/index.js"]


@pytest.mark.asyncio
async def test_no_revalidation_while_offline_or_paused(make_worker, manifest, fetcher, connectivity) -> None:
    worker = await _installed(make_worker, manifest)
    fetcher.calls.clear()

    connectivity.set_online(False)
    await worker.handle_request(CacheRequest("/main/index.js"))
    connectivity.set_online(True)
    make_worker.state["paused"] = True
    await worker.handle_request(CacheRequest("/custom.css"))
    await worker.drain()

    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_revalidation_failure_is_silent(make_worker, manifest, fetcher) -> None:
    worker = await _installed(make_worker, manifest)
    fetcher.routes["/custom.css"] = FetchError("down")

    response = await worker.handle_request(CacheRequest("/custom.css"))
    await worker.drain()

    assert response.body == b"body{}"


@pytest.mark.asyncio
async def test_retired_worker_does_not_recreate_purged_generations(make_worker, manifest, cache_storage) -> None:
    old = await _installed(make_worker, manifest)
    bumped = CacheManifest(version=13, media_version=1, critical=manifest.critical, media=manifest.media)
    await _installed(make_worker, bumped)
    old.retire()

    assert await old.revalidate(CacheRequest("/custom.css")) is False
    assert await old.revalidate(CacheRequest("/main/index.js")) is False
    assert set(cache_storage.keys()) == {"kiosk-survey-v13", "kiosk-media-v1"}


@pytest.mark.asyncio
async def test_get_miss_populates_runtime(make_worker, manifest, fetcher, cache_storage) -> None:
    worker = await _installed(make_worker, manifest)
    fetcher.route("/icons/new.png", b"png")
    fetcher.route("/gone.js", b"", status=404)

    assert (await worker.handle_request(CacheRequest("/icons/new.png"))).body == b"png"
    assert (await worker.handle_request(CacheRequest("/gone.js"))).status == 404

    runtime = cache_storage.open("kiosk-runtime-v12")
    assert runtime.keys() == ["/icons/new.png"]


@pytest.mark.asyncio
async def test_get_miss_offline(make_worker, manifest) -> None:
    worker = await _installed(make_worker, manifest)
    response = await worker.handle_request(CacheRequest("/not-cached.js"))
    assert response.status == 503
    assert response.body == b"Offline"


@pytest.mark.asyncio
async def test_non_get_passes_through(make_worker, manifest, fetcher) -> None:
    worker = await _installed(make_worker, manifest)
    fetcher.route("/upload", b"ok")

    assert (await worker.handle_request(CacheRequest("/upload", method="PUT"))).body == b"ok"
    fetcher.routes.clear()
    assert (await worker.handle_request(CacheRequest("/upload", method="PUT"))).status == 503


# ==================== Maintenance ====================


@pytest.mark.asyncio
async def test_clear_all(make_worker, manifest, cache_storage, throttle) -> None:
    worker = await _installed(make_worker, manifest)
    throttle.mark("/main/index.js")

    deleted = await worker.clear_all()

    assert set(deleted) == {"kiosk-survey-v12", "kiosk-media-v1"}
    assert cache_storage.keys() == []
    assert len(throttle) == 0


@pytest.mark.asyncio
async def test_recache_media_reloads_each_file(make_worker, manifest, fetcher) -> None:
    manifest.media.append("/asset/video/2.mp4")
    worker = await _installed(make_worker, manifest)
    fetcher.calls.clear()

    results = await worker.recache_media()

    assert results == {"/asset/video/1.mp4": True, "/asset/video/2.mp4": False}
    assert all(c["cache_mode"] == "reload" for c in fetcher.calls)
