import asyncio
import logging

import httpx
import pytest

from conftest import FakeUploader, RecordingCache
from errors import CacheWriteError, UploadError
from freshness_cache import is_fresh
from performance_monitor import PerformanceMonitor
from upload_pipeline import (
    BackgroundTaskSupervisor,
    CloudflareImagesUploader,
    UploadPipeline,
    preview_file_name,
)

ADDRESS = "0x1234567890abcdef1234567890abcdef12345678"
VARIANT = "https://imagedelivery.net/hash/image-id/public"


def _cloudflare(handler) -> CloudflareImagesUploader:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CloudflareImagesUploader(client, account_id="acct", api_token="token")


def _pipeline(uploader, cache=None) -> UploadPipeline:
    return UploadPipeline(uploader, cache or RecordingCache(), BackgroundTaskSupervisor())


class FailingWriteCache(RecordingCache):
    async def set(self, key, entry):
        raise CacheWriteError("kv unavailable")


def test_preview_file_name_uses_address():
    assert preview_file_name(ADDRESS) == f"{ADDRESS}.png"


@pytest.mark.parametrize("address", ["", "../etc/passwd", "a/b", "..", "a\\b"])
def test_preview_file_name_rejects_unsafe_names(address):
    with pytest.raises(UploadError):
        preview_file_name(address)


def test_cloudflare_upload_returns_first_variant():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = request.read()
        return httpx.Response(
            200,
            json={"success": True, "result": {"id": "image-id", "variants": [VARIANT, VARIANT + "2"]}},
        )

    url = asyncio.run(_cloudflare(handler).upload(b"PNGDATA", f"{ADDRESS}.png"))

    assert url == VARIANT
    assert seen["url"] == "https://api.cloudflare.com/client/v4/accounts/acct/images/v1"
    assert seen["auth"] == "Bearer token"
    assert b'filename="' + ADDRESS.encode() + b'.png"' in seen["body"]
    assert b"PNGDATA" in seen["body"]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={"success": False, "errors": [{"code": 5400, "message": "bad image"}]}),
        httpx.Response(200, json={"success": True, "result": {"variants": []}}),
        httpx.Response(200, text="not json"),
        httpx.Response(403, json={"success": False}),
    ],
)
def test_cloudflare_upload_failures_raise_upload_error(response):
    with pytest.raises(UploadError):
        asyncio.run(_cloudflare(lambda request: response).upload(b"PNGDATA", "x.png"))


def test_pipeline_writes_fresh_cache_entry():
    cache = RecordingCache()
    uploader = FakeUploader(url=VARIANT)

    async def run():
        url = await _pipeline(uploader, cache).upload(b"PNGDATA", ADDRESS, PerformanceMonitor(ADDRESS))
        return url, await cache.get(ADDRESS)

    url, entry = asyncio.run(run())

    assert url == VARIANT
    assert uploader.uploads == [(f"{ADDRESS}.png", 7)]
    assert entry.url == VARIANT
    assert is_fresh(entry)


def test_pipeline_upload_failure_leaves_cache_untouched():
    cache = RecordingCache()
    monitor = PerformanceMonitor(ADDRESS)

    url = asyncio.run(_pipeline(FakeUploader(fail=True), cache).upload(b"PNGDATA", ADDRESS, monitor))

    assert url is None
    assert cache.sets == []
    assert monitor.status == "error"


def test_pipeline_cache_write_failure_is_logged_not_raised():
    url = asyncio.run(_pipeline(FakeUploader(), FailingWriteCache()).upload(b"PNGDATA", ADDRESS, PerformanceMonitor(ADDRESS)))

    assert url is None


def test_spawned_upload_completes_in_background():
    cache = RecordingCache()
    pipeline = _pipeline(FakeUploader(delay=0.01), cache)

    async def run():
        task = pipeline.spawn(b"PNGDATA", ADDRESS)
        assert pipeline.supervisor.pending == 1
        await pipeline.supervisor.drain(timeout=5)
        return task

    task = asyncio.run(run())

    assert task.done() and task.result() is not None
    assert cache.sets == [ADDRESS]
    assert pipeline.supervisor.pending == 0


def test_drain_cancels_stragglers():
    supervisor = BackgroundTaskSupervisor()

    async def run():
        slow = supervisor.spawn(asyncio.sleep(10), name="slow")
        quick = supervisor.spawn(asyncio.sleep(0), name="quick")
        await supervisor.drain(timeout=0.05)
        return slow, quick

    slow, quick = asyncio.run(run())

    assert slow.cancelled()
    assert quick.done() and not quick.cancelled()
    assert supervisor.pending == 0


def test_supervisor_logs_failed_tasks(caplog, monkeypatch):
    monkeypatch.setattr(logging.getLogger("poap_preview"), "propagate", True)
    supervisor = BackgroundTaskSupervisor()

    async def boom():
        raise RuntimeError("boom")

    async def run():
        supervisor.spawn(boom(), name="boom-task")
        await supervisor.drain(timeout=1)

    with caplog.at_level("ERROR", logger="poap_preview.upload"):
        asyncio.run(run())

    assert "boom-task failed" in caplog.text
