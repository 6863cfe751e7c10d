import asyncio
import logging
import time
from typing import Coroutine, Optional, Set

import httpx

from errors import CacheWriteError, UploadError
from freshness_cache import FreshnessCache, now_millis
from metrics import cloudflare_upload_duration
from models import CacheEntry
from performance_monitor import STATUS_ERROR, PerformanceMonitor

logger = logging.getLogger("poap_preview.upload")

CLOUDFLARE_IMAGES_URL = "https://api.cloudflare.com/client/v4/accounts/{account_id}/images/v1"


def preview_file_name(address: str) -> str:
    candidate = address.replace("\\", "/").strip("/")
    if not candidate or "/" in candidate or ".." in candidate:
        raise UploadError(f"Address {address!r} cannot be used as a file name.")
    return f"{candidate}.png"


class ImageUploader:
    async def upload(self, data: bytes, file_name: str) -> str:
        """Upload ``data`` and return its public URL."""
        raise NotImplementedError


class CloudflareImagesUploader(ImageUploader):
    def __init__(self, client: httpx.AsyncClient, account_id: str, api_token: str):
        self.client = client
        self.url = CLOUDFLARE_IMAGES_URL.format(account_id=account_id)
        self.api_token = api_token

    async def upload(self, data: bytes, file_name: str) -> str:
        try:
            response = await self.client.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_token}"},
                files={"file": (file_name, data, "image/png")},
            )
        except httpx.HTTPError as exc:
            raise UploadError(f"Upload of {file_name} failed: {exc}") from exc
        if response.is_error:
            raise UploadError(f"Upload of {file_name} failed with status {response.status_code}: {response.text[:200]}")
        try:
            body = response.json()
        except ValueError as exc:
            raise UploadError(f"Upload of {file_name} returned a non-JSON body") from exc
        variants = (body.get("result") or {}).get("variants") or []
        if not body.get("success") or not variants:
            raise UploadError(f"Upload of {file_name} was rejected: {body.get('errors')}")
        return variants[0]


class BackgroundTaskSupervisor:
    """Owns detached tasks so they are neither garbage collected nor silently lost."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine, *, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for pending tasks; cancel whatever is still running after ``timeout``."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d background task(s) still running at shutdown", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)


class UploadPipeline:
    def __init__(self, uploader: ImageUploader, cache: FreshnessCache, supervisor: BackgroundTaskSupervisor):
        self.uploader = uploader
        self.cache = cache
        self.supervisor = supervisor

    async def upload(self, data: bytes, address: str, monitor: PerformanceMonitor) -> Optional[str]:
        """Upload a rendered preview and record its URL in the cache.

        Upload and cache-write failures are logged and measured, not raised: by the time
        this runs the client already has its image. Returns the CDN URL, or None when
        nothing was stored.
        """
        monitor.start("total")
        monitor.start("upload")
        started = time.perf_counter()
        status = "success"
        final_url = None
        try:
            final_url = await self.uploader.upload(data, preview_file_name(address))
            monitor.end("upload")
            monitor.start("cache_write")
            await self.cache.set(address, CacheEntry(url=final_url, last_updated=str(now_millis())))
            monitor.end("cache_write")
            logger.info("Uploaded preview for %s -> %s", address, final_url)
        except (UploadError, CacheWriteError) as exc:
            status = STATUS_ERROR
            monitor.set_status(STATUS_ERROR)
            logger.error("Preview upload for %s failed: %s", address, exc)
            final_url = None
        except Exception:
            status = STATUS_ERROR
            monitor.set_status(STATUS_ERROR)
            raise
        finally:
            cloudflare_upload_duration.labels(status=status, address=address).observe(time.perf_counter() - started)
            monitor.end("upload")
            monitor.end("cache_write")
            monitor.end("total")
            logger.info("upload %s:%s", address, monitor.get_summary())
        return final_url

    def spawn(self, data: bytes, address: str) -> asyncio.Task:
        monitor = PerformanceMonitor(address, cache_hit=False)
        return self.supervisor.spawn(self.upload(data, address, monitor), name=f"upload:{address}")
