import asyncio
import io
from typing import Dict, List, Optional, Tuple

import httpx
import numpy as np
import pytest
from PIL import Image

import preview_service
from assets import PreviewAssets
from badge_provider import BadgeProvider
from badge_validator import BadgeValidator
from config import PreviewSettings
from errors import UpstreamFetchError, UploadError
from freshness_cache import InMemoryCache
from models import BadgeRecord
from upload_pipeline import BackgroundTaskSupervisor, ImageUploader, UploadPipeline

TRUSTED_KEY = "trusted-secret"
CRON_SECRET = "cron-secret"


def encode_image(color: Tuple[int, int, int], fmt: str = "PNG", size: Tuple[int, int] = (64, 64)) -> bytes:
    with io.BytesIO() as buffer:
        Image.new("RGB", size, color).save(buffer, format=fmt)
        return buffer.getvalue()


def truncated_png(size: Tuple[int, int] = (200, 200)) -> bytes:
    """First half of a noisy PNG: the header parses, the pixel data does not."""
    pixels = np.random.default_rng(7).integers(0, 256, (size[1], size[0], 3), dtype=np.uint8)
    with io.BytesIO() as buffer:
        Image.fromarray(pixels).save(buffer, format="PNG")
        data = buffer.getvalue()
    return data[: len(data) // 2]


def badge_payload(index: int, created: str, image_url: Optional[str] = None) -> Dict:
    return {
        "tokenId": str(1000 + index),
        "created": created,
        "event": {
            "id": index,
            "name": f"Event {index}",
            "image_url": image_url or f"https://assets.poap.xyz/badge-{index}.png",
        },
    }


def image_transport(images: Dict[str, bytes], failures: Optional[Dict[str, int]] = None) -> httpx.MockTransport:
    failures = failures or {}

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url in failures:
            return httpx.Response(failures[url])
        if url in images:
            return httpx.Response(200, content=images[url])
        return httpx.Response(404)

    return httpx.MockTransport(handler)


class FakeProvider(BadgeProvider):
    def __init__(self, badges: Optional[List[Dict]] = None, fail: bool = False, collectors: Optional[List[str]] = None):
        super().__init__(client=None, api_key="unused")
        self.badges = badges or []
        self.fail = fail
        self.collectors = collectors or []
        self.calls: List[str] = []
        self.collector_calls: List[Tuple[int, int]] = []

    async def get_badges(self, address: str):
        self.calls.append(address)
        if self.fail:
            raise UpstreamFetchError("provider unavailable")
        return [BadgeRecord.model_validate(badge) for badge in self.badges]

    async def get_recent_collectors(self, since: int, until: int):
        self.collector_calls.append((since, until))
        return list(self.collectors)


class FakeUploader(ImageUploader):
    def __init__(self, delay: float = 0.0, fail: bool = False, url: str = "https://imagedelivery.net/abc/preview/public"):
        self.delay = delay
        self.fail = fail
        self.url = url
        self.uploads: List[Tuple[str, int]] = []
        self.finished = 0

    async def upload(self, data: bytes, file_name: str) -> str:
        self.uploads.append((file_name, len(data)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise UploadError("cdn rejected the upload")
        self.finished += 1
        return self.url


class RecordingCache(InMemoryCache):
    def __init__(self):
        super().__init__()
        self.gets: List[str] = []
        self.sets: List[str] = []

    async def get(self, key):
        self.gets.append(key)
        return await super().get(key)

    async def set(self, key, entry):
        self.sets.append(key)
        await super().set(key, entry)


def make_context(
    *,
    provider: Optional[FakeProvider] = None,
    uploader: Optional[FakeUploader] = None,
    cache: Optional[RecordingCache] = None,
    images: Optional[Dict[str, bytes]] = None,
    failures: Optional[Dict[str, int]] = None,
    **settings_overrides,
) -> preview_service.PreviewContext:
    options = {"trusted_caller_key": TRUSTED_KEY, "cron_secret": CRON_SECRET, "upload_drain_seconds": 5.0}
    options.update(settings_overrides)
    settings = PreviewSettings(**options)
    cache = cache or RecordingCache()
    client = httpx.AsyncClient(transport=image_transport(images or {}, failures))
    assets = PreviewAssets(
        background=encode_image((0, 0, 255), size=(1200, 630)),
        foreground=None,
        default_badge=encode_image((128, 128, 128)),
        font=None,
    )
    return preview_service.PreviewContext(
        settings=settings,
        cache=cache,
        provider=provider or FakeProvider(),
        validator=BadgeValidator(client),
        uploads=UploadPipeline(uploader or FakeUploader(), cache, BackgroundTaskSupervisor()),
        assets=assets,
        http_client=client,
    )


@pytest.fixture
def install_context():
    def _install(context):
        preview_service.app.state.context = context
        return context

    yield _install
    preview_service.app.state.context = None
