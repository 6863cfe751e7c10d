import asyncio
import base64
import binascii
import io
import logging
from typing import Dict, Tuple
from urllib.parse import unquote_to_bytes

import httpx
from PIL import Image, UnidentifiedImageError

from errors import DecodeError, FetchError
from models import ImageDimensions, ValidatedImage

logger = logging.getLogger("poap_preview.badges")

PNG_DATA_URL_PREFIX = "data:image/png;base64,"


def read_image_metadata(data: bytes) -> Tuple[str, int, int]:
    """Return ``(format, width, height)`` for encoded image bytes.

    The pixel data is decoded as well, so truncated or oversized images fail here
    rather than in the compositor.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            width, height = image.size
            image_format = (image.format or "unknown").lower()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(f"Unreadable image data: {exc}") from exc
    if not width or not height:
        raise DecodeError("Invalid image metadata")
    return image_format, width, height


def convert_webp_to_png(data: bytes) -> bytes:
    with Image.open(io.BytesIO(data)) as image, io.BytesIO() as buffer:
        image.save(buffer, format="PNG")
        return buffer.getvalue()


def to_png_data_url(png_bytes: bytes) -> str:
    return PNG_DATA_URL_PREFIX + base64.b64encode(png_bytes).decode("ascii")


def decode_data_url(url: str) -> bytes:
    header, sep, payload = url.partition(",")
    if not sep or not header.startswith("data:"):
        raise DecodeError("Malformed data URL")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError(f"Malformed base64 payload: {exc}") from exc
    return unquote_to_bytes(payload)


class BadgeValidator:
    """Validates badge artwork and normalizes webp images into PNG data URLs.

    Two process-wide tables back this class:

    * ``_cache`` maps a source URL to its ``ValidatedImage``. Badge artwork is immutable
      once minted, so entries are never evicted.
    * ``_in_flight`` maps a source URL to the task currently fetching and converting it.
      Concurrent callers for the same URL await that task instead of starting their own,
      so N simultaneous first requests produce exactly one conversion. The entry is
      removed once the task settles, after a successful result has been cached.

    Lookup and registration happen with no ``await`` in between, which is what makes the
    registry safe on a single event loop without an explicit lock.
    """

    def __init__(self, client: httpx.AsyncClient):
        self.client = client
        self._cache: Dict[str, ValidatedImage] = {}
        self._in_flight: Dict[str, "asyncio.Task[ValidatedImage]"] = {}

    async def validate_and_process(self, url: str) -> ValidatedImage:
        cached = self._cache.get(url)
        if cached is not None:
            return cached

        task = self._in_flight.get(url)
        if task is None:
            task = asyncio.ensure_future(self._process(url))
            self._in_flight[url] = task
        # Shielded so a cancelled caller does not cancel the conversion other callers share.
        return await asyncio.shield(task)

    async def _process(self, url: str) -> ValidatedImage:
        try:
            return await self._fetch_and_convert(url)
        finally:
            self._in_flight.pop(url, None)

    async def _fetch_and_convert(self, url: str) -> ValidatedImage:
        data = await self.fetch(url)
        image_format, width, height = await asyncio.to_thread(read_image_metadata, data)

        final_url = url
        if image_format == "webp":
            try:
                png_bytes = await asyncio.to_thread(convert_webp_to_png, data)
            except (OSError, ValueError) as exc:
                raise DecodeError(f"Failed to convert webp badge {url}: {exc}") from exc
            final_url = to_png_data_url(png_bytes)
            logger.info("Converted webp badge %s to PNG (%d bytes)", url, len(png_bytes))

        validated = ValidatedImage(url=final_url, dimensions=ImageDimensions(width=width, height=height))
        self._cache[url] = validated
        return validated

    async def fetch(self, url: str) -> bytes:
        try:
            response = await self.client.get(url, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise FetchError(f"Failed to fetch image {url}: {exc}") from exc
        if not response.is_success:
            raise FetchError(f"Failed to fetch image {url}: {response.status_code} {response.reason_phrase}")
        return response.content

    async def read_source(self, url: str) -> bytes:
        """Return the encoded bytes behind a validated image URL."""
        if url.startswith("data:"):
            return decode_data_url(url)
        return await self.fetch(url)

    async def read_verified(self, url: str) -> bytes:
        """Like ``read_source``, but the returned bytes are known to decode in full."""
        data = await self.read_source(url)
        await asyncio.to_thread(read_image_metadata, data)
        return data

    def clear_cache(self) -> None:
        self._cache.clear()
