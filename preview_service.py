import asyncio
import hmac
import io
import json
import os
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError
from starlette.background import BackgroundTask

from assets import PreviewAssets, load_assets
from badge_provider import BadgeProvider
from badge_validator import BadgeValidator
from compositor import compose_preview, select_recent_badges
from config import PreviewSettings, configure_logging, load_environment
from errors import (
    AuthError,
    DecodeError,
    FetchError,
    InputValidationError,
    MethodNotSupportedError,
    PayloadTooLargeError,
    PreviewError,
    RenderError,
)
from freshness_cache import CloudflareKVCache, FreshnessCache, InMemoryCache, is_fresh
from metrics import og_image_requests_total, og_image_size_bytes, refresh_addresses_total, registry
from models import BadgeRecord, TrustedPreviewRequest, latest_moment_url
from performance_monitor import STATUS_ERROR, PerformanceMonitor
from upload_pipeline import (
    BackgroundTaskSupervisor,
    CloudflareImagesUploader,
    ImageUploader,
    UploadPipeline,
)

load_environment()
logger = configure_logging(os.getenv("PREVIEW_LOG_FILE"))

PREVIEW_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
ALLOWED_PREVIEW_METHODS = ("GET", "POST")
CACHE_CONTROL = "public, max-age=86400"
LAST_REFRESH_KEY = "lastUpdateTimestampOfPOAP"
# 2024-05-13T17:00:00Z shifted by the +9h the refresh job has always used.
INITIAL_REFRESH_TIMESTAMP = int(datetime(2024, 5, 14, 2, 0, tzinfo=timezone.utc).timestamp())


@dataclass
class PreviewContext:
    """Process-wide collaborators shared by every request."""

    settings: PreviewSettings
    cache: FreshnessCache
    provider: BadgeProvider
    validator: BadgeValidator
    uploads: UploadPipeline
    assets: PreviewAssets
    http_client: Optional[httpx.AsyncClient] = None


def build_uploader(settings: PreviewSettings, client: httpx.AsyncClient) -> ImageUploader:
    if not (settings.cloudflare_account_id and settings.cloudflare_images_api_token):
        logger.warning(
            "Cloudflare Images is not configured; uploads will fail until CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_IMAGES_API_TOKEN are set."
        )
    return CloudflareImagesUploader(
        client,
        settings.cloudflare_account_id or "",
        settings.cloudflare_images_api_token or "",
    )


def build_context(settings: PreviewSettings) -> PreviewContext:
    client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    if settings.kv_configured:
        cache: FreshnessCache = CloudflareKVCache(
            client,
            settings.cloudflare_account_id,
            settings.cloudflare_kv_namespace_id,
            settings.cloudflare_kv_api_token,
        )
    else:
        logger.warning("Cloudflare KV is not configured; using a process-local cache.")
        cache = InMemoryCache()
    if not settings.trusted_caller_key:
        logger.warning("TRUSTED_CALLER_KEY is not configured; POST previews will be rejected.")
    return PreviewContext(
        settings=settings,
        cache=cache,
        provider=BadgeProvider(client, settings.poap_api_key),
        validator=BadgeValidator(client),
        uploads=UploadPipeline(build_uploader(settings, client), cache, BackgroundTaskSupervisor()),
        assets=load_assets(settings.assets_dir),
        http_client=client,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    built = None
    if getattr(app.state, "context", None) is None:
        built = build_context(PreviewSettings.from_env())
        app.state.context = built
    context = app.state.context
    try:
        yield
    finally:
        await context.uploads.supervisor.drain(context.settings.upload_drain_seconds)
        if built is not None:
            await built.http_client.aclose()
            app.state.context = None


app = FastAPI(title="POAP Preview Service", lifespan=lifespan)


def get_context(request: Request) -> PreviewContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=503, detail={"message": "Service is not initialised."})
    return context


def new_request_id() -> str:
    return uuid.uuid4().hex[:12]


def http_error(exc: Exception, request_id: str) -> HTTPException:
    if isinstance(exc, HTTPException):
        return exc
    status_code = exc.status_code if isinstance(exc, PreviewError) else 500
    message = str(exc) if status_code < 500 else "Failed to generate image."
    headers = {"Allow": ", ".join(ALLOWED_PREVIEW_METHODS)} if status_code == 405 else None
    return HTTPException(
        status_code=status_code,
        detail={"request_id": request_id, "message": message},
        headers=headers,
    )


def resolve_address(path_address: Optional[str], query_values: List[str]) -> str:
    values = [path_address] if path_address is not None else query_values
    if len(values) != 1:
        raise InputValidationError("Invalid address: expected exactly one address.")
    address = (values[0] or "").strip()
    if not address:
        raise InputValidationError("Invalid address")
    return address


async def read_capped_body(request: Request, limit: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLargeError(f"Request body exceeds the {limit} byte limit.")
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise PayloadTooLargeError(f"Request body exceeds the {limit} byte limit.")
    return bytes(body)


def parse_trusted_request(body: bytes, expected_key: Optional[str]) -> TrustedPreviewRequest:
    try:
        raw = json.loads(body or b"null")
    except ValueError as exc:
        raise InputValidationError("Request body must be JSON.") from exc
    if not isinstance(raw, dict):
        raise InputValidationError("Request body must be a JSON object.")

    supplied = str(raw.get("poapapikey") or "")
    if not expected_key or not hmac.compare_digest(supplied.encode("utf-8"), expected_key.encode("utf-8")):
        raise AuthError("Unauthorized")
    if raw.get("poaps") is None:
        raise InputValidationError("Missing poaps")
    try:
        return TrustedPreviewRequest.model_validate(raw)
    except ValidationError as exc:
        raise InputValidationError(f"Invalid poaps payload ({exc.error_count()} error(s)).") from exc


async def load_badge_image(context: PreviewContext, badge: BadgeRecord, request_id: str) -> bytes:
    try:
        validated = await context.validator.validate_and_process(badge.event.image_url)
        return await context.validator.read_verified(validated.url)
    except (FetchError, DecodeError) as exc:
        logger.warning(
            "request %s: badge %s (%s) uses the default image: %s",
            request_id,
            badge.id,
            badge.event.name,
            exc,
        )
        return context.assets.default_badge


async def load_background(context: PreviewContext, url: Optional[str], request_id: str) -> bytes:
    if not url:
        return context.assets.background
    try:
        validated = await context.validator.validate_and_process(url)
        return await context.validator.read_verified(validated.url)
    except (FetchError, DecodeError) as exc:
        logger.warning("request %s: moment background %s unavailable, using default: %s", request_id, url, exc)
        return context.assets.background


async def render_preview(
    context: PreviewContext,
    address: str,
    monitor: PerformanceMonitor,
    *,
    trusted: Optional[TrustedPreviewRequest] = None,
    request_id: str,
) -> bytes:
    monitor.start("fetch_badges")
    if trusted is not None:
        badges = list(trusted.poaps or [])
        background_url = latest_moment_url(trusted.latest_moments)
    else:
        badges = await context.provider.get_badges(address)
        background_url = None
    monitor.end("fetch_badges")

    selected = select_recent_badges(badges)
    logger.info("request %s: %s holds %d POAPs, drawing %d", request_id, address, len(badges), len(selected))

    monitor.start("validate_images")
    background, *badge_images = await asyncio.gather(
        load_background(context, background_url, request_id),
        *(load_badge_image(context, badge, request_id) for badge in selected),
    )
    monitor.end("validate_images")

    monitor.start("render")
    try:
        png_bytes = await asyncio.to_thread(
            compose_preview,
            background,
            badge_images,
            address,
            context.assets.font,
            context.assets.foreground,
        )
    except RenderError:
        raise
    except Exception as exc:
        raise RenderError(f"Compositing failed: {exc}") from exc
    monitor.end("render")
    return png_bytes


async def spawn_upload(context: PreviewContext, png_bytes: bytes, address: str, request_id: str) -> None:
    try:
        context.uploads.spawn(png_bytes, address)
    except Exception:
        logger.exception("request %s: could not schedule upload for %s", request_id, address)


async def render_or_redirect(
    context: PreviewContext,
    address: str,
    *,
    trusted: Optional[TrustedPreviewRequest] = None,
    request_id: Optional[str] = None,
) -> Response:
    """Serve a fresh cached preview by redirect, otherwise render it and schedule the upload.

    The upload is attached as a response background task and only spawns the detached
    upload once the image has been sent, so its latency never reaches the client.
    """
    request_id = request_id or new_request_id()
    monitor = PerformanceMonitor(address)
    monitor.start("total")
    try:
        monitor.start("cache_check")
        entry = await context.cache.get(address)
        monitor.end("cache_check")
        if is_fresh(entry):
            monitor.set_cache_hit(True)
            logger.info("request %s: cache hit for %s -> %s", request_id, address, entry.url)
            return RedirectResponse(entry.url, status_code=302)

        png_bytes = await render_preview(context, address, monitor, trusted=trusted, request_id=request_id)
        og_image_size_bytes.labels(address=address).set(len(png_bytes))
        return StreamingResponse(
            io.BytesIO(png_bytes),
            media_type="image/png",
            headers={"Cache-Control": CACHE_CONTROL},
            background=BackgroundTask(spawn_upload, context, png_bytes, address, request_id),
        )
    except Exception as exc:
        monitor.set_status(STATUS_ERROR)
        logger.error("request %s: preview for %s failed: %s", request_id, address, exc, exc_info=exc)
        raise http_error(exc, request_id) from exc
    finally:
        monitor.end("total")
        og_image_requests_total.labels(status=monitor.status, cache_hit=str(monitor.cache_hit).lower()).inc()
        logger.info("request %s: %s%s", request_id, address, monitor.get_summary())


async def _handle_preview(request: Request, path_address: Optional[str]) -> Response:
    context = get_context(request)
    request_id = new_request_id()
    try:
        if request.method not in ALLOWED_PREVIEW_METHODS:
            raise MethodNotSupportedError(f"Method {request.method} not allowed")
        address = resolve_address(path_address, request.query_params.getlist("address"))
        trusted = None
        if request.method == "POST":
            body = await read_capped_body(request, context.settings.max_post_bytes)
            trusted = parse_trusted_request(body, context.settings.trusted_caller_key)
    except PreviewError as exc:
        logger.warning("request %s: rejected %s %s: %s", request_id, request.method, request.url.path, exc)
        og_image_requests_total.labels(status=STATUS_ERROR, cache_hit="false").inc()
        raise http_error(exc, request_id) from exc
    return await render_or_redirect(context, address, trusted=trusted, request_id=request_id)


@app.api_route("/poap/v/{address}", methods=PREVIEW_METHODS)
async def preview_for_address(address: str, request: Request):
    return await _handle_preview(request, address)


@app.api_route("/poap/v", methods=PREVIEW_METHODS)
async def preview_for_query(request: Request):
    return await _handle_preview(request, None)


async def refresh_address(context: PreviewContext, address: str) -> str:
    """Re-render and upload one address unless its cached preview is still fresh."""
    request_id = f"refresh-{new_request_id()}"
    monitor = PerformanceMonitor(address)
    monitor.start("total")
    outcome = "failed"
    try:
        if is_fresh(await context.cache.get(address)):
            monitor.set_cache_hit(True)
            outcome = "fresh"
            return outcome
        png_bytes = await render_preview(context, address, monitor, request_id=request_id)
        final_url = await context.uploads.upload(png_bytes, address, PerformanceMonitor(address))
        outcome = "refreshed" if final_url else "failed"
        return outcome
    except Exception as exc:
        monitor.set_status(STATUS_ERROR)
        logger.error("request %s: refresh of %s failed: %s", request_id, address, exc, exc_info=exc)
        return outcome
    finally:
        monitor.end("total")
        refresh_addresses_total.labels(outcome=outcome).inc()


@app.api_route("/cron/fresh-poap", methods=PREVIEW_METHODS)
async def refresh_recent_mints(request: Request):
    context = get_context(request)
    secret = context.settings.cron_secret
    authorization = request.headers.get("authorization") or ""
    if not secret or not hmac.compare_digest(authorization.encode("utf-8"), f"Bearer {secret}".encode("utf-8")):
        raise HTTPException(status_code=401, detail={"message": "Unauthorized"})
    if request.method != "POST":
        raise HTTPException(status_code=405, detail={"message": "Method not allowed"}, headers={"Allow": "POST"})

    started = time.perf_counter()
    try:
        raw_timestamp = await context.cache.get_raw(LAST_REFRESH_KEY)
        since = int(raw_timestamp) if raw_timestamp else INITIAL_REFRESH_TIMESTAMP
        until = int(time.time())
        addresses = await context.provider.get_recent_collectors(since, until)

        outcomes = {"fresh": 0, "refreshed": 0, "failed": 0}
        for address in addresses:
            outcomes[await refresh_address(context, address)] += 1

        await context.cache.set_raw(LAST_REFRESH_KEY, str(until))
    except Exception:
        logger.exception("Error updating POAPs")
        return JSONResponse(status_code=500, content={"message": "Failed to update POAPs"})

    logger.info(
        "Refreshed %d of %d addresses in %.2fs (%d fresh, %d failed)",
        outcomes["refreshed"],
        len(addresses),
        time.perf_counter() - started,
        outcomes["fresh"],
        outcomes["failed"],
    )
    return {
        "message": "POAPs updated successfully",
        "addresses": len(addresses),
        "refreshed": outcomes["refreshed"],
        "failed": outcomes["failed"],
    }


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/")
async def root():
    return {
        "message": "POAP preview API",
        "preview_endpoint": "/poap/v/{address}",
        "docs": "/docs",
        "example": "curl -L http://localhost:8000/poap/v/0x0000000000000000000000000000000000000000 --output preview.png",
        "example_trusted": (
            'curl -X POST -H "Content-Type: application/json" '
            '-d \'{"poapapikey": "...", "poaps": [...]}\' http://localhost:8000/poap/v/<address> --output preview.png'
        ),
    }
