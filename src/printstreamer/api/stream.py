"""
Stream Endpoints
================

The four pipeline stages as HTTP resources, plus single-frame capture.

Endpoints:
    GET /stream, /stream/source   - Webcam MJPEG (``?action=snapshot`` for one JPEG)
    GET /stream/overlay           - Overlay MJPEG
    GET /stream/audio             - Live MP3
    GET /stream/mix               - Fragmented MP4 (H.264 + AAC)
    GET /stream/{stage}/capture   - One JPEG from source, overlay or mix
    GET/POST /api/stream/end-after-song
    GET/POST /api/stream/mix-enabled
    GET/POST /api/overlay/enabled
"""

import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse, StreamingResponse

from printstreamer.api.deps import NO_CACHE_HEADERS, error_response, get_services, ok_response
from printstreamer.api.schemas import ToggleRequest
from printstreamer.encoder.supervisor import SpawnError
from printstreamer.media.capture import CaptureError, capture_jpeg, first_frame
from printstreamer.media.streamers import capture_with_encoder
from printstreamer.media.webcam import MJPEG_CONTENT_TYPE
from printstreamer.services import ServiceContainer


logger = logging.getLogger(__name__)

router = APIRouter()


async def _prime(source: AsyncIterator[bytes]) -> Optional[AsyncIterator[bytes]]:
    """
    Pull the first chunk before the response starts so a dead encoder can
    still be answered with a status code. Returns None when nothing came.
    """
    try:
        first = await source.__anext__()
    except (SpawnError, StopAsyncIteration) as e:
        logger.error(f"Stream produced no output: {e or 'ended immediately'}")
        await source.aclose()
        return None

    async def body() -> AsyncIterator[bytes]:
        try:
            yield first
            async for chunk in source:
                yield chunk
        finally:
            await source.aclose()

    return body()


def _jpeg(data: bytes) -> Response:
    return Response(content=data, media_type="image/jpeg", headers=NO_CACHE_HEADERS)


# =============================================================================
# Stages
# =============================================================================

@router.get("/stream")
@router.get("/stream/source")
async def source_stream(
    action: Optional[str] = None,
    services: ServiceContainer = Depends(get_services),
) -> Response:
    """Webcam MJPEG; falls back to a black frame while disabled or down."""
    if action == "snapshot":
        return _jpeg(await services.webcam.snapshot())
    return StreamingResponse(
        services.webcam.stream(),
        media_type=MJPEG_CONTENT_TYPE,
        headers=NO_CACHE_HEADERS,
    )


@router.get("/stream/overlay")
async def overlay_stream(services: ServiceContainer = Depends(get_services)) -> Response:
    return StreamingResponse(
        services.overlay_stream(),
        media_type=MJPEG_CONTENT_TYPE,
        headers=NO_CACHE_HEADERS,
    )


@router.get("/stream/audio")
async def audio_stream(services: ServiceContainer = Depends(get_services)) -> Response:
    """
    Live MP3. Listeners join at the live edge; while music is disabled a
    per-listener silence encoder keeps the connection fed.
    """
    if services.audio.enabled:
        body = services.audio_stream()
    else:
        body = await _prime(services.audio_stream())
        if body is None:
            return error_response("Audio encoder unavailable", 503)
    return StreamingResponse(body, media_type="audio/mpeg", headers=NO_CACHE_HEADERS)


@router.get("/stream/mix")
async def mix_stream(services: ServiceContainer = Depends(get_services)) -> Response:
    if not services.settings.stream.mix_enabled:
        return error_response("Mix output is disabled", 503)
    body = await _prime(services.mix_stream())
    if body is None:
        return error_response("Mix encoder unavailable", 503)
    return StreamingResponse(body, media_type="video/mp4", headers=NO_CACHE_HEADERS)


# =============================================================================
# Capture
# =============================================================================

@router.get("/stream/source/capture")
async def capture_source(services: ServiceContainer = Depends(get_services)) -> Response:
    webcam = services.webcam
    if webcam.disabled:
        return _jpeg(webcam.fallback_jpeg)
    try:
        return _jpeg(await capture_jpeg(services.http, webcam.source_url))
    except CaptureError as e:
        return error_response(str(e), e.status_code)


@router.get("/stream/overlay/capture")
async def capture_overlay(services: ServiceContainer = Depends(get_services)) -> Response:
    try:
        return _jpeg(await first_frame(services.overlay_stream()))
    except CaptureError as e:
        return error_response(str(e), e.status_code)


@router.get("/stream/mix/capture")
async def capture_mix(services: ServiceContainer = Depends(get_services)) -> Response:
    try:
        jpeg = await capture_with_encoder(services.supervisor, services.stage_url("/stream/mix"))
    except CaptureError as e:
        return error_response(str(e), e.status_code)
    return _jpeg(jpeg)


# =============================================================================
# End after song
# =============================================================================

@router.get("/api/stream/end-after-song")
async def get_end_after_song(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return JSONResponse({"enabled": services.stream.end_after_song})


@router.post("/api/stream/end-after-song")
async def set_end_after_song(
    body: ToggleRequest,
    services: ServiceContainer = Depends(get_services),
) -> JSONResponse:
    services.stream.set_end_after_song(body.enabled)
    return ok_response({"enabled": services.stream.end_after_song})


# =============================================================================
# Stage switches
# =============================================================================

@router.get("/api/stream/mix-enabled")
async def get_mix_enabled(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return JSONResponse({"enabled": services.settings.stream.mix_enabled})


@router.post("/api/stream/mix-enabled")
async def set_mix_enabled(
    body: ToggleRequest,
    services: ServiceContainer = Depends(get_services),
) -> JSONResponse:
    services.settings.stream.mix_enabled = body.enabled
    services.stream.output_enabled = body.enabled
    logger.info(f"Mix output {'enabled' if body.enabled else 'disabled'}")
    if not body.enabled and services.stream.broadcast_active:
        result = await services.stream.stop_broadcast_keep_local()
        if not result.success:
            logger.error(f"Could not end broadcast after disabling mix: {result.message}")
    services.save_settings()
    return ok_response({"enabled": body.enabled})


@router.get("/api/overlay/enabled")
async def get_overlay_enabled(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return JSONResponse({"enabled": services.settings.overlay.enabled})


@router.post("/api/overlay/enabled")
async def set_overlay_enabled(
    body: ToggleRequest,
    services: ServiceContainer = Depends(get_services),
) -> JSONResponse:
    """Switching off ends the overlay encoder; viewers reconnect to the plain source."""
    services.settings.overlay.enabled = body.enabled
    logger.info(f"Overlay {'enabled' if body.enabled else 'disabled'}")
    if not body.enabled:
        await services.overlay_stage.shutdown(force=True)
    services.save_settings()
    return ok_response({"enabled": body.enabled})
