"""
Audio Endpoints
===============

Library, queue and playback control for the shared audio stage.

Endpoints:
    GET  /api/audio/tracks        - Library listing
    GET  /api/audio/state         - Playback flags + broadcaster status
    GET  /api/audio/queue         - Immediate queue
    POST /api/audio/queue         - Enqueue names and/or remove one
    POST /api/audio/queue/remove  - Drop names from the queue
    POST /api/audio/clear         - Clear the queue
    POST /api/audio/{play,pause,toggle,next,prev}
    POST /api/audio/shuffle       - {"enabled": bool}
    POST /api/audio/repeat        - {"mode": "none" | "one" | "all"}
    GET  /api/audio/folder        - Current folder
    POST /api/audio/folder        - Switch folder and rescan
    POST /api/audio/scan          - Rescan the folder
    POST /api/audio/upload        - Store a multipart "file" in the folder
    POST /api/audio/play-track    - Jump to a track now
    GET  /api/audio/preview       - Raw file for one track (?name=)
    POST /api/audio/enabled       - Start or stop music on the stage
"""

import asyncio
import logging
import mimetypes

from fastapi import APIRouter, Depends, File, Response, UploadFile
from fastapi.responses import FileResponse, JSONResponse

from printstreamer.api.deps import error_response, get_services, ok_response
from printstreamer.api.schemas import (
    FolderRequest,
    PlayTrackRequest,
    QueueRemoveRequest,
    QueueRequest,
    RepeatRequest,
    ToggleRequest,
)
from printstreamer.services import ServiceContainer


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/audio")


def _state(services: ServiceContainer) -> dict:
    return {**services.library.state(), "enabled": services.audio.enabled}


# =============================================================================
# Library
# =============================================================================

@router.get("/tracks")
async def tracks(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    library = services.library
    return JSONResponse({
        "folder": library.folder,
        "tracks": [t.to_dict() for t in library.tracks],
    })


@router.get("/state")
async def state(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return JSONResponse({**_state(services), "broadcaster": services.audio.status()})


@router.get("/folder")
async def get_folder(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return JSONResponse({"folder": services.library.folder})


@router.post("/folder")
async def set_folder(body: FolderRequest, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    try:
        count = services.library.set_folder(body.folder)
    except OSError as e:
        return error_response(f"Cannot use folder {body.folder}: {e}", 400)
    services.settings.audio.folder = body.folder
    services.save_settings()
    services.audio.wake()
    return ok_response({"folder": services.library.folder, "tracks": count})


@router.post("/scan")
async def scan(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    count = services.library.scan()
    services.audio.wake()
    return ok_response({"tracks": count})


@router.post("/upload")
async def upload(
    file: UploadFile = File(...),
    services: ServiceContainer = Depends(get_services),
) -> JSONResponse:
    library = services.library
    logger.info(f"Audio upload received: {file.filename} ({file.content_type})")
    try:
        path = await asyncio.to_thread(library.add_file, file.filename or "", file.file)
    except ValueError as e:
        return error_response(str(e), 400)
    except OSError as e:
        logger.error(f"Could not store upload {file.filename}: {e}")
        return error_response(f"Failed saving file: {e}", 500)
    finally:
        await file.close()

    count = library.scan()
    services.audio.wake()
    return ok_response({"filename": path.name, "tracks": count})


@router.get("/preview")
async def preview(name: str, services: ServiceContainer = Depends(get_services)) -> Response:
    track = services.library.find(name)
    if track is None:
        return error_response(f"Unknown track: {name}", 404)
    media_type = mimetypes.guess_type(track.path)[0] or "application/octet-stream"
    return FileResponse(track.path, media_type=media_type)


# =============================================================================
# Queue
# =============================================================================

@router.get("/queue")
async def get_queue(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return JSONResponse({"queue": services.library.queue})


@router.post("/queue")
async def update_queue(body: QueueRequest, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    library = services.library
    removed = library.remove_from_queue(body.remove) if body.remove else False
    added = library.enqueue(body.names)
    if body.names and added == 0:
        return error_response("None of the requested tracks exist", 404)
    services.audio.wake()
    return ok_response({"added": added, "removed": removed, "queue": library.queue})


@router.post("/queue/remove")
async def remove_from_queue(
    body: QueueRemoveRequest,
    services: ServiceContainer = Depends(get_services),
) -> JSONResponse:
    library = services.library
    removed = sum(1 for name in body.names if library.remove_from_queue(name))
    return ok_response({"removed": removed, "queue": library.queue})


@router.post("/clear")
async def clear_queue(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    services.library.clear_queue()
    return ok_response({"queue": []})


@router.post("/play-track")
async def play_track(body: PlayTrackRequest, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    if not await services.audio.play_track(body.name):
        return error_response(f"Unknown track: {body.name}", 404)
    return ok_response(_state(services))


# =============================================================================
# Playback
# =============================================================================

@router.post("/play")
async def play(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    services.audio.play()
    return ok_response(_state(services))


@router.post("/pause")
async def pause(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    await services.audio.pause()
    return ok_response(_state(services))


@router.post("/toggle")
async def toggle(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    await services.audio.toggle()
    return ok_response(_state(services))


@router.post("/next")
async def next_track(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    await services.audio.skip()
    return ok_response(_state(services))


@router.post("/prev")
async def previous_track(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    if not await services.audio.previous():
        return error_response("No previous track", 409)
    return ok_response(_state(services))


@router.post("/shuffle")
async def shuffle(body: ToggleRequest, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    services.library.set_shuffle(body.enabled)
    return ok_response(_state(services))


@router.post("/repeat")
async def repeat(body: RepeatRequest, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    services.library.set_repeat(body.mode)
    return ok_response(_state(services))


@router.post("/enabled")
async def set_enabled(body: ToggleRequest, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    await services.audio.apply_audio_enabled(body.enabled)
    services.settings.audio.enabled = body.enabled
    services.save_settings()
    return ok_response(_state(services))
