"""
Timelapse Endpoints
===================

Endpoints:
    GET    /api/timelapses                          - Every session folder
    POST   /api/timelapses/{name}/start             - Start or resume capture
    POST   /api/timelapses/{name}/stop              - Stop capture, assemble video
    POST   /api/timelapses/{name}/generate          - Re-assemble from frames
    POST   /api/timelapses/{name}/upload            - Upload the video
    GET    /api/timelapses/{name}/frames            - Frame names
    GET    /api/timelapses/{name}/frames/{frame}    - One frame
    DELETE /api/timelapses/{name}/frames/{frame}    - Delete and renumber
    GET    /api/timelapses/{name}/metadata          - Session + slicer metadata
    GET    /api/timelapses/{name}/video             - The assembled MP4
    DELETE /api/timelapses/{name}                   - Delete the whole folder

Active sessions refuse deletion and regeneration with 409.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Response
from fastapi.responses import FileResponse, JSONResponse

from printstreamer.api.deps import NO_CACHE_HEADERS, error_response, get_services, ok_response
from printstreamer.api.schemas import TimelapseStartRequest
from printstreamer.services import ServiceContainer
from printstreamer.timelapse.manager import TimelapseError
from printstreamer.youtube.controller import AuthError, ProviderError


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/timelapses")


@router.get("")
async def list_timelapses(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    manager = services.timelapse
    return JSONResponse({
        "timelapses": manager.list(),
        "active": [s.session_id for s in manager.active_sessions()],
    })


@router.post("/{name}/start")
async def start_timelapse(
    name: str,
    body: Optional[TimelapseStartRequest] = None,
    services: ServiceContainer = Depends(get_services),
) -> JSONResponse:
    filename = body.filename if body else None
    try:
        session_id = await services.timelapse.start(name, hint_filename=filename)
    except OSError as e:
        return error_response(f"Could not start timelapse: {e}", 500)
    if session_id is None:
        return error_response("A timelapse name is required", 400)
    return ok_response({"name": session_id})


@router.post("/{name}/stop")
async def stop_timelapse(name: str, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    if not services.timelapse.is_active(name):
        return error_response(f"No active timelapse named {name}", 404)
    video = await services.timelapse.stop(name)
    if video is None:
        return error_response("Timelapse stopped but no video was produced", 500)
    return ok_response({"name": name, "video": video})


@router.post("/{name}/generate")
async def generate_timelapse(name: str, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    try:
        video = await services.timelapse.generate(name)
    except TimelapseError as e:
        return error_response(str(e), e.status_code)
    if video is None:
        return error_response("Video assembly failed", 500)
    return ok_response({"name": name, "video": video})


@router.post("/{name}/upload")
async def upload_timelapse(name: str, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    try:
        video = services.timelapse.video_path(name)
    except TimelapseError as e:
        return error_response(str(e), e.status_code)
    if video is None:
        return error_response(f"Timelapse {name} has no video yet", 404)
    if not services.settings.oauth_configured:
        return error_response("YouTube OAuth is not configured", 409)

    try:
        video_id = await services.orchestrator.upload_timelapse(str(video), name)
    except AuthError as e:
        return error_response(str(e), 401)
    except ProviderError as e:
        return error_response(str(e), 502)
    except OSError as e:
        return error_response(str(e), 500)
    return ok_response({"video_id": video_id, "url": f"https://www.youtube.com/watch?v={video_id}"})


@router.get("/{name}/frames")
async def list_frames(name: str, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    try:
        frames = services.timelapse.frames(name)
    except TimelapseError as e:
        return error_response(str(e), e.status_code)
    return JSONResponse({"name": name, "frames": frames, "count": len(frames)})


@router.get("/{name}/frames/{frame}")
async def get_frame(name: str, frame: str, services: ServiceContainer = Depends(get_services)) -> Response:
    try:
        path = services.timelapse.frame_path(name, frame)
    except TimelapseError as e:
        return error_response(str(e), e.status_code)
    return FileResponse(path, media_type="image/jpeg", headers=NO_CACHE_HEADERS)


@router.delete("/{name}/frames/{frame}")
async def delete_frame(name: str, frame: str, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    try:
        remaining = await services.timelapse.delete_frame(name, frame)
    except TimelapseError as e:
        return error_response(str(e), e.status_code)
    return ok_response({"name": name, "frame_count": remaining})


@router.get("/{name}/metadata")
async def get_metadata(name: str, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    try:
        return JSONResponse(services.timelapse.get_metadata(name))
    except TimelapseError as e:
        return error_response(str(e), e.status_code)


@router.get("/{name}/video")
async def get_video(name: str, services: ServiceContainer = Depends(get_services)) -> Response:
    try:
        video = services.timelapse.video_path(name)
    except TimelapseError as e:
        return error_response(str(e), e.status_code)
    if video is None:
        return error_response(f"Timelapse {name} has no video", 404)
    return FileResponse(video, media_type="video/mp4", filename=video.name)


@router.delete("/{name}")
async def delete_timelapse(name: str, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    try:
        await services.timelapse.delete(name)
    except TimelapseError as e:
        return error_response(str(e), e.status_code)
    return ok_response({"name": name})
