"""
Configuration Endpoints
=======================

Endpoints:
    GET  /api/config                          - Settings (secrets redacted)
    POST /api/config                          - Merge, validate, apply, save
    GET  /api/config/state                    - Automation switches
    GET/POST /api/config/auto-broadcast       - youtube.live_broadcast.enabled
    GET/POST /api/config/auto-upload          - youtube.timelapse_upload.enabled
    GET/POST /api/config/end-stream-after-print

Updates are applied in place so running services see them; values that
services copied at startup (upstream URL, poll intervals) take effect on
restart.
"""

import logging
from typing import Any, Callable, Dict

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from printstreamer.api.deps import error_response, get_services, ok_response
from printstreamer.api.schemas import ToggleRequest
from printstreamer.config import Settings, apply_settings
from printstreamer.services import ServiceContainer


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/config")


REDACTED = "***"
SECRET_KEYS = (
    ("moonraker", "api_key"),
    ("moonraker", "auth_header"),
    ("youtube", "oauth", "client_secret"),
    ("youtube", "oauth", "refresh_token"),
    ("youtube", "oauth", "auth_code"),
)


def redact(data: Dict[str, Any]) -> Dict[str, Any]:
    for path in SECRET_KEYS:
        node = data
        for key in path[:-1]:
            node = node.get(key) or {}
        if node.get(path[-1]):
            node[path[-1]] = REDACTED
    return data


def merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``updates`` into ``base``; redacted values are kept."""
    for key, value in updates.items():
        if value == REDACTED:
            continue
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merge(base[key], value)
        else:
            base[key] = value
    return base


@router.get("")
async def get_config(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return JSONResponse(redact(services.settings.model_dump(mode="json")))


@router.post("")
async def update_config(
    updates: Dict[str, Any] = Body(...),
    services: ServiceContainer = Depends(get_services),
) -> JSONResponse:
    current = services.settings
    try:
        new = Settings.model_validate(merge(current.model_dump(mode="json"), updates))
    except ValidationError as e:
        return error_response(f"Invalid configuration: {e.error_count()} error(s): {e}", 400)

    audio_was_enabled = current.audio.enabled
    apply_settings(current, new)
    if current.audio.enabled != audio_was_enabled:
        await services.audio.apply_audio_enabled(current.audio.enabled)
    saved = services.save_settings()
    logger.info(f"Configuration updated ({', '.join(sorted(updates))}){'; saved' if saved else ''}")
    return ok_response({"saved": saved, "config": redact(current.model_dump(mode="json"))})


@router.get("/state")
async def config_state(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    youtube = services.settings.youtube
    return JSONResponse({
        "auto_broadcast": youtube.live_broadcast.enabled,
        "auto_upload": youtube.timelapse_upload.enabled,
        "end_stream_after_print": youtube.live_broadcast.end_stream_after_print,
        "oauth_configured": services.settings.oauth_configured,
        "audio_enabled": services.settings.audio.enabled,
        "camera_disabled": services.webcam.disabled,
        "config_path": services.config_path,
    })


# =============================================================================
# Switches
# =============================================================================

def _switch(
    path: str,
    getter: Callable[[Settings], bool],
    setter: Callable[[Settings, bool], None],
) -> None:
    key = path.replace("-", "_")

    async def read(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
        return JSONResponse({key: getter(services.settings)})

    async def write(body: ToggleRequest, services: ServiceContainer = Depends(get_services)) -> JSONResponse:
        setter(services.settings, body.enabled)
        saved = services.save_settings()
        logger.info(f"{key} set to {body.enabled}")
        return ok_response({key: getter(services.settings), "saved": saved})

    router.add_api_route(f"/{path}", read, methods=["GET"], name=f"get_{key}")
    router.add_api_route(f"/{path}", write, methods=["POST"], name=f"set_{key}")


_switch(
    "auto-broadcast",
    lambda s: s.youtube.live_broadcast.enabled,
    lambda s, v: setattr(s.youtube.live_broadcast, "enabled", v),
)
_switch(
    "auto-upload",
    lambda s: s.youtube.timelapse_upload.enabled,
    lambda s, v: setattr(s.youtube.timelapse_upload, "enabled", v),
)
_switch(
    "end-stream-after-print",
    lambda s: s.youtube.live_broadcast.end_stream_after_print,
    lambda s, v: setattr(s.youtube.live_broadcast, "end_stream_after_print", v),
)
