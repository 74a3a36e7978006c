"""
Diagnostics Endpoints
=====================

Endpoints:
    GET  /api/health/upstream                 - Camera and printer reachability
    GET  /api/debug/pipeline                  - Stages, encoders and task metrics
    GET  /api/youtube/polling/status          - Rate limiter statistics
    POST /api/youtube/polling/clear-cache     - Drop cached provider responses
"""

import time

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from printstreamer.api.deps import get_services, ok_response
from printstreamer.services import ServiceContainer


router = APIRouter()


@router.get("/api/health/upstream")
async def upstream_health(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    camera = await services.webcam.health()
    latest = services.poller.latest
    printer = {
        "base_url": services.settings.moonraker.base_url,
        "reachable": latest.reachable if latest else None,
        "state": latest.state.value if latest else None,
        "error_count": services.poller.error_count,
    }
    status_code = 200 if camera["reachable"] else 503
    return JSONResponse({**camera, "camera": camera, "printer": printer}, status_code=status_code)


@router.get("/api/debug/pipeline")
async def debug_pipeline(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return JSONResponse({
        "uptime_seconds": round(time.time() - services.started_at, 1),
        "stages": services.registry.snapshot(),
        "encoders": [h.to_dict() for h in services.supervisor.active()],
        "webcam": services.webcam.metrics(),
        "overlay": services.overlay_stage.metrics(),
        "overlay_text": services.overlay_text.metrics(),
        "audio": services.audio.status(),
        "publisher": services.publisher.status(),
        "stream": services.stream.status(),
        "printer": services.poller.metrics(),
        "timelapse": services.timelapse.metrics(),
        "orchestrator": services.orchestrator.status(),
    })


@router.get("/api/youtube/polling/status")
async def polling_status(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    limiter = services.limiter
    return JSONResponse({
        "enabled": services.settings.youtube.polling.enabled,
        "recommended_interval": round(limiter.calculate_interval(), 2),
        **limiter.stats(),
    })


@router.post("/api/youtube/polling/clear-cache")
async def polling_clear_cache(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    services.limiter.clear_cache()
    return ok_response({"cached_item_count": 0})
