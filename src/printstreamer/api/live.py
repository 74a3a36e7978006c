"""
Live Broadcast Endpoints
========================

Endpoints:
    POST /api/live/start          - Create, bind and go live
    POST /api/live/stop           - End the broadcast, keep the local pipeline
    GET  /api/live/status         - Lifecycle, publisher and repair counters
    GET  /api/live/privacy        - Current privacy
    POST /api/live/privacy        - Change privacy
    POST /api/live/force-go-live  - Re-drive the live transition
    POST /api/live/repair         - Restart publisher + transition
    GET  /api/live/debug          - Raw provider resources and encoders
    POST /api/live/chat           - Send a live chat message
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from printstreamer.api.deps import error_response, get_services, ok_response
from printstreamer.api.schemas import ChatRequest, LiveStartRequest, PrivacyRequest
from printstreamer.orchestrator.stream import LiveResult
from printstreamer.services import ServiceContainer
from printstreamer.youtube.controller import AuthError, ProviderError


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/live")


def _result(result: LiveResult) -> JSONResponse:
    return JSONResponse(result.to_dict(), status_code=200 if result.success else 502)


def _provider_error(e: Exception) -> JSONResponse:
    if isinstance(e, AuthError):
        return error_response(str(e), 401)
    # No status code means the call never reached the provider
    return error_response(str(e), 502 if e.status_code else 409)


@router.post("/start")
async def live_start(
    body: Optional[LiveStartRequest] = None,
    services: ServiceContainer = Depends(get_services),
) -> JSONResponse:
    job_name = body.job_name if body else None
    if job_name is None and services.orchestrator.session is not None:
        job_name = services.orchestrator.session.job_name
    return _result(await services.stream.start_broadcast(job_name))


@router.post("/stop")
async def live_stop(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return _result(await services.stream.stop_broadcast_keep_local())


@router.get("/status")
async def live_status(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return JSONResponse({
        "oauth_configured": services.settings.oauth_configured,
        "authenticated": services.broadcast.authenticated,
        "active": services.broadcast.active,
        **services.stream.status(),
    })


@router.get("/privacy")
async def get_privacy(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    try:
        privacy = await services.broadcast.get_privacy()
    except (AuthError, ProviderError) as e:
        return _provider_error(e)
    return JSONResponse({"privacy": privacy})


@router.post("/privacy")
async def set_privacy(
    body: PrivacyRequest,
    services: ServiceContainer = Depends(get_services),
) -> JSONResponse:
    try:
        privacy = await services.broadcast.update_privacy(body.privacy)
    except ValueError as e:
        return error_response(str(e), 400)
    except (AuthError, ProviderError) as e:
        return _provider_error(e)
    return ok_response({"privacy": privacy})


@router.post("/force-go-live")
async def force_go_live(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return _result(await services.stream.force_go_live())


@router.post("/repair")
async def repair(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return _result(await services.stream.ensure_streaming_healthy())


@router.get("/debug")
async def live_debug(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    try:
        resources = await services.broadcast.describe_resources()
    except (AuthError, ProviderError) as e:
        resources = {"state": services.broadcast.state.to_dict(), "error": str(e)}
    return JSONResponse({
        **resources,
        "publisher": services.publisher.status(),
        "encoders": [h.to_dict() for h in services.supervisor.active()],
    })


@router.post("/chat")
async def live_chat(
    body: ChatRequest,
    services: ServiceContainer = Depends(get_services),
) -> JSONResponse:
    try:
        message = await services.broadcast.send_chat_message(body.message)
    except (AuthError, ProviderError) as e:
        return _provider_error(e)
    return ok_response({"id": message.get("id")})
