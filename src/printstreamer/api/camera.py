"""
Camera simulation switch. While disabled every source reader receives the
fallback frame.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from printstreamer.api.deps import get_services, ok_response
from printstreamer.services import ServiceContainer


router = APIRouter(prefix="/api/camera")


@router.get("")
async def camera_state(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return JSONResponse({"disabled": services.webcam.disabled})


@router.post("/on")
async def camera_on(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    services.webcam.set_disabled(False)
    return ok_response({"disabled": False})


@router.post("/off")
async def camera_off(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    services.webcam.set_disabled(True)
    return ok_response({"disabled": True})


@router.post("/toggle")
async def camera_toggle(services: ServiceContainer = Depends(get_services)) -> JSONResponse:
    return ok_response({"disabled": services.webcam.toggle()})
