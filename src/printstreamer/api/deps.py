"""
Shared helpers for the HTTP routers.
"""

from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from printstreamer.services import ServiceContainer


NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
}


def get_services(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the container built by the lifespan."""
    return request.app.state.services


def error_response(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


def ok_response(payload: Optional[dict] = None, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, **(payload or {})}, status_code=status_code)
