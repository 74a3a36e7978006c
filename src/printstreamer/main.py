"""
PrintStreamer Main Application
==============================

FastAPI entry point for the print streaming service.

Pipeline:
    /stream/source  -> webcam MJPEG with fallback
    /stream/overlay -> printer status drawn over the source
    /stream/audio   -> shared live MP3
    /stream/mix     -> H.264 + AAC fragmented MP4, pushed to the broadcast

Background tasks (started by the lifespan):
    - overlay text generator
    - audio broadcaster
    - printer poller -> job orchestrator -> timelapse + broadcast
    - local pipeline reader

Endpoints:
    GET  /          - Service information
    GET  /health    - Liveness probe
    plus the routers in printstreamer.api
"""

import logging
import os
import signal
import threading
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from printstreamer import __version__
from printstreamer.api import ROUTERS
from printstreamer.api.deps import error_response
from printstreamer.config import ensure_required, find_config_path, settings
from printstreamer.services import ServiceContainer
from printstreamer.youtube.controller import AuthError, ProviderError


logger = logging.getLogger(__name__)


# =============================================================================
# Signal Handlers
# =============================================================================

def _install_sigterm_handler(services: ServiceContainer) -> None:
    """
    Flag shutdown on SIGTERM, then hand the signal to whatever handler
    was installed before (uvicorn's, which drives the lifespan exit).
    """
    if threading.current_thread() is not threading.main_thread():
        return
    previous = signal.getsignal(signal.SIGTERM)

    def _handle_sigterm(signum, frame):
        logger.info("Received SIGTERM, initiating graceful shutdown...")
        services.shutting_down = True
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            raise SystemExit(0)

    signal.signal(signal.SIGTERM, _handle_sigterm)


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    services: Optional[ServiceContainer] = None,
    manage_lifecycle: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built container; built from the global settings when None
        manage_lifecycle: Start and stop background services with the app

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        container = services
        if container is None:
            ensure_required(settings)
            container = ServiceContainer(settings, config_path=find_config_path())
        app.state.services = container

        logger.info("=" * 60)
        logger.info("PrintStreamer starting...")
        logger.info(f"  Source: {container.settings.stream.source}")
        logger.info(f"  Printer: {container.settings.moonraker.base_url}")
        logger.info(f"  Auto-broadcast: {container.settings.youtube.live_broadcast.enabled}")
        logger.info("=" * 60)

        if manage_lifecycle:
            _install_sigterm_handler(container)
            await container.start()

        yield

        logger.info("Shutting down gracefully...")
        if manage_lifecycle:
            await container.close()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="PrintStreamer",
        description="3D printer live streaming, timelapse and broadcast automation",
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    for router in ROUTERS:
        app.include_router(router)

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        logger.warning(f"{request.url.path}: {exc}")
        return error_response(str(exc), 401)

    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
        logger.warning(f"{request.url.path}: {exc}")
        return error_response(str(exc), 502)

    started_at = time.time()

    @app.get("/")
    async def root() -> JSONResponse:
        """Service information endpoint."""
        container: ServiceContainer = app.state.services
        return JSONResponse({
            "service": "PrintStreamer",
            "version": __version__,
            "status": "stopping" if container.shutting_down else "running",
            "endpoints": {
                "source": "/stream/source",
                "overlay": "/stream/overlay",
                "audio": "/stream/audio",
                "mix": "/stream/mix",
            },
        })

    @app.get("/health")
    async def health() -> JSONResponse:
        """
        Liveness probe - is the process alive?

        Always returns 200 if the service is running.
        """
        return JSONResponse({
            "status": "healthy",
            "uptime_seconds": round(time.time() - started_at, 1),
        })

    return app


app = create_app()


# =============================================================================
# Main Entry Point
# =============================================================================

def run() -> None:
    import uvicorn

    port = int(os.environ.get("PORT", settings.server.port))

    uvicorn.run(
        "printstreamer.main:app",
        host=settings.server.host,
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    run()
