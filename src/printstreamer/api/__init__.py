"""
API Module
==========

HTTP control surface, one APIRouter per concern. Handlers reach the
services through ``request.app.state.services``.
"""

from printstreamer.api import audio, camera, config, diagnostics, live, stream, timelapses


ROUTERS = (
    stream.router,
    camera.router,
    live.router,
    timelapses.router,
    audio.router,
    config.router,
    diagnostics.router,
)


__all__ = ["ROUTERS"]
