"""
PrintStreamer
=============

Live streaming and timelapse automation for a networked 3D printer.

The service proxies the printer's webcam, draws printer status over it,
mixes in a shared music stream, pushes the result to a live broadcast,
and records a timelapse of every print job.

Components:
    - media: webcam proxy, frame extraction, fan-out and encoder stages
    - encoder: external encoder supervision and argument builders
    - printer: Moonraker client, snapshot decoding, poller
    - overlay: overlay text rendering
    - audio: track library and live MP3 broadcaster
    - youtube: OAuth, broadcast lifecycle and API rate limiting
    - timelapse: frame capture and video assembly
    - orchestrator: print-job driven lifecycle
    - api: HTTP control surface

Example:
    from printstreamer.config import settings

    # The service is started via the FastAPI application
    # See main.py for entry point
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
