"""
Timelapse Module
================

Per-job frame capture sessions and video assembly.
"""

from printstreamer.timelapse.manager import (
    FinalizeState,
    TimelapseError,
    TimelapseManager,
    TimelapseSession,
    sanitize_name,
)


__all__ = [
    "FinalizeState",
    "TimelapseError",
    "TimelapseManager",
    "TimelapseSession",
    "sanitize_name",
]
