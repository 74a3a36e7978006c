"""
Overlay Module
==============

Live on-video text: printer values rendered into a file that the overlay
encoder reloads every frame.
"""

from printstreamer.overlay.text import (
    OverlayData,
    OverlayTextGenerator,
    compute_values,
    render_template,
)


__all__ = [
    "OverlayData",
    "OverlayTextGenerator",
    "compute_values",
    "render_template",
]
