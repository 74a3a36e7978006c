"""
Job Rules
=========

Pure decisions the job orchestrator takes on each printer snapshot.

Last-layer detection fires when any of these holds for an active print:
    - remaining time <= remaining_seconds (once progress is reported)
    - progress % >= progress_percent
    - current layer >= total layers - layer_offset (total > 0)
"""

import logging
from dataclasses import dataclass
from typing import Optional

from printstreamer.config import TimelapseConfig
from printstreamer.printer.snapshot import PrinterSnapshot, PrinterState


logger = logging.getLogger(__name__)


DONE_STATES = (PrinterState.IDLE, PrinterState.COMPLETE, PrinterState.ERROR)
TERMINAL_STATES = (PrinterState.COMPLETE, PrinterState.ERROR)
COMPLETION_PROGRESS = 0.99


@dataclass
class LastLayerThresholds:
    """
    Early finalize thresholds.

    Loaded from the timelapse section of the configuration.
    """

    layer_offset: int = 1
    remaining_seconds: float = 30.0
    progress_percent: float = 98.5

    @classmethod
    def from_config(cls, config: TimelapseConfig) -> "LastLayerThresholds":
        return cls(
            layer_offset=config.last_layer_offset,
            remaining_seconds=config.last_layer_remaining_seconds,
            progress_percent=config.last_layer_progress_percent,
        )


def last_layer_reason(
    snapshot: PrinterSnapshot,
    thresholds: LastLayerThresholds,
) -> Optional[str]:
    """
    Which last-layer rule holds for the snapshot, if any.

    Returns:
        "time", "progress" or "layer", else None.
    """
    if snapshot.state != PrinterState.PRINTING:
        return None
    if snapshot.progress > 0:
        if snapshot.remaining is not None and snapshot.remaining <= thresholds.remaining_seconds:
            return "time"
        if snapshot.progress_percent >= thresholds.progress_percent:
            return "progress"
    if (
        snapshot.current_layer is not None
        and snapshot.total_layers
        and snapshot.current_layer >= snapshot.total_layers - thresholds.layer_offset
    ):
        return "layer"
    return None


def looks_complete(snapshot: Optional[PrinterSnapshot]) -> bool:
    """Whether the last active snapshot was effectively at the end."""
    if snapshot is None:
        return False
    if snapshot.progress >= COMPLETION_PROGRESS:
        return True
    return bool(
        snapshot.current_layer is not None
        and snapshot.total_layers
        and snapshot.current_layer >= snapshot.total_layers
    )
