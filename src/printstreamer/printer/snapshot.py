"""
Printer Snapshot
================

Immutable view of the printer at one poll, and the total decoder that
builds it from whatever JSON the printer API returned.

Decoding order for the object status:
    1. ``{"result": {"status": {...}}}``  (objects query response)
    2. ``{"status": {...}}``
    3. ``{"result": {...}}`` holding printer objects directly
    4. a bare mapping of printer objects
    5. heuristic walk: first ``*.gcode`` string, first known state word,
       first numeric ``progress`` anywhere in the document

Design Rules:
    - decode_snapshot never raises; unusable input yields state UNKNOWN
    - progress is a fraction in [0, 1]; values above 1 are percentages
    - times are seconds
"""

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional


class PrinterState(str, Enum):
    """Canonical printer states."""

    IDLE = "idle"
    PRINTING = "printing"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"
    UNKNOWN = "unknown"


_STATE_ALIASES = {
    "idle": PrinterState.IDLE,
    "standby": PrinterState.IDLE,
    "ready": PrinterState.IDLE,
    "cancelled": PrinterState.IDLE,
    "printing": PrinterState.PRINTING,
    "resuming": PrinterState.PRINTING,
    "paused": PrinterState.PAUSED,
    "pausing": PrinterState.PAUSED,
    "complete": PrinterState.COMPLETE,
    "completed": PrinterState.COMPLETE,
    "error": PrinterState.ERROR,
    "shutdown": PrinterState.ERROR,
}

_KNOWN_OBJECTS = (
    "print_stats",
    "display_status",
    "virtual_sdcard",
    "extruder",
    "heater_bed",
    "gcode_move",
    "motion_report",
)

_CURRENT_LAYER_KEYS = ("current_layer", "CURRENT_LAYER", "layer", "currentLayer")
_TOTAL_LAYER_KEYS = ("total_layer", "TOTAL_LAYER", "total_layers", "total_layer_count", "layer_count")
_REMAINING_KEYS = ("time_remaining", "remaining_time", "eta_seconds")


@dataclass(frozen=True)
class PrinterSnapshot:
    """
    Printer state at one poll.

    Attributes:
        state: Canonical state
        raw_state: State string as reported by the printer
        filename: print_stats.filename
        queue_filename: Head of the job queue
        queue_job_id: Job queue id of the head entry
        history_filename: Most recent history entry
        progress: Fraction in [0, 1]
        elapsed: Print duration in seconds
        remaining: Seconds left, when known
        reachable: False when the printer API could not be queried
    """

    state: PrinterState = PrinterState.UNKNOWN
    raw_state: Optional[str] = None
    filename: Optional[str] = None
    queue_filename: Optional[str] = None
    queue_job_id: Optional[str] = None
    history_filename: Optional[str] = None
    progress: float = 0.0
    elapsed: float = 0.0
    remaining: Optional[float] = None
    current_layer: Optional[int] = None
    total_layers: Optional[int] = None
    nozzle: Optional[float] = None
    nozzle_target: Optional[float] = None
    bed: Optional[float] = None
    bed_target: Optional[float] = None
    reachable: bool = True
    timestamp: float = field(default_factory=time.time)

    @property
    def progress_percent(self) -> float:
        return self.progress * 100.0

    @property
    def is_active(self) -> bool:
        return self.state in (PrinterState.PRINTING, PrinterState.PAUSED)

    @property
    def job_name(self) -> Optional[str]:
        """Job identity: queue head, then print_stats filename, then history."""
        for candidate in (self.queue_filename, self.filename, self.history_filename):
            if candidate:
                return candidate
        return None

    @classmethod
    def unreachable(cls) -> "PrinterSnapshot":
        return cls(state=PrinterState.UNKNOWN, reachable=False)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "raw_state": self.raw_state,
            "filename": self.filename,
            "job_name": self.job_name,
            "queue_job_id": self.queue_job_id,
            "progress": round(self.progress, 4),
            "elapsed": self.elapsed,
            "remaining": self.remaining,
            "current_layer": self.current_layer,
            "total_layers": self.total_layers,
            "nozzle": self.nozzle,
            "nozzle_target": self.nozzle_target,
            "bed": self.bed,
            "bed_target": self.bed_target,
            "reachable": self.reachable,
        }


# =============================================================================
# Value coercion
# =============================================================================

def to_float(value: Any) -> Optional[float]:
    """Coerce to a finite float, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def to_int(value: Any) -> Optional[int]:
    number = to_float(value)
    return int(number) if number is not None else None


def _first(mapping: Mapping, keys: Iterable[str]) -> Any:
    for key in keys:
        if key in mapping and mapping[key] is not None:
            return mapping[key]
    return None


def normalize_state(value: Any) -> PrinterState:
    if not isinstance(value, str):
        return PrinterState.UNKNOWN
    return _STATE_ALIASES.get(value.strip().lower(), PrinterState.UNKNOWN)


def normalize_progress(value: Any) -> Optional[float]:
    number = to_float(value)
    if number is None:
        return None
    if number > 1.0:
        number /= 100.0
    return min(max(number, 0.0), 1.0)


# =============================================================================
# Shape resolution
# =============================================================================

def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def extract_status(document: Any) -> dict:
    """Locate the printer-objects mapping inside a response document."""
    doc = _as_dict(document)
    result = _as_dict(doc.get("result"))

    candidates = (
        _as_dict(result.get("status")),
        _as_dict(doc.get("status")),
        result,
        doc,
    )
    for candidate in candidates:
        if any(isinstance(candidate.get(name), dict) for name in _KNOWN_OBJECTS):
            return candidate
    return {}


def _walk(node: Any, key: Optional[str] = None):
    yield key, node
    if isinstance(node, dict):
        for k, v in node.items():
            yield from _walk(v, k)
    elif isinstance(node, list):
        for item in node:
            yield from _walk(item, None)


def _heuristic(document: Any) -> dict:
    filename = None
    state = None
    progress = None
    for key, value in _walk(document):
        if isinstance(value, str):
            if filename is None and value.lower().endswith(".gcode"):
                filename = value
            if state is None and value.strip().lower() in _STATE_ALIASES:
                state = value
        elif progress is None and key == "progress":
            progress = to_float(value)
    return {"filename": filename, "state": state, "progress": progress}


def queue_head(document: Any) -> tuple:
    """(filename, job_id) of the first queued job, if any."""
    result = _as_dict(_as_dict(document).get("result")) or _as_dict(document)
    jobs = result.get("queued_jobs")
    if isinstance(jobs, list) and jobs and isinstance(jobs[0], dict):
        job = jobs[0]
        job_id = job.get("job_id", job.get("id"))
        return job.get("filename") or None, str(job_id) if job_id is not None else None
    return None, None


def history_head(document: Any) -> Optional[str]:
    result = _as_dict(_as_dict(document).get("result")) or _as_dict(document)
    jobs = result.get("jobs")
    if isinstance(jobs, list) and jobs and isinstance(jobs[0], dict):
        return jobs[0].get("filename") or None
    return None


# =============================================================================
# Decoder
# =============================================================================

def decode_snapshot(
    status_document: Any,
    queue_document: Any = None,
    history_document: Any = None,
) -> PrinterSnapshot:
    """
    Build a PrinterSnapshot from raw API responses. Never raises.

    Args:
        status_document: Response of the printer objects query
        queue_document: Response of server/job_queue/status
        history_document: Response of server/history/list
    """
    try:
        return _decode(status_document, queue_document, history_document)
    except Exception:
        return PrinterSnapshot()


def _decode(status_document: Any, queue_document: Any, history_document: Any) -> PrinterSnapshot:
    status = extract_status(status_document)
    queue_filename, queue_job_id = queue_head(queue_document)
    history_filename = history_head(history_document)

    if not status:
        fallback = _heuristic(status_document)
        return PrinterSnapshot(
            state=normalize_state(fallback["state"]),
            raw_state=fallback["state"],
            filename=fallback["filename"],
            queue_filename=queue_filename,
            queue_job_id=queue_job_id,
            history_filename=history_filename,
            progress=normalize_progress(fallback["progress"]) or 0.0,
        )

    print_stats = _as_dict(status.get("print_stats"))
    info = _as_dict(print_stats.get("info"))
    display = _as_dict(status.get("display_status"))
    sdcard = _as_dict(status.get("virtual_sdcard"))
    extruder = _as_dict(status.get("extruder"))
    bed = _as_dict(status.get("heater_bed"))

    raw_state = print_stats.get("state") if isinstance(print_stats.get("state"), str) else None
    current_layer = to_int(_first(info, _CURRENT_LAYER_KEYS))
    total_layers = to_int(_first(info, _TOTAL_LAYER_KEYS))

    progress = normalize_progress(display.get("progress"))
    sd_progress = normalize_progress(sdcard.get("progress"))
    if sd_progress is not None and sd_progress > 0:
        progress = sd_progress
    if progress is None:
        progress = normalize_progress(print_stats.get("progress"))
    if progress is None and current_layer is not None and total_layers:
        progress = min(current_layer / total_layers, 1.0)
    progress = progress or 0.0

    elapsed = to_float(print_stats.get("print_duration")) or 0.0
    remaining = to_float(print_stats.get("print_time_left"))
    if remaining is None:
        remaining = to_float(_first(info, _REMAINING_KEYS))
    if remaining is None and progress > 0.01 and elapsed > 0:
        remaining = max(elapsed / progress - elapsed, 0.0)

    filename = print_stats.get("filename") if isinstance(print_stats.get("filename"), str) else None

    return PrinterSnapshot(
        state=normalize_state(raw_state),
        raw_state=raw_state,
        filename=filename or None,
        queue_filename=queue_filename,
        queue_job_id=queue_job_id,
        history_filename=history_filename,
        progress=progress,
        elapsed=elapsed,
        remaining=remaining,
        current_layer=current_layer,
        total_layers=total_layers,
        nozzle=to_float(extruder.get("temperature")),
        nozzle_target=to_float(extruder.get("target")),
        bed=to_float(bed.get("temperature")),
        bed_target=to_float(bed.get("target")),
    )
