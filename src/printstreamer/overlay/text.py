"""
Overlay Text Generator
======================

Polls the printer and keeps a single text file up to date for the
overlay encoder's drawtext filter (``textfile=...:reload=1``).

Recognized placeholders (case-insensitive, optional ``{name:fmt}`` hint):
    nozzle, nozzleTarget, bed, bedTarget, progress, layer, layerMax,
    layers, time, state, filename, slicer, speed, speedFactor, flow,
    filament, eta

Design Rules:
    - Writes are atomic (temp file + os.replace); the encoder never sees
      a partial file
    - A failed printer query leaves the previous file in place
    - Literal % is escaped since drawtext treats %{...} as expansion
"""

import asyncio
import logging
import math
import os
import re
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional

from printstreamer.config import OverlayConfig
from printstreamer.printer.client import MoonrakerClient, PrinterApiError
from printstreamer.printer.snapshot import extract_status, to_float, to_int


logger = logging.getLogger(__name__)


MISSING = "-"
FILAMENT_DIAMETER_MM = 1.75
TEXT_FILE_NAME = "overlay.txt"

MetadataProvider = Callable[[str], Optional[dict]]
SongProvider = Callable[[], Optional[str]]


@dataclass
class OverlayData:
    """Values available to the overlay template."""

    nozzle: Optional[float] = None
    nozzle_target: Optional[float] = None
    bed: Optional[float] = None
    bed_target: Optional[float] = None
    state: str = ""
    progress: int = 0
    layer: Optional[int] = None
    layer_max: Optional[int] = None
    time: Optional[datetime] = None
    filename: str = ""
    slicer: str = ""
    speed: Optional[float] = None
    speed_factor: Optional[float] = None
    flow: Optional[float] = None
    filament_mm: Optional[float] = None
    eta: Optional[datetime] = None


# =============================================================================
# Value extraction
# =============================================================================

def _section(status: dict, name: str) -> dict:
    value = status.get(name)
    return value if isinstance(value, dict) else {}


def compute_values(
    status: dict,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> OverlayData:
    """
    Derive overlay values from a printer objects status mapping.

    Args:
        status: The ``result.status`` mapping of an objects query
        metadata: Cached slicer metadata for the current file, if any
        now: Clock override for ETA and {time}
    """
    now = now or datetime.now()
    extruder = _section(status, "extruder")
    heater_bed = _section(status, "heater_bed")
    print_stats = _section(status, "print_stats")
    display = _section(status, "display_status")
    sdcard = _section(status, "virtual_sdcard")
    gcode_move = _section(status, "gcode_move")
    motion = _section(status, "motion_report")

    state = str(print_stats.get("state") or "")
    active = state.lower() in ("printing", "paused")

    layer = None
    layer_max = None
    info = print_stats.get("info")
    if active and isinstance(info, dict):
        layer = to_int(info.get("current_layer"))
        layer_max = to_int(info.get("total_layer"))

    progress01 = to_float(display.get("progress")) or 0.0
    sd_progress = to_float(sdcard.get("progress"))
    if sd_progress is not None and sd_progress > 0:
        progress01 = sd_progress

    flow = to_float(display.get("volumetric_flow"))
    if flow is not None and flow <= 0:
        flow = None

    speed_factor = to_float(gcode_move.get("speed_factor"))
    if speed_factor is not None:
        speed_factor *= 100.0
    extrude_factor = to_float(gcode_move.get("extrude_factor"))
    extruder_velocity = to_float(motion.get("live_extruder_velocity"))
    toolhead_velocity = to_float(motion.get("live_velocity"))

    filename = str(print_stats.get("filename") or "")
    duration = to_float(print_stats.get("print_duration")) if active else None
    filament = to_float(print_stats.get("filament_used")) if active else None

    eta = None
    if active and progress01 > 0.01 and duration is not None and duration > 0:
        total = duration / progress01
        eta = now + timedelta(seconds=total - duration)

    slicer = ""
    if active and filename and metadata:
        total_from_metadata = to_int(metadata.get("layer_count"))
        if total_from_metadata:
            layer_max = total_from_metadata
        slicer = str(metadata.get("slicer") or "")

    if active and flow is None and extruder_velocity is not None and extruder_velocity > 0.01:
        area = math.pi * (FILAMENT_DIAMETER_MM / 2.0) ** 2
        flow = extruder_velocity * area * (extrude_factor if extrude_factor is not None else 1.0)
    if not active:
        flow = None

    speed = None
    if active:
        if toolhead_velocity is not None and toolhead_velocity > 0.1:
            speed = toolhead_velocity
        else:
            commanded = to_float(gcode_move.get("speed"))
            speed = commanded / 60.0 if commanded is not None and commanded > 0 else 0.0

    return OverlayData(
        nozzle=to_float(extruder.get("temperature")),
        nozzle_target=to_float(extruder.get("target")),
        bed=to_float(heater_bed.get("temperature")),
        bed_target=to_float(heater_bed.get("target")),
        state=state,
        progress=int(round(progress01 * 100)) if active else 0,
        layer=layer,
        layer_max=layer_max,
        time=now,
        filename=filename,
        slicer=slicer,
        speed=speed,
        speed_factor=speed_factor,
        flow=flow,
        filament_mm=filament,
        eta=eta,
    )


# =============================================================================
# Rendering
# =============================================================================

def _pattern(name: str) -> "re.Pattern":
    return re.compile(r"\{" + re.escape(name) + r"(?::([^}]+))?\}", re.IGNORECASE)


def format_number(value: Optional[float], hint: Optional[str], default: str = "0.0") -> str:
    """
    Format with a ``0`` / ``0.0`` / ``0.00`` style hint or a Python format spec.
    """
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return MISSING
    hint = hint or default
    if re.fullmatch(r"0(\.0+)?", hint):
        decimals = len(hint) - 2 if "." in hint else 0
        return f"{value:.{decimals}f}"
    try:
        return format(value, hint)
    except ValueError:
        return format_number(value, default, default)


def format_time(value: datetime, hint: Optional[str]) -> str:
    return value.strftime(hint or "%H:%M:%S")


def _sub(template: str, name: str, render: Callable[[Optional[str]], str]) -> str:
    return _pattern(name).sub(lambda m: render(m.group(1)), template)


def _layer_text(value: Optional[int]) -> str:
    return str(value) if value is not None else "-"


def render_template(template: str, data: OverlayData, song: Optional[str] = None) -> str:
    """
    Substitute placeholders and return the text to write for drawtext.
    """
    s = template
    s = _sub(s, "nozzleTarget", lambda h: format_number(data.nozzle_target, h))
    s = _sub(s, "nozzle", lambda h: format_number(data.nozzle, h))
    s = _sub(s, "bedTarget", lambda h: format_number(data.bed_target, h))
    s = _sub(s, "bed", lambda h: format_number(data.bed, h))
    s = _sub(s, "progress", lambda h: format_number(float(data.progress), h, default="0"))
    s = _sub(s, "layerMax", lambda h: _layer_text(data.layer_max))
    s = _sub(s, "layers", lambda h: f"{_layer_text(data.layer)}/{_layer_text(data.layer_max)}")
    s = _sub(s, "layer", lambda h: _layer_text(data.layer))
    s = _sub(s, "time", lambda h: format_time(data.time or datetime.now(), h))
    s = _sub(s, "state", lambda h: data.state)
    s = _sub(s, "filename", lambda h: data.filename)
    s = _sub(s, "slicer", lambda h: data.slicer)
    s = _sub(
        s, "speedFactor",
        lambda h: f"{data.speed_factor:.0f}%" if data.speed_factor is not None else "-",
    )
    s = _sub(s, "speed", lambda h: f"{data.speed:.0f}" if data.speed is not None else "0")
    s = _sub(s, "flow", lambda h: f"{data.flow:.1f}" if data.flow is not None else "0.0")
    s = _sub(
        s, "filament",
        lambda h: f"{data.filament_mm / 1000.0:.2f}" if data.filament_mm is not None else "0.00",
    )
    s = _sub(s, "eta", lambda h: format_time(data.eta, h) if data.eta is not None else "-")

    if not re.search(r"\{(?:layer|layermax|layers)\b", template, re.IGNORECASE):
        s += f"  |  Layers: {_layer_text(data.layer)}/{_layer_text(data.layer_max)}"
    if song and song.strip():
        s += f"\nSong: {song.strip()}"

    return s.replace("\r", "").replace("%", "\\%")


# =============================================================================
# Text file
# =============================================================================

def text_dir_candidates(configured: Optional[str] = None) -> List[Path]:
    candidates = []
    if configured:
        candidates.append(Path(configured))
    candidates.append(Path.cwd() / "overlay")
    candidates.append(Path(tempfile.gettempdir()) / "printstreamer" / "overlay")
    return candidates


def resolve_text_dir(configured: Optional[str] = None) -> Path:
    """First candidate directory that can be created and written to."""
    for candidate in text_dir_candidates(configured):
        try:
            candidate.mkdir(parents=True, exist_ok=True)
        except OSError:
            continue
        if os.access(candidate, os.W_OK):
            return candidate
    raise OSError("No writable directory for the overlay text file")


def write_atomic(path: Path, content: str) -> None:
    tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


class OverlayTextGenerator:
    """
    Background loop that renders the overlay template into a text file.

    Example:
        generator = OverlayTextGenerator(settings.overlay, client)
        await generator.start()
        args = overlay_mjpeg_args(source, settings.overlay, str(generator.text_path))
    """

    def __init__(
        self,
        config: OverlayConfig,
        client: MoonrakerClient,
        metadata_provider: Optional[MetadataProvider] = None,
        song_provider: Optional[SongProvider] = None,
    ) -> None:
        self.config = config
        self.client = client
        self.metadata_provider = metadata_provider
        self.song_provider = song_provider
        self.text_path = resolve_text_dir(config.text_dir) / TEXT_FILE_NAME
        self.interval = max(config.refresh_ms, 200) / 1000.0

        self.writes: int = 0
        self.failures: int = 0
        self.last_text: Optional[str] = None

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        logger.info(f"Overlay text file: {self.text_path}")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _song(self) -> Optional[str]:
        if self.song_provider is None:
            return None
        return self.song_provider()

    def write_text(self, text: str) -> None:
        write_atomic(self.text_path, text)
        self.last_text = text
        self.writes += 1

    async def refresh(self) -> Optional[str]:
        """
        Query the printer once and rewrite the text file.

        Returns:
            The written text, or None when the query failed.
        """
        try:
            body = await self.client.query_objects()
        except PrinterApiError as e:
            self.failures += 1
            logger.debug(f"Overlay query failed, keeping previous text: {e}")
            return None

        status = extract_status(body)
        filename = ""
        print_stats = status.get("print_stats")
        if isinstance(print_stats, dict):
            filename = str(print_stats.get("filename") or "")
        metadata = self.metadata_provider(filename) if filename and self.metadata_provider else None

        text = render_template(self.config.template, compute_values(status, metadata), self._song())
        self.write_text(text)
        return text

    async def start(self) -> None:
        if self.running:
            return
        if not self.text_path.exists():
            self.write_text(render_template(self.config.template, OverlayData(), self._song()))
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="overlay_text")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.refresh()
            except OSError as e:
                self.failures += 1
                logger.error(f"Overlay text write failed: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def metrics(self) -> dict:
        return {
            "running": self.running,
            "text_path": str(self.text_path),
            "writes": self.writes,
            "failures": self.failures,
            "interval": self.interval,
        }
