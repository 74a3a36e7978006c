"""
Timelapse Manager
=================

Per-job capture sessions, frame storage and video assembly.

Layout under the main folder:
    <session>/frame_000000.jpg ...        numbered from 0, contiguous
    <session>/timelapse_metadata.json     filename, session name, started_at
    <session>/<session>.mp4               assembled video

One periodic timer walks every active session and captures a frame for
each. Session operations (capture, stop, frame deletion) are serialized
per session with an asyncio.Lock.

Design Rules:
    - Session ids are sanitized folder names; unique via a _N suffix
    - Frames are never deleted or renumbered while a session is active
    - stop() returns the video path, or None when assembly failed
"""

import asyncio
import json
import logging
import os
import re
import shutil
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from printstreamer.encoder.commands import timelapse_args
from printstreamer.encoder.supervisor import EncoderSupervisor, SpawnError
from printstreamer.media.frames import SOI


logger = logging.getLogger(__name__)


FRAME_PATTERN = "frame_%06d.jpg"
FRAME_GLOB = "frame_*.jpg"
METADATA_FILE = "timelapse_metadata.json"

_REPLACED_CHARS = set('<>:"/\\|?*') | set(" -()[]{}:;,.#")

FrameSource = Callable[[], Awaitable[bytes]]
MetadataFetcher = Callable[[str], Awaitable[dict]]


class TimelapseError(Exception):
    """Raised for invalid timelapse operations; carries the HTTP status to answer with."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class FinalizeState(str, Enum):
    RUNNING = "running"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"
    UPLOADED = "uploaded"
    FAILED = "failed"


# =============================================================================
# Naming
# =============================================================================

def sanitize_name(name: Optional[str]) -> str:
    """Turn a job or file name into a safe folder name."""
    if not name or not name.strip():
        return "unknown"
    base = Path(name.strip()).name
    stem, dot, _ = base.rpartition(".")
    if dot and stem:
        base = stem
    result = "".join("_" if (c in _REPLACED_CHARS or ord(c) < 32) else c for c in base)
    result = result.replace("&", "and")
    result = re.sub(r"_+", "_", result).strip("_")
    return result or "unknown"


def unique_directory(root: Path, base: str) -> Path:
    """``root/base``, or the first free ``root/base_N`` starting at 2."""
    candidate = root / base
    suffix = 2
    while candidate.exists():
        candidate = root / f"{base}_{suffix}"
        suffix += 1
    return candidate


def frame_name(index: int) -> str:
    return FRAME_PATTERN % index


def list_frames(folder: Path) -> List[Path]:
    return sorted(folder.glob(FRAME_GLOB))


def list_videos(folder: Path) -> List[Path]:
    return sorted(folder.glob("*.mp4"))


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def slicer_summary(metadata: dict) -> dict:
    """Pick the slicer attributes the overlay and API expose."""
    keys = (
        "slicer", "slicer_version", "estimated_time", "layer_count", "layer_height",
        "first_layer_height", "object_height", "filament_total", "filament_weight_total",
        "filament_type", "filament_name", "nozzle_diameter",
    )
    summary = {k: metadata.get(k) for k in keys if metadata.get(k) is not None}
    if "layer_count" not in summary:
        height = metadata.get("object_height")
        layer = metadata.get("layer_height")
        first = metadata.get("first_layer_height") or layer
        if isinstance(height, (int, float)) and isinstance(layer, (int, float)) and layer > 0:
            summary["layer_count"] = int(round((height - (first or 0)) / layer)) + 1
    return summary


@dataclass
class TimelapseSession:
    """
    One capture session.

    Attributes:
        session_id: Folder name under the main folder
        filename: Printer file the session belongs to
        armed: Periodic capture enabled (held until layer 1 when gated)
    """

    session_id: str
    folder: Path
    filename: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    last_capture_at: Optional[float] = None
    frame_count: int = 0
    active: bool = True
    paused: bool = False
    armed: bool = True
    finalize_state: FinalizeState = FinalizeState.RUNNING
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def to_dict(self) -> dict:
        return {
            "name": self.session_id,
            "filename": self.filename,
            "started_at": _iso(self.started_at),
            "last_capture_at": _iso(self.last_capture_at),
            "frame_count": self.frame_count,
            "active": self.active,
            "paused": self.paused,
            "armed": self.armed,
            "finalize_state": self.finalize_state.value,
        }


class TimelapseManager:
    """
    Owns every timelapse session and the shared capture timer.

    Example:
        manager = TimelapseManager("timelapse", capture=webcam.snapshot, supervisor=supervisor)
        session_id = await manager.start("benchy.gcode", hint_filename="benchy.gcode")
        ...
        video = await manager.stop(session_id)
    """

    def __init__(
        self,
        main_folder: str,
        capture: FrameSource,
        supervisor: EncoderSupervisor,
        period: float = 60.0,
        frame_rate: int = 30,
        hold_seconds: float = 1.0,
        capture_timeout: float = 10.0,
        start_after_layer1: bool = True,
        metadata_fetcher: Optional[MetadataFetcher] = None,
    ) -> None:
        self.root = Path(main_folder)
        self.root.mkdir(parents=True, exist_ok=True)
        self.capture = capture
        self.supervisor = supervisor
        self.period = period
        self.frame_rate = frame_rate
        self.hold_seconds = hold_seconds
        self.capture_timeout = capture_timeout
        self.start_after_layer1 = start_after_layer1
        self.metadata_fetcher = metadata_fetcher

        self.sessions: Dict[str, TimelapseSession] = {}
        self.capture_failures: int = 0
        self._metadata: Dict[str, dict] = {}
        self._timer: Optional[asyncio.Task] = None

    @property
    def timer_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def is_active(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        return session is not None and session.active

    def active_sessions(self) -> List[TimelapseSession]:
        return [s for s in self.sessions.values() if s.active]

    def _folder(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
            raise TimelapseError(f"Invalid timelapse name: {session_id!r}")
        return self.root / session_id

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def _find_resumable(self, base: str, filename: Optional[str]) -> Optional[Path]:
        pattern = re.compile(rf"^{re.escape(base)}(_\d+)?$")
        for folder in sorted(self.root.iterdir()):
            if not folder.is_dir() or not pattern.match(folder.name):
                continue
            if folder.name in self.sessions or list_videos(folder) or not list_frames(folder):
                continue
            metadata = self._read_session_metadata(folder)
            if filename and metadata.get("filename") == filename:
                return folder
        return None

    def _read_session_metadata(self, folder: Path) -> dict:
        path = folder / METADATA_FILE
        if not path.is_file():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_session_metadata(self, session: TimelapseSession) -> None:
        path = session.folder / METADATA_FILE
        tmp = path.with_name(f".{METADATA_FILE}.{uuid.uuid4().hex}.tmp")
        tmp.write_text(json.dumps({
            "session_name": session.session_id,
            "filename": session.filename,
            "started_at": _iso(session.started_at),
        }, indent=2), encoding="utf-8")
        os.replace(tmp, path)

    async def start(
        self,
        session_name: str,
        hint_filename: Optional[str] = None,
        capture_initial: bool = True,
    ) -> Optional[str]:
        """
        Start (or resume) a session and capture an initial frame.

        Returns:
            The session id, or None when the name is empty.
        """
        if not session_name or not session_name.strip():
            return None

        base = sanitize_name(hint_filename or session_name)
        folder = self._find_resumable(base, hint_filename)
        resumed = folder is not None
        if folder is None:
            folder = unique_directory(self.root, base)
            folder.mkdir(parents=True)

        session = TimelapseSession(
            session_id=folder.name,
            folder=folder,
            filename=hint_filename,
            frame_count=len(list_frames(folder)),
            armed=not self.start_after_layer1,
        )
        if resumed:
            started = self._read_session_metadata(folder).get("started_at")
            if started:
                session.started_at = datetime.fromisoformat(started).timestamp()
        else:
            self._write_session_metadata(session)
        self.sessions[session.session_id] = session
        logger.info(
            f"{'Resumed' if resumed else 'Started'} timelapse {session.session_id}"
            + (f" at frame {session.frame_count}" if resumed else "")
        )

        if hint_filename:
            await self.cache_file_metadata(hint_filename)
        if capture_initial:
            await self.capture_session(session)
        self._ensure_timer()
        return session.session_id

    def notify_progress(
        self,
        session_id: str,
        current_layer: Optional[int],
        progress: float = 0.0,
    ) -> None:
        """Arm periodic capture once the first layer is reached."""
        session = self.sessions.get(session_id)
        if session is None or session.armed:
            return
        if (current_layer is not None and current_layer >= 1) or (current_layer is None and progress > 0):
            session.armed = True
            logger.info(f"Timelapse {session_id}: first layer reached, capture armed")

    def set_paused(self, session_id: str, paused: bool) -> None:
        session = self.sessions.get(session_id)
        if session is not None and session.paused != paused:
            session.paused = paused
            logger.info(f"Timelapse {session_id} {'paused' if paused else 'resumed'}")

    async def stop(self, session_id: str) -> Optional[str]:
        """
        Halt capture and assemble the video.

        Returns:
            Path of the produced MP4, or None on failure or unknown session.
        """
        session = self.sessions.get(session_id)
        if session is None or not session.active:
            return None

        async with session.lock:
            session.active = False
            session.finalize_state = FinalizeState.FINALIZING
            logger.info(f"Stopping timelapse {session_id} ({session.frame_count} frames)")

        if not self.active_sessions():
            await self._stop_timer()

        video = await self.assemble(session.folder)
        session.finalize_state = FinalizeState.FINALIZED if video else FinalizeState.FAILED
        self.sessions.pop(session_id, None)
        return str(video) if video else None

    async def stop_all(self) -> None:
        for session in self.active_sessions():
            await self.stop(session.session_id)

    async def assemble(self, folder: Path) -> Optional[Path]:
        """Encode ``frame_%06d.jpg`` into ``<folder>/<folder>.mp4``."""
        frames = list_frames(folder)
        if not frames:
            logger.warning(f"No frames in {folder}, nothing to assemble")
            return None

        output = folder / f"{folder.name}.mp4"
        args = timelapse_args(
            str(folder / FRAME_PATTERN),
            str(output),
            frame_rate=self.frame_rate,
            hold_seconds=self.hold_seconds,
        )
        try:
            handle = await self.supervisor.spawn(args, label="timelapse", stdout=False)
        except SpawnError as e:
            logger.error(f"Timelapse assembly for {folder.name} failed to start: {e}")
            return None

        code = await handle.wait()
        handle.cancel_drains()
        if code != 0 or not output.is_file() or output.stat().st_size == 0:
            logger.error(
                f"Timelapse assembly for {folder.name} failed (exit {code}): "
                + " | ".join(handle.recent_stderr()[-5:])
            )
            return None
        logger.info(f"Timelapse video created: {output} ({len(frames)} frames)")
        return output

    # =========================================================================
    # Capture
    # =========================================================================

    async def capture_session(self, session: TimelapseSession) -> Optional[Path]:
        """Fetch one JPEG and store it as the session's next frame."""
        async with session.lock:
            if not session.active:
                return None
            try:
                jpeg = await asyncio.wait_for(self.capture(), timeout=self.capture_timeout)
            except asyncio.TimeoutError:
                self.capture_failures += 1
                logger.warning(f"Timelapse {session.session_id}: frame capture timed out")
                return None
            except Exception as e:
                self.capture_failures += 1
                logger.warning(f"Timelapse {session.session_id}: frame capture failed: {e}")
                return None

            if not jpeg or not jpeg.startswith(SOI):
                self.capture_failures += 1
                logger.warning(f"Timelapse {session.session_id}: capture returned no JPEG")
                return None

            path = session.folder / frame_name(session.frame_count)
            tmp = path.with_name(f".{path.name}.tmp")
            try:
                await asyncio.to_thread(tmp.write_bytes, jpeg)
                os.replace(tmp, path)
            except OSError as e:
                self.capture_failures += 1
                logger.error(f"Timelapse {session.session_id}: could not write {path.name}: {e}")
                return None
            session.frame_count += 1
            session.last_capture_at = time.time()
            logger.debug(f"Timelapse {session.session_id}: saved {path.name}")
            return path

    def _ensure_timer(self) -> None:
        if not self.timer_running:
            self._timer = asyncio.create_task(self._capture_loop(), name="timelapse_capture")
            logger.info(f"Timelapse capture timer started (period {self.period:g}s)")

    async def _stop_timer(self) -> None:
        if self._timer is None:
            return
        if self._timer is not asyncio.current_task():
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
        self._timer = None
        logger.info("Timelapse capture timer stopped")

    async def _capture_loop(self) -> None:
        while self.active_sessions():
            await asyncio.sleep(self.period)
            for session in self.active_sessions():
                if session.paused or not session.armed:
                    continue
                try:
                    await self.capture_session(session)
                except Exception as e:
                    logger.exception(f"Timelapse {session.session_id}: capture tick failed: {e}")

    async def close(self) -> None:
        await self._stop_timer()

    # =========================================================================
    # Archive
    # =========================================================================

    def list(self) -> List[dict]:
        """Every session folder, active or archived, newest first."""
        entries = []
        for folder in self.root.iterdir():
            if not folder.is_dir():
                continue
            frames = list_frames(folder)
            session = self.sessions.get(folder.name)
            metadata = self._read_session_metadata(folder)
            entries.append({
                "name": folder.name,
                "path": str(folder),
                "active": session is not None and session.active,
                "paused": session.paused if session else False,
                "filename": metadata.get("filename"),
                "frame_count": len(frames),
                "start_time": metadata.get("started_at")
                or _iso(frames[0].stat().st_mtime if frames else folder.stat().st_mtime),
                "last_frame_time": _iso(frames[-1].stat().st_mtime) if frames else None,
                "videos": [v.name for v in list_videos(folder)],
            })
        entries.sort(key=lambda e: e["start_time"] or "", reverse=True)
        return entries

    def frames(self, session_id: str) -> List[str]:
        folder = self._folder(session_id)
        if not folder.is_dir():
            raise TimelapseError(f"Unknown timelapse: {session_id}", 404)
        return [p.name for p in list_frames(folder)]

    def frame_path(self, session_id: str, frame: str) -> Path:
        folder = self._folder(session_id)
        if not re.fullmatch(r"frame_\d{6}\.jpg", frame):
            raise TimelapseError(f"Invalid frame name: {frame!r}")
        path = folder / frame
        if not path.is_file():
            raise TimelapseError(f"Unknown frame: {session_id}/{frame}", 404)
        return path

    def video_path(self, session_id: str) -> Optional[Path]:
        folder = self._folder(session_id)
        preferred = folder / f"{session_id}.mp4"
        if preferred.is_file():
            return preferred
        videos = list_videos(folder)
        return videos[0] if videos else None

    async def delete_frame(self, session_id: str, frame: str) -> int:
        """
        Delete one frame and renumber the rest contiguously.

        Returns:
            Remaining frame count.
        """
        if self.is_active(session_id):
            raise TimelapseError("Cannot delete frames while the timelapse is active", 409)
        path = self.frame_path(session_id, frame)
        path.unlink()

        remaining = list_frames(path.parent)
        staged = []
        for index, old in enumerate(remaining):
            if old.name != frame_name(index):
                tmp = old.with_name(f".renumber_{index:06d}.tmp")
                os.replace(old, tmp)
                staged.append((tmp, old.with_name(frame_name(index))))
        for tmp, final in staged:
            os.replace(tmp, final)
        logger.info(f"Deleted {session_id}/{frame}; {len(remaining)} frame(s) remain")
        return len(remaining)

    async def delete(self, session_id: str) -> None:
        if self.is_active(session_id):
            raise TimelapseError("Cannot delete an active timelapse", 409)
        folder = self._folder(session_id)
        if not folder.is_dir():
            raise TimelapseError(f"Unknown timelapse: {session_id}", 404)
        await asyncio.to_thread(shutil.rmtree, folder)
        logger.info(f"Deleted timelapse {session_id}")

    async def generate(self, session_id: str) -> Optional[str]:
        """Re-assemble the video from the frames on disk."""
        if self.is_active(session_id):
            raise TimelapseError("Stop the timelapse before generating a video", 409)
        folder = self._folder(session_id)
        if not folder.is_dir():
            raise TimelapseError(f"Unknown timelapse: {session_id}", 404)
        video = await self.assemble(folder)
        return str(video) if video else None

    # =========================================================================
    # Slicer metadata
    # =========================================================================

    async def cache_file_metadata(self, filename: str) -> Optional[dict]:
        if filename in self._metadata:
            return self._metadata[filename]
        if self.metadata_fetcher is None:
            return None
        try:
            raw = await self.metadata_fetcher(filename)
        except Exception as e:
            logger.warning(f"Slicer metadata lookup for {filename} failed: {e}")
            return None
        summary = slicer_summary(raw or {})
        self._metadata[filename] = summary
        return summary

    def metadata_for_filename(self, filename: str) -> Optional[dict]:
        """Cached slicer metadata for a printer file, matched by name."""
        if not filename:
            return None
        if filename in self._metadata:
            return self._metadata[filename]
        wanted = sanitize_name(filename)
        for cached_name, summary in self._metadata.items():
            if sanitize_name(cached_name) == wanted:
                return summary
        return None

    def get_metadata(self, session_id: str) -> dict:
        folder = self._folder(session_id)
        if not folder.is_dir():
            raise TimelapseError(f"Unknown timelapse: {session_id}", 404)
        metadata = self._read_session_metadata(folder)
        filename = metadata.get("filename")
        session = self.sessions.get(session_id)
        return {
            **metadata,
            "name": session_id,
            "frame_count": len(list_frames(folder)),
            "session": session.to_dict() if session else None,
            "slicer": self.metadata_for_filename(filename) if filename else None,
        }

    def metrics(self) -> dict:
        return {
            "active_sessions": [s.to_dict() for s in self.active_sessions()],
            "timer_running": self.timer_running,
            "capture_failures": self.capture_failures,
            "cached_metadata": len(self._metadata),
        }
