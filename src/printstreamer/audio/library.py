"""
Audio Library
=============

Track catalogue plus the play queue and rotation policy.

Selection order for the next track:
    1. the immediate queue (FIFO of track names)
    2. repeat ONE: the current track again
    3. shuffle: a random library track
    4. the next library track; at the end, wrap if repeat ALL else stop

Design Rules:
    - Library order is case-insensitive by name
    - Every mutation is a plain synchronous call, so it completes without
      yielding to the event loop
"""

import logging
import random
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Deque, List, Optional


logger = logging.getLogger(__name__)


SUPPORTED_EXTENSIONS = frozenset({".mp3", ".aac", ".m4a", ".wav", ".flac", ".ogg", ".opus"})
HISTORY_SIZE = 50
MAX_UPLOAD_BYTES = 200 * 1024 * 1024
COPY_CHUNK = 64 * 1024


class RepeatMode(str, Enum):
    NONE = "none"
    ONE = "one"
    ALL = "all"


@dataclass(frozen=True)
class AudioTrack:
    """One playable file. ``name`` is the file stem."""

    name: str
    path: str
    duration: Optional[float] = None

    @property
    def file_name(self) -> str:
        return Path(self.path).name

    def to_dict(self) -> dict:
        return {"name": self.name, "path": self.path, "duration": self.duration}


class AudioLibrary:
    """
    Folder-backed track library with queue, shuffle and repeat.

    Example:
        library = AudioLibrary("audio")
        library.enqueue(["intro"])
        library.play()
        track = library.next_track()
    """

    def __init__(self, folder: str, rng: Optional[random.Random] = None) -> None:
        self._folder = Path(folder)
        self._tracks: List[AudioTrack] = []
        self._queue: Deque[str] = deque()
        self._history: Deque[AudioTrack] = deque(maxlen=HISTORY_SIZE)
        self._cursor: Optional[int] = None
        self._current: Optional[AudioTrack] = None
        self._rng = rng or random.Random()

        self.is_playing: bool = False
        self.shuffle: bool = False
        self.repeat: RepeatMode = RepeatMode.NONE

        self.scan()

    # =========================================================================
    # Catalogue
    # =========================================================================

    @property
    def folder(self) -> str:
        return str(self._folder)

    @property
    def tracks(self) -> List[AudioTrack]:
        return list(self._tracks)

    @property
    def current(self) -> Optional[AudioTrack]:
        return self._current

    @property
    def queue(self) -> List[str]:
        return list(self._queue)

    def scan(self) -> int:
        """Rescan the folder. Returns the number of tracks found."""
        tracks: List[AudioTrack] = []
        if self._folder.is_dir():
            for path in self._folder.iterdir():
                if path.is_file() and path.suffix.lower() in SUPPORTED_EXTENSIONS:
                    tracks.append(AudioTrack(name=path.stem, path=str(path)))
        tracks.sort(key=lambda t: t.name.lower())

        self._tracks = tracks
        self._cursor = None
        if self._current is not None:
            for index, track in enumerate(tracks):
                if track.path == self._current.path:
                    self._cursor = index
                    break
        logger.info(f"Audio library: {len(tracks)} track(s) in {self._folder}")
        return len(tracks)

    def set_folder(self, folder: str) -> int:
        self._folder = Path(folder)
        self._folder.mkdir(parents=True, exist_ok=True)
        self._queue.clear()
        return self.scan()

    def add_file(self, filename: str, source: BinaryIO, max_bytes: int = MAX_UPLOAD_BYTES) -> Path:
        """
        Copy an uploaded file into the folder under a free name.

        An existing name gets a " (n)" suffix. Blocking; the caller rescans.

        Raises:
            ValueError: Unsupported extension, empty or oversized file
            OSError: The folder cannot be written
        """
        name = Path(filename or "").name
        if not name.strip():
            raise ValueError("Invalid file name")
        stem, suffix = Path(name).stem, Path(name).suffix
        if suffix.lower() not in SUPPORTED_EXTENSIONS:
            raise ValueError(f"Unsupported file extension '{suffix.lower()}'")

        self._folder.mkdir(parents=True, exist_ok=True)
        target = self._folder / name
        attempt = 1
        while target.exists():
            target = self._folder / f"{stem} ({attempt}){suffix}"
            attempt += 1

        written = 0
        with open(target, "xb") as out:
            try:
                while True:
                    chunk = source.read(COPY_CHUNK)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > max_bytes:
                        raise ValueError("File too large")
                    out.write(chunk)
                if written == 0:
                    raise ValueError("No file provided")
            except (OSError, ValueError):
                out.close()
                target.unlink(missing_ok=True)
                raise
        logger.info(f"Audio upload saved: {target} ({written} bytes)")
        return target

    def find(self, name: str) -> Optional[AudioTrack]:
        """Look up a track by name or file name, case-insensitively."""
        wanted = name.strip().lower()
        for track in self._tracks:
            if track.name.lower() == wanted or track.file_name.lower() == wanted:
                return track
        return None

    # =========================================================================
    # Queue
    # =========================================================================

    def enqueue(self, names: List[str]) -> int:
        """Append known tracks to the queue. Returns how many were added."""
        added = 0
        for name in names:
            track = self.find(name)
            if track is None:
                logger.warning(f"Cannot queue unknown track '{name}'")
                continue
            self._queue.append(track.name)
            added += 1
        return added

    def remove_from_queue(self, name: str) -> bool:
        wanted = name.strip().lower()
        for queued in list(self._queue):
            if queued.lower() == wanted:
                self._queue.remove(queued)
                return True
        return False

    def clear_queue(self) -> None:
        self._queue.clear()

    def play_track(self, name: str) -> bool:
        """Put a track at the head of the queue and start playback."""
        track = self.find(name)
        if track is None:
            return False
        self._queue.appendleft(track.name)
        self.is_playing = True
        return True

    def requeue_current(self) -> None:
        """Put the current track back at the head of the queue."""
        if self._current is not None:
            self._queue.appendleft(self._current.name)

    def rewind(self) -> bool:
        """
        Arrange for the previously played track to come next.

        Returns:
            False when there is no earlier track in the history.
        """
        if len(self._history) < 2:
            return False
        self._history.pop()
        previous = self._history.pop()
        self._queue.appendleft(previous.name)
        return True

    # =========================================================================
    # Playback flags
    # =========================================================================

    def play(self) -> None:
        self.is_playing = True

    def pause(self) -> None:
        self.is_playing = False

    def toggle(self) -> bool:
        self.is_playing = not self.is_playing
        return self.is_playing

    def set_shuffle(self, enabled: bool) -> None:
        self.shuffle = enabled

    def set_repeat(self, mode: RepeatMode) -> None:
        self.repeat = RepeatMode(mode)

    # =========================================================================
    # Rotation
    # =========================================================================

    def next_track(self) -> Optional[AudioTrack]:
        """
        Advance to and return the next track, or None when nothing is left.
        """
        track = self._pick()
        self._current = track
        if track is not None:
            self._history.append(track)
        return track

    def _pick(self) -> Optional[AudioTrack]:
        while self._queue:
            track = self.find(self._queue.popleft())
            if track is not None:
                self.is_playing = True
                self._cursor = self._tracks.index(track)
                return track

        if not self._tracks:
            return None

        if self.repeat == RepeatMode.ONE and self._current is not None:
            if self.find(self._current.name) is not None:
                return self._current

        if self.shuffle:
            self._cursor = self._rng.randrange(len(self._tracks))
            return self._tracks[self._cursor]

        if self._cursor is None:
            self._cursor = 0
            return self._tracks[0]

        following = self._cursor + 1
        if following >= len(self._tracks):
            if self.repeat != RepeatMode.ALL:
                return None
            following = 0
        self._cursor = following
        return self._tracks[following]

    def state(self) -> dict:
        return {
            "is_playing": self.is_playing,
            "current": self._current.file_name if self._current else None,
            "queue": list(self._queue),
            "shuffle": self.shuffle,
            "repeat": self.repeat.value,
        }
