"""
Audio Module
============

Background music for the stream.

    - AudioLibrary: tracks, queue, shuffle and repeat
    - AudioBroadcaster: one live MP3 encoder fanned out to every listener
"""

from printstreamer.audio.broadcaster import AudioBroadcaster
from printstreamer.audio.library import (
    SUPPORTED_EXTENSIONS,
    AudioLibrary,
    AudioTrack,
    RepeatMode,
)


__all__ = [
    "SUPPORTED_EXTENSIONS",
    "AudioBroadcaster",
    "AudioLibrary",
    "AudioTrack",
    "RepeatMode",
]
