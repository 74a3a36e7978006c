"""
Audio Broadcaster
=================

One live MP3 stream shared by every listener.

Structure:
    - supervisor task: picks the next track from the library, spawns an
      encoder for it, and on exit advances and respawns
    - feeder: reads encoder stdout in fixed-size chunks and publishes them
      to a ChunkFanout (bounded, drop-oldest per subscriber)

A track that ends by itself fires the track-finished callbacks; a track
ended by interrupt() (skip, pause, disable) does not.

Design Rules:
    - Subscribers join at the live edge and never block the feeder
    - Disabling audio stops the encoder but keeps subscribers attached
    - While enabled with nothing to play, silence is published so readers
      downstream never stall
    - Repeated spawn failures back off exponentially (1 s to 30 s)
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from printstreamer.audio.library import AudioLibrary, AudioTrack
from printstreamer.encoder.commands import audio_track_args, silence_args
from printstreamer.encoder.supervisor import EncoderHandle, EncoderSupervisor, SpawnError
from printstreamer.media.fanout import ChunkFanout


logger = logging.getLogger(__name__)


TrackFinishedCallback = Callable[[AudioTrack], Awaitable[None]]


class AudioBroadcaster:
    """
    Live-edge MP3 broadcaster fed by the audio library.

    Example:
        broadcaster = AudioBroadcaster(library, supervisor)
        await broadcaster.start()
        async for chunk in broadcaster.stream():
            ...
    """

    def __init__(
        self,
        library: AudioLibrary,
        supervisor: EncoderSupervisor,
        enabled: bool = True,
        bitrate: str = "192k",
        chunk_size: int = 8192,
        queue_size: int = 8,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
        idle_poll: float = 1.0,
    ) -> None:
        self.library = library
        self.supervisor = supervisor
        self.enabled = enabled
        self.bitrate = bitrate
        self.chunk_size = chunk_size
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.idle_poll = idle_poll

        self.fanout = ChunkFanout(queue_size=queue_size)
        self.restarts: int = 0
        self.spawn_failures: int = 0
        self.tracks_completed: int = 0

        self._callbacks: List[TrackFinishedCallback] = []
        self._handle: Optional[EncoderHandle] = None
        self._interrupted = False
        self._silent = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._wake = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def current_track(self) -> Optional[AudioTrack]:
        if self._handle is None or not self._handle.running or self._silent:
            return None
        return self.library.current

    def current_track_name(self) -> Optional[str]:
        track = self.current_track
        return track.name if track else None

    def add_track_finished_callback(self, callback: TrackFinishedCallback) -> None:
        self._callbacks.append(callback)

    # =========================================================================
    # Subscribers
    # =========================================================================

    async def stream(self) -> AsyncIterator[bytes]:
        """
        Yield live MP3 chunks produced after the caller subscribed.

        Finishes only when the caller stops iterating or the broadcaster
        shuts down.
        """
        channel = self.fanout.subscribe()
        try:
            while True:
                chunk = await channel.get()
                if chunk is None:
                    return
                yield chunk
        finally:
            self.fanout.unsubscribe(channel)

    async def silence(self) -> AsyncIterator[bytes]:
        """On-demand silent MP3 for one listener while music is disabled."""
        handle = await self.supervisor.spawn(silence_args(self.bitrate), label="audio_silence")
        try:
            async for chunk in handle.iter_stdout(self.chunk_size):
                yield chunk
        finally:
            await self.supervisor.stop(handle)

    # =========================================================================
    # Control
    # =========================================================================

    async def interrupt(self) -> bool:
        """
        Stop the current track so the next one starts. Idempotent.

        Returns:
            True if a running encoder was stopped by this call.
        """
        handle = self._handle
        self._wake.set()
        if handle is None or not handle.running or handle.stopping:
            return False
        self._interrupted = True
        await self.supervisor.stop(handle, grace=2.0)
        return True

    async def skip(self) -> bool:
        self.library.play()
        return await self.interrupt()

    async def previous(self) -> bool:
        if not self.library.rewind():
            return False
        self.library.play()
        await self.interrupt()
        return True

    async def play_track(self, name: str) -> bool:
        if not self.library.play_track(name):
            return False
        await self.interrupt()
        return True

    async def pause(self) -> None:
        """Stop output; the interrupted track restarts on play."""
        if not self.library.is_playing:
            return
        self.library.pause()
        if self.current_track is not None:
            self.library.requeue_current()
        await self.interrupt()

    def play(self) -> None:
        self.library.play()
        self._wake.set()

    async def toggle(self) -> bool:
        if self.library.is_playing:
            await self.pause()
        else:
            self.play()
        return self.library.is_playing

    async def apply_audio_enabled(self, enabled: bool) -> None:
        """
        Start or stop the encoder. Attached subscribers stay attached and
        simply receive nothing while disabled.
        """
        if enabled == self.enabled:
            return
        self.enabled = enabled
        logger.info(f"Audio {'enabled' if enabled else 'disabled'}")
        if enabled:
            self._wake.set()
        else:
            if self.current_track is not None:
                self.library.requeue_current()
            await self.interrupt()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._supervise(), name="audio_broadcaster")
        logger.info("Audio broadcaster started")

    async def stop(self) -> None:
        self._stop_event.set()
        self._wake.set()
        if self._handle is not None:
            self._interrupted = True
            await self.supervisor.stop(self._handle, grace=2.0)
        if self._task is not None:
            await self._task
            self._task = None
        self.fanout.close_all()
        logger.info("Audio broadcaster stopped")

    async def _idle(self, timeout: float) -> None:
        self._wake.clear()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _supervise(self) -> None:
        backoff = self.backoff_initial
        while not self._stop_event.is_set():
            if not self.enabled:
                await self._idle(self.idle_poll)
                continue

            track = self.library.next_track() if self.library.is_playing else None
            if track is None:
                await self._fill_silence()
                continue

            try:
                handle = await self.supervisor.spawn(
                    audio_track_args(track.path, self.bitrate), label="audio"
                )
            except SpawnError as e:
                self.spawn_failures += 1
                self.library.requeue_current()
                logger.error(f"Audio encoder spawn failed: {e}; retrying in {backoff:.0f}s")
                await self._idle(backoff)
                backoff = min(backoff * 2, self.backoff_max)
                continue

            self._handle = handle
            self._interrupted = False
            self.restarts += 1
            logger.info(f"Now playing: {track.name}")

            produced = await self._feed(handle)
            code = await handle.wait()
            handle.cancel_drains()
            self._handle = None

            if self._interrupted or self._stop_event.is_set():
                continue

            if code != 0 and produced == 0:
                self.spawn_failures += 1
                stderr = " | ".join(handle.recent_stderr()[-3:])
                logger.error(
                    f"Audio encoder exited with {code} before producing output "
                    f"({stderr}); retrying in {backoff:.0f}s"
                )
                await self._idle(backoff)
                backoff = min(backoff * 2, self.backoff_max)
                continue

            backoff = self.backoff_initial
            self.tracks_completed += 1
            await self._track_finished(track)

    async def _fill_silence(self) -> None:
        """
        Publish silence while nothing is playing so downstream readers keep
        receiving MP3. Returns on wake, stop, or when nobody is listening.
        """
        if self.fanout.subscriber_count == 0:
            await self._idle(self.idle_poll)
            return
        self._wake.clear()
        try:
            handle = await self.supervisor.spawn(silence_args(self.bitrate), label="audio_silence")
        except SpawnError as e:
            logger.error(f"Silence encoder spawn failed: {e}")
            await self._idle(self.backoff_max)
            return

        self._handle = handle
        self._silent = True
        feeder = asyncio.create_task(self._feed(handle), name="audio_silence_feed")
        try:
            while not feeder.done() and not self._wake.is_set():
                if self.fanout.subscriber_count == 0:
                    break
                if self.library.is_playing and self.library.queue:
                    break
                await self._idle_keep(self.idle_poll)
        finally:
            await self.supervisor.stop(handle, grace=2.0)
            await feeder
            self._handle = None
            self._silent = False

    async def _idle_keep(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    def wake(self) -> None:
        """Re-evaluate what to play (after enqueue, scan or folder change)."""
        self._wake.set()

    async def _feed(self, handle: EncoderHandle) -> int:
        produced = 0
        async for chunk in handle.iter_stdout(self.chunk_size):
            produced += len(chunk)
            self.fanout.publish(chunk)
        return produced

    async def _track_finished(self, track: AudioTrack) -> None:
        for callback in list(self._callbacks):
            try:
                await callback(track)
            except Exception as e:
                logger.exception(f"Track-finished callback failed: {e}")

    def status(self) -> dict:
        return {
            "running": self.running and self._handle is not None and self._handle.running,
            "enabled": self.enabled,
            "subscribers": self.fanout.subscriber_count,
            "bytes_broadcast": self.fanout.bytes_published,
            "restarts": self.restarts,
            "spawn_failures": self.spawn_failures,
            "tracks_completed": self.tracks_completed,
            "current": self.current_track_name(),
        }
