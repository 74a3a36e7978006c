"""
Stream Controller
=================

Owns the ingestion publisher and the broadcast controller, and runs the
start / stop / repair sequences over both.

Sequences:
    start:  authenticate -> create + bind -> start publisher ->
            transition_when_ready
    stop:   stop publisher -> end broadcast -> (2 s later) playlist add
    repair: restart publisher -> transition_when_ready(60 s, 6 attempts);
            on failure the broadcast is ended and the local pipeline kept

Design Rules:
    - Sequences are serialized by one asyncio.Lock
    - Failures come back as LiveResult(success=False), never raised
    - Publisher escalation is routed to repair
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Set

from printstreamer.audio.library import AudioTrack
from printstreamer.media.streamers import RtmpPublisher
from printstreamer.youtube.controller import (
    AuthError,
    BroadcastController,
    BroadcastLifecycle,
    ProviderError,
)


logger = logging.getLogger(__name__)


REPAIR_MAX_WAIT_SECONDS = 60.0
REPAIR_MAX_ATTEMPTS = 6
PLAYLIST_DELAY_SECONDS = 2.0


@dataclass
class LiveResult:
    """Outcome of a stream controller sequence."""

    success: bool
    message: str = ""
    broadcast_id: Optional[str] = None

    def to_dict(self) -> dict:
        result = {"success": self.success, "broadcast_id": self.broadcast_id}
        if self.success:
            result["message"] = self.message
        else:
            result["error"] = self.message
        return result


class StreamController:
    """
    Start, stop and repair the live broadcast.

    Attributes:
        end_after_song: When set, ending is deferred to the next natural
            track completion
        output_enabled: Cleared while the mix output is switched off; no
            broadcast can start then
    """

    def __init__(
        self,
        broadcast: BroadcastController,
        publisher: RtmpPublisher,
        local_source: Optional[Callable[[], AsyncIterator[bytes]]] = None,
        local_enabled: bool = True,
        output_enabled: bool = True,
        repair_max_wait: float = REPAIR_MAX_WAIT_SECONDS,
        repair_max_attempts: int = REPAIR_MAX_ATTEMPTS,
        playlist_delay: float = PLAYLIST_DELAY_SECONDS,
    ) -> None:
        self.broadcast = broadcast
        self.publisher = publisher
        self.local_source = local_source
        self.local_enabled = local_enabled
        self.output_enabled = output_enabled
        self.repair_max_wait = repair_max_wait
        self.repair_max_attempts = repair_max_attempts
        self.playlist_delay = playlist_delay

        self.end_after_song = False
        self.repairs: int = 0

        self._lock = asyncio.Lock()
        self._local_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        publisher.on_failure = self._on_publisher_failure

    @property
    def broadcast_active(self) -> bool:
        return self.broadcast.active

    @property
    def local_running(self) -> bool:
        return self._local_task is not None and not self._local_task.done()

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # =========================================================================
    # Broadcast
    # =========================================================================

    async def start_broadcast(self, job_name: Optional[str] = None) -> LiveResult:
        async with self._lock:
            state = self.broadcast.state
            if self.broadcast.active and self.publisher.running:
                return LiveResult(True, "Broadcast already active", state.broadcast_id)
            if not self.output_enabled:
                return LiveResult(False, "Mix output is disabled", state.broadcast_id)

            try:
                await self.broadcast.authenticate()
                info = await self.broadcast.create_broadcast(job_name)
            except (AuthError, ProviderError) as e:
                logger.error(f"Could not create broadcast: {e}")
                return LiveResult(False, str(e), state.broadcast_id)

            await self.publisher.start(info.rtmp_url)
            if await self.broadcast.transition_when_ready(info.broadcast_id):
                logger.info(f"Broadcast {info.broadcast_id} is live")
                return LiveResult(True, "Broadcast is live", info.broadcast_id)

            await self.publisher.stop()
            error = self.broadcast.state.last_error or "Broadcast did not go live"
            logger.error(f"Broadcast {info.broadcast_id} failed to go live: {error}")
            try:
                await self.broadcast.end_broadcast(info.broadcast_id)
            except (AuthError, ProviderError) as e:
                logger.warning(f"Could not end failed broadcast {info.broadcast_id}: {e}")
            return LiveResult(False, error, info.broadcast_id)

    async def _stop_locked(self) -> LiveResult:
        broadcast_id = self.broadcast.state.broadcast_id
        self.end_after_song = False
        await self.publisher.stop()
        if not broadcast_id or self.broadcast.state.lifecycle in (
            BroadcastLifecycle.NONE, BroadcastLifecycle.ENDED
        ):
            return LiveResult(True, "No active broadcast", broadcast_id)
        try:
            await self.broadcast.end_broadcast(broadcast_id)
        except ProviderError as e:
            logger.error(f"Could not end broadcast {broadcast_id}: {e}")
            return LiveResult(False, str(e), broadcast_id)
        self._spawn(self._add_to_playlist(broadcast_id), "playlist_add")
        return LiveResult(True, "Broadcast ended", broadcast_id)

    async def stop_broadcast(self) -> LiveResult:
        """End the broadcast and stop the local pipeline."""
        async with self._lock:
            await self.stop_local_stream()
            return await self._stop_locked()

    async def stop_broadcast_keep_local(self) -> LiveResult:
        """End the broadcast; the local pipeline keeps running."""
        async with self._lock:
            result = await self._stop_locked()
        await self.start_local_stream()
        return result

    async def _add_to_playlist(self, broadcast_id: str) -> None:
        await asyncio.sleep(self.playlist_delay)
        if await self.broadcast.add_to_configured_playlist(broadcast_id):
            logger.info(f"Broadcast {broadcast_id} added to playlist")

    # =========================================================================
    # Repair
    # =========================================================================

    async def ensure_streaming_healthy(self) -> LiveResult:
        """
        Restart the publisher and re-drive the live transition.

        When the broadcast cannot be brought back it is ended and the
        local pipeline is kept.
        """
        async with self._lock:
            state = self.broadcast.state
            if not self.broadcast.active or not state.rtmp_url:
                return LiveResult(False, "No active broadcast to repair", state.broadcast_id)

            self.repairs += 1
            logger.warning(f"Repairing broadcast {state.broadcast_id} (repair #{self.repairs})")
            await self.publisher.start(state.rtmp_url)
            if await self.broadcast.transition_when_ready(
                state.broadcast_id,
                max_wait=self.repair_max_wait,
                max_attempts=self.repair_max_attempts,
            ):
                return LiveResult(True, "Broadcast repaired", state.broadcast_id)
            broadcast_id = state.broadcast_id
            await self._stop_locked()

        await self.start_local_stream()
        return LiveResult(False, "Repair failed; broadcast ended, local stream kept", broadcast_id)

    async def force_go_live(self) -> LiveResult:
        """Make sure the publisher runs, then drive the live transition now."""
        async with self._lock:
            state = self.broadcast.state
            if not self.broadcast.active or not state.rtmp_url:
                return LiveResult(False, "No active broadcast", state.broadcast_id)
            if not self.publisher.running:
                await self.publisher.start(state.rtmp_url)
            if await self.broadcast.transition_when_ready(state.broadcast_id):
                return LiveResult(True, "Broadcast is live", state.broadcast_id)
            return LiveResult(False, state.last_error or "Broadcast did not go live", state.broadcast_id)

    async def _on_publisher_failure(self, reason: str) -> None:
        logger.error(f"Publisher escalated ({reason}); starting repair")
        self._spawn(self.ensure_streaming_healthy(), "broadcast_repair")

    # =========================================================================
    # Local pipeline
    # =========================================================================

    async def start_local_stream(self) -> bool:
        """Keep the local pipeline warm with one internal reader."""
        if not self.local_enabled or self.local_source is None:
            return False
        if self.local_running:
            return True
        self._local_task = asyncio.create_task(self._consume_local(), name="local_stream")
        logger.info("Local stream started")
        return True

    async def stop_local_stream(self) -> None:
        task, self._local_task = self._local_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Local stream stopped")

    async def _consume_local(self) -> None:
        while True:
            source = self.local_source()
            try:
                async for _ in source:
                    pass
            except Exception as e:
                logger.warning(f"Local stream reader failed: {e}")
            finally:
                await source.aclose()
            await asyncio.sleep(5.0)

    # =========================================================================
    # End after song
    # =========================================================================

    def set_end_after_song(self, enabled: bool) -> None:
        self.end_after_song = enabled
        logger.info(f"End after current song {'armed' if enabled else 'cleared'}")

    async def on_track_finished(self, track: AudioTrack) -> None:
        """Track-completion callback: ends the broadcast when armed."""
        if not self.end_after_song:
            return
        logger.info(f"Track '{track.name}' finished; ending broadcast as requested")
        self.end_after_song = False
        await self.stop_broadcast_keep_local()

    async def close(self) -> None:
        await self.publisher.stop()
        await self.stop_local_stream()
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

    def status(self) -> dict:
        return {
            "broadcast": self.broadcast.state.to_dict(),
            "publisher": self.publisher.status(),
            "local_running": self.local_running,
            "end_after_song": self.end_after_song,
            "repairs": self.repairs,
        }
