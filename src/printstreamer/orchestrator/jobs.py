"""
Job Orchestrator
================

Consumes printer events and drives the timelapse and broadcast
lifecycle for each print job.

Transitions:
    not active -> printing:  start a timelapse session (initial frame) and,
                             when auto-broadcast is on, a broadcast
    printing -> last layer:  finalize the timelapse early, once per session
    printing -> done:        end the broadcast (end_stream_after_print),
                             finalize the timelapse unless already done
    printing -> paused:      pause capture only

Finalize also runs when the printer has been idle for
idle_finalize_delay, or unreachable for offline_grace.

Design Rules:
    - Events are handled one at a time; an event waits for the previous
      event's lifecycle actions to finish
    - A single-operation failure is logged; the loop never dies
    - Finalize (assembly, upload, playlist, thumbnail) runs in the background
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Set

from printstreamer.config import Settings
from printstreamer.orchestrator.rules import (
    TERMINAL_STATES,
    LastLayerThresholds,
    last_layer_reason,
    looks_complete,
)
from printstreamer.orchestrator.stream import StreamController
from printstreamer.printer.poller import PrinterEvent, PrinterPoller
from printstreamer.printer.snapshot import PrinterSnapshot, PrinterState
from printstreamer.timelapse.manager import FinalizeState, TimelapseManager, list_frames
from printstreamer.youtube.controller import AuthError, ProviderError


logger = logging.getLogger(__name__)


@dataclass
class JobSession:
    """
    One print job as seen by the orchestrator.

    Attributes:
        job_name: Resolved job identity
        timelapse_id: Timelapse session id, None when it could not start
        last_layer_fired: Early finalize already scheduled
    """

    job_name: str
    filename: Optional[str] = None
    timelapse_id: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    last_layer_fired: bool = False
    finalize_state: FinalizeState = FinalizeState.RUNNING
    video_path: Optional[str] = None
    video_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "job_name": self.job_name,
            "filename": self.filename,
            "timelapse": self.timelapse_id,
            "started_at": self.started_at,
            "last_layer_fired": self.last_layer_fired,
            "finalize_state": self.finalize_state.value,
            "video_path": self.video_path,
            "video_id": self.video_id,
        }


class JobOrchestrator:
    """
    Printer-event driven job lifecycle.

    Example:
        orchestrator = JobOrchestrator(settings, poller, timelapse, stream)
        await orchestrator.start()
    """

    def __init__(
        self,
        settings: Settings,
        poller: PrinterPoller,
        timelapse: TimelapseManager,
        stream: Optional[StreamController] = None,
    ) -> None:
        self.settings = settings
        self.poller = poller
        self.timelapse = timelapse
        self.stream = stream

        self.session: Optional[JobSession] = None
        self.finalized: Dict[str, JobSession] = {}
        self.events_handled: int = 0

        self._early_finalized_job: Optional[str] = None
        self._last_active: Optional[PrinterSnapshot] = None
        self._inactive_since: Optional[float] = None
        self._unreachable_since: Optional[float] = None
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def thresholds(self) -> LastLayerThresholds:
        return LastLayerThresholds.from_config(self.settings.timelapse)

    @property
    def auto_broadcast(self) -> bool:
        return self.settings.youtube.live_broadcast.enabled and self.settings.oauth_configured

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="job_orchestrator")
        logger.info("Job orchestrator started")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("Job orchestrator stopped")

    async def _run(self) -> None:
        async for event in self.poller.events():
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.exception(f"Error handling printer event: {e}")

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # =========================================================================
    # Event handling
    # =========================================================================

    async def handle_event(self, event: PrinterEvent) -> None:
        async with self._lock:
            self.events_handled += 1
            snapshot = event.current
            now = time.monotonic()

            if not snapshot.reachable:
                await self._handle_unreachable(now)
                return
            self._unreachable_since = None

            if snapshot.is_active:
                self._inactive_since = None
                await self._handle_active(snapshot, event.job_name)
            else:
                await self._handle_inactive(snapshot, now)

    async def _handle_unreachable(self, now: float) -> None:
        if self.session is None:
            return
        if self._unreachable_since is None:
            self._unreachable_since = now
            return
        grace = self.settings.orchestrator.offline_grace_minutes * 60.0
        if now - self._unreachable_since >= grace:
            logger.warning(f"Printer offline for {grace / 60:.0f} min; finalizing {self.session.job_name}")
            await self._end_session("printer offline")

    async def _handle_active(self, snapshot: PrinterSnapshot, job_name: Optional[str]) -> None:
        if job_name is None:
            return

        if self.session is not None and self.session.job_name != job_name:
            logger.info(f"Job changed: {self.session.job_name} -> {job_name}")
            await self._end_session("job changed")

        if self.session is None:
            if job_name == self._early_finalized_job:
                return
            await self._begin_session(snapshot, job_name)

        session = self.session
        self._last_active = snapshot
        if session.timelapse_id and not session.last_layer_fired:
            self.timelapse.notify_progress(session.timelapse_id, snapshot.current_layer, snapshot.progress)
            self.timelapse.set_paused(session.timelapse_id, snapshot.state == PrinterState.PAUSED)

        if not session.last_layer_fired:
            reason = last_layer_reason(snapshot, self.thresholds)
            if reason is not None:
                self._fire_last_layer(session, snapshot, reason)

    def _fire_last_layer(self, session: JobSession, snapshot: PrinterSnapshot, reason: str) -> None:
        session.last_layer_fired = True
        self._early_finalized_job = session.job_name
        logger.info(
            f"Last layer detected for {session.job_name} ({reason}: layer "
            f"{snapshot.current_layer}/{snapshot.total_layers}, {snapshot.progress_percent:.1f}%, "
            f"remaining {snapshot.remaining}); finalizing timelapse early"
        )
        self._spawn(self._finalize(session), f"finalize_{session.job_name}")

    async def _handle_inactive(self, snapshot: PrinterSnapshot, now: float) -> None:
        # Any reachable non-printing state ends the print, so a reprint of
        # the same file is a new job
        self._early_finalized_job = None
        if self.session is None:
            return

        if snapshot.state in TERMINAL_STATES or looks_complete(self._last_active):
            await self._end_session(f"printer {snapshot.state.value}")
            return

        if self._inactive_since is None:
            self._inactive_since = now
        if now - self._inactive_since >= self.settings.orchestrator.idle_finalize_delay_seconds:
            await self._end_session(f"printer {snapshot.state.value}")

    # =========================================================================
    # Session actions
    # =========================================================================

    async def _begin_session(self, snapshot: PrinterSnapshot, job_name: str) -> None:
        filename = snapshot.filename or snapshot.queue_filename or job_name
        session = JobSession(job_name=job_name, filename=filename)
        self.session = session
        self._early_finalized_job = None
        self._last_active = snapshot
        logger.info(f"Print started: {job_name}")

        try:
            session.timelapse_id = await self.timelapse.start(job_name, hint_filename=filename)
        except OSError as e:
            logger.error(f"Could not start timelapse for {job_name}: {e}")
        if session.timelapse_id is None:
            logger.warning(f"No timelapse session for {job_name}")

        if self.stream is not None and self.auto_broadcast and not self.stream.broadcast_active:
            result = await self.stream.start_broadcast(job_name)
            if not result.success:
                logger.warning(f"Broadcast not started for {job_name}: {result.message}")
        elif not self.settings.youtube.live_broadcast.enabled:
            logger.info("Auto-broadcast disabled; manual mode")

    async def _end_session(self, reason: str) -> None:
        session, self.session = self.session, None
        self._inactive_since = None
        self._unreachable_since = None
        self._last_active = None
        if session is None:
            return
        logger.info(f"Print ended ({reason}): {session.job_name}")

        await self._end_broadcast()
        if not session.last_layer_fired:
            self._spawn(self._finalize(session), f"finalize_{session.job_name}")

    async def _end_broadcast(self) -> None:
        if self.stream is None or not self.stream.broadcast_active:
            return
        if not self.settings.youtube.live_broadcast.end_stream_after_print:
            logger.info("Leaving broadcast running (end_stream_after_print disabled)")
            return
        if self.stream.end_after_song:
            logger.info("Print finished; broadcast ends after the current song")
            return
        result = await self.stream.stop_broadcast_keep_local()
        if not result.success:
            logger.error(f"Failed to end broadcast: {result.message}")

    async def _finalize(self, session: JobSession) -> None:
        if session.finalize_state != FinalizeState.RUNNING:
            return
        session.finalize_state = FinalizeState.FINALIZING
        self.finalized[session.job_name] = session
        if not session.timelapse_id:
            session.finalize_state = FinalizeState.FAILED
            return

        session.video_path = await self.timelapse.stop(session.timelapse_id)
        if session.video_path is None:
            session.finalize_state = FinalizeState.FAILED
            logger.error(f"Timelapse {session.timelapse_id} produced no video")
            return
        session.finalize_state = FinalizeState.FINALIZED
        logger.info(f"Timelapse finalized: {session.video_path}")

        if self.settings.youtube.timelapse_upload.enabled and self.stream is not None:
            await self._upload(session)

    async def _upload(self, session: JobSession) -> None:
        try:
            session.video_id = await self.upload_timelapse(session.video_path, session.job_name)
        except (AuthError, ProviderError, OSError) as e:
            session.finalize_state = FinalizeState.FAILED
            logger.error(f"Timelapse upload failed for {session.job_name}: {e}")
            return
        session.finalize_state = FinalizeState.UPLOADED

    async def upload_timelapse(self, video_path: str, job_name: str) -> str:
        """
        Upload a finished timelapse, add it to the playlist and use its
        last frame as the thumbnail.

        Returns:
            The provider video id

        Raises:
            AuthError, ProviderError, OSError: When the upload itself fails
        """
        broadcast = self.stream.broadcast
        await broadcast.authenticate()
        video_id = await broadcast.upload_timelapse(video_path, job_name)
        logger.info(f"Timelapse uploaded: https://www.youtube.com/watch?v={video_id}")
        await broadcast.add_to_configured_playlist(video_id)

        frames = list_frames(Path(video_path).parent)
        if frames:
            try:
                await broadcast.set_thumbnail(video_id, frames[-1].read_bytes())
            except (ProviderError, OSError) as e:
                logger.warning(f"Could not set timelapse thumbnail: {e}")
        return video_id

    def status(self) -> dict:
        return {
            "running": self._task is not None and not self._task.done(),
            "session": self.session.to_dict() if self.session else None,
            "finalized": [s.to_dict() for s in self.finalized.values()][-10:],
            "auto_broadcast": self.settings.youtube.live_broadcast.enabled,
            "auto_upload": self.settings.youtube.timelapse_upload.enabled,
            "end_stream_after_print": self.settings.youtube.live_broadcast.end_stream_after_print,
            "events_handled": self.events_handled,
        }
