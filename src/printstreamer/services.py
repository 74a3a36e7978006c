"""
Service Container
=================

Builds every long-lived component from Settings and wires them together
by constructor injection. The container lives on ``app.state.services``.

Startup order: http client, supervisor, webcam, printer client and
poller, overlay text, audio, timelapse, provider access, stream
controller, orchestrator. Shutdown runs in reverse.
"""

import logging
import time
from typing import AsyncIterator, Optional

import httpx

from printstreamer.audio.broadcaster import AudioBroadcaster
from printstreamer.audio.library import AudioLibrary
from printstreamer.config import Settings, save_config
from printstreamer.encoder.commands import mix_args, overlay_mjpeg_args
from printstreamer.encoder.supervisor import EncoderSupervisor
from printstreamer.media.streamers import (
    PipelineStage,
    RtmpPublisher,
    SharedEncoderStage,
    StageKind,
    StageRegistry,
    encoder_stream,
)
from printstreamer.media.webcam import WebcamProxy
from printstreamer.orchestrator.jobs import JobOrchestrator
from printstreamer.orchestrator.stream import StreamController
from printstreamer.overlay.text import OverlayTextGenerator
from printstreamer.printer.client import MoonrakerClient
from printstreamer.printer.poller import PrinterPoller
from printstreamer.timelapse.manager import TimelapseManager
from printstreamer.youtube.controller import BroadcastController
from printstreamer.youtube.ratelimit import ApiRateLimiter
from printstreamer.youtube.tokens import TokenStore


logger = logging.getLogger(__name__)


class ServiceContainer:
    """
    Every service the HTTP surface and background tasks need.

    Args:
        settings: Loaded configuration
        config_path: Where POST /api/config writes back to
        http: Shared client; created when not given
        supervisor: Encoder supervisor; created when not given
    """

    def __init__(
        self,
        settings: Settings,
        config_path: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        supervisor: Optional[EncoderSupervisor] = None,
    ) -> None:
        self.settings = settings
        self.config_path = config_path
        self.started_at = time.time()
        self.shutting_down = False

        self.http = http or httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
        self._owns_http = http is None
        self.supervisor = supervisor or EncoderSupervisor(binary=settings.stream.encoder_path)
        self.registry = StageRegistry()

        stream = settings.stream
        self.webcam = WebcamProxy(
            source_url=stream.source,
            client=self.http,
            fallback_path=stream.fallback_jpeg_path,
            fallback_fps=stream.fallback_fps,
            probe_interval=stream.upstream_probe_seconds,
        )
        self.registry.add(PipelineStage(
            name="source",
            kind=StageKind.SOURCE,
            input_ref=stream.source,
            output_endpoint="/stream/source",
        ))

        self.printer = MoonrakerClient(settings.moonraker, self.http)
        self.poller = PrinterPoller(
            self.printer,
            base_interval=settings.orchestrator.poll_interval_seconds,
            fast_interval=settings.orchestrator.fast_poll_interval_seconds,
        )

        self.library = AudioLibrary(settings.audio.folder)
        self.audio = AudioBroadcaster(
            self.library,
            self.supervisor,
            enabled=settings.audio.enabled,
            bitrate=settings.audio.bitrate,
            chunk_size=settings.audio.chunk_size,
            queue_size=settings.audio.subscriber_queue_size,
        )

        timelapse = settings.timelapse
        self.timelapse = TimelapseManager(
            timelapse.main_folder,
            capture=self.webcam.snapshot,
            supervisor=self.supervisor,
            period=timelapse.period_seconds,
            frame_rate=timelapse.frame_rate,
            hold_seconds=timelapse.final_hold_seconds,
            capture_timeout=timelapse.capture_timeout_seconds,
            start_after_layer1=timelapse.start_after_layer1,
            metadata_fetcher=self.printer.file_metadata,
        )

        self.overlay_text = OverlayTextGenerator(
            settings.overlay,
            self.printer,
            metadata_provider=self.timelapse.metadata_for_filename,
            song_provider=self.audio.current_track_name,
        )
        self.overlay_stage = SharedEncoderStage(
            self.registry.add(PipelineStage(
                name="overlay",
                kind=StageKind.OVERLAY,
                input_ref=self.stage_url("/stream/source"),
                output_endpoint="/stream/overlay",
            )),
            self.supervisor,
            lambda: overlay_mjpeg_args(
                self.stage_url("/stream/source"), settings.overlay, str(self.overlay_text.text_path)
            ),
            retry_attempts=stream.publish_retry_attempts,
            retry_backoff=stream.publish_retry_backoff_seconds,
        )

        self.limiter = ApiRateLimiter.from_config(settings.youtube.polling)
        self.broadcast = BroadcastController(
            settings.youtube,
            self.http,
            self.limiter,
            TokenStore(settings.youtube.token_file),
        )
        self.publisher = RtmpPublisher(
            self.supervisor,
            self.registry,
            self.mix_stream,
            retry_attempts=stream.publish_retry_attempts,
            retry_backoff=stream.publish_retry_backoff_seconds,
        )
        self.stream = StreamController(
            self.broadcast,
            self.publisher,
            local_source=self.overlay_stream,
            local_enabled=stream.local_enabled,
            output_enabled=stream.mix_enabled,
        )
        self.audio.add_track_finished_callback(self.stream.on_track_finished)

        self.orchestrator = JobOrchestrator(settings, self.poller, self.timelapse, self.stream)

    # =========================================================================
    # Stage streams
    # =========================================================================

    def stage_url(self, path: str) -> str:
        return self.settings.server.public_base_url.rstrip("/") + path

    def overlay_stream(self) -> AsyncIterator[bytes]:
        """Overlay MJPEG, or the source itself while the overlay is disabled."""
        if not self.settings.overlay.enabled:
            return self.webcam.stream()
        return self.overlay_stage.stream()

    def audio_stream(self) -> AsyncIterator[bytes]:
        if not self.audio.enabled:
            return self.audio.silence()
        return self.audio.stream()

    def mix_stream(self) -> AsyncIterator[bytes]:
        stream = self.settings.stream
        return encoder_stream(
            self.supervisor,
            self.registry,
            StageKind.MIX,
            mix_args(
                self.stage_url("/stream/overlay"),
                self.stage_url("/stream/audio"),
                bitrate_kbps=stream.bitrate_kbps,
                fps=stream.target_fps,
            ),
            input_ref="/stream/overlay + /stream/audio",
            output_endpoint="/stream/mix",
        )

    def save_settings(self) -> bool:
        """Persist the live settings when a config file is known."""
        if not self.config_path:
            return False
        save_config(self.settings, self.config_path)
        return True

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        self.library.scan()
        await self.overlay_text.start()
        await self.audio.start()
        await self.poller.start()
        await self.orchestrator.start()
        await self.stream.start_local_stream()
        logger.info("All services started")

    async def close(self) -> None:
        self.shutting_down = True
        await self.orchestrator.stop()
        await self.stream.close()
        await self.poller.stop()
        await self.timelapse.close()
        await self.audio.stop()
        await self.overlay_text.stop()
        await self.overlay_stage.shutdown(force=True)
        await self.broadcast.close()
        await self.supervisor.stop_all()
        if self._owns_http:
            await self.http.aclose()
        logger.info("All services stopped")
