"""
Pipeline Stages
===============

Encoder-backed stages of the media pipeline.

Stages are tagged variants sharing one supervisor:
    - SOURCE:  webcam proxy, no encoder
    - OVERLAY: one shared encoder; created on the first subscriber and
      torn down when the last one leaves
    - MIX:     one encoder per connection, torn down on disconnect
    - PUBLISH: the ingestion bridge feeding the mix output to RTMP

Every live stage is recorded in a StageRegistry for /api/debug/pipeline.

Design Rules:
    - Consumers retry a dead encoder a bounded number of times with
      linear backoff, then escalate
    - Subscribers never block the reader; fan-out is drop-oldest
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from printstreamer.encoder.commands import rtmp_publish_args, single_frame_args
from printstreamer.encoder.supervisor import (
    EncoderHandle,
    EncoderSupervisor,
    SpawnError,
    WriteStatus,
)
from printstreamer.media.capture import CaptureError
from printstreamer.media.fanout import ChunkFanout
from printstreamer.media.frames import FrameExtractor, mjpeg_part


logger = logging.getLogger(__name__)


ArgsFactory = Callable[[], List[str]]
ChunkSource = Callable[[], AsyncIterator[bytes]]
FailureCallback = Callable[[str], Awaitable[None]]


class StageKind(str, Enum):
    SOURCE = "source"
    OVERLAY = "overlay"
    AUDIO = "audio"
    MIX = "mix"
    PUBLISH = "publish"


@dataclass
class PipelineStage:
    """
    Introspection record for one stage.

    Attributes:
        input_ref: What the stage reads (URL or upstream stage)
        output_endpoint: Where its output is served
        handle: Current encoder, if any
    """

    name: str
    kind: StageKind
    input_ref: str
    output_endpoint: str
    handle: Optional[EncoderHandle] = None
    last_error: Optional[str] = None
    subscribers: int = 0
    restarts: int = 0
    created_at: float = field(default_factory=time.time)

    @property
    def running(self) -> bool:
        return self.handle is not None and self.handle.running

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "input": self.input_ref,
            "output": self.output_endpoint,
            "running": self.running,
            "subscribers": self.subscribers,
            "restarts": self.restarts,
            "last_error": self.last_error,
            "encoder": self.handle.to_dict() if self.handle else None,
        }


class StageRegistry:
    """Live stages by name."""

    def __init__(self) -> None:
        self._stages: Dict[str, PipelineStage] = {}
        self._ids = itertools.count(1)

    def add(self, stage: PipelineStage) -> PipelineStage:
        self._stages[stage.name] = stage
        return stage

    def connection_name(self, kind: StageKind) -> str:
        return f"{kind.value}#{next(self._ids)}"

    def remove(self, name: str) -> None:
        self._stages.pop(name, None)

    def get(self, name: str) -> Optional[PipelineStage]:
        return self._stages.get(name)

    def snapshot(self) -> List[dict]:
        return [stage.to_dict() for stage in self._stages.values()]


# =============================================================================
# Shared encoder (overlay)
# =============================================================================

class SharedEncoderStage:
    """
    One MJPEG encoder fanned out to every subscriber.

    The encoder's stdout is split into JPEG frames and re-emitted as
    multipart parts, so late subscribers always start on a frame boundary.

    Example:
        stage = SharedEncoderStage(stage_record, supervisor, lambda: overlay_args)
        async for part in stage.stream():
            ...
    """

    def __init__(
        self,
        stage: PipelineStage,
        supervisor: EncoderSupervisor,
        args_factory: ArgsFactory,
        boundary: str = "frame",
        queue_size: int = 8,
        retry_attempts: int = 3,
        retry_backoff: float = 1.5,
        chunk_size: int = 64 * 1024,
    ) -> None:
        self.stage = stage
        self.supervisor = supervisor
        self.args_factory = args_factory
        self.boundary = boundary
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.chunk_size = chunk_size

        self.fanout = ChunkFanout(queue_size=queue_size)
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stream(self) -> AsyncIterator[bytes]:
        # Joining and shutting down are serialized so a new subscriber is
        # never attached to an encoder that is being torn down
        async with self._lock:
            channel = self.fanout.subscribe()
            self.stage.subscribers = self.fanout.subscriber_count
            if not self.running:
                self._task = asyncio.create_task(self._run(), name=f"{self.stage.name}_stage")
        try:
            while True:
                part = await channel.get()
                if part is None:
                    return
                yield part
        finally:
            self.fanout.unsubscribe(channel)
            self.stage.subscribers = self.fanout.subscriber_count
            if self.fanout.subscriber_count == 0:
                await self.shutdown()

    async def shutdown(self, force: bool = False) -> None:
        async with self._lock:
            if self.fanout.subscriber_count and not force:
                return
            task, self._task = self._task, None
            handle = self.stage.handle
            if handle is not None:
                await self.supervisor.stop(handle)
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            self.stage.handle = None
            self.fanout.close_all()
            self.stage.subscribers = 0
        logger.info(f"[{self.stage.name}] encoder stopped")

    async def _run(self) -> None:
        try:
            await self._supervise()
        finally:
            self.stage.handle = None
            self.fanout.close_all()
            self.stage.subscribers = 0

    async def _supervise(self) -> None:
        failures = 0
        while self.fanout.subscriber_count > 0:
            try:
                handle = await self.supervisor.spawn(self.args_factory(), label=self.stage.name)
            except SpawnError as e:
                self.stage.last_error = str(e)
                logger.error(f"[{self.stage.name}] {e}")
                break

            self.stage.handle = handle
            extractor = FrameExtractor()
            frames = 0
            async for chunk in handle.iter_stdout(self.chunk_size):
                for jpeg in extractor.feed(chunk):
                    frames += 1
                    self.fanout.publish(mjpeg_part(jpeg, self.boundary))
            code = await handle.wait()
            handle.cancel_drains()
            if handle.stopping or self.fanout.subscriber_count == 0:
                return

            failures = 0 if frames else failures + 1
            self.stage.restarts += 1
            self.stage.last_error = f"encoder exited with {code}: " + " | ".join(
                handle.recent_stderr()[-3:]
            )
            logger.warning(f"[{self.stage.name}] {self.stage.last_error}")
            if failures > self.retry_attempts:
                logger.error(f"[{self.stage.name}] giving up after {failures} failed restarts")
                break
            await asyncio.sleep(self.retry_backoff * max(failures, 1))

    def metrics(self) -> dict:
        return {**self.stage.to_dict(), "fanout": self.fanout.metrics()}


# =============================================================================
# Per-connection encoders (mix, capture)
# =============================================================================

async def encoder_stream(
    supervisor: EncoderSupervisor,
    registry: StageRegistry,
    kind: StageKind,
    args: List[str],
    input_ref: str,
    output_endpoint: str,
    chunk_size: int = 64 * 1024,
) -> AsyncIterator[bytes]:
    """
    Spawn an encoder for one connection and yield its stdout.

    The encoder is stopped when the caller stops iterating.

    Raises:
        SpawnError: If the encoder cannot be started
    """
    stage = registry.add(PipelineStage(
        name=registry.connection_name(kind),
        kind=kind,
        input_ref=input_ref,
        output_endpoint=output_endpoint,
        subscribers=1,
    ))
    try:
        stage.handle = await supervisor.spawn(args, label=stage.name)
    except SpawnError:
        registry.remove(stage.name)
        raise
    try:
        async for chunk in stage.handle.iter_stdout(chunk_size):
            yield chunk
    finally:
        await supervisor.stop(stage.handle)
        registry.remove(stage.name)


async def capture_with_encoder(
    supervisor: EncoderSupervisor,
    url: str,
    timeout: float = 10.0,
) -> bytes:
    """
    Decode one frame from any stream URL as JPEG.

    Raises:
        CaptureError: 504 on timeout, 503 when no frame came out, 502 on spawn failure
    """
    try:
        handle = await supervisor.spawn(single_frame_args(url), label="capture")
    except SpawnError as e:
        raise CaptureError(str(e), 502)

    extractor = FrameExtractor()

    async def _read() -> bytes:
        async for chunk in handle.iter_stdout():
            frames = extractor.feed(chunk)
            if frames:
                return frames[0]
        raise CaptureError("Encoder produced no frame", 503)

    try:
        return await asyncio.wait_for(_read(), timeout=timeout)
    except asyncio.TimeoutError:
        raise CaptureError(f"No frame from {url} within {timeout:.0f}s", 504)
    finally:
        await supervisor.stop(handle, grace=1.0)


# =============================================================================
# Ingestion bridge
# =============================================================================

class RtmpPublisher:
    """
    Pushes the mix output into the broadcast ingestion URL.

    Chunks from the source are written to the publish encoder's stdin. A
    BROKEN_PIPE (or the source ending) respawns both, up to
    retry_attempts times with linear backoff; past that on_failure is
    called once and the publisher stops.

    Example:
        publisher = RtmpPublisher(supervisor, registry, mix_source)
        await publisher.start("rtmp://a.rtmp.youtube.com/live2/KEY")
    """

    def __init__(
        self,
        supervisor: EncoderSupervisor,
        registry: StageRegistry,
        source: ChunkSource,
        retry_attempts: int = 3,
        retry_backoff: float = 1.5,
        stable_seconds: float = 30.0,
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        self.supervisor = supervisor
        self.registry = registry
        self.source = source
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.stable_seconds = stable_seconds
        self.on_failure = on_failure

        self.rtmp_url: Optional[str] = None
        self.bytes_written: int = 0
        self.stage: Optional[PipelineStage] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, rtmp_url: str) -> None:
        await self.stop()
        self.rtmp_url = rtmp_url
        self._stop_event.clear()
        self.stage = self.registry.add(PipelineStage(
            name="publish",
            kind=StageKind.PUBLISH,
            input_ref="/stream/mix",
            output_endpoint=_redact(rtmp_url),
        ))
        self._task = asyncio.create_task(self._run(), name="rtmp_publisher")
        logger.info(f"Publisher started for {_redact(rtmp_url)}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        if self.stage is not None and self.stage.handle is not None:
            await self.supervisor.stop(self.stage.handle)
        task, self._task = self._task, None
        if task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.registry.remove("publish")
        logger.info("Publisher stopped")

    async def _pump(self, handle: EncoderHandle) -> WriteStatus:
        source = self.source()
        try:
            async for chunk in source:
                status = await handle.write_frame(chunk)
                if status is not WriteStatus.OK:
                    return status
                self.bytes_written += len(chunk)
        finally:
            await source.aclose()
        return WriteStatus.CANCELLED if self._stop_event.is_set() else WriteStatus.BROKEN_PIPE

    async def _run(self) -> None:
        failures = 0
        reason = "publisher failed"
        while not self._stop_event.is_set():
            try:
                handle = await self.supervisor.spawn(
                    rtmp_publish_args(self.rtmp_url), label="publish", stdin=True, stdout=False
                )
            except SpawnError as e:
                reason = str(e)
                break

            self.stage.handle = handle
            started = time.monotonic()
            try:
                status = await self._pump(handle)
            except SpawnError as e:
                status = WriteStatus.BROKEN_PIPE
                self.stage.last_error = str(e)
            await self.supervisor.stop(handle)
            if status is WriteStatus.CANCELLED or self._stop_event.is_set():
                return

            if time.monotonic() - started >= self.stable_seconds:
                failures = 0
            failures += 1
            self.stage.restarts += 1
            tail = " | ".join(handle.recent_stderr()[-3:])
            self.stage.last_error = f"broken pipe (exit {handle.returncode}) {tail}".strip()
            if failures > self.retry_attempts:
                reason = f"publisher failed {failures} times: {self.stage.last_error}"
                break
            delay = self.retry_backoff * failures
            logger.warning(f"Publisher pipe broke, restart {failures}/{self.retry_attempts} in {delay:.1f}s")
            await asyncio.sleep(delay)

        if self._stop_event.is_set():
            return
        self.stage.last_error = reason
        logger.error(f"Publisher escalating: {reason}")
        self._task = None
        if self.on_failure is not None:
            await self.on_failure(reason)

    def status(self) -> dict:
        return {
            "running": self.running,
            "target": _redact(self.rtmp_url) if self.rtmp_url else None,
            "bytes_written": self.bytes_written,
            "restarts": self.stage.restarts if self.stage else 0,
            "last_error": self.stage.last_error if self.stage else None,
        }


def _redact(rtmp_url: str) -> str:
    """Hide the stream key in logs and diagnostics."""
    base, _, key = rtmp_url.rpartition("/")
    if not base or not key:
        return rtmp_url
    return f"{base}/{key[:4]}****"
