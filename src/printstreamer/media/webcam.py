"""
Webcam Proxy
============

The single authoritative MJPEG source for the pipeline.

Two modes, selected per read:
    - Pass-through: frames from the upstream camera, re-framed under a
      fixed multipart boundary
    - Fallback: a solid-black JPEG at a low frame rate, used while the
      camera is disabled or the upstream is unreachable

Because every part is emitted under the same boundary, a client can be
switched between modes mid-response without noticing. While in fallback
after an upstream failure, the upstream is probed periodically and the
client is handed back to pass-through once it answers.
"""

import asyncio
import base64
import logging
import os
import time
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx

from printstreamer.media.capture import CaptureError, capture_jpeg
from printstreamer.media.frames import FrameExtractor, mjpeg_part


logger = logging.getLogger(__name__)


BOUNDARY = "frame"
MJPEG_CONTENT_TYPE = f"multipart/x-mixed-replace; boundary={BOUNDARY}"

# Minimal 1x1 black baseline JPEG
FALLBACK_JPEG = base64.b64decode(
    "/9j/4AAQSkZJRgABAQAAAQABAAD/2wCEAAICAgICAgMCAgIDAwMDBAYEBAQEBAgGBgUGBggHBwcHBw0JCQgK"
    "CAgJCgsMDAwMDAwMDAwMDAwMDAz/wAALCAABAAEBAREA/8QAFQABAQAAAAAAAAAAAAAAAAAAAAb/xAAUEAEA"
    "AAAAAAAAAAAAAAAAAAAA/8QAFQEBAQAAAAAAAAAAAAAAAAAAAgP/xAAUEQEAAAAAAAAAAAAAAAAAAAAA/9oA"
    "DAMBAAIRAxEAPwD9AP/Z"
)


def ensure_fallback_jpeg(path: str) -> bytes:
    """
    Load the fallback JPEG, writing the built-in one first if absent.
    """
    target = Path(path)
    if target.exists() and target.stat().st_size > 0:
        return target.read_bytes()

    if target.parent and not target.parent.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(f"{target.name}.{os.getpid()}.tmp")
    tmp.write_bytes(FALLBACK_JPEG)
    os.replace(tmp, target)
    logger.info(f"Generated fallback JPEG at {target}")
    return FALLBACK_JPEG


class WebcamProxy:
    """
    MJPEG source with transparent fallback.

    Attributes:
        source_url: Upstream camera URL
        fallback_jpeg: Bytes of the fallback frame
        disabled: When True every client receives the fallback
    """

    def __init__(
        self,
        source_url: str,
        client: httpx.AsyncClient,
        fallback_path: str = "fallback_black.jpg",
        fallback_fps: float = 6.0,
        probe_interval: float = 5.0,
        read_timeout: float = 10.0,
    ) -> None:
        self.source_url = source_url
        self.fallback_path = fallback_path
        self.fallback_interval = 1.0 / fallback_fps
        self.probe_interval = probe_interval
        self.read_timeout = read_timeout
        self._client = client
        self._disabled = False
        self._fallback_jpeg: Optional[bytes] = None
        self._active_clients = 0
        self._fallback_clients = 0

    # =========================================================================
    # Flag
    # =========================================================================

    @property
    def disabled(self) -> bool:
        return self._disabled

    def set_disabled(self, disabled: bool) -> None:
        if disabled != self._disabled:
            logger.info(f"Camera {'disabled (fallback)' if disabled else 'enabled'}")
        self._disabled = disabled

    def toggle(self) -> bool:
        """Flip the flag and return the new disabled value."""
        self.set_disabled(not self._disabled)
        return self._disabled

    @property
    def fallback_jpeg(self) -> bytes:
        if self._fallback_jpeg is None:
            self._fallback_jpeg = ensure_fallback_jpeg(self.fallback_path)
        return self._fallback_jpeg

    # =========================================================================
    # Streaming
    # =========================================================================

    async def stream(self) -> AsyncIterator[bytes]:
        """
        Yield multipart MJPEG parts until the caller stops iterating.
        """
        self._active_clients += 1
        try:
            while True:
                if self._disabled:
                    async for part in self._fallback(upstream_failed=False):
                        yield part
                    continue

                extractor = FrameExtractor()
                try:
                    async with self._client.stream(
                        "GET", self.source_url, timeout=self.read_timeout
                    ) as response:
                        if response.status_code >= 400:
                            raise httpx.HTTPStatusError(
                                f"Upstream returned {response.status_code}",
                                request=response.request,
                                response=response,
                            )
                        async for chunk in response.aiter_bytes():
                            if self._disabled:
                                break
                            for frame in extractor.feed(chunk):
                                if self._disabled:
                                    break
                                yield mjpeg_part(frame, BOUNDARY)
                    if self._disabled:
                        continue
                    logger.warning("Upstream camera stream ended, switching to fallback")
                except httpx.HTTPError as e:
                    logger.warning(f"Upstream camera unavailable ({e}), switching to fallback")

                async for part in self._fallback(upstream_failed=True):
                    yield part
        finally:
            self._active_clients -= 1

    async def _fallback(self, upstream_failed: bool) -> AsyncIterator[bytes]:
        """
        Emit fallback parts until pass-through should resume.
        """
        self._fallback_clients += 1
        last_probe = time.monotonic()
        try:
            while True:
                yield mjpeg_part(self.fallback_jpeg, BOUNDARY)
                await asyncio.sleep(self.fallback_interval)
                if self._disabled:
                    continue
                if not upstream_failed:
                    return
                if time.monotonic() - last_probe >= self.probe_interval:
                    last_probe = time.monotonic()
                    if await self.probe():
                        logger.info("Upstream camera recovered, resuming pass-through")
                        return
        finally:
            self._fallback_clients -= 1

    async def probe(self, timeout: float = 3.0) -> bool:
        """Whether the upstream answers with a non-error status."""
        try:
            async with self._client.stream("GET", self.source_url, timeout=timeout) as response:
                return response.status_code < 400
        except httpx.HTTPError:
            return False

    async def snapshot(self) -> bytes:
        """One JPEG: upstream snapshot, else first upstream frame, else fallback."""
        if self._disabled:
            return self.fallback_jpeg
        try:
            return await capture_jpeg(self._client, self.source_url)
        except CaptureError as e:
            logger.warning(f"Snapshot failed ({e}), serving fallback frame")
            return self.fallback_jpeg

    async def health(self) -> dict:
        """Upstream reachability for diagnostics."""
        started = time.monotonic()
        error = None
        status_code = None
        try:
            async with self._client.stream("GET", self.source_url, timeout=5.0) as response:
                status_code = response.status_code
        except httpx.HTTPError as e:
            error = str(e) or e.__class__.__name__
        return {
            "source": self.source_url,
            "reachable": status_code is not None and status_code < 400,
            "status_code": status_code,
            "latency_ms": round((time.monotonic() - started) * 1000, 1),
            "error": error,
            "disabled": self._disabled,
        }

    def metrics(self) -> dict:
        return {
            "disabled": self._disabled,
            "active_clients": self._active_clients,
            "fallback_clients": self._fallback_clients,
        }
