"""
Single Frame Capture
====================

Fetch one JPEG from an MJPEG endpoint.

Strategy:
    1. Ask for a snapshot (``?action=snapshot``) with a short timeout
    2. Otherwise read the MJPEG stream until one frame is extracted

Failures carry the HTTP status the control surface should answer with:
    503 - the stream ended without a frame
    504 - no frame within the timeout
    502 - the upstream request failed
"""

import asyncio
import logging
from typing import AsyncIterator
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from printstreamer.media.frames import FrameExtractor, SOI


logger = logging.getLogger(__name__)


class CaptureError(Exception):
    """Raised when no frame could be captured."""

    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


def snapshot_url(url: str) -> str:
    """Return the snapshot variant of a stream URL."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "action"]
    query.append(("action", "snapshot"))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


async def fetch_snapshot(client: httpx.AsyncClient, url: str, timeout: float = 5.0) -> bytes:
    """
    Request a snapshot. Returns empty bytes when the upstream has none.
    """
    try:
        response = await client.get(snapshot_url(url), timeout=timeout)
    except httpx.HTTPError as e:
        logger.debug(f"Snapshot request failed for {url}: {e}")
        return b""
    content_type = response.headers.get("content-type", "")
    if response.status_code == 200 and response.content.startswith(SOI) and "multipart" not in content_type:
        return response.content
    return b""


async def read_first_frame(client: httpx.AsyncClient, url: str, timeout: float = 6.0) -> bytes:
    """
    Read an MJPEG stream until one complete JPEG has arrived.

    Raises:
        CaptureError: 504 on timeout, 503 when the stream ends, 502 on HTTP errors
    """
    extractor = FrameExtractor()

    async def _read() -> bytes:
        async with client.stream("GET", url, timeout=timeout) as response:
            if response.status_code >= 400:
                raise CaptureError(f"Upstream returned {response.status_code}", 502)
            async for chunk in response.aiter_bytes():
                frames = extractor.feed(chunk)
                if frames:
                    return frames[0]
        raise CaptureError("Stream ended before a frame arrived", 503)

    try:
        return await asyncio.wait_for(_read(), timeout=timeout)
    except asyncio.TimeoutError:
        raise CaptureError(f"No frame from {url} within {timeout:.0f}s", 504)
    except httpx.HTTPError as e:
        raise CaptureError(f"Upstream error: {e}", 502)


async def capture_jpeg(
    client: httpx.AsyncClient,
    url: str,
    snapshot_timeout: float = 5.0,
    stream_timeout: float = 6.0,
) -> bytes:
    """Snapshot first, then fall back to parsing the MJPEG stream."""
    jpeg = await fetch_snapshot(client, url, timeout=snapshot_timeout)
    if jpeg:
        return jpeg
    return await read_first_frame(client, url, timeout=stream_timeout)


async def first_frame(parts: AsyncIterator[bytes], timeout: float = 10.0) -> bytes:
    """
    Take one JPEG from an in-process MJPEG iterator, then close it.

    Raises:
        CaptureError: 504 on timeout, 503 when the iterator ends first
    """
    extractor = FrameExtractor()

    async def _read() -> bytes:
        async for chunk in parts:
            frames = extractor.feed(chunk)
            if frames:
                return frames[0]
        raise CaptureError("Stream ended before a frame arrived", 503)

    try:
        return await asyncio.wait_for(_read(), timeout=timeout)
    except asyncio.TimeoutError:
        raise CaptureError(f"No frame within {timeout:.0f}s", 504)
    finally:
        await parts.aclose()
