"""
Webcam Proxy Tests
==================

Tests for pass-through, fallback switching and single frame capture,
using an httpx.MockTransport camera.
"""

import asyncio

import httpx
import pytest

from printstreamer.media.capture import CaptureError, capture_jpeg, first_frame, snapshot_url
from printstreamer.media.frames import FrameExtractor, mjpeg_part
from printstreamer.media.webcam import FALLBACK_JPEG, WebcamProxy, ensure_fallback_jpeg

from conftest import make_jpeg


SOURCE = "http://camera.local/stream"


class FakeCamera:
    """MJPEG camera with an optional snapshot endpoint."""

    def __init__(self, frames=50, status=200, snapshot=True, stream_frames=True):
        self.frames = frames
        self.status = status
        self.snapshot = snapshot
        self.stream_frames = stream_frames

    async def _body(self):
        for i in range(self.frames):
            yield mjpeg_part(make_jpeg(b"live%d" % i), "camboundary")
            await asyncio.sleep(0)

    async def _no_frames(self):
        yield b"--camboundary\r\n"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.params.get("action") == "snapshot":
            if not self.snapshot:
                return httpx.Response(404)
            return httpx.Response(200, content=make_jpeg(b"snap"), headers={"content-type": "image/jpeg"})
        if self.status >= 400:
            return httpx.Response(self.status)
        body = self._body() if self.stream_frames else self._no_frames()
        return httpx.Response(
            200,
            content=body,
            headers={"content-type": "multipart/x-mixed-replace; boundary=camboundary"},
        )


@pytest.fixture
def fallback_file(tmp_path):
    path = tmp_path / "fallback.jpg"
    path.write_bytes(make_jpeg(b"FALLBACK"))
    return path


def make_proxy(camera, fallback_file):
    client = httpx.AsyncClient(transport=httpx.MockTransport(camera))
    proxy = WebcamProxy(
        SOURCE, client, fallback_path=str(fallback_file), fallback_fps=100.0, probe_interval=60.0,
    )
    return proxy, client


class TestWebcamStream:
    """Tests for WebcamProxy.stream()."""

    @pytest.mark.asyncio
    async def test_disable_mid_stream_serves_fallback(self, fallback_file):
        """Verify the read after disabling carries the on-disk fallback frame."""
        proxy, client = make_proxy(FakeCamera(), fallback_file)
        parts = proxy.stream()

        live = await parts.__anext__()
        proxy.set_disabled(True)
        fallback = await parts.__anext__()
        await parts.aclose()
        await client.aclose()

        assert live == mjpeg_part(make_jpeg(b"live0"))
        frames = FrameExtractor().feed(fallback)
        assert frames == [fallback_file.read_bytes()]
        assert len(frames[0]) == fallback_file.stat().st_size

    @pytest.mark.asyncio
    async def test_reenable_resumes_pass_through(self, fallback_file):
        """Verify enabling again hands the client back to the camera."""
        proxy, client = make_proxy(FakeCamera(), fallback_file)
        proxy.set_disabled(True)
        parts = proxy.stream()

        first = await parts.__anext__()
        proxy.set_disabled(False)
        second = await parts.__anext__()
        await parts.aclose()
        await client.aclose()

        assert first == mjpeg_part(fallback_file.read_bytes())
        assert second == mjpeg_part(make_jpeg(b"live0"))

    @pytest.mark.asyncio
    async def test_upstream_error_serves_fallback(self, fallback_file):
        """Verify an unreachable camera yields fallback frames."""
        proxy, client = make_proxy(FakeCamera(status=503), fallback_file)
        parts = proxy.stream()

        part = await parts.__anext__()
        assert proxy.metrics()["fallback_clients"] == 1
        await parts.aclose()
        await client.aclose()

        assert part == mjpeg_part(fallback_file.read_bytes())

    def test_toggle(self, fallback_file):
        """Verify toggle flips and reports the flag."""
        proxy = WebcamProxy(SOURCE, client=None, fallback_path=str(fallback_file))

        assert proxy.toggle() is True
        assert proxy.disabled
        assert proxy.toggle() is False


class TestSnapshot:
    """Tests for snapshot() and capture helpers."""

    @pytest.mark.asyncio
    async def test_snapshot_endpoint_preferred(self, fallback_file):
        """Verify the snapshot endpoint answers first."""
        proxy, client = make_proxy(FakeCamera(), fallback_file)

        jpeg = await proxy.snapshot()
        await client.aclose()

        assert jpeg == make_jpeg(b"snap")

    @pytest.mark.asyncio
    async def test_snapshot_falls_back_to_stream(self):
        """Verify the first stream frame is used without a snapshot endpoint."""
        async with httpx.AsyncClient(transport=httpx.MockTransport(FakeCamera(snapshot=False))) as client:
            jpeg = await capture_jpeg(client, SOURCE)

        assert jpeg == make_jpeg(b"live0")

    @pytest.mark.asyncio
    async def test_stream_without_frames(self):
        """Verify an empty stream is a 503 capture error."""
        camera = FakeCamera(snapshot=False, stream_frames=False)
        async with httpx.AsyncClient(transport=httpx.MockTransport(camera)) as client:
            with pytest.raises(CaptureError) as excinfo:
                await capture_jpeg(client, SOURCE)

        assert excinfo.value.status_code == 503

    @pytest.mark.asyncio
    async def test_disabled_snapshot_is_fallback(self, fallback_file):
        """Verify the disabled camera snapshots the fallback frame."""
        proxy, client = make_proxy(FakeCamera(), fallback_file)
        proxy.set_disabled(True)

        jpeg = await proxy.snapshot()
        await client.aclose()

        assert jpeg == fallback_file.read_bytes()

    @pytest.mark.asyncio
    async def test_first_frame_closes_source(self):
        """Verify first_frame returns one JPEG and closes the iterator."""
        closed = []

        async def parts():
            try:
                yield b"--frame\r\n" + make_jpeg(b"one")[:4]
                yield make_jpeg(b"one")[4:] + make_jpeg(b"two")
            finally:
                closed.append(True)

        assert await first_frame(parts()) == make_jpeg(b"one")
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_first_frame_timeout(self):
        """Verify a silent source is a 504 capture error."""
        async def silent():
            await asyncio.sleep(10)
            yield b""

        with pytest.raises(CaptureError) as excinfo:
            await first_frame(silent(), timeout=0.05)

        assert excinfo.value.status_code == 504

    def test_snapshot_url(self):
        """Verify the action parameter replaces any existing one."""
        assert snapshot_url("http://cam/?action=stream&x=1") == "http://cam/?x=1&action=snapshot"


class TestFallbackFile:
    """Tests for ensure_fallback_jpeg()."""

    def test_generated_when_missing(self, tmp_path):
        """Verify the built-in frame is written when the file is absent."""
        path = tmp_path / "sub" / "black.jpg"

        data = ensure_fallback_jpeg(str(path))

        assert data == FALLBACK_JPEG
        assert path.read_bytes() == FALLBACK_JPEG
        assert data.startswith(b"\xff\xd8") and data.endswith(b"\xff\xd9")

    def test_existing_file_kept(self, fallback_file):
        """Verify an existing file is served as is."""
        assert ensure_fallback_jpeg(str(fallback_file)) == make_jpeg(b"FALLBACK")
