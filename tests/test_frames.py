"""
Frame Extraction Tests
======================

Tests for the SOI/EOI frame parser and multipart framing.
"""

import pytest

from printstreamer.media.frames import FrameExtractor, iter_frames, mjpeg_part

from conftest import make_jpeg


class TestFrameExtractor:
    """Tests for FrameExtractor.feed()."""

    def test_split_frames_across_chunks(self):
        """Verify two frames split over two chunks, with a trailing FF kept."""
        extractor = FrameExtractor()

        first = extractor.feed(bytes([0xFF, 0xD8, 0x01, 0x02]))
        second = extractor.feed(bytes([0x03, 0xFF, 0xD9, 0xFF, 0xD8, 0x04, 0xFF, 0xD9, 0xFF]))

        assert first == []
        assert second == [
            bytes([0xFF, 0xD8, 0x01, 0x02, 0x03, 0xFF, 0xD9]),
            bytes([0xFF, 0xD8, 0x04, 0xFF, 0xD9]),
        ]
        assert extractor.pending == b"\xff"

    def test_split_soi_marker(self):
        """Verify an SOI split across chunks is still recognized."""
        extractor = FrameExtractor()

        assert extractor.feed(b"junk\xff") == []
        assert extractor.feed(b"\xd8\x10\xff\xd9") == [b"\xff\xd8\x10\xff\xd9"]

    def test_multipart_headers_are_skipped(self):
        """Verify boundary lines and part headers never reach a frame."""
        extractor = FrameExtractor()
        frame = make_jpeg(b"abc")
        body = mjpeg_part(frame, "other") + mjpeg_part(frame, "other")

        frames = extractor.feed(body)

        assert frames == [frame, frame]

    def test_garbage_without_soi_is_not_kept(self):
        """Verify bytes with no start marker do not accumulate."""
        extractor = FrameExtractor()

        extractor.feed(b"x" * 1000)

        assert extractor.pending == b""

    def test_chunking_does_not_change_output(self):
        """Verify byte-at-a-time feeding yields the same frames."""
        stream = make_jpeg(b"one") + b"--frame\r\n" + make_jpeg(b"two")
        whole = FrameExtractor().feed(stream)

        extractor = FrameExtractor()
        pieces = []
        for i in range(len(stream)):
            pieces.extend(extractor.feed(stream[i:i + 1]))

        assert pieces == whole
        assert len(whole) == 2

    def test_overflow_drops_oldest_half(self):
        """Verify the carry-over bound and the skipped counter."""
        extractor = FrameExtractor(max_buffer=64)

        extractor.feed(b"\xff\xd8" + b"\x00" * 100)

        assert extractor.skipped == 1
        assert len(extractor.pending) <= 64

    def test_invalid_max_buffer(self):
        """Verify a too small buffer is rejected."""
        with pytest.raises(ValueError):
            FrameExtractor(max_buffer=2)

    def test_metrics(self):
        """Verify metrics reflect emitted frames."""
        extractor = FrameExtractor()
        extractor.feed(make_jpeg() + make_jpeg())

        assert extractor.metrics()["frames_emitted"] == 2


class TestFraming:
    """Tests for multipart helpers."""

    def test_mjpeg_part_layout(self):
        """Verify boundary, headers and trailing CRLF."""
        frame = make_jpeg(b"xyz")

        part = mjpeg_part(frame)

        assert part.startswith(b"--frame\r\nContent-Type: image/jpeg\r\n")
        assert f"Content-Length: {len(frame)}\r\n\r\n".encode() in part
        assert part.endswith(frame + b"\r\n")

    @pytest.mark.asyncio
    async def test_iter_frames(self):
        """Verify the async helper yields frames in order."""
        async def chunks():
            yield make_jpeg(b"a")[:3]
            yield make_jpeg(b"a")[3:] + make_jpeg(b"b")

        frames = [frame async for frame in iter_frames(chunks())]

        assert frames == [make_jpeg(b"a"), make_jpeg(b"b")]
