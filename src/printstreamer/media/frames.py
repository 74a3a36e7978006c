"""
Frame Extractor
===============

Splits a byte stream of concatenated JPEGs into discrete frames.

Frames are delimited by the JPEG start-of-image (FFD8) and end-of-image
(FFD9) markers alone. Multipart boundaries and part headers are skipped
as interstitial bytes, which keeps the parser working against cameras
that send missing or non-standard boundaries.

Design Rules:
    - Every emitted frame starts with FFD8 and ends with FFD9
    - The carry-over buffer is bounded; on overflow the oldest half is
      discarded and the skipped counter is incremented
    - Feeding the same bytes in any chunking yields the same frames

Example:
    extractor = FrameExtractor()
    for chunk in chunks:
        for jpeg in extractor.feed(chunk):
            handle(jpeg)
"""

import logging
from typing import AsyncIterable, AsyncIterator, List


logger = logging.getLogger(__name__)


SOI = b"\xff\xd8"
EOI = b"\xff\xd9"

DEFAULT_MAX_BUFFER = 8 * 1024 * 1024


class FrameExtractor:
    """
    Incremental SOI/EOI frame parser with a bounded carry-over buffer.

    Attributes:
        max_buffer: Carry-over size that triggers the drop-oldest-half policy
        skipped: Number of times the carry-over overflowed
        frames_emitted: Total frames produced
    """

    def __init__(self, max_buffer: int = DEFAULT_MAX_BUFFER) -> None:
        if max_buffer < 4:
            raise ValueError("max_buffer must be >= 4")
        self.max_buffer = max_buffer
        self.skipped: int = 0
        self.frames_emitted: int = 0
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes carried over to the next feed."""
        return bytes(self._buffer)

    def feed(self, chunk: bytes) -> List[bytes]:
        """
        Append a chunk and return every frame it completes.

        Args:
            chunk: Next slice of the input stream

        Returns:
            Complete JPEG frames in stream order (possibly empty)
        """
        buf = self._buffer
        buf += chunk
        frames: List[bytes] = []

        while True:
            soi = buf.find(SOI)
            if soi < 0:
                # A trailing 0xFF may be the first half of a split SOI
                keep = 1 if buf[-1:] == SOI[:1] else 0
                del buf[:len(buf) - keep]
                break
            eoi = buf.find(EOI, soi + 2)
            if eoi < 0:
                if soi > 0:
                    del buf[:soi]
                break
            end = eoi + 2
            frames.append(bytes(buf[soi:end]))
            del buf[:end]

        if len(buf) > self.max_buffer:
            drop = len(buf) // 2
            del buf[:drop]
            self.skipped += 1
            logger.warning(
                f"Frame carry-over exceeded {self.max_buffer} bytes, "
                f"discarded {drop} bytes (skipped={self.skipped})"
            )

        self.frames_emitted += len(frames)
        return frames

    def reset(self) -> None:
        self._buffer.clear()

    def metrics(self) -> dict:
        return {
            "pending_bytes": len(self._buffer),
            "frames_emitted": self.frames_emitted,
            "skipped": self.skipped,
        }


async def iter_frames(
    chunks: AsyncIterable[bytes],
    max_buffer: int = DEFAULT_MAX_BUFFER,
) -> AsyncIterator[bytes]:
    """Yield complete JPEG frames from an async stream of byte chunks."""
    extractor = FrameExtractor(max_buffer=max_buffer)
    async for chunk in chunks:
        for frame in extractor.feed(chunk):
            yield frame


def mjpeg_part(jpeg: bytes, boundary: str = "frame") -> bytes:
    """Wrap one JPEG as a multipart/x-mixed-replace part."""
    header = (
        f"--{boundary}\r\n"
        f"Content-Type: image/jpeg\r\n"
        f"Content-Length: {len(jpeg)}\r\n\r\n"
    ).encode("ascii")
    return header + jpeg + b"\r\n"
