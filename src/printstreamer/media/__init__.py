"""
Media Module
============

The HTTP-visible media pipeline: source -> overlay -> audio -> mix.

    - FrameExtractor: SOI/EOI splitting of MJPEG byte streams
    - ChunkFanout: bounded drop-oldest fan-out to subscribers
    - WebcamProxy: MJPEG source with transparent fallback
    - SharedEncoderStage / encoder_stream / RtmpPublisher: encoder stages
"""

from printstreamer.media.capture import CaptureError, capture_jpeg, first_frame
from printstreamer.media.fanout import ChunkFanout, SubscriberChannel
from printstreamer.media.frames import EOI, SOI, FrameExtractor, mjpeg_part
from printstreamer.media.streamers import (
    PipelineStage,
    RtmpPublisher,
    SharedEncoderStage,
    StageKind,
    StageRegistry,
    capture_with_encoder,
    encoder_stream,
)
from printstreamer.media.webcam import BOUNDARY, MJPEG_CONTENT_TYPE, WebcamProxy


__all__ = [
    "BOUNDARY",
    "CaptureError",
    "ChunkFanout",
    "EOI",
    "FrameExtractor",
    "MJPEG_CONTENT_TYPE",
    "PipelineStage",
    "RtmpPublisher",
    "SOI",
    "SharedEncoderStage",
    "StageKind",
    "StageRegistry",
    "SubscriberChannel",
    "WebcamProxy",
    "capture_jpeg",
    "capture_with_encoder",
    "encoder_stream",
    "first_frame",
    "mjpeg_part",
]
