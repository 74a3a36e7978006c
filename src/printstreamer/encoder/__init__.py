"""
Encoder Module
==============

Supervision of external encoder children and the argument vectors the
pipeline stages hand to them.

    - EncoderSupervisor: spawn / stop with process-group kill grace
    - EncoderHandle: single-owner stdio wrapper with a stderr ring
    - WriteStatus: typed result of a stdin write
    - commands: per-stage argument builders
"""

from printstreamer.encoder.supervisor import (
    EncoderHandle,
    EncoderSupervisor,
    SpawnError,
    WriteStatus,
)


__all__ = [
    "EncoderHandle",
    "EncoderSupervisor",
    "SpawnError",
    "WriteStatus",
]
