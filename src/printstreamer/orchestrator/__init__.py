"""
Orchestrator Module
===================

Printer-driven job lifecycle and the live stream sequences.

    - JobOrchestrator: consumes printer events; timelapse and broadcast per job
    - StreamController: start / stop / repair of broadcast plus publisher
    - rules: last-layer and completion decisions
"""

from printstreamer.orchestrator.jobs import JobOrchestrator, JobSession
from printstreamer.orchestrator.rules import LastLayerThresholds, last_layer_reason
from printstreamer.orchestrator.stream import LiveResult, StreamController


__all__ = [
    "JobOrchestrator",
    "JobSession",
    "LastLayerThresholds",
    "LiveResult",
    "StreamController",
    "last_layer_reason",
]
