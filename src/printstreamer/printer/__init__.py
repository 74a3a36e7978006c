"""
Printer Module
==============

Moonraker access and the snapshot/event model the orchestrator consumes.

    - MoonrakerClient: HTTP queries against the printer API
    - decode_snapshot: total decoder from raw JSON to PrinterSnapshot
    - PrinterPoller: adaptive poll loop publishing PrinterEvent records
"""

from printstreamer.printer.client import MoonrakerClient, PrinterApiError
from printstreamer.printer.poller import PrinterEvent, PrinterPoller, near_completion
from printstreamer.printer.snapshot import PrinterSnapshot, PrinterState, decode_snapshot


__all__ = [
    "MoonrakerClient",
    "PrinterApiError",
    "PrinterEvent",
    "PrinterPoller",
    "PrinterSnapshot",
    "PrinterState",
    "decode_snapshot",
    "near_completion",
]
