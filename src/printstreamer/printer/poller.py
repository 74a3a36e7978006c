"""
Printer Poller
==============

Periodically queries the printer and publishes PrinterEvent records to
every subscriber.

Job identity, in order of preference:
    1. head of the job queue
    2. print_stats.filename
    3. most recent history entry
    4. ``printing_<UTC yyyyMMdd_HHmmss>``, fixed for the rest of the job

Polling cadence adapts: the base interval applies normally and the fast
interval while the print is near completion (remaining <= 2 min,
progress >= 95 % or within 5 layers of the total).

Design Rules:
    - One event per poll, including polls where nothing changed
    - An unreachable printer yields a snapshot with reachable=False
    - Subscribers receive events in poll order
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from printstreamer.printer.client import MoonrakerClient, PrinterApiError
from printstreamer.printer.snapshot import PrinterSnapshot


logger = logging.getLogger(__name__)


NEAR_COMPLETION_SECONDS = 120.0
NEAR_COMPLETION_PROGRESS = 0.95
NEAR_COMPLETION_LAYERS = 5


@dataclass(frozen=True)
class PrinterEvent:
    """
    One poll result.

    Attributes:
        previous: Snapshot of the prior poll (None on the first poll)
        current: Snapshot of this poll
        job_name: Resolved job identity while a job is active
    """

    previous: Optional[PrinterSnapshot]
    current: PrinterSnapshot
    job_name: Optional[str] = None

    @property
    def state_changed(self) -> bool:
        return self.previous is None or self.previous.state != self.current.state


def near_completion(snapshot: PrinterSnapshot) -> bool:
    """Whether any near-completion signal holds for an active print."""
    if not snapshot.is_active:
        return False
    if snapshot.remaining is not None and snapshot.remaining <= NEAR_COMPLETION_SECONDS:
        return True
    if snapshot.progress >= NEAR_COMPLETION_PROGRESS:
        return True
    if snapshot.current_layer is not None and snapshot.total_layers:
        return snapshot.total_layers - snapshot.current_layer <= NEAR_COMPLETION_LAYERS
    return False


def timestamp_job_name(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"printing_{now.strftime('%Y%m%d_%H%M%S')}"


class PrinterPoller:
    """
    Adaptive printer poll loop with a typed event stream.

    Example:
        poller = PrinterPoller(client)
        await poller.start()
        async for event in poller.events():
            ...
    """

    def __init__(
        self,
        client: MoonrakerClient,
        base_interval: float = 10.0,
        fast_interval: float = 2.0,
    ) -> None:
        self.client = client
        self.base_interval = base_interval
        self.fast_interval = fast_interval

        self.latest: Optional[PrinterSnapshot] = None
        self.poll_count: int = 0
        self.error_count: int = 0

        self._subscribers: List[asyncio.Queue] = []
        self._fallback_name: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def current_interval(self) -> float:
        if self.latest is not None and near_completion(self.latest):
            return self.fast_interval
        return self.base_interval

    # =========================================================================
    # Subscription
    # =========================================================================

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def events(self) -> AsyncIterator[PrinterEvent]:
        """Yield events until the poller stops."""
        queue = self.subscribe()
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            self.unsubscribe(queue)

    # =========================================================================
    # Polling
    # =========================================================================

    def resolve_job_name(self, snapshot: PrinterSnapshot) -> Optional[str]:
        """Job identity for an active snapshot; None when no job is active."""
        if not snapshot.is_active:
            self._fallback_name = None
            return None
        name = snapshot.job_name
        if name:
            return name
        if self._fallback_name is None:
            self._fallback_name = timestamp_job_name()
        return self._fallback_name

    async def poll_once(self) -> PrinterEvent:
        """Query the printer once and publish the resulting event."""
        try:
            snapshot = await self.client.fetch_snapshot()
        except PrinterApiError as e:
            self.error_count += 1
            if self.latest is None or self.latest.reachable:
                logger.warning(f"Printer unreachable: {e}")
            snapshot = PrinterSnapshot.unreachable()

        if snapshot.reachable and self.latest is not None and not self.latest.reachable:
            logger.info("Printer reachable again")

        job_name = self.resolve_job_name(snapshot) if snapshot.reachable else None
        event = PrinterEvent(previous=self.latest, current=snapshot, job_name=job_name)
        if event.state_changed and self.latest is not None:
            logger.info(
                f"Printer state {self.latest.state.value} -> {snapshot.state.value}"
                + (f" ({job_name})" if job_name else "")
            )

        self.latest = snapshot
        self.poll_count += 1
        for queue in list(self._subscribers):
            queue.put_nowait(event)
        return event

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="printer_poller")
        logger.info(f"Printer poller started (interval={self.base_interval}s)")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        for queue in list(self._subscribers):
            queue.put_nowait(None)
        logger.info("Printer poller stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.exception(f"Printer poll failed: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.current_interval)
            except asyncio.TimeoutError:
                pass

    def metrics(self) -> dict:
        return {
            "running": self.running,
            "poll_count": self.poll_count,
            "error_count": self.error_count,
            "interval": self.current_interval,
            "subscribers": len(self._subscribers),
            "latest": self.latest.to_dict() if self.latest else None,
        }
