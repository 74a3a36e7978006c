"""
Orchestrator Tests
==================

Tests for last-layer rules and the print job lifecycle.
"""

import pytest

from printstreamer.config import Settings
from printstreamer.orchestrator.jobs import JobOrchestrator
from printstreamer.orchestrator.rules import LastLayerThresholds, last_layer_reason, looks_complete
from printstreamer.printer.poller import PrinterEvent, near_completion, timestamp_job_name
from printstreamer.printer.snapshot import PrinterSnapshot, PrinterState


def printing(**kwargs) -> PrinterSnapshot:
    values = {"state": PrinterState.PRINTING, "filename": "benchy.gcode"}
    values.update(kwargs)
    return PrinterSnapshot(**values)


class FakeTimelapse:
    """Records the calls the orchestrator makes."""

    def __init__(self):
        self.started = []
        self.stopped = []
        self.progress = []
        self.paused = []

    async def start(self, session_name, hint_filename=None):
        self.started.append(session_name)
        return "benchy"

    def notify_progress(self, session_id, current_layer, progress=0.0):
        self.progress.append((current_layer, progress))

    def set_paused(self, session_id, paused):
        self.paused.append(paused)

    async def stop(self, session_id):
        self.stopped.append(session_id)
        return f"/tmp/{session_id}/{session_id}.mp4"


class TestLastLayerRules:
    """Tests for last_layer_reason()."""

    @pytest.fixture
    def thresholds(self):
        return LastLayerThresholds(layer_offset=1, remaining_seconds=30, progress_percent=98.5)

    def test_layer_rule(self, thresholds):
        """Verify layer 199 of 200 fires on the layer rule."""
        snapshot = printing(current_layer=199, total_layers=200, progress=0.95, remaining=120.0)

        assert last_layer_reason(snapshot, thresholds) == "layer"

    def test_time_rule(self, thresholds):
        """Verify the remaining-time rule."""
        snapshot = printing(progress=0.9, remaining=25.0)

        assert last_layer_reason(snapshot, thresholds) == "time"

    def test_time_rule_needs_progress(self, thresholds):
        """Verify remaining time is ignored before progress is reported."""
        snapshot = printing(progress=0.0, remaining=0.0)

        assert last_layer_reason(snapshot, thresholds) is None

    def test_progress_rule(self, thresholds):
        """Verify the progress rule."""
        snapshot = printing(progress=0.99)

        assert last_layer_reason(snapshot, thresholds) == "progress"

    def test_not_printing(self, thresholds):
        """Verify nothing fires unless printing."""
        snapshot = PrinterSnapshot(state=PrinterState.PAUSED, current_layer=200, total_layers=200)

        assert last_layer_reason(snapshot, thresholds) is None

    def test_defaults_from_config(self):
        """Verify thresholds load from the timelapse section."""
        thresholds = LastLayerThresholds.from_config(Settings().timelapse)

        assert thresholds.layer_offset == 1
        assert thresholds.remaining_seconds == 30.0
        assert thresholds.progress_percent == 98.5

    def test_looks_complete(self):
        """Verify the completion heuristic."""
        assert looks_complete(printing(progress=0.995))
        assert looks_complete(printing(current_layer=50, total_layers=50))
        assert not looks_complete(printing(progress=0.5))
        assert not looks_complete(None)


class TestPollerHelpers:
    """Tests for polling cadence helpers."""

    def test_near_completion(self):
        """Verify each near-completion signal."""
        assert near_completion(printing(remaining=60.0))
        assert near_completion(printing(progress=0.96))
        assert near_completion(printing(current_layer=96, total_layers=100))
        assert not near_completion(printing(progress=0.5, current_layer=10, total_layers=100))
        assert not near_completion(PrinterSnapshot(state=PrinterState.IDLE, progress=1.0))

    def test_timestamp_job_name(self):
        """Verify the fallback job name format."""
        from datetime import datetime, timezone

        name = timestamp_job_name(datetime(2024, 5, 1, 13, 4, 5, tzinfo=timezone.utc))

        assert name == "printing_20240501_130405"


class TestJobOrchestrator:
    """Tests for JobOrchestrator.handle_event()."""

    @pytest.fixture
    def timelapse(self):
        return FakeTimelapse()

    @pytest.fixture
    def orchestrator(self, timelapse):
        return JobOrchestrator(Settings(), poller=None, timelapse=timelapse, stream=None)

    async def _event(self, orchestrator, snapshot, job_name="benchy.gcode"):
        await orchestrator.handle_event(PrinterEvent(previous=None, current=snapshot, job_name=job_name))

    @pytest.mark.asyncio
    async def test_last_layer_fires_once(self, orchestrator, timelapse):
        """Verify early finalize runs once per job."""
        await self._event(orchestrator, printing(current_layer=199, total_layers=200, progress=0.95, remaining=120.0))
        await self._event(orchestrator, printing(current_layer=200, total_layers=200, progress=0.99, remaining=10.0))
        await orchestrator.stop()

        assert timelapse.started == ["benchy.gcode"]
        assert timelapse.stopped == ["benchy"]
        assert orchestrator.session.last_layer_fired

    @pytest.mark.asyncio
    async def test_completion_after_early_finalize(self, orchestrator, timelapse):
        """Verify completion does not finalize a second time."""
        await self._event(orchestrator, printing(current_layer=199, total_layers=200, progress=0.95))
        await self._event(orchestrator, PrinterSnapshot(state=PrinterState.COMPLETE), job_name=None)
        await orchestrator.stop()

        assert timelapse.stopped == ["benchy"]
        assert orchestrator.session is None

    @pytest.mark.asyncio
    async def test_no_restart_after_early_finalize(self, orchestrator, timelapse):
        """Verify the same job is not restarted while it finishes."""
        await self._event(orchestrator, printing(current_layer=199, total_layers=200))
        await self._event(orchestrator, PrinterSnapshot(state=PrinterState.IDLE, progress=1.0), job_name=None)
        await self._event(orchestrator, printing(current_layer=200, total_layers=200))
        await orchestrator.stop()

        assert timelapse.started == ["benchy.gcode"]

    @pytest.mark.asyncio
    async def test_no_restart_after_offline_end(self, timelapse):
        """Verify a print still running after an offline gap is not restarted."""
        settings = Settings.model_validate({"orchestrator": {"offline_grace_minutes": 0}})
        orchestrator = JobOrchestrator(settings, poller=None, timelapse=timelapse, stream=None)

        await self._event(orchestrator, printing(current_layer=199, total_layers=200))
        await self._event(orchestrator, PrinterSnapshot.unreachable(), job_name=None)
        await self._event(orchestrator, PrinterSnapshot.unreachable(), job_name=None)
        assert orchestrator.session is None

        await self._event(orchestrator, printing(current_layer=200, total_layers=200))
        await orchestrator.stop()

        assert timelapse.started == ["benchy.gcode"]
        assert orchestrator.session is None

    @pytest.mark.asyncio
    async def test_reprint_after_early_finalize_and_standby(self, timelapse):
        """Verify printing the same file again after standby starts a new session."""
        settings = Settings.model_validate({"orchestrator": {"idle_finalize_delay_seconds": 0}})
        orchestrator = JobOrchestrator(settings, poller=None, timelapse=timelapse, stream=None)

        await self._event(orchestrator, printing(current_layer=199, total_layers=200))
        await self._event(orchestrator, PrinterSnapshot(state=PrinterState.IDLE), job_name=None)
        assert orchestrator.session is None

        await self._event(orchestrator, printing(current_layer=1, total_layers=200))
        await orchestrator.stop()

        assert timelapse.started == ["benchy.gcode", "benchy.gcode"]
        assert orchestrator.session is not None
        assert not orchestrator.session.last_layer_fired

    @pytest.mark.asyncio
    async def test_reprint_after_early_finalize_and_complete(self, orchestrator, timelapse):
        """Verify printing the same file again after completion starts a new session."""
        await self._event(orchestrator, printing(current_layer=199, total_layers=200))
        await self._event(orchestrator, PrinterSnapshot(state=PrinterState.COMPLETE), job_name=None)
        await self._event(orchestrator, printing(current_layer=1, total_layers=200))
        await orchestrator.stop()

        assert timelapse.started == ["benchy.gcode", "benchy.gcode"]
        assert orchestrator.session.job_name == "benchy.gcode"

    @pytest.mark.asyncio
    async def test_error_finalizes(self, orchestrator, timelapse):
        """Verify an error state ends the session and finalizes."""
        await self._event(orchestrator, printing(current_layer=3, total_layers=200, progress=0.01))
        await self._event(orchestrator, PrinterSnapshot(state=PrinterState.ERROR), job_name=None)
        await orchestrator.stop()

        assert timelapse.stopped == ["benchy"]
        assert orchestrator.finalized["benchy.gcode"].finalize_state.value == "finalized"

    @pytest.mark.asyncio
    async def test_pause_forwarded(self, orchestrator, timelapse):
        """Verify pause pauses capture without finalizing."""
        await self._event(orchestrator, printing(current_layer=3, total_layers=200, progress=0.01))
        await self._event(orchestrator, PrinterSnapshot(
            state=PrinterState.PAUSED, filename="benchy.gcode", current_layer=3, total_layers=200,
        ))
        await orchestrator.stop()

        assert timelapse.paused == [False, True]
        assert timelapse.stopped == []

    @pytest.mark.asyncio
    async def test_job_change_finalizes_previous(self, orchestrator, timelapse):
        """Verify a new job name ends the previous session."""
        await self._event(orchestrator, printing(current_layer=3, total_layers=200, progress=0.01))
        await self._event(orchestrator, printing(filename="cube.gcode", current_layer=1, total_layers=50), job_name="cube.gcode")
        await orchestrator.stop()

        assert timelapse.started == ["benchy.gcode", "cube.gcode"]
        assert timelapse.stopped == ["benchy"]
        assert orchestrator.session.job_name == "cube.gcode"

    @pytest.mark.asyncio
    async def test_unreachable_without_session(self, orchestrator, timelapse):
        """Verify an offline printer with no job is a no-op."""
        await self._event(orchestrator, PrinterSnapshot.unreachable(), job_name=None)

        assert orchestrator.session is None
        assert orchestrator.events_handled == 1
