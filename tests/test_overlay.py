"""
Overlay Text Tests
==================

Tests for overlay value extraction, template rendering and the text file
writer.
"""

from datetime import datetime, timedelta

import httpx
import pytest

from printstreamer.config import MoonrakerConfig, OverlayConfig
from printstreamer.overlay.text import (
    OverlayData,
    OverlayTextGenerator,
    compute_values,
    format_number,
    render_template,
    write_atomic,
)
from printstreamer.printer.client import MoonrakerClient


NOW = datetime(2024, 5, 1, 12, 0, 0)


class TestComputeValues:
    """Tests for compute_values()."""

    def test_active_print(self, sample_status):
        """Verify temperatures, progress, layers and ETA."""
        data = compute_values(sample_status["result"]["status"], now=NOW)

        assert data.nozzle == 214.6
        assert data.bed_target == 60.0
        assert data.progress == 25
        assert (data.layer, data.layer_max) == (12, 120)
        assert data.eta == NOW + timedelta(seconds=1800)
        assert data.speed_factor == 100.0
        assert data.filament_mm == 1234.0

    def test_commanded_speed_when_stationary(self, sample_status):
        """Verify the commanded feed rate is used when the toolhead reports no velocity."""
        data = compute_values(sample_status["result"]["status"], now=NOW)

        assert data.speed == 50.0

    def test_live_velocity_preferred(self, sample_status):
        """Verify live toolhead velocity wins when moving."""
        status = sample_status["result"]["status"]
        status["motion_report"]["live_velocity"] = 120.0

        assert compute_values(status, now=NOW).speed == 120.0

    def test_flow_from_extruder_velocity(self, sample_status):
        """Verify volumetric flow derived from filament velocity."""
        status = sample_status["result"]["status"]
        status["motion_report"]["live_extruder_velocity"] = 2.0

        data = compute_values(status, now=NOW)

        assert data.flow == pytest.approx(2.0 * 3.14159265 * 0.875 ** 2, rel=1e-6)

    def test_idle_printer(self):
        """Verify job values are blank while idle."""
        status = {
            "print_stats": {"state": "standby", "info": {"current_layer": 5, "total_layer": 10}},
            "display_status": {"progress": 0.7},
            "extruder": {"temperature": 25.0, "target": 0.0},
        }

        data = compute_values(status, now=NOW)

        assert data.progress == 0
        assert data.layer is None
        assert data.eta is None
        assert data.speed is None
        assert data.nozzle == 25.0

    def test_slicer_layer_count(self, sample_status):
        """Verify slicer metadata overrides the layer total."""
        data = compute_values(
            sample_status["result"]["status"],
            metadata={"layer_count": 150, "slicer": "OrcaSlicer"},
            now=NOW,
        )

        assert data.layer_max == 150
        assert data.slicer == "OrcaSlicer"


class TestRenderTemplate:
    """Tests for render_template()."""

    def test_number_hints_and_percent_escape(self):
        """Verify format hints and the escaped percent sign."""
        data = OverlayData(nozzle=214.6, nozzle_target=215.0, progress=42, layer=3, layer_max=10)

        text = render_template("N:{nozzle:0}/{NOZZLETARGET:0.0} {progress:0}% L{layers}", data)

        assert text == "N:215/215.0 42\\% L3/10"

    def test_layers_appended_when_missing(self):
        """Verify a layer line is added when the template has none."""
        text = render_template("{state}", OverlayData(state="printing", layer=7, layer_max=None))

        assert text == "printing  |  Layers: 7/-"

    def test_song_line(self):
        """Verify the song is appended on its own line."""
        text = render_template("{layer}", OverlayData(), song="  Lo-fi Beats ")

        assert text == "-\nSong: Lo-fi Beats"

    def test_missing_values(self):
        """Verify absent readings render as placeholders."""
        text = render_template("{bed} {eta} {speed} {flow} {filament} {layer}", OverlayData())

        assert text == "- - 0 0.0 0.00 -"

    def test_time_format(self):
        """Verify strftime hints."""
        data = OverlayData(time=NOW, eta=NOW + timedelta(minutes=90), layer=1)

        assert render_template("{time:%H:%M} {eta:%H:%M} {layer}", data) == "12:00 13:30 1"

    def test_format_number(self):
        """Verify hint styles and the fallback for bad specs."""
        assert format_number(3.14159, "0.00") == "3.14"
        assert format_number(3.6, "0") == "4"
        assert format_number(3.6, ".1f") == "3.6"
        assert format_number(3.6, "zz") == "3.6"
        assert format_number(None, "0") == "-"


class TestOverlayTextGenerator:
    """Tests for the text file writer."""

    def test_write_atomic(self, tmp_path):
        """Verify the target is replaced and no temp file remains."""
        path = tmp_path / "overlay.txt"
        path.write_text("old")

        write_atomic(path, "new")

        assert path.read_text() == "new"
        assert [p.name for p in tmp_path.iterdir()] == ["overlay.txt"]

    @pytest.mark.asyncio
    async def test_refresh_and_failure_keeps_text(self, tmp_path, sample_status):
        """Verify refresh writes text and a failed query keeps it."""
        responses = [httpx.Response(200, json=sample_status), httpx.Response(500)]

        def handler(request):
            return responses.pop(0)

        config = OverlayConfig(template="{filename} {progress:0}%", text_dir=str(tmp_path))
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            generator = OverlayTextGenerator(
                config, MoonrakerClient(MoonrakerConfig(), http), song_provider=lambda: "Track",
            )
            first = await generator.refresh()
            second = await generator.refresh()

        assert first == "benchy.gcode 25\\%  |  Layers: 12/120\nSong: Track"
        assert second is None
        assert generator.text_path.read_text() == first
        assert generator.failures == 1
