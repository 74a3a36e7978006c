"""
Test Configuration
==================

Pytest fixtures and test configuration for PrintStreamer.
"""

import json
import time

import pytest

from printstreamer.config import Settings


def make_jpeg(payload: bytes = b"\x01\x02\x03") -> bytes:
    """Smallest byte string the frame parser treats as a JPEG."""
    return b"\xff\xd8" + payload + b"\xff\xd9"


@pytest.fixture
def jpeg():
    """Provide a sample JPEG frame."""
    return make_jpeg()


@pytest.fixture
def settings(tmp_path):
    """Provide Settings with every on-disk location under tmp_path."""
    audio_dir = tmp_path / "audio"
    audio_dir.mkdir()
    return Settings.model_validate({
        "stream": {
            "source": "http://camera.local/stream",
            "fallback_jpeg_path": str(tmp_path / "fallback.jpg"),
        },
        "audio": {"folder": str(audio_dir)},
        "moonraker": {"base_url": "http://printer.local:7125/"},
        "overlay": {"text_dir": str(tmp_path / "overlay")},
        "timelapse": {"main_folder": str(tmp_path / "timelapse")},
        "youtube": {"token_file": str(tmp_path / "token.json")},
    })


@pytest.fixture
def token_file(tmp_path):
    """Provide a token file holding a fresh access token."""
    path = tmp_path / "token.json"
    path.write_text(json.dumps({
        "access_token": "test-access",
        "refresh_token": "test-refresh",
        "expires_in": 3600,
        "issued_at": time.time(),
    }))
    return path


@pytest.fixture
def sample_status():
    """Provide a printer objects query response for an active print."""
    return {
        "result": {
            "status": {
                "print_stats": {
                    "state": "printing",
                    "filename": "benchy.gcode",
                    "print_duration": 600.0,
                    "filament_used": 1234.0,
                    "info": {"current_layer": 12, "total_layer": 120},
                },
                "display_status": {"progress": 0.25},
                "virtual_sdcard": {"progress": 0.0},
                "extruder": {"temperature": 214.6, "target": 215.0},
                "heater_bed": {"temperature": 59.8, "target": 60.0},
                "gcode_move": {"speed_factor": 1.0, "extrude_factor": 1.0, "speed": 3000.0},
                "motion_report": {"live_velocity": 0.0, "live_extruder_velocity": 0.0},
            }
        }
    }
