"""
Timelapse Manager Tests
=======================

Tests for session naming, frame capture and frame management. Captures
come from an in-memory frame source; assembly uses a missing encoder
binary so it fails fast.
"""

import asyncio
import json
import shutil

import pytest
import pytest_asyncio

from printstreamer.encoder.supervisor import EncoderSupervisor
from printstreamer.timelapse.manager import (
    METADATA_FILE,
    TimelapseError,
    TimelapseManager,
    frame_name,
    sanitize_name,
    slicer_summary,
    unique_directory,
)

from conftest import make_jpeg


class FrameSource:
    """Counts captures and returns numbered JPEGs."""

    def __init__(self):
        self.calls = 0

    async def __call__(self) -> bytes:
        self.calls += 1
        return make_jpeg(b"frame%d" % self.calls)


@pytest.fixture
def source():
    return FrameSource()


@pytest_asyncio.fixture
async def manager(tmp_path, source):
    manager = TimelapseManager(
        str(tmp_path / "timelapse"),
        capture=source,
        supervisor=EncoderSupervisor(binary="/nonexistent/encoder"),
        period=3600.0,
    )
    yield manager
    await manager.close()


def write_frames(folder, count):
    folder.mkdir(parents=True)
    for i in range(count):
        (folder / frame_name(i)).write_bytes(make_jpeg(b"%d" % i))


class TestNaming:
    """Tests for sanitize_name() and unique_directory()."""

    def test_sanitize_name(self):
        """Verify extensions, separators and symbols are cleaned up."""
        assert sanitize_name("My Print (v2).gcode") == "My_Print_v2"
        assert sanitize_name("nuts&bolts.gcode") == "nutsandbolts"
        assert sanitize_name("../dir/part.gcode") == "part"
        assert sanitize_name("") == "unknown"
        assert sanitize_name("   ") == "unknown"
        assert sanitize_name("...") == "unknown"

    def test_unique_directory(self, tmp_path):
        """Verify _N suffixes start at 2."""
        assert unique_directory(tmp_path, "job") == tmp_path / "job"
        (tmp_path / "job").mkdir()
        (tmp_path / "job_2").mkdir()

        assert unique_directory(tmp_path, "job") == tmp_path / "job_3"

    def test_layer_count_from_heights(self):
        """Verify the layer count is derived when the slicer omits it."""
        summary = slicer_summary({"object_height": 10.2, "layer_height": 0.2, "first_layer_height": 0.2})

        assert summary["layer_count"] == 51


class TestSessions:
    """Tests for start(), capture and stop()."""

    @pytest.mark.asyncio
    async def test_start_captures_initial_frame(self, manager, source):
        """Verify a new session folder with metadata and frame 0."""
        session_id = await manager.start("benchy", hint_filename="benchy.gcode")
        folder = manager.root / session_id

        assert session_id == "benchy"
        assert (folder / "frame_000000.jpg").read_bytes() == make_jpeg(b"frame1")
        metadata = json.loads((folder / METADATA_FILE).read_text())
        assert metadata["filename"] == "benchy.gcode"
        assert manager.is_active(session_id)
        assert manager.timer_running

    @pytest.mark.asyncio
    async def test_empty_name_is_ignored(self, manager):
        """Verify an empty session name starts nothing."""
        assert await manager.start("  ") is None
        assert manager.sessions == {}

    @pytest.mark.asyncio
    async def test_second_job_gets_suffix(self, manager):
        """Verify a finished folder is never reused for a new job."""
        (manager.root / "benchy").mkdir()
        (manager.root / "benchy" / "benchy.mp4").write_bytes(b"video")

        session_id = await manager.start("benchy", hint_filename="benchy.gcode")

        assert session_id == "benchy_2"

    @pytest.mark.asyncio
    async def test_resume_unfinished_session(self, manager):
        """Verify frames of an interrupted session are continued."""
        folder = manager.root / "benchy"
        write_frames(folder, 3)
        (folder / METADATA_FILE).write_text(json.dumps({
            "filename": "benchy.gcode", "started_at": "2024-05-01T10:00:00+00:00",
        }))

        session_id = await manager.start("benchy", hint_filename="benchy.gcode")

        assert session_id == "benchy"
        assert manager.sessions[session_id].frame_count == 4
        assert (folder / "frame_000003.jpg").exists()

    @pytest.mark.asyncio
    async def test_capture_failure_counted(self, manager):
        """Verify a capture that returns no JPEG is skipped."""
        async def broken():
            return b"not a jpeg"

        manager.capture = broken
        session_id = await manager.start("job")

        assert manager.sessions[session_id].frame_count == 0
        assert manager.capture_failures == 1

    @pytest.mark.asyncio
    async def test_layer_gate(self, manager):
        """Verify periodic capture is armed by the first layer."""
        session_id = await manager.start("job")
        session = manager.sessions[session_id]
        assert not session.armed

        manager.notify_progress(session_id, current_layer=0)
        assert not session.armed
        manager.notify_progress(session_id, current_layer=1)
        assert session.armed

    @pytest.mark.asyncio
    async def test_stop_without_encoder(self, manager):
        """Verify a failed assembly returns None and ends the session."""
        session_id = await manager.start("job")

        assert await manager.stop(session_id) is None
        assert not manager.is_active(session_id)
        assert not manager.timer_running
        assert await manager.stop(session_id) is None

    @pytest.mark.asyncio
    async def test_timer_survives_write_failure(self, tmp_path, source):
        """Verify a failed frame write does not stop periodic capture."""
        manager = TimelapseManager(
            str(tmp_path / "fast"),
            capture=source,
            supervisor=EncoderSupervisor(binary="/nonexistent/encoder"),
            period=0.01,
        )
        try:
            session_id = await manager.start("job")
            session = manager.sessions[session_id]
            shutil.rmtree(session.folder)
            manager.notify_progress(session_id, current_layer=1)

            for _ in range(100):
                if manager.capture_failures:
                    break
                await asyncio.sleep(0.01)
            assert manager.capture_failures >= 1
            assert manager.timer_running

            session.folder.mkdir()
            saved = session.frame_count
            for _ in range(100):
                if session.frame_count > saved:
                    break
                await asyncio.sleep(0.01)

            assert session.frame_count > saved
            assert manager.timer_running
        finally:
            await manager.close()


class TestFrames:
    """Tests for the archive operations."""

    @pytest.mark.asyncio
    async def test_delete_frame_renumbers(self, manager):
        """Verify deletion keeps numbering contiguous from zero."""
        folder = manager.root / "old"
        write_frames(folder, 4)

        remaining = await manager.delete_frame("old", "frame_000001.jpg")

        assert remaining == 3
        assert manager.frames("old") == ["frame_000000.jpg", "frame_000001.jpg", "frame_000002.jpg"]
        assert (folder / "frame_000001.jpg").read_bytes() == make_jpeg(b"2")
        assert not list(folder.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_delete_frame_while_active(self, manager):
        """Verify frames of an active session cannot be deleted."""
        session_id = await manager.start("job")

        with pytest.raises(TimelapseError) as excinfo:
            await manager.delete_frame(session_id, "frame_000000.jpg")

        assert excinfo.value.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_frame_and_session(self, manager):
        """Verify unknown names are 404 and unsafe names are 400."""
        write_frames(manager.root / "old", 1)

        with pytest.raises(TimelapseError) as missing_frame:
            await manager.delete_frame("old", "frame_000009.jpg")
        with pytest.raises(TimelapseError) as missing_session:
            manager.frames("nope")
        with pytest.raises(TimelapseError) as unsafe:
            manager.frames("../etc")

        assert missing_frame.value.status_code == 404
        assert missing_session.value.status_code == 404
        assert unsafe.value.status_code == 400

    @pytest.mark.asyncio
    async def test_list_and_metadata(self, manager):
        """Verify listing reports active and archived sessions."""
        write_frames(manager.root / "old", 2)
        session_id = await manager.start("new", hint_filename="new.gcode")

        entries = {e["name"]: e for e in manager.list()}

        assert entries["old"]["frame_count"] == 2
        assert not entries["old"]["active"]
        assert entries[session_id]["active"]
        assert manager.get_metadata(session_id)["filename"] == "new.gcode"

    @pytest.mark.asyncio
    async def test_delete_session(self, manager):
        """Verify an archived session folder is removed."""
        write_frames(manager.root / "old", 1)

        await manager.delete("old")

        assert not (manager.root / "old").exists()
