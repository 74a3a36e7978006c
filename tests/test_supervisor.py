"""
Encoder Supervisor Tests
========================

Tests for child process spawning, stdio handling and teardown. The
children are plain POSIX tools standing in for the encoder binary.
"""

import asyncio

import pytest

from printstreamer.encoder.commands import (
    audio_track_args,
    escape_filter_value,
    mix_args,
    overlay_filter,
    overlay_mjpeg_args,
    rtmp_publish_args,
    timelapse_args,
)
from printstreamer.config import OverlayConfig
from printstreamer.encoder.supervisor import EncoderSupervisor, SpawnError, WriteStatus


class TestEncoderSupervisor:
    """Tests for EncoderSupervisor and EncoderHandle."""

    @pytest.mark.asyncio
    async def test_stdin_to_stdout(self):
        """Verify writes reach the child and its output can be read."""
        supervisor = EncoderSupervisor()
        handle = await supervisor.spawn([], label="echo", stdin=True, command="cat")

        assert await handle.write_frame(b"hello ") == WriteStatus.OK
        assert await handle.write_frame(b"world") == WriteStatus.OK
        await handle.close_stdin()
        output = b"".join([chunk async for chunk in handle.iter_stdout(4)])

        assert output == b"hello world"
        assert await handle.wait() == 0

    @pytest.mark.asyncio
    async def test_write_after_exit_is_broken_pipe(self):
        """Verify a dead child reports BROKEN_PIPE instead of raising."""
        supervisor = EncoderSupervisor()
        handle = await supervisor.spawn(["-c", "exit 0"], label="short", stdin=True, command="sh")
        await handle.wait()

        assert await handle.write_frame(b"data") == WriteStatus.BROKEN_PIPE

    @pytest.mark.asyncio
    async def test_write_after_stop_is_cancelled(self):
        """Verify writes after a stop request are CANCELLED."""
        supervisor = EncoderSupervisor(kill_grace=1.0)
        handle = await supervisor.spawn([], label="cat", stdin=True, command="cat")
        await supervisor.stop(handle)

        assert await handle.write_frame(b"data") == WriteStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_stop_terminates_child(self):
        """Verify stop() ends a long-running child and forgets it."""
        supervisor = EncoderSupervisor(kill_grace=2.0)
        handle = await supervisor.spawn(["30"], label="sleeper", command="sleep")
        assert handle.running
        assert supervisor.active() == [handle]

        code = await supervisor.stop(handle)

        assert code is not None and code != 0
        assert not handle.running
        await asyncio.sleep(0.05)
        assert supervisor.active() == []

    @pytest.mark.asyncio
    async def test_sigterm_ignored_then_killed(self):
        """Verify the group is killed once the grace period expires."""
        supervisor = EncoderSupervisor()
        handle = await supervisor.spawn(
            ["-c", "trap '' TERM; sleep 30"], label="stubborn", command="sh",
        )
        await asyncio.sleep(0.2)

        code = await supervisor.stop(handle, grace=0.3)

        assert code == -9

    @pytest.mark.asyncio
    async def test_stderr_ring_buffer(self):
        """Verify stderr lines are kept, bounded, oldest first."""
        supervisor = EncoderSupervisor(stderr_capacity=2)
        handle = await supervisor.spawn(
            ["-c", "echo one >&2; echo two >&2; echo three >&2"], label="noisy", command="sh",
        )
        await handle.wait()
        for _ in range(50):
            if handle.recent_stderr() == ["two", "three"]:
                break
            await asyncio.sleep(0.02)

        assert handle.recent_stderr() == ["two", "three"]

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        """Verify a missing binary raises SpawnError."""
        supervisor = EncoderSupervisor(binary="/nonexistent/encoder")

        with pytest.raises(SpawnError):
            await supervisor.spawn(["-version"])

    @pytest.mark.asyncio
    async def test_stop_all(self):
        """Verify every child is stopped."""
        supervisor = EncoderSupervisor(kill_grace=2.0)
        handles = [await supervisor.spawn(["30"], label=f"s{i}", command="sleep") for i in range(2)]

        await supervisor.stop_all()

        assert all(not h.running for h in handles)


class TestCommands:
    """Tests for encoder argument builders."""

    def test_escape_filter_value(self):
        """Verify quotes and backslashes are escaped."""
        assert escape_filter_value("C:\\fonts\\it's.ttf") == "C:\\\\fonts\\\\it\\'s.ttf"
        assert escape_filter_value(None) == ""

    def test_overlay_filter_defaults(self):
        """Verify the default box sits at the bottom with reloading text."""
        graph = overlay_filter(OverlayConfig(), "/tmp/overlay.txt")

        assert graph.startswith("format=yuv420p,drawbox=")
        assert "y=ih-75" in graph
        assert "textfile='/tmp/overlay.txt':reload=1" in graph

    def test_overlay_args_output_mjpeg(self):
        """Verify the overlay stage writes multipart JPEG to stdout."""
        args = overlay_mjpeg_args("http://127.0.0.1:8080/stream/source", OverlayConfig(), "/tmp/o.txt")

        assert args[-5:] == ["-f", "mpjpeg", "-boundary_tag", "frame", "pipe:1"]
        assert "-reconnect" in args

    def test_mix_args_with_and_without_audio(self):
        """Verify audio mapping only with an audio input."""
        with_audio = mix_args("http://v", "http://a", bitrate_kbps=1000, fps=30)
        silent = mix_args("http://v", None)

        assert "1:a:0" in with_audio
        assert "-an" in silent
        assert with_audio[-1] == "pipe:1"
        assert "+frag_keyframe+empty_moov" in with_audio

    def test_publish_and_assembly_args(self):
        """Verify RTMP publish and timelapse assembly vectors."""
        publish = rtmp_publish_args("rtmp://ingest/live/key")
        assemble = timelapse_args("/t/frame_%06d.jpg", "/t/t.mp4", frame_rate=24, hold_seconds=2)

        assert publish[-1] == "rtmp://ingest/live/key"
        assert "pipe:0" in publish
        assert "tpad=stop_mode=clone:stop_duration=2" in assemble
        assert assemble[-1] == "/t/t.mp4"

    def test_audio_track_args(self):
        """Verify tracks are read in real time and encoded as MP3."""
        args = audio_track_args("/music/a.flac", "128k")

        assert args[args.index("-i") - 1] == "-re"
        assert args[-1] == "-"
        assert "128k" in args
