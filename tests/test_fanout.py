"""
Fan-out Tests
=============

Tests for ChunkFanout and the audio broadcaster's subscriber stream.
"""

import asyncio

import pytest

from printstreamer.audio.broadcaster import AudioBroadcaster
from printstreamer.audio.library import AudioLibrary
from printstreamer.encoder.supervisor import EncoderSupervisor
from printstreamer.media.fanout import ChunkFanout, SubscriberChannel
from printstreamer.media.streamers import PipelineStage, SharedEncoderStage, StageKind


class TestSubscriberChannel:
    """Tests for the bounded drop-oldest channel."""

    @pytest.mark.asyncio
    async def test_full_channel_drops_oldest(self):
        """Verify the oldest chunk is discarded when full."""
        channel = SubscriberChannel(1, maxsize=2)

        channel.offer(b"a")
        channel.offer(b"b")
        kept = channel.offer(b"c")

        assert kept is False
        assert channel.dropped_count == 1
        assert await channel.get() == b"b"
        assert await channel.get() == b"c"

    @pytest.mark.asyncio
    async def test_close_wakes_reader(self):
        """Verify a pending reader receives the end marker."""
        channel = SubscriberChannel(1, maxsize=1)
        reader = asyncio.create_task(channel.get())
        await asyncio.sleep(0)

        channel.close()

        assert await reader is None

    @pytest.mark.asyncio
    async def test_get_timeout(self):
        """Verify an empty channel times out with None."""
        channel = SubscriberChannel(1)

        assert await channel.get(timeout=0.01) is None

    def test_invalid_size(self):
        """Verify a zero sized channel is rejected."""
        with pytest.raises(ValueError):
            SubscriberChannel(1, maxsize=0)


class TestChunkFanout:
    """Tests for ChunkFanout."""

    @pytest.mark.asyncio
    async def test_late_subscriber_joins_at_live_edge(self):
        """Verify a subscriber sees only chunks published after joining."""
        fanout = ChunkFanout(queue_size=8)
        for chunk in (b"c1", b"c2", b"c3"):
            fanout.publish(chunk)

        channel = fanout.subscribe()
        fanout.publish(b"c4")
        fanout.publish(b"c5")

        assert [channel.get_nowait(), channel.get_nowait()] == [b"c4", b"c5"]
        assert channel.get_nowait() is None

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_affect_others(self):
        """Verify drops are per subscriber."""
        fanout = ChunkFanout(queue_size=2)
        slow = fanout.subscribe()
        fast = fanout.subscribe()

        fanout.publish(b"1")
        assert fast.get_nowait() == b"1"
        fanout.publish(b"2")
        assert fast.get_nowait() == b"2"
        fanout.publish(b"3")
        assert fast.get_nowait() == b"3"

        assert slow.dropped_count == 1
        assert fast.dropped_count == 0
        assert [slow.get_nowait(), slow.get_nowait()] == [b"2", b"3"]

    def test_unsubscribe_and_metrics(self):
        """Verify subscriber accounting."""
        fanout = ChunkFanout()
        channel = fanout.subscribe()

        assert fanout.publish(b"abc") == 1
        fanout.unsubscribe(channel)

        assert fanout.subscriber_count == 0
        assert channel.closed
        assert fanout.metrics()["bytes_published"] == 3


class TestAudioBroadcasterStream:
    """Tests for listeners attached to the broadcaster."""

    @pytest.mark.asyncio
    async def test_listener_reads_only_new_chunks(self, tmp_path):
        """Verify a listener joining after c1..c3 reads exactly c4, c5."""
        broadcaster = AudioBroadcaster(AudioLibrary(str(tmp_path)), EncoderSupervisor())
        for chunk in (b"c1", b"c2", b"c3"):
            broadcaster.fanout.publish(chunk)

        listener = broadcaster.stream()
        first = asyncio.create_task(listener.__anext__())
        await asyncio.sleep(0)
        assert broadcaster.fanout.subscriber_count == 1

        broadcaster.fanout.publish(b"c4")
        broadcaster.fanout.publish(b"c5")

        received = [await first, await listener.__anext__()]
        await listener.aclose()

        assert received == [b"c4", b"c5"]
        assert broadcaster.fanout.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_listener_ends_on_close_all(self, tmp_path):
        """Verify shutdown finishes every listener."""
        broadcaster = AudioBroadcaster(AudioLibrary(str(tmp_path)), EncoderSupervisor())
        listener = broadcaster.stream()
        pending = asyncio.create_task(listener.__anext__())
        await asyncio.sleep(0)

        broadcaster.fanout.close_all()

        with pytest.raises(StopAsyncIteration):
            await pending

    def test_no_track_while_idle(self, tmp_path):
        """Verify the current track is empty before anything plays."""
        broadcaster = AudioBroadcaster(AudioLibrary(str(tmp_path)), EncoderSupervisor())

        assert broadcaster.current_track_name() is None
        assert broadcaster.status()["running"] is False


JPEG_LOOP = "while true; do printf '\\377\\330x\\377\\331'; sleep 0.05; done"


def shared_stage(script, **kwargs):
    record = PipelineStage("overlay", StageKind.OVERLAY, "test", "/stream/overlay")
    supervisor = EncoderSupervisor(binary="sh", kill_grace=1.0)
    return SharedEncoderStage(record, supervisor, lambda: ["-c", script], **kwargs)


class TestSharedEncoderStage:
    """Tests for the shared encoder's subscriber lifecycle."""

    @pytest.mark.asyncio
    async def test_last_subscriber_stops_encoder(self):
        """Verify the encoder starts with the first subscriber and stops with the last."""
        stage = shared_stage(JPEG_LOOP)
        stream = stage.stream()

        part = await asyncio.wait_for(stream.__anext__(), timeout=5.0)
        assert b"\xff\xd8x\xff\xd9" in part
        assert stage.running

        await stream.aclose()

        assert not stage.running
        assert stage.stage.handle is None
        await asyncio.sleep(0.05)
        assert stage.supervisor.active() == []

    @pytest.mark.asyncio
    async def test_shutdown_keeps_live_subscribers(self):
        """Verify an unforced shutdown leaves a watched encoder running."""
        stage = shared_stage(JPEG_LOOP)
        stream = stage.stream()
        await asyncio.wait_for(stream.__anext__(), timeout=5.0)

        await stage.shutdown()
        assert stage.running

        await stage.shutdown(force=True)

        assert not stage.running
        assert stage.fanout.subscriber_count == 0
        with pytest.raises(StopAsyncIteration):
            while True:
                await asyncio.wait_for(stream.__anext__(), timeout=5.0)

    @pytest.mark.asyncio
    async def test_failed_encoder_ends_subscribers(self):
        """Verify subscribers are released when restarts are exhausted."""
        stage = shared_stage("exit 1", retry_attempts=0, retry_backoff=0.0)

        parts = await asyncio.wait_for(_collect(stage.stream()), timeout=5.0)

        assert parts == []
        assert stage.fanout.subscriber_count == 0
        assert "exited with 1" in stage.stage.last_error
        assert not stage.running


async def _collect(stream):
    return [part async for part in stream]
