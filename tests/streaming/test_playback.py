"""
Consumer supervision tests.

Fake ffplay scripts print canned status output so the liveness heuristic
can be driven end to end against a real child process.
"""

import asyncio
from pathlib import Path

import pytest

from tierstream.config import PlaybackConfig, StreamingConfig
from tierstream.errors import PlaybackHealthTimeout
from tierstream.events import EventBus, StreamStatus, StreamStatusChanged
from tierstream.media.tiers import TransportProtocol
from tierstream.streaming.playback import RETRY_HINT, HealthVerdict, PlaybackSupervisor

NAN_LINE = "nan    :  0.000 fd=   0 aq=    0KB vq=    0KB sq=    0B f=0/0"


@pytest.fixture
def playback_settings() -> PlaybackConfig:
    return PlaybackConfig(grace_delay=0.0, startup_timeout=10.0, stop_timeout=2.0)


@pytest.fixture
def streaming_settings(tmp_path: Path) -> StreamingConfig:
    return StreamingConfig(sdp_path=str(tmp_path / "stream.sdp"))


def _ffplay(fake_tool, lines: list[str], exit_code: int = 0, hang: bool = False) -> str:
    body = "import sys, time\n"
    for line in lines:
        body += f"print({line!r}, file=sys.stderr, flush=True)\n"
    if hang:
        body += "time.sleep(60)\n"
    body += f"sys.exit({exit_code})\n"
    return fake_tool("ffplay", body)


class TestConsumerCommand:
    """Protocol-specific consumer command lines."""

    def test_tcp(self, streaming_settings):
        """TCP connects to the listening producer."""
        supervisor = PlaybackSupervisor(TransportProtocol.TCP, streaming=streaming_settings)

        assert supervisor.build_command() == [
            "ffplay",
            "-i", "tcp://localhost:9999",
            "-window_title", "Streaming Client - TCP",
            "-autoexit",
            "-loglevel", "warning",
            "-fflags", "nobuffer",
        ]

    def test_udp(self, streaming_settings):
        """UDP uses a large FIFO and tolerates overruns."""
        cmd = PlaybackSupervisor(TransportProtocol.UDP, streaming=streaming_settings).build_command()

        assert cmd[2] == "udp://localhost:9999?fifo_size=100000&overrun_nonfatal=1"
        assert cmd[-7:] == [
            "-fflags", "nobuffer+fastseek",
            "-flags", "low_delay",
            "-framedrop",
            "-sync", "audio",
        ]

    def test_rtp_without_sdp(self, streaming_settings):
        """Without a session description RTP falls back to the direct URL."""
        supervisor = PlaybackSupervisor(TransportProtocol.RTP_UDP, streaming=streaming_settings)

        cmd = supervisor.build_command()

        assert supervisor.source_url() == "rtp://localhost:9999"
        assert "-protocol_whitelist" not in cmd
        assert cmd[-4:] == ["-fflags", "nobuffer", "-flags", "low_delay"]

    def test_rtp_with_sdp(self, streaming_settings):
        """A session description is preferred and whitelisted."""
        Path(streaming_settings.sdp_path).write_text("v=0\n")
        supervisor = PlaybackSupervisor(TransportProtocol.RTP_UDP, streaming=streaming_settings)

        cmd = supervisor.build_command()

        assert cmd[1:5] == ["-protocol_whitelist", "file,rtp,udp", "-i", streaming_settings.sdp_path]
        assert "Streaming Client - RTP/UDP" in cmd

    def test_rtp_with_differently_named_session_file(self, tmp_path):
        """The whitelist follows the session file, whatever its suffix."""
        sdp = tmp_path / "session.desc"
        sdp.write_text("v=0\n")
        streaming = StreamingConfig(sdp_path=str(sdp))

        cmd = PlaybackSupervisor(TransportProtocol.RTP_UDP, streaming=streaming).build_command()

        assert "-protocol_whitelist" in cmd
        assert cmd[cmd.index("-i") + 1] == str(sdp)


class TestPlaybackSupervisor:
    """End-to-end supervision of a fake consumer."""

    @pytest.mark.asyncio
    async def test_healthy_playback(self, fake_tool, playback_settings, streaming_settings):
        """A consumer that decodes and exits cleanly returns a result."""
        ffplay = _ffplay(fake_tool, [
            "Input #0, mpegts, from 'tcp://localhost:9999':",
            "  Stream #0:0[0x100]: Video: h264 (High), yuv420p, 426x240",
            "   1.20 M-V:  0.001 fd=   0 aq=    0KB vq=   20KB sq=    0B f=0/0 frame=   36 fps= 30",
        ])
        events = EventBus()
        received = []
        events.subscribe(received.append)
        supervisor = PlaybackSupervisor(
            TransportProtocol.TCP, playback_settings, streaming_settings,
            ffplay_path=ffplay, filename="Movie-240p.mkv", events=events,
        )

        result = await supervisor.run()

        assert result.returncode == 0
        assert result.stream_detected
        assert result.decoding_started
        assert result.verdict is HealthVerdict.CONTINUE
        assert not result.aborted
        statuses = [e.status for e in received if isinstance(e, StreamStatusChanged)]
        assert statuses == [StreamStatus.STARTING, StreamStatus.RUNNING, StreamStatus.EXITED]

    @pytest.mark.asyncio
    async def test_invalid_timing_streak_aborts(self, fake_tool, playback_settings, streaming_settings):
        """Sixteen nan lines with no progress kill the consumer and report a stall."""
        ffplay = _ffplay(fake_tool, [NAN_LINE] * 16, hang=True)
        events = EventBus()
        received = []
        events.subscribe(received.append)
        supervisor = PlaybackSupervisor(
            TransportProtocol.UDP, playback_settings, streaming_settings,
            ffplay_path=ffplay, events=events,
        )

        with pytest.raises(PlaybackHealthTimeout) as exc_info:
            await supervisor.run()

        error = exc_info.value
        assert error.reason == HealthVerdict.STALLED.value
        assert error.invalid_timing_streak == 16
        assert error.hint == RETRY_HINT
        assert "TCP" in str(error)
        assert not supervisor.is_running
        assert supervisor._supervisor.returncode == -9
        statuses = [e.status for e in received if isinstance(e, StreamStatusChanged)]
        assert statuses[-1] is StreamStatus.FAILED

    @pytest.mark.asyncio
    async def test_silent_consumer_times_out(self, fake_tool, streaming_settings):
        """No output at all still hits the startup timeout."""
        ffplay = _ffplay(fake_tool, [], hang=True)
        settings = PlaybackConfig(grace_delay=0.0, startup_timeout=0.5, stop_timeout=2.0)
        supervisor = PlaybackSupervisor(
            TransportProtocol.TCP, settings, streaming_settings, ffplay_path=ffplay,
        )

        with pytest.raises(PlaybackHealthTimeout) as exc_info:
            await supervisor.run()

        assert exc_info.value.reason == HealthVerdict.TIMEOUT.value
        assert exc_info.value.elapsed >= 0.5
        assert not supervisor.is_running

    @pytest.mark.asyncio
    async def test_bind_failure_aborts(self, fake_tool, playback_settings, streaming_settings):
        """A refused connection stops the consumer at once."""
        ffplay = _ffplay(fake_tool, ["tcp://localhost:9999: Connection refused"], hang=True)
        supervisor = PlaybackSupervisor(
            TransportProtocol.TCP, playback_settings, streaming_settings, ffplay_path=ffplay,
        )

        with pytest.raises(PlaybackHealthTimeout) as exc_info:
            await supervisor.run()

        assert exc_info.value.reason == HealthVerdict.BIND_FAILURE.value
        assert exc_info.value.elapsed < playback_settings.startup_timeout

    @pytest.mark.asyncio
    async def test_stall_after_stream_detected(self, fake_tool, playback_settings, streaming_settings):
        """A detected stream that stalls is aborted but reported as a result."""
        ffplay = _ffplay(
            fake_tool,
            ["  Stream #0:0: Video: h264, yuv420p, 1280x720"] + [NAN_LINE] * 16,
            hang=True,
        )
        events = EventBus()
        received = []
        events.subscribe(received.append)
        supervisor = PlaybackSupervisor(
            TransportProtocol.RTP_UDP, playback_settings, streaming_settings,
            ffplay_path=ffplay, events=events,
        )

        result = await supervisor.run()

        assert result.aborted
        assert result.verdict is HealthVerdict.STALLED
        assert result.stream_detected
        assert not result.decoding_started
        statuses = [e.status for e in received if isinstance(e, StreamStatusChanged)]
        assert statuses[-1] is StreamStatus.ABORTED

    @pytest.mark.asyncio
    async def test_consumer_exits_without_stream(self, fake_tool, playback_settings, streaming_settings):
        """A consumer that gives up on its own is still a failure with a hint."""
        ffplay = _ffplay(fake_tool, ["udp://localhost:9999: Invalid data found"], exit_code=1)
        supervisor = PlaybackSupervisor(
            TransportProtocol.UDP, playback_settings, streaming_settings, ffplay_path=ffplay,
        )

        with pytest.raises(PlaybackHealthTimeout) as exc_info:
            await supervisor.run()

        assert exc_info.value.reason == "exited with code 1"
        assert exc_info.value.hint == RETRY_HINT

    @pytest.mark.asyncio
    async def test_launch_runs_in_background(self, fake_tool, playback_settings, streaming_settings):
        """launch() returns a task for fire-and-forget use."""
        ffplay = _ffplay(fake_tool, ["  Stream #0:0: Audio: aac", "frame=   10 fps= 25"])
        supervisor = PlaybackSupervisor(
            TransportProtocol.TCP, playback_settings, streaming_settings, ffplay_path=ffplay,
        )

        task = supervisor.launch()
        result = await task

        assert result.started

    @pytest.mark.asyncio
    async def test_cancel_kills_consumer(self, fake_tool, playback_settings, streaming_settings):
        """Cancelling a running playback task kills FFplay before re-raising."""
        ffplay = _ffplay(
            fake_tool,
            ["  Stream #0:0: Video: h264, yuv420p, 426x240", "frame=   10 fps= 25"],
            hang=True,
        )
        events = EventBus()
        received = []
        events.subscribe(received.append)
        supervisor = PlaybackSupervisor(
            TransportProtocol.TCP, playback_settings, streaming_settings,
            ffplay_path=ffplay, events=events,
        )

        task = supervisor.launch()
        for _ in range(200):
            if supervisor.monitor.decoding_started:
                break
            await asyncio.sleep(0.025)
        assert supervisor.is_running

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not supervisor.is_running
        assert supervisor._supervisor.returncode == -9
        statuses = [e.status for e in received if isinstance(e, StreamStatusChanged)]
        assert statuses[-1] is StreamStatus.ABORTED
