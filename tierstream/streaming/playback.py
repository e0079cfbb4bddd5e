"""
Consumer side of a streaming session.

PlaybackSupervisor waits a grace delay for the producer to bind, launches
FFplay against the protocol's transport URL and watches its status output
with a best-effort liveness heuristic:

- a stream/track metadata line marks the stream as detected
- a status line with positive frame or fps progress (and no ``nan``)
  marks decoding as started
- consecutive ``nan`` timing lines before decoding starts are counted

Before decoding starts the consumer is killed when the ``nan`` streak
exceeds its threshold or the startup timeout elapses. A bind failure
(connection refused, address in use) stops it at once. The thresholds are
policy, not correctness: FFplay's output format is not an interface and
the heuristic will misjudge some streams.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from tierstream.config import PlaybackConfig, StreamingConfig
from tierstream.errors import PlaybackHealthTimeout
from tierstream.events import EventBus, StreamStatus, StreamStatusChanged
from tierstream.media.tiers import TransportProtocol
from tierstream.streaming.process_supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

RETRY_HINT = "Try a different protocol (TCP usually works best)."


class HealthVerdict(str, Enum):
    """What the supervisor should do after a status line."""

    CONTINUE = "continue"
    STALLED = "stalled"
    TIMEOUT = "timeout"
    BIND_FAILURE = "bind_failure"


class StreamHealthMonitor:
    """
    Liveness state machine fed one consumer status line at a time.

    Usage:
        monitor = StreamHealthMonitor()
        monitor.start()
        for line in output:
            if monitor.observe(line) is not HealthVerdict.CONTINUE:
                kill_consumer()
    """

    STREAM_INFO_MARKERS = ("Stream #", "Video:", "Audio:")
    BIND_FAILURE_MARKERS = ("Connection refused", "Address already in use")
    INVALID_TIMING_MARKER = "nan"

    PATTERNS = {
        "frame": re.compile(r"frame=\s*(\d+)"),
        "fps": re.compile(r"fps=\s*(\d+(?:\.\d+)?)"),
    }

    def __init__(
        self,
        invalid_timing_threshold: int = 15,
        startup_timeout: float = 20.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.invalid_timing_threshold = invalid_timing_threshold
        self.startup_timeout = startup_timeout
        self._clock = clock
        self._started_at: Optional[float] = None

        self.stream_detected = False
        self.decoding_started = False
        self.invalid_timing_streak = 0
        self.lines_seen = 0

    def start(self) -> None:
        """Mark the consumer launch time."""
        self._started_at = self._clock()

    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self._clock() - self._started_at

    @property
    def remaining(self) -> float:
        """Seconds left before the startup timeout."""
        return max(0.0, self.startup_timeout - self.elapsed)

    def _shows_progress(self, line: str) -> bool:
        if self.INVALID_TIMING_MARKER in line:
            return False
        for pattern in self.PATTERNS.values():
            match = pattern.search(line)
            if match and float(match.group(1)) > 0:
                return True
        return False

    def observe(self, line: str) -> HealthVerdict:
        """Update state from one line and return the verdict."""
        self.lines_seen += 1

        if any(marker in line for marker in self.BIND_FAILURE_MARKERS):
            logger.warning(f"Consumer transport failure: {line}")
            return HealthVerdict.BIND_FAILURE

        if any(marker in line for marker in self.STREAM_INFO_MARKERS):
            if not self.stream_detected:
                logger.info("Stream info detected")
            self.stream_detected = True
            self.invalid_timing_streak = 0

        if self._shows_progress(line):
            if not self.decoding_started:
                logger.info("Decoding started")
            self.decoding_started = True
            self.invalid_timing_streak = 0

        if self.INVALID_TIMING_MARKER in line:
            if not self.decoding_started:
                self.invalid_timing_streak += 1
        else:
            self.invalid_timing_streak = 0

        return self.check()

    def check(self) -> HealthVerdict:
        """Apply the abort rules without a new line (used on read timeouts)."""
        if self.decoding_started:
            return HealthVerdict.CONTINUE
        if self.invalid_timing_streak > self.invalid_timing_threshold:
            return HealthVerdict.STALLED
        if self.elapsed > self.startup_timeout:
            return HealthVerdict.TIMEOUT
        return HealthVerdict.CONTINUE


@dataclass
class PlaybackResult:
    """Outcome of a supervised playback."""

    protocol: TransportProtocol
    source_url: str
    returncode: Optional[int]
    stream_detected: bool
    decoding_started: bool
    verdict: HealthVerdict
    elapsed: float

    @property
    def aborted(self) -> bool:
        return self.verdict is not HealthVerdict.CONTINUE

    @property
    def started(self) -> bool:
        return self.decoding_started or self.stream_detected


class PlaybackSupervisor:
    """
    Launches and watches the FFplay consumer for one stream.

    Usage:
        supervisor = PlaybackSupervisor(TransportProtocol.TCP, filename="Movie-240p.mkv")
        try:
            result = await supervisor.run()
        except PlaybackHealthTimeout as e:
            print(e.hint)
    """

    def __init__(
        self,
        protocol: TransportProtocol,
        settings: Optional[PlaybackConfig] = None,
        streaming: Optional[StreamingConfig] = None,
        ffplay_path: str = "ffplay",
        filename: str = "",
        events: Optional[EventBus] = None,
    ):
        self.protocol = protocol
        self.settings = settings or PlaybackConfig()
        self.streaming = streaming or StreamingConfig()
        self.ffplay_path = ffplay_path
        self.filename = filename
        self.events = events
        self.monitor = StreamHealthMonitor(
            invalid_timing_threshold=self.settings.invalid_timing_threshold,
            startup_timeout=self.settings.startup_timeout,
        )
        self._supervisor: Optional[ProcessSupervisor] = None

    @property
    def is_running(self) -> bool:
        return self._supervisor is not None and self._supervisor.is_running

    def source_url(self) -> str:
        host, port = self.streaming.host, self.streaming.port
        if self.protocol is TransportProtocol.TCP:
            return f"tcp://{host}:{port}"
        if self.protocol is TransportProtocol.UDP:
            return f"udp://{host}:{port}?fifo_size=100000&overrun_nonfatal=1"
        sdp = Path(self.streaming.sdp_path)
        return str(sdp) if sdp.exists() else f"rtp://{host}:{port}"

    def build_command(self) -> list[str]:
        url = self.source_url()
        cmd = [self.ffplay_path]
        if self.protocol is TransportProtocol.RTP_UDP and Path(self.streaming.sdp_path).exists():
            cmd += ["-protocol_whitelist", "file,rtp,udp"]
        cmd += [
            "-i", url,
            "-window_title", f"Streaming Client - {self.protocol.value}",
            "-autoexit",
            "-loglevel", "warning",
        ]

        if self.protocol is TransportProtocol.TCP:
            cmd += ["-fflags", "nobuffer"]
        elif self.protocol is TransportProtocol.UDP:
            cmd += [
                "-fflags", "nobuffer+fastseek",
                "-flags", "low_delay",
                "-framedrop",
                "-sync", "audio",
            ]
        else:
            cmd += ["-fflags", "nobuffer", "-flags", "low_delay"]
        return cmd

    async def run(self) -> PlaybackResult:
        """
        Wait the grace delay, launch the consumer and supervise it to exit.

        Raises:
            StreamLaunchError: FFplay could not be spawned
            PlaybackHealthTimeout: the consumer ended without ever showing a
                stream or decoding a frame
        """
        logger.info(f"Waiting {self.settings.grace_delay}s for the producer to bind")
        await asyncio.sleep(self.settings.grace_delay)

        self._publish(StreamStatus.STARTING)
        self._supervisor = ProcessSupervisor(
            self.build_command(),
            name=f"FFplay consumer ({self.protocol.value})",
            stop_timeout=self.settings.stop_timeout,
        )
        try:
            await self._supervisor.start()
        except Exception as e:
            self._publish(StreamStatus.FAILED, str(e))
            raise
        self.monitor.start()
        self._publish(StreamStatus.RUNNING)

        try:
            verdict = await self._watch(self._supervisor)

            if verdict is HealthVerdict.CONTINUE:
                returncode = await self._supervisor.wait()
            else:
                logger.warning(
                    f"Aborting consumer ({verdict.value}): elapsed {self.monitor.elapsed:.1f}s, "
                    f"invalid timing streak {self.monitor.invalid_timing_streak}"
                )
                returncode = await self._supervisor.terminate(
                    force=verdict is not HealthVerdict.BIND_FAILURE
                )
        except asyncio.CancelledError:
            logger.info("Playback cancelled, stopping FFplay")
            await asyncio.shield(self._supervisor.terminate(force=True))
            self._publish(StreamStatus.ABORTED, "cancelled")
            raise

        logger.info(f"FFplay client exited with code {returncode}")
        result = PlaybackResult(
            protocol=self.protocol,
            source_url=self.source_url(),
            returncode=returncode,
            stream_detected=self.monitor.stream_detected,
            decoding_started=self.monitor.decoding_started,
            verdict=verdict,
            elapsed=self.monitor.elapsed,
        )

        if not result.started:
            reason = verdict.value if result.aborted else f"exited with code {returncode}"
            self._publish(StreamStatus.FAILED, f"{reason}. {RETRY_HINT}")
            raise PlaybackHealthTimeout(
                "The stream did not start.",
                hint=RETRY_HINT,
                reason=reason,
                elapsed=result.elapsed,
                invalid_timing_streak=self.monitor.invalid_timing_streak,
            )

        self._publish(
            StreamStatus.ABORTED if result.aborted else StreamStatus.EXITED,
            f"code {returncode}",
        )
        return result

    async def _watch(self, supervisor: ProcessSupervisor) -> HealthVerdict:
        """Feed output to the monitor until exit or an abort verdict."""
        lines = supervisor.lines()
        pending: Optional[asyncio.Future] = None
        try:
            while True:
                if pending is None:
                    pending = asyncio.ensure_future(lines.__anext__())

                # Silence counts toward the startup timeout too
                timeout = None if self.monitor.decoding_started else self.monitor.remaining
                done, _ = await asyncio.wait({pending}, timeout=timeout)
                if not done:
                    verdict = self.monitor.check()
                    if verdict is not HealthVerdict.CONTINUE:
                        return verdict
                    continue

                finished, pending = pending, None
                try:
                    line = finished.result()
                except StopAsyncIteration:
                    return HealthVerdict.CONTINUE

                logger.debug(f"FFplay: {line}")
                verdict = self.monitor.observe(line)
                if verdict is not HealthVerdict.CONTINUE:
                    return verdict
        finally:
            if pending is not None:
                pending.cancel()
                try:
                    await pending
                except (asyncio.CancelledError, StopAsyncIteration):
                    pass
            await lines.aclose()

    async def stop(self) -> None:
        """Stop the consumer if it is running."""
        if self._supervisor is not None:
            await self._supervisor.terminate()

    def launch(self) -> "asyncio.Task[PlaybackResult]":
        """Run in the background and return the task."""
        return asyncio.create_task(self.run())

    def _publish(self, status: StreamStatus, detail: str = "") -> None:
        if self.events:
            self.events.publish(
                StreamStatusChanged(self.filename, self.protocol.value, status, detail)
            )
