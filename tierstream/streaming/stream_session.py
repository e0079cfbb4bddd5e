"""
Producer side of a streaming session.

A StreamSession launches one FFmpeg process that reads a catalog file in
real time and pushes it to the transport endpoint for the chosen protocol:

- TCP: MPEG-TS over a listening TCP socket, one keyframe per second
- UDP: constant-bitrate MPEG-TS over UDP, denser keyframes for faster
  recovery after loss, packets sized to fit a typical MTU
- RTP/UDP: RTP with a session description written beforehand

The process runs detached from the control channel. Its output is logged;
its exit is logged and published but never reported on the control channel.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from tierstream.config import StreamingConfig
from tierstream.errors import StreamLaunchError
from tierstream.events import EventBus, StreamStatus, StreamStatusChanged
from tierstream.media.tiers import TransportProtocol
from tierstream.streaming.process_supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


def build_sdp(host: str, port: int, session_name: str = "Test Stream") -> str:
    """Session description for an H.264 RTP stream on ``port``."""
    return (
        "v=0\n"
        f"o=- 0 0 IN IP4 {host}\n"
        f"s={session_name}\n"
        f"c=IN IP4 {host}\n"
        "t=0 0\n"
        f"m=video {port} RTP/AVP 96\n"
        "a=rtpmap:96 H264/90000\n"
    )


def write_sdp(path: Path, port: int, session_name: str = "Test Stream") -> Path:
    path.write_text(build_sdp("127.0.0.1", port, session_name))
    logger.info(f"Wrote session description {path}")
    return path


class StreamSession:
    """
    One producer process for one START_STREAM request. Not reusable.

    Usage:
        session = StreamSession(Path("videos/Movie-720p.mkv"), TransportProtocol.RTP_UDP)
        await session.start()      # returns once the process is spawned
        ...
        await session.stop()
    """

    def __init__(
        self,
        source: Path,
        protocol: TransportProtocol,
        settings: Optional[StreamingConfig] = None,
        ffmpeg_path: str = "ffmpeg",
        events: Optional[EventBus] = None,
        stop_timeout: float = 5.0,
    ):
        self.session_id = str(uuid4())
        self.source = Path(source)
        self.protocol = protocol
        self.settings = settings or StreamingConfig()
        self.ffmpeg_path = ffmpeg_path
        self.events = events
        self.stop_timeout = stop_timeout
        self.created_at = datetime.now()

        self._supervisor: Optional[ProcessSupervisor] = None
        self._monitor_task: Optional[asyncio.Task] = None

        # Metrics
        self.progress_lines = 0
        self.error_lines = 0
        self.last_progress: Optional[str] = None

    @property
    def filename(self) -> str:
        return self.source.name

    @property
    def sdp_path(self) -> Path:
        return Path(self.settings.sdp_path)

    @property
    def is_running(self) -> bool:
        return self._supervisor is not None and self._supervisor.is_running

    @property
    def returncode(self) -> Optional[int]:
        return self._supervisor.returncode if self._supervisor else None

    def transport_url(self) -> str:
        s = self.settings
        if self.protocol is TransportProtocol.TCP:
            return f"tcp://{s.host}:{s.port}?listen=1"
        if self.protocol is TransportProtocol.UDP:
            return f"udp://{s.host}:{s.port}?pkt_size={s.udp_packet_size}"
        return f"rtp://{s.host}:{s.port}"

    def build_command(self) -> list[str]:
        s = self.settings
        cmd = [
            self.ffmpeg_path,
            "-re",
            "-i", str(self.source),
            "-c:v", "libx264",
            "-c:a", "aac",
            "-preset", "ultrafast",
            "-tune", "zerolatency",
        ]

        if self.protocol is TransportProtocol.UDP:
            gop = str(s.udp_keyframe_interval)
            cmd += [
                "-g", gop, "-keyint_min", gop,
                "-x264opts", "nal-hrd=cbr",
                "-b:v", s.udp_bitrate,
                "-maxrate", s.udp_bitrate,
                "-bufsize", s.udp_bufsize,
                "-f", "mpegts",
            ]
        else:
            gop = str(s.frame_rate)
            cmd += ["-g", gop, "-keyint_min", gop]
            cmd += ["-f", "rtp" if self.protocol is TransportProtocol.RTP_UDP else "mpegts"]

        cmd.append(self.transport_url())
        return cmd

    async def start(self) -> None:
        """
        Validate the source, write the SDP for RTP and spawn the producer.

        Raises:
            StreamLaunchError: source missing or process could not be spawned
        """
        if self._supervisor is not None:
            raise StreamLaunchError(f"Session {self.session_id} already started")

        if not self.source.is_file():
            raise StreamLaunchError(f"File does not exist: {self.source}")

        if self.protocol is TransportProtocol.RTP_UDP:
            write_sdp(self.sdp_path, self.settings.port, self.filename)

        self._publish(StreamStatus.STARTING)
        self._supervisor = ProcessSupervisor(
            self.build_command(),
            name=f"FFmpeg producer {self.filename} ({self.protocol.value})",
            stop_timeout=self.stop_timeout,
        )
        try:
            await self._supervisor.start()
        except StreamLaunchError as e:
            self._publish(StreamStatus.FAILED, e.message)
            raise

        self._publish(StreamStatus.RUNNING)
        self._monitor_task = asyncio.create_task(self._monitor())

    async def _monitor(self) -> None:
        """Log producer output until it exits."""
        assert self._supervisor is not None
        try:
            async for line in self._supervisor.lines():
                if "time=" in line or "fps=" in line or "bitrate=" in line:
                    self.progress_lines += 1
                    self.last_progress = line
                    logger.info(f"FFmpeg streaming: {line}")
                elif "error" in line or "Error" in line:
                    self.error_lines += 1
                    logger.warning(f"FFmpeg error: {line}")
                else:
                    logger.debug(f"FFmpeg: {line}")

            returncode = await self._supervisor.wait()
        except Exception as e:
            logger.error(f"Error monitoring producer {self.filename}: {e}")
            self._publish(StreamStatus.FAILED, str(e))
            return

        logger.info(f"FFmpeg streaming process for {self.filename} exited with code {returncode}")
        if self._supervisor.was_terminated:
            self._publish(StreamStatus.ABORTED, f"stopped (code {returncode})")
        elif returncode == 0:
            self._publish(StreamStatus.EXITED, "code 0")
        else:
            self._publish(StreamStatus.FAILED, f"code {returncode}")

    async def wait(self) -> Optional[int]:
        """Wait until the producer has exited and its output is drained."""
        if self._monitor_task is not None:
            await asyncio.shield(self._monitor_task)
        return self.returncode

    async def stop(self) -> Optional[int]:
        """Terminate the producer if it is still running."""
        if self._supervisor is None:
            return None
        returncode = await self._supervisor.terminate()
        if self._monitor_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._monitor_task), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                self._monitor_task.cancel()
        return returncode

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "session_id": self.session_id,
            "filename": self.filename,
            "protocol": self.protocol.value,
            "created_at": self.created_at.isoformat(),
            "progress_lines": self.progress_lines,
            "error_lines": self.error_lines,
            "last_progress": self.last_progress,
        }
        if self._supervisor is not None:
            stats["process"] = self._supervisor.stats()
        return stats

    def _publish(self, status: StreamStatus, detail: str = "") -> None:
        if self.events:
            self.events.publish(
                StreamStatusChanged(self.filename, self.protocol.value, status, detail)
            )
