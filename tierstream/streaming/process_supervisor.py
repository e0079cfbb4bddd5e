"""
Supervision of external FFmpeg/FFplay processes.

One ProcessSupervisor owns one child process: it spawns it with stderr
folded into stdout, yields its status output line by line, and stops it
politely (SIGTERM, then SIGKILL after a grace period) or forcibly.
StreamSession, PlaybackSupervisor and Transcoder all drive their tools
through it.

Usage:
    supervisor = ProcessSupervisor(["ffmpeg", "-version"], name="probe")
    await supervisor.start()
    async for line in supervisor.lines():
        logger.info(line)
    returncode = await supervisor.wait()
"""

import asyncio
import codecs
import logging
import re
import time
from collections.abc import AsyncIterator
from typing import Any, Optional

import psutil

from tierstream.errors import StreamLaunchError

logger = logging.getLogger(__name__)

# FFmpeg rewrites its progress line with bare carriage returns
_LINE_SPLIT = re.compile(r"[\r\n]")


class ProcessSupervisor:
    """Spawn, read, and stop a single external process."""

    def __init__(
        self,
        command: list[str],
        name: Optional[str] = None,
        stop_timeout: float = 5.0,
        read_size: int = 4096,
    ):
        """
        Args:
            command: Executable and arguments
            name: Label used in log messages (defaults to the executable)
            stop_timeout: Seconds to wait after SIGTERM before SIGKILL
            read_size: Bytes read from the pipe per chunk
        """
        self.command = command
        self.name = name or command[0]
        self.stop_timeout = stop_timeout
        self.read_size = read_size
        self._process: Optional[asyncio.subprocess.Process] = None
        self._started_at: Optional[float] = None
        self._terminated = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def was_terminated(self) -> bool:
        """True when stopped through terminate() rather than exiting on its own."""
        return self._terminated

    @property
    def uptime_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    async def start(self) -> None:
        """Launch the process. Raises StreamLaunchError if it cannot be spawned."""
        if self._process is not None:
            raise RuntimeError(f"{self.name} already started")

        logger.info(f"Starting {self.name}: {' '.join(self.command)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise StreamLaunchError(f"Failed to start {self.name}: {e}", e)

        self._started_at = time.monotonic()
        logger.debug(f"{self.name} started (PID {self._process.pid})")

    async def lines(self) -> AsyncIterator[str]:
        """Yield non-empty status lines until the process closes its output."""
        if self._process is None or self._process.stdout is None:
            raise RuntimeError(f"{self.name} not started")

        stdout = self._process.stdout
        # A multi-byte character may straddle two reads
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stdout.read(self.read_size)
            if not chunk:
                pending += decoder.decode(b"", final=True)
                break
            pending += decoder.decode(chunk)
            *complete, pending = _LINE_SPLIT.split(pending)
            for line in complete:
                line = line.strip()
                if line:
                    yield line

        pending = pending.strip()
        if pending:
            yield pending

    async def wait(self) -> int:
        """Wait for exit and return the exit code."""
        if self._process is None:
            raise RuntimeError(f"{self.name} not started")
        return await self._process.wait()

    async def terminate(self, force: bool = False) -> Optional[int]:
        """
        Stop the process.

        Args:
            force: Kill immediately instead of SIGTERM first

        Returns:
            Exit code, or None if the process was never started
        """
        if self._process is None:
            return None
        if self._process.returncode is not None:
            return self._process.returncode

        self._terminated = True
        try:
            if force:
                self._process.kill()
            else:
                self._process.terminate()

            try:
                await asyncio.wait_for(self._process.wait(), timeout=self.stop_timeout)
                logger.info(f"Terminated {self.name} (PID {self._process.pid})")
            except asyncio.TimeoutError:
                self._process.kill()
                await self._process.wait()
                logger.warning(f"Force killed {self.name} (PID {self._process.pid})")
        except ProcessLookupError:
            # Exited between the check and the signal
            await self._process.wait()

        return self._process.returncode

    def stats(self) -> dict[str, Any]:
        """Resource usage snapshot of the running process."""
        info: dict[str, Any] = {
            "name": self.name,
            "pid": self.pid,
            "running": self.is_running,
            "returncode": self.returncode,
            "uptime_seconds": round(self.uptime_seconds, 1),
            "cpu_percent": 0.0,
            "memory_mb": 0.0,
        }
        if self.is_running and self.pid is not None:
            try:
                ps_proc = psutil.Process(self.pid)
                info["cpu_percent"] = ps_proc.cpu_percent()
                info["memory_mb"] = round(ps_proc.memory_info().rss / (1024 * 1024), 1)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        return info
