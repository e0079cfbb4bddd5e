"""
Variant generation through FFmpeg.

Materializes a missing (format, tier) variant of a title from an existing
source file. Whether the encoder is usable is decided once, when the
Transcoder is built; without it (or when an encode fails) a placeholder
with the container's magic header is written instead, so the catalog stays
complete even though the placeholder holds no decodable media.
"""

import asyncio
import logging
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from tierstream.errors import StreamLaunchError, TranscodeError, TranscodeToolUnavailable
from tierstream.media.tiers import ContainerFormat, ResolutionTier
from tierstream.streaming.process_supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


PLACEHOLDER_HEADERS: dict[ContainerFormat, bytes] = {
    # ftyp box: isom, minor 0x200, brands isom iso2 avc1 mp41
    ContainerFormat.MP4: bytes([
        0x00, 0x00, 0x00, 0x20, 0x66, 0x74, 0x79, 0x70,
        0x69, 0x73, 0x6F, 0x6D, 0x00, 0x00, 0x02, 0x00,
        0x69, 0x73, 0x6F, 0x6D, 0x69, 0x73, 0x6F, 0x32,
        0x61, 0x76, 0x63, 0x31, 0x6D, 0x70, 0x34, 0x31,
    ]),
    # EBML header
    ContainerFormat.MKV: bytes([
        0x1A, 0x45, 0xDF, 0xA3,
        0x01, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x1F,
        0x42, 0x86, 0x81, 0x01, 0x42, 0xF7, 0x81, 0x01,
        0x42, 0xF2, 0x81, 0x04, 0x42, 0xF3, 0x81, 0x08,
    ]),
    # RIFF <size> AVI LIST
    ContainerFormat.AVI: bytes([
        0x52, 0x49, 0x46, 0x46,
        0x00, 0x00, 0x00, 0x00,
        0x41, 0x56, 0x49, 0x20,
        0x4C, 0x49, 0x53, 0x54,
    ]),
}


class GenerationMethod(str, Enum):
    """How a variant ended up on disk."""

    EXISTING = "existing"
    TRANSCODED = "transcoded"
    PLACEHOLDER = "placeholder"


@dataclass
class GenerationResult:
    path: Path
    method: GenerationMethod
    error: Optional[str] = None


def detect_encoder(ffmpeg_path: str = "ffmpeg", timeout: float = 5.0) -> bool:
    """
    Check whether ``ffmpeg -version`` runs and exits cleanly.

    Called once at startup; the answer is injected into Transcoder.
    """
    actual_ffmpeg = shutil.which(ffmpeg_path)
    if actual_ffmpeg is None:
        logger.warning(f"FFmpeg not found at {ffmpeg_path}")
        return False

    try:
        result = subprocess.run(
            [actual_ffmpeg, "-version"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, subprocess.SubprocessError, OSError) as e:
        logger.warning(f"FFmpeg probe failed: {e}")
        return False

    if result.returncode != 0:
        logger.warning(f"FFmpeg probe exited with code {result.returncode}")
        return False

    first_line = result.stdout.splitlines()[0] if result.stdout else ""
    logger.info(f"Encoder available: {first_line}")
    return True


def write_placeholder(path: Path, fmt: ContainerFormat) -> None:
    """Write the fixed magic-byte header for ``fmt`` to ``path``."""
    path.write_bytes(PLACEHOLDER_HEADERS[fmt])


class Transcoder:
    """
    Produces ``<title>-<tier><format>`` variants inside a media directory.

    Usage:
        transcoder = Transcoder(encoder_available=detect_encoder())
        await transcoder.generate(source, "Movie", ContainerFormat.MP4, ResolutionTier.P480)
    """

    def __init__(
        self,
        encoder_available: bool,
        ffmpeg_path: str = "ffmpeg",
        video_codec: str = "libx264",
        audio_codec: str = "aac",
        preset: str = "fast",
        crf: int = 23,
    ):
        self.encoder_available = encoder_available
        self.ffmpeg_path = ffmpeg_path
        self.video_codec = video_codec
        self.audio_codec = audio_codec
        self.preset = preset
        self.crf = crf

        # Metrics
        self.transcoded = 0
        self.placeholders = 0

    @staticmethod
    def output_path(source: Path, title: str, fmt: ContainerFormat, tier: ResolutionTier) -> Path:
        """Canonical path of a variant, next to its source."""
        return source.parent / f"{title}-{tier.value}{fmt.value}"

    def build_command(self, source: Path, output: Path, tier: ResolutionTier) -> list[str]:
        return [
            self.ffmpeg_path,
            "-i", str(source),
            "-vf", f"scale={tier.scale}",
            "-c:v", self.video_codec,
            "-c:a", self.audio_codec,
            "-preset", self.preset,
            "-crf", str(self.crf),
            "-y",
            str(output),
        ]

    async def generate(
        self,
        source: Path,
        title: str,
        fmt: ContainerFormat,
        tier: ResolutionTier,
    ) -> GenerationResult:
        """
        Make sure the (fmt, tier) variant of ``title`` exists.

        Existing targets are left alone. Encoder absence or failure falls
        back to a placeholder; only a failure to write even the placeholder
        propagates (as OSError).
        """
        output = self.output_path(source, title, fmt, tier)

        if output.exists():
            logger.debug(f"Variant already exists: {output.name}")
            return GenerationResult(output, GenerationMethod.EXISTING)

        logger.info(f"Generating {output.name} from {source.name}")

        try:
            await self._encode(source, output, tier)
            self.transcoded += 1
            logger.info(f"Generated {output.name}")
            return GenerationResult(output, GenerationMethod.TRANSCODED)
        except TranscodeToolUnavailable as e:
            logger.warning(f"{e.message}, writing placeholder for {output.name}")
            error = e.message
        except TranscodeError as e:
            logger.warning(f"Failed to generate {output.name}: {e.message}")
            error = e.message

        write_placeholder(output, fmt)
        self.placeholders += 1
        return GenerationResult(output, GenerationMethod.PLACEHOLDER, error=error)

    async def _encode(self, source: Path, output: Path, tier: ResolutionTier) -> None:
        if not self.encoder_available:
            raise TranscodeToolUnavailable("FFmpeg is not available")

        supervisor = ProcessSupervisor(
            self.build_command(source, output, tier),
            name=f"FFmpeg transcode {output.name}",
        )
        try:
            await supervisor.start()
        except StreamLaunchError as e:
            raise TranscodeToolUnavailable(e.message, e)

        try:
            async for line in supervisor.lines():
                if "time=" in line or "frame=" in line:
                    logger.debug(f"FFmpeg progress: {line}")

            returncode = await supervisor.wait()
        except BaseException:
            # Cancelled mid-encode: reap the encoder and drop its partial output
            try:
                await asyncio.shield(supervisor.terminate(force=True))
            finally:
                output.unlink(missing_ok=True)
                logger.warning(f"Encode of {output.name} interrupted, partial output removed")
            raise

        if returncode != 0:
            # Don't leave a truncated file that would satisfy the catalog
            output.unlink(missing_ok=True)
            raise TranscodeError(f"FFmpeg exited with code {returncode}")
