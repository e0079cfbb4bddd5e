"""
Unit tests for variant generation.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from tierstream.media.tiers import ContainerFormat, ResolutionTier
from tierstream.media.transcoder import (
    PLACEHOLDER_HEADERS,
    GenerationMethod,
    Transcoder,
    detect_encoder,
)


@pytest.mark.unit
class TestPlaceholderHeaders:
    """Tests for the placeholder magic bytes."""

    def test_header_sizes(self):
        """Each container gets its fixed header."""
        assert len(PLACEHOLDER_HEADERS[ContainerFormat.MP4]) == 32
        assert len(PLACEHOLDER_HEADERS[ContainerFormat.MKV]) == 28
        assert len(PLACEHOLDER_HEADERS[ContainerFormat.AVI]) == 16

    def test_header_magic(self):
        """Headers start with the container's signature."""
        assert PLACEHOLDER_HEADERS[ContainerFormat.MP4][4:12] == b"ftypisom"
        assert PLACEHOLDER_HEADERS[ContainerFormat.MKV][:4] == bytes([0x1A, 0x45, 0xDF, 0xA3])
        avi = PLACEHOLDER_HEADERS[ContainerFormat.AVI]
        assert avi[:4] == b"RIFF"
        assert avi[8:16] == b"AVI LIST"


@pytest.mark.unit
class TestTranscoderCommand:
    """Tests for the encoder command line."""

    def test_output_path(self, tmp_path: Path):
        """Variants land next to the source with the canonical name."""
        source = tmp_path / "Movie-1080p.mkv"

        output = Transcoder.output_path(source, "Movie", ContainerFormat.MP4, ResolutionTier.P480)

        assert output == tmp_path / "Movie-480p.mp4"

    def test_build_command(self, tmp_path: Path):
        """Fixed geometry, fast preset, constant quality."""
        transcoder = Transcoder(encoder_available=True, ffmpeg_path="/usr/bin/ffmpeg")
        source = tmp_path / "Movie-1080p.mkv"
        output = tmp_path / "Movie-720p.avi"

        cmd = transcoder.build_command(source, output, ResolutionTier.P720)

        assert cmd == [
            "/usr/bin/ffmpeg",
            "-i", str(source),
            "-vf", "scale=1280:720",
            "-c:v", "libx264",
            "-c:a", "aac",
            "-preset", "fast",
            "-crf", "23",
            "-y",
            str(output),
        ]


@pytest.mark.unit
class TestTranscoderGenerate:
    """Tests for Transcoder.generate."""

    @pytest.mark.asyncio
    async def test_placeholder_without_encoder(self, make_video, placeholder_transcoder):
        """No encoder: a placeholder with the format header is written."""
        source = make_video("Movie-720p.mkv")

        result = await placeholder_transcoder.generate(
            source, "Movie", ContainerFormat.AVI, ResolutionTier.P360
        )

        assert result.method is GenerationMethod.PLACEHOLDER
        assert result.path.name == "Movie-360p.avi"
        assert result.path.read_bytes() == PLACEHOLDER_HEADERS[ContainerFormat.AVI]
        assert placeholder_transcoder.placeholders == 1

    @pytest.mark.asyncio
    async def test_existing_target_untouched(self, make_video, placeholder_transcoder):
        """Generating an existing variant is a no-op."""
        source = make_video("Movie-720p.mkv")
        existing = make_video("Movie-480p.mp4", b"original content")

        result = await placeholder_transcoder.generate(
            source, "Movie", ContainerFormat.MP4, ResolutionTier.P480
        )

        assert result.method is GenerationMethod.EXISTING
        assert existing.read_bytes() == b"original content"
        assert placeholder_transcoder.placeholders == 0

    @pytest.mark.asyncio
    async def test_encodes_with_tool(self, make_video, encoding_ffmpeg):
        """With an encoder the tool writes the variant."""
        source = make_video("Movie-1080p.mkv")
        transcoder = Transcoder(encoder_available=True, ffmpeg_path=encoding_ffmpeg)

        result = await transcoder.generate(
            source, "Movie", ContainerFormat.MP4, ResolutionTier.P240
        )

        assert result.method is GenerationMethod.TRANSCODED
        content = result.path.read_bytes()
        assert content.startswith(b"encoded ")
        assert b"scale=426:240" in content
        assert transcoder.transcoded == 1

    @pytest.mark.asyncio
    async def test_failed_encode_falls_back(self, make_video, failing_ffmpeg):
        """A failed encode leaves a placeholder, not the partial output."""
        source = make_video("Movie-1080p.mkv")
        transcoder = Transcoder(encoder_available=True, ffmpeg_path=failing_ffmpeg)

        result = await transcoder.generate(
            source, "Movie", ContainerFormat.MKV, ResolutionTier.P720
        )

        assert result.method is GenerationMethod.PLACEHOLDER
        assert "code 1" in result.error
        assert result.path.read_bytes() == PLACEHOLDER_HEADERS[ContainerFormat.MKV]

    @pytest.mark.asyncio
    async def test_missing_tool_falls_back(self, make_video, tmp_path: Path):
        """An encoder that cannot be spawned counts as unavailable."""
        source = make_video("Movie-1080p.mkv")
        transcoder = Transcoder(
            encoder_available=True, ffmpeg_path=str(tmp_path / "no-such-ffmpeg")
        )

        result = await transcoder.generate(
            source, "Movie", ContainerFormat.MP4, ResolutionTier.P720
        )

        assert result.method is GenerationMethod.PLACEHOLDER
        assert result.path.read_bytes() == PLACEHOLDER_HEADERS[ContainerFormat.MP4]


@pytest.mark.unit
class TestDetectEncoder:
    """Tests for the one-time encoder probe."""

    def test_not_on_path(self, tmp_path: Path):
        """Unknown executables are unavailable."""
        assert detect_encoder(str(tmp_path / "missing-ffmpeg")) is False

    def test_fake_encoder(self, fake_tool):
        """An executable that exits 0 on -version is available."""
        ffmpeg = fake_tool("ffmpeg", 'print("ffmpeg version 6.1")\n')

        assert detect_encoder(ffmpeg) is True

    def test_failing_encoder(self, fake_tool):
        """Non-zero exit means unavailable."""
        ffmpeg = fake_tool("ffmpeg", "import sys\nsys.exit(3)\n")

        assert detect_encoder(ffmpeg) is False

    def test_timeout(self):
        """A hung probe means unavailable."""
        import subprocess

        with patch("tierstream.media.transcoder.shutil.which", return_value="/usr/bin/ffmpeg"), \
             patch(
                 "tierstream.media.transcoder.subprocess.run",
                 side_effect=subprocess.TimeoutExpired(cmd="ffmpeg", timeout=5),
             ):
            assert detect_encoder("ffmpeg") is False
