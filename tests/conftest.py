"""
TierStream Test Configuration

Shared fixtures and configuration for all tests.
"""

import logging
import os
import stat
import sys
import textwrap
from pathlib import Path
from typing import Callable, Generator
from unittest.mock import patch

import pytest

import tierstream.config as config_module
from tierstream.media.transcoder import Transcoder


# ============ Temporary File Fixtures ============


@pytest.fixture
def media_dir(tmp_path: Path) -> Path:
    """Empty media directory."""
    directory = tmp_path / "videos"
    directory.mkdir()
    return directory


@pytest.fixture
def make_video(media_dir: Path) -> Callable[[str], Path]:
    """Create a (non-decodable) media file in the media directory."""

    def _make(filename: str, content: bytes = b"\x00" * 1024) -> Path:
        path = media_dir / filename
        path.write_bytes(content)
        return path

    return _make


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """Create a temporary config file."""
    config_file = tmp_path / "config.yaml"
    config_content = """
server:
  host: "127.0.0.1"
  port: 9888
  stream_start_delay: 0.5

catalog:
  media_dir: "media"

playback:
  grace_delay: 1.0

logging:
  level: "DEBUG"
"""
    config_file.write_text(config_content)
    return config_file


# ============ External Tool Fixtures ============


@pytest.fixture
def fake_tool(tmp_path: Path) -> Callable[[str, str], str]:
    """
    Write an executable Python script that stands in for ffmpeg/ffplay.

    The script body runs with ``sys.argv`` set to the arguments the
    component under test passes to the tool.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _make(name: str, body: str) -> str:
        script = bin_dir / name
        script.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(script)

    return _make


@pytest.fixture
def encoding_ffmpeg(fake_tool) -> str:
    """Fake ffmpeg that writes its last argument as the encoded output."""
    return fake_tool(
        "ffmpeg",
        """
        import sys
        print("frame=   25 fps= 25 q=28.0 size=     256kB time=00:00:01.00", flush=True)
        with open(sys.argv[-1], "wb") as f:
            f.write(b"encoded " + " ".join(sys.argv[1:]).encode())
        """,
    )


@pytest.fixture
def failing_ffmpeg(fake_tool) -> str:
    """Fake ffmpeg that leaves a partial file and exits with an error."""
    return fake_tool(
        "ffmpeg",
        """
        import sys
        with open(sys.argv[-1], "wb") as f:
            f.write(b"partial")
        print("Error while opening encoder", flush=True)
        sys.exit(1)
        """,
    )


@pytest.fixture
def streaming_ffmpeg(fake_tool) -> str:
    """Fake producer that reports progress and keeps running until stopped."""
    return fake_tool(
        "ffmpeg",
        """
        import time
        print("Output #0, mpegts, to 'udp://localhost:9999':", flush=True)
        print("frame=   30 fps= 30 q=20.0 size=     512kB time=00:00:01.00 bitrate=1000.0kbits/s", flush=True)
        time.sleep(60)
        """,
    )


@pytest.fixture
def placeholder_transcoder() -> Transcoder:
    """Transcoder with no encoder: every generated variant is a placeholder."""
    return Transcoder(encoder_available=False)


# ============ Environment Fixtures ============


@pytest.fixture
def restore_root_logger():
    """Put the root logger back the way pytest configured it."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture(autouse=True)
def clean_environment():
    """Clean environment variables and the cached config for each test."""
    original_env = os.environ.copy()

    for key in list(os.environ.keys()):
        if key.startswith("TIERSTREAM_"):
            del os.environ[key]
    config_module._config = None

    yield

    config_module._config = None
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Set up mock environment variables."""
    env_vars = {
        "TIERSTREAM_PORT": "9000",
        "TIERSTREAM_MEDIA_DIR": "/srv/media",
        "TIERSTREAM_SPEED_BACKEND": "none",
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
    config.addinivalue_line("markers", "ffmpeg: FFmpeg required")
    config.addinivalue_line("markers", "network: Network access required")
