"""
Configuration management for TierStream.

Handles loading, validation, and access to application configuration.
"""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

# Global configuration instance
_config: Optional["TierStreamConfig"] = None


class ServerConfig(BaseModel):
    """Delivery-side control server configuration."""
    host: str = "0.0.0.0"
    port: int = 8888
    stream_start_delay: float = 2.0  # Wait for the producer to bind before STREAM_STARTED


class CatalogConfig(BaseModel):
    """Media catalog configuration."""
    media_dir: str = "videos"
    refresh_on_startup: bool = True


class FFmpegConfig(BaseModel):
    """FFmpeg / FFplay configuration."""
    path: str = "ffmpeg"
    ffplay_path: str = "ffplay"
    preset: str = "fast"
    crf: int = 23
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    probe_timeout: float = 5.0

    @property
    def ffmpeg_path(self) -> str:
        """Alias for path."""
        return self.path


class StreamingConfig(BaseModel):
    """Producer transport configuration."""
    host: str = "localhost"
    port: int = 9999
    sdp_path: str = "stream.sdp"
    frame_rate: int = 30
    udp_bitrate: str = "1000k"
    udp_bufsize: str = "2000k"
    udp_packet_size: int = 1316
    udp_keyframe_interval: int = 15
    stop_producer_on_disconnect: bool = False


class PlaybackConfig(BaseModel):
    """
    Playback-side configuration.

    The health tunables are policy for a best-effort liveness detector,
    not correctness thresholds.
    """
    server_host: str = "localhost"
    server_port: int = 8888
    grace_delay: float = 4.0
    invalid_timing_threshold: int = 15
    startup_timeout: float = 20.0
    stop_timeout: float = 5.0


class SpeedProbeConfig(BaseModel):
    """Bandwidth measurement configuration."""
    backend: str = "sampled"  # sampled, none
    deadline: float = 5.0
    sample_urls: list[str] = Field(
        default_factory=lambda: ["http://ipv4.ikoula.testdebit.info/1M.iso"]
    )
    sample_count: int = 3
    ewma_alpha: float = 0.3
    fallback_url: str = "http://ipv4.download.thinkbroadband.com/1MB.zip"
    estimate_range: tuple[float, float] = (1.0, 10.0)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: str = "logs/tierstream.log"
    max_size: str = "10MB"
    backup_count: int = 5
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class TierStreamConfig(BaseModel):
    """Main TierStream configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    ffmpeg: FFmpegConfig = Field(default_factory=FFmpegConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    playback: PlaybackConfig = Field(default_factory=PlaybackConfig)
    speed_probe: SpeedProbeConfig = Field(default_factory=SpeedProbeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: Optional[str] = None) -> TierStreamConfig:
    """
    Load configuration from file.

    Args:
        config_path: Path to config file. Defaults to config.yaml in the
            working directory or the project root.

    Returns:
        Loaded and validated configuration.
    """
    global _config

    if config_path is None:
        possible_paths = [
            Path("config.yaml"),
            Path(__file__).parent.parent / "config.yaml",
        ]
        for path in possible_paths:
            if path.exists():
                config_path = str(path)
                break

    config_data: dict[str, Any] = {}

    if config_path and Path(config_path).exists():
        with open(config_path) as f:
            config_data = yaml.safe_load(f) or {}

    # Apply environment variable overrides
    env_overrides = _get_env_overrides()
    _deep_merge(config_data, env_overrides)

    _config = TierStreamConfig(**config_data)
    return _config


def get_config() -> TierStreamConfig:
    """
    Get the current configuration.

    Returns:
        Current configuration (loads default if not yet loaded).
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> TierStreamConfig:
    """Reload configuration from disk."""
    global _config
    _config = None
    return load_config()


def _get_env_overrides() -> dict[str, Any]:
    """Get configuration overrides from environment variables."""
    overrides: dict[str, Any] = {}

    env_map = {
        "TIERSTREAM_HOST": ("server", "host"),
        "TIERSTREAM_PORT": ("server", "port"),
        "TIERSTREAM_MEDIA_DIR": ("catalog", "media_dir"),
        "TIERSTREAM_FFMPEG_PATH": ("ffmpeg", "path"),
        "TIERSTREAM_FFPLAY_PATH": ("ffmpeg", "ffplay_path"),
        "TIERSTREAM_LOG_LEVEL": ("logging", "level"),
        "TIERSTREAM_SPEED_BACKEND": ("speed_probe", "backend"),
    }

    for env_var, path in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested(overrides, path, _parse_env_value(value))

    return overrides


def _parse_env_value(value: str) -> Any:
    """Parse environment variable value to appropriate type."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def _set_nested(d: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    """Set a nested dictionary value from a path tuple."""
    for key in path[:-1]:
        d = d.setdefault(key, {})
    d[path[-1]] = value


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    """Deep merge override into base dictionary."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


class _ConfigProxy:
    """
    Proxy object that provides lazy access to configuration.

    Allows modules to import `config` directly:
        from tierstream.config import config
        config.server.port
    """

    def __getattr__(self, name: str) -> Any:
        return getattr(get_config(), name)

    def __repr__(self) -> str:
        return f"<ConfigProxy for {get_config()}>"


config = _ConfigProxy()
