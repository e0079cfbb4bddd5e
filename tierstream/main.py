"""
TierStream command line.

Entry point for both endpoints:

    tierstream serve                       # delivery endpoint on the control port
    tierstream play Movie-720p.mkv         # probe speed, request and watch a stream
    tierstream list --format .mp4          # list what the server offers
    tierstream probe-speed
    tierstream refresh                     # one catalog refresh, then exit

This is the composition root: the global configuration is read here and
passed into the components as constructor arguments.
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from tierstream import __version__
from tierstream.client.control_client import ControlClient
from tierstream.client.speed_probe import SpeedProbe
from tierstream.config import TierStreamConfig, load_config
from tierstream.errors import PlaybackHealthTimeout, TierStreamError
from tierstream.events import Event, EventBus
from tierstream.media.catalog import CatalogManager
from tierstream.media.tiers import ContainerFormat, TransportProtocol
from tierstream.media.transcoder import Transcoder, detect_encoder
from tierstream.server.session_server import SessionServer
from tierstream.streaming.playback import PlaybackSupervisor
from tierstream.utils.logging_setup import parse_size, setup_logging

logger = logging.getLogger(__name__)


def build_catalog(config: TierStreamConfig, events: Optional[EventBus] = None) -> CatalogManager:
    """Probe the encoder once and wire the catalog to a Transcoder."""
    ffmpeg = config.ffmpeg
    transcoder = Transcoder(
        encoder_available=detect_encoder(ffmpeg.ffmpeg_path, ffmpeg.probe_timeout),
        ffmpeg_path=ffmpeg.ffmpeg_path,
        video_codec=ffmpeg.video_codec,
        audio_codec=ffmpeg.audio_codec,
        preset=ffmpeg.preset,
        crf=ffmpeg.crf,
    )
    return CatalogManager(config.catalog.media_dir, transcoder, events=events)


def build_server(config: TierStreamConfig, events: Optional[EventBus] = None) -> SessionServer:
    return SessionServer(
        build_catalog(config, events),
        host=config.server.host,
        port=config.server.port,
        streaming=config.streaming,
        ffmpeg_path=config.ffmpeg.ffmpeg_path,
        stream_start_delay=config.server.stream_start_delay,
        refresh_on_startup=config.catalog.refresh_on_startup,
        stop_timeout=config.playback.stop_timeout,
        events=events,
    )


def _log_event(event: Event) -> None:
    logger.debug(f"Event: {event}")


async def run_server(config: TierStreamConfig) -> int:
    events = EventBus()
    events.subscribe(_log_event)
    server = build_server(config, events)

    await server.start()
    try:
        await server.serve_forever()
    except asyncio.CancelledError:
        pass
    finally:
        await server.stop()
    return 0


async def run_refresh(config: TierStreamConfig) -> int:
    catalog = build_catalog(config)
    stats = await catalog.refresh()
    print(f"{stats.titles} titles, {stats.files} files "
          f"({stats.generated} generated, {stats.placeholders} placeholders)")
    for error in stats.errors:
        print(f"  error: {error}")
    return 1 if stats.errors else 0


async def run_probe(config: TierStreamConfig) -> int:
    measurement = await SpeedProbe.from_config(config.speed_probe).measure()
    print(measurement)
    return 0


async def run_list(config: TierStreamConfig, fmt: str, speed: Optional[float]) -> int:
    if speed is None:
        speed = (await SpeedProbe.from_config(config.speed_probe).measure()).mbps

    async with ControlClient(config.playback.server_host, config.playback.server_port) as client:
        videos = await client.get_videos(speed, fmt)

    print(f"Videos for {speed:.2f} Mbps ({fmt}):")
    for video in videos:
        print(f"  {video}")
    return 0


async def run_play(
    config: TierStreamConfig,
    filename: str,
    protocol: Optional[str],
    fmt: str,
) -> int:
    events = EventBus()
    events.subscribe(_log_event)

    measurement = await SpeedProbe.from_config(config.speed_probe, events=events).measure()
    print(f"Connection speed: {measurement}")

    async with ControlClient(
        config.playback.server_host, config.playback.server_port, events=events
    ) as client:
        available = await client.get_videos(measurement.mbps, fmt)
        if filename not in available:
            logger.warning(f"{filename} is not offered at {measurement.mbps:.2f} Mbps in {fmt}")
        started_file, started_protocol = await client.start_stream(filename, protocol)

    print(f"Stream started: {started_file} over {started_protocol.value}")

    supervisor = PlaybackSupervisor(
        started_protocol,
        settings=config.playback,
        streaming=config.streaming,
        ffplay_path=config.ffmpeg.ffplay_path,
        filename=started_file,
        events=events,
    )
    try:
        result = await supervisor.run()
    except PlaybackHealthTimeout as e:
        print(f"Playback failed: {e}")
        return 1

    print(f"Playback finished with code {result.returncode}")
    return 0 if not result.aborted else 1


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tierstream",
        description="Adaptive-resolution video delivery and playback",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--log-level", help="Override logging.level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run the delivery endpoint")

    play = subparsers.add_parser("play", help="Request and play a stream")
    play.add_argument("filename", help="Catalog entry, e.g. Movie-720p.mkv")
    play.add_argument(
        "--protocol",
        choices=[p.value for p in TransportProtocol],
        type=lambda value: value.upper(),
        help="Transport (auto-selected from the resolution when omitted)",
    )
    play.add_argument("--format", default=None, help="Container format (default: from filename)")

    listing = subparsers.add_parser("list", help="List videos available at a speed")
    listing.add_argument("--format", default=ContainerFormat.MP4.value)
    listing.add_argument("--speed", type=float, help="Speed in Mbps (measured when omitted)")

    subparsers.add_parser("probe-speed", help="Measure the connection speed")
    subparsers.add_parser("refresh", help="Refresh the catalog once and exit")

    return parser.parse_args(argv)


def _format_for(filename: str, fmt: Optional[str]) -> str:
    if fmt:
        return fmt
    for candidate in ContainerFormat:
        if filename.lower().endswith(candidate.value):
            return candidate.value
    return ContainerFormat.MP4.value


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point.

    Called via the ``tierstream`` console script or ``python -m tierstream.main``.
    """
    args = parse_args(argv)
    config = load_config(args.config)
    if args.log_level:
        config.logging.level = args.log_level

    setup_logging(
        log_level=config.logging.level,
        log_file_name=config.logging.file,
        log_to_console=True,
        log_to_file=True,
        max_bytes=parse_size(config.logging.max_size),
        backup_count=config.logging.backup_count,
        log_format=config.logging.format,
    )
    logger.info(f"Starting TierStream v{__version__} ({args.command})")

    if args.command == "serve":
        coro = run_server(config)
    elif args.command == "play":
        coro = run_play(config, args.filename, args.protocol, _format_for(args.filename, args.format))
    elif args.command == "list":
        coro = run_list(config, args.format, args.speed)
    elif args.command == "probe-speed":
        coro = run_probe(config)
    else:
        coro = run_refresh(config)

    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    except (TierStreamError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
