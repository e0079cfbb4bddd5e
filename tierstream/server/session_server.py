"""
Delivery-side control server.

Accepts playback endpoints on the control port and answers one reply line
per command line. Exactly one session is active at a time: a new connection
closes the previous one (and cancels its handler) before it is served.

A START_STREAM launches a StreamSession in the background and waits only a
short fixed delay before acknowledging. Producers outlive the control
connection that started them unless ``stop_producer_on_disconnect`` is set;
a new START_STREAM stops the running producer first since every producer
binds the same transport endpoint.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from tierstream.config import StreamingConfig
from tierstream.errors import ControlConnectionError, ProtocolError, StreamLaunchError
from tierstream.events import ConnectionState, ConnectionStateChanged, EventBus
from tierstream.media.catalog import CatalogManager, RefreshStats
from tierstream.media.tiers import TransportProtocol
from tierstream.server.protocol import (
    Command,
    Request,
    decode_line,
    encode_line,
    format_error,
    format_stream_started,
    format_video_list,
    parse_request,
    parse_speed,
)
from tierstream.streaming.stream_session import StreamSession

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """The single active control connection."""

    peer: str
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    session_id: str = field(default_factory=lambda: str(uuid4()))
    connected_at: datetime = field(default_factory=datetime.now)

    # Set by GET_VIDEOS
    speed_mbps: Optional[float] = None
    catalog_snapshot: list[str] = field(default_factory=list)

    commands_handled: int = 0
    task: Optional[asyncio.Task] = None

    async def send(self, message: str) -> None:
        self.writer.write(encode_line(message))
        await self.writer.drain()

    def close(self) -> None:
        if not self.writer.is_closing():
            self.writer.close()

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "peer": self.peer,
            "connected_at": self.connected_at.isoformat(),
            "speed_mbps": self.speed_mbps,
            "catalog_entries": len(self.catalog_snapshot),
            "commands_handled": self.commands_handled,
        }


class SessionServer:
    """
    Control-port server for the delivery endpoint.

    Usage:
        server = SessionServer(catalog, port=8888)
        await server.start()
        await server.serve_forever()
    """

    def __init__(
        self,
        catalog: CatalogManager,
        host: str = "0.0.0.0",
        port: int = 8888,
        streaming: Optional[StreamingConfig] = None,
        ffmpeg_path: str = "ffmpeg",
        stream_start_delay: float = 2.0,
        refresh_on_startup: bool = True,
        stop_timeout: float = 5.0,
        events: Optional[EventBus] = None,
    ):
        self.catalog = catalog
        self.host = host
        self.port = port
        self.streaming = streaming or StreamingConfig()
        self.ffmpeg_path = ffmpeg_path
        self.stream_start_delay = stream_start_delay
        self.refresh_on_startup = refresh_on_startup
        self.stop_timeout = stop_timeout
        self.events = events

        self._server: Optional[asyncio.AbstractServer] = None
        self._session: Optional[Session] = None
        self._producer: Optional[StreamSession] = None
        self._refresh_task: Optional[asyncio.Task] = None

        # Metrics
        self.connections_accepted = 0
        self.sessions_preempted = 0
        self.streams_started = 0

    @property
    def is_running(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def active_session(self) -> Optional[Session]:
        return self._session

    @property
    def producer(self) -> Optional[StreamSession]:
        return self._producer

    @property
    def address(self) -> Optional[tuple[str, int]]:
        """Bound (host, port); useful when listening on port 0."""
        if self._server is None or not self._server.sockets:
            return None
        host, port = self._server.sockets[0].getsockname()[:2]
        return host, port

    async def start(self) -> None:
        """Bind the control port and kick off the startup catalog refresh."""
        if self._server is not None:
            return

        self._server = await asyncio.start_server(
            self._handle_connection, self.host, self.port
        )
        host, port = self.address or (self.host, self.port)
        logger.info(f"Server started on {host}:{port}")

        if self.refresh_on_startup:
            self._refresh_task = asyncio.create_task(self._refresh_in_background())

    async def serve_forever(self) -> None:
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        except asyncio.CancelledError:
            logger.info("Server loop cancelled")
            raise

    async def stop(self) -> None:
        """Close the listener, the active session and any running producer."""
        if self._server is not None:
            self._server.close()

        if self._refresh_task and not self._refresh_task.done():
            self._refresh_task.cancel()
            await asyncio.gather(self._refresh_task, return_exceptions=True)

        session = self._session
        if session is not None:
            await self._close_session(session)

        await self._stop_producer()

        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

        logger.info("Server stopped")

    async def refresh_catalog(self) -> RefreshStats:
        """On-demand catalog refresh; queries keep running against the old catalog."""
        return await self.catalog.refresh()

    async def _refresh_in_background(self) -> None:
        try:
            await self.catalog.refresh()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Startup catalog refresh failed: {e}", exc_info=True)

    # Connection handling

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        peername = writer.get_extra_info("peername")
        peer = f"{peername[0]}:{peername[1]}" if peername else "unknown"

        session = Session(peer=peer, reader=reader, writer=writer)
        session.task = asyncio.current_task()
        self.connections_accepted += 1

        previous = self._session
        self._session = session
        if previous is not None:
            logger.info(f"New connection from {peer}, closing previous session {previous.peer}")
            self.sessions_preempted += 1
            await self._close_session(previous)

        logger.info(f"Client connected: {peer}")
        self._publish(ConnectionState.CONNECTED, peer)

        try:
            await self._serve_session(session)
        except ControlConnectionError as e:
            logger.warning(f"Connection error with {peer}: {e.message}")
        finally:
            await self._teardown(session)

    async def _serve_session(self, session: Session) -> None:
        while True:
            try:
                raw = await session.reader.readline()
            except (ConnectionError, OSError, ValueError) as e:
                raise ControlConnectionError(f"Read failed: {e}", e)

            if not raw:
                logger.info(f"Client {session.peer} closed the connection")
                return

            line = decode_line(raw)
            if not line:
                continue

            reply = await self.handle_command(session, line)
            try:
                await session.send(reply)
            except (ConnectionError, OSError) as e:
                raise ControlConnectionError(f"Write failed: {e}", e)

    async def _close_session(self, session: Session) -> None:
        """Close a session's connection and wait for its handler to finish."""
        session.close()
        task = session.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.wait({task}, timeout=self.stop_timeout)

    async def _teardown(self, session: Session) -> None:
        if self._session is session:
            self._session = None

        session.close()
        try:
            await session.writer.wait_closed()
        except (ConnectionError, OSError):
            pass

        logger.info(
            f"Session {session.peer} ended after {session.commands_handled} commands"
        )
        self._publish(ConnectionState.DISCONNECTED, session.peer)

        if self.streaming.stop_producer_on_disconnect:
            await self._stop_producer()

    # Command dispatch

    async def handle_command(self, session: Session, line: str) -> str:
        """
        Handle one command line and return the reply line.

        Never raises for a bad request: every failure becomes an ERROR reply
        and the connection stays usable.
        """
        logger.info(f"Received from {session.peer}: {line}")
        session.commands_handled += 1

        try:
            request = parse_request(line)
            if request.command == Command.GET_VIDEOS.value:
                reply = await self._handle_get_videos(session, request)
            elif request.command == Command.START_STREAM.value:
                reply = await self._handle_start_stream(session, request)
            else:
                raise ProtocolError(f"Unknown command: {request.command}")
        except (ProtocolError, StreamLaunchError) as e:
            logger.warning(f"Rejected request from {session.peer}: {e.message}")
            reply = format_error(e.message)
        except Exception as e:
            logger.error(f"Error handling '{line}' from {session.peer}: {e}", exc_info=True)
            reply = format_error(f"Internal error: {e}")

        logger.info(f"Sent to {session.peer}: {reply}")
        return reply

    async def _handle_get_videos(self, session: Session, request: Request) -> str:
        speed_token, fmt = request.require_args(2)
        speed = parse_speed(speed_token)

        videos = await self.catalog.suitable_videos(speed, fmt)
        entries = [str(video) for video in videos]

        session.speed_mbps = speed
        session.catalog_snapshot = entries
        return format_video_list(entries)

    async def _handle_start_stream(self, session: Session, request: Request) -> str:
        filename, protocol_token = request.require_args(2)

        protocol = TransportProtocol.parse(protocol_token)
        if protocol is None:
            raise StreamLaunchError(f"Unsupported protocol: {protocol_token}")

        path = self._resolve_media_file(filename)

        await self._stop_producer()
        producer = StreamSession(
            path,
            protocol,
            settings=self.streaming,
            ffmpeg_path=self.ffmpeg_path,
            events=self.events,
            stop_timeout=self.stop_timeout,
        )
        await producer.start()
        self._producer = producer
        self.streams_started += 1
        logger.info(f"Streaming {filename} over {protocol.value} for {session.peer}")

        # Give the producer time to bind before the client connects
        await asyncio.sleep(self.stream_start_delay)
        return format_stream_started(filename, protocol.value)

    def _resolve_media_file(self, filename: str) -> Path:
        if not filename or filename in (".", "..") or "/" in filename or "\\" in filename:
            raise StreamLaunchError(f"Invalid filename: {filename}")

        path = self.catalog.path_for(filename)
        if not path.is_file():
            raise StreamLaunchError(f"File does not exist: {filename}")
        return path

    async def _stop_producer(self) -> None:
        producer, self._producer = self._producer, None
        if producer is not None and producer.is_running:
            logger.info(f"Stopping producer for {producer.filename}")
            await producer.stop()

    def _publish(self, state: ConnectionState, peer: str) -> None:
        if self.events:
            self.events.publish(ConnectionStateChanged(state, peer))

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "address": self.address,
            "connections_accepted": self.connections_accepted,
            "sessions_preempted": self.sessions_preempted,
            "streams_started": self.streams_started,
            "active_session": self._session.to_dict() if self._session else None,
            "producer": self._producer.get_stats() if self._producer else None,
        }
