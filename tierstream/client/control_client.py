"""
Playback-side control channel client.

One request line, one reply line. Calls are serialized so replies always
pair with the request that caused them.
"""

import asyncio
import logging
from typing import Optional

from tierstream.errors import ControlConnectionError, ProtocolError
from tierstream.events import ConnectionState, ConnectionStateChanged, EventBus
from tierstream.media.tiers import ContainerFormat, TransportProtocol
from tierstream.server.protocol import (
    Reply,
    Response,
    decode_line,
    encode_line,
    format_get_videos,
    format_start_stream,
    parse_response,
    parse_video_list,
)
from tierstream.streaming.protocol_selector import auto_select

logger = logging.getLogger(__name__)


class ControlClient:
    """
    Async client for the delivery endpoint's control port.

    Usage:
        client = ControlClient("localhost", 8888)
        await client.connect()
        videos = await client.get_videos(2.5, ContainerFormat.MKV)
        filename, protocol = await client.start_stream(videos[0])
        await client.disconnect()
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 8888,
        timeout: float = 10.0,
        events: Optional[EventBus] = None,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.events = events

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    @property
    def peer(self) -> str:
        return f"{self.host}:{self.port}"

    async def connect(self) -> None:
        """
        Open the control connection.

        Raises:
            ControlConnectionError: the server is unreachable
        """
        if self.is_connected:
            return

        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise ControlConnectionError(f"Could not connect to {self.peer}: {e}", e)

        logger.info(f"Connected to server {self.peer}")
        self._publish(ConnectionState.CONNECTED)

    async def disconnect(self) -> None:
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return

        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error closing control connection: {e}")

        logger.info(f"Disconnected from server {self.peer}")
        self._publish(ConnectionState.DISCONNECTED)

    async def __aenter__(self) -> "ControlClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    async def get_videos(
        self,
        speed_mbps: float,
        fmt: ContainerFormat | str,
    ) -> list[str]:
        """
        Ask for the variants playable at ``speed_mbps`` in ``fmt``.

        Raises:
            ValueError: speed not measured (zero or negative)
            ProtocolError: the server replied with ERROR or garbage
            ControlConnectionError: the connection failed
        """
        if speed_mbps <= 0:
            raise ValueError("Measure the connection speed before requesting videos")

        fmt_value = fmt.value if isinstance(fmt, ContainerFormat) else fmt
        response = await self._request(format_get_videos(speed_mbps, fmt_value))
        self._expect(response, Reply.VIDEO_LIST)

        videos = parse_video_list(response.payload)
        logger.info(f"Received {len(videos)} videos for {speed_mbps} Mbps {fmt_value}")
        return videos

    async def start_stream(
        self,
        filename: str,
        protocol: TransportProtocol | str | None = None,
    ) -> tuple[str, TransportProtocol]:
        """
        Request a stream of ``filename``; the protocol is auto-selected when omitted.

        Returns:
            (filename, protocol) as acknowledged by the server
        """
        if protocol is None:
            selected = auto_select(filename)
            logger.info(f"Auto-selected protocol {selected.value} for {filename}")
        elif isinstance(protocol, TransportProtocol):
            selected = protocol
        else:
            parsed = TransportProtocol.parse(protocol)
            if parsed is None:
                raise ValueError(f"Unsupported protocol: {protocol}")
            selected = parsed

        response = await self._request(format_start_stream(filename, selected.value))
        self._expect(response, Reply.STREAM_STARTED)

        started_file, _, protocol_token = response.payload.rpartition(":")
        started_protocol = TransportProtocol.parse(protocol_token)
        if not started_file or started_protocol is None:
            raise ProtocolError(f"Malformed reply: {response.kind}:{response.payload}")

        logger.info(f"Stream started: {started_file} over {started_protocol.value}")
        return started_file, started_protocol

    async def _request(self, line: str) -> Response:
        async with self._lock:
            if not self.is_connected:
                raise ControlConnectionError(f"Not connected to {self.peer}")
            assert self._reader is not None and self._writer is not None

            logger.debug(f"Sending: {line}")
            try:
                self._writer.write(encode_line(line))
                await self._writer.drain()
                raw = await asyncio.wait_for(self._reader.readline(), timeout=self.timeout)
            except (ConnectionError, OSError, asyncio.TimeoutError, ValueError) as e:
                await self._drop_connection()
                raise ControlConnectionError(f"Request '{line}' failed: {e}", e)

            if not raw:
                await self._drop_connection()
                raise ControlConnectionError(f"Server {self.peer} closed the connection")

            reply = decode_line(raw)
            logger.debug(f"Received: {reply}")
            return parse_response(reply)

    async def _drop_connection(self) -> None:
        writer, self._writer, self._reader = self._writer, None, None
        if writer is not None:
            writer.close()
        self._publish(ConnectionState.DISCONNECTED)

    @staticmethod
    def _expect(response: Response, kind: Reply) -> None:
        if response.is_error:
            raise ProtocolError(response.payload or "Unknown server error")
        if response.kind != kind.value:
            raise ProtocolError(f"Unexpected reply: {response.kind}:{response.payload}")

    def _publish(self, state: ConnectionState) -> None:
        if self.events:
            self.events.publish(ConnectionStateChanged(state, self.peer))
