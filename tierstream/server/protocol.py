"""
Control protocol codec.

Line-delimited UTF-8 text, one ``COMMAND:arg:arg`` per line:

    GET_VIDEOS:<speed_mbps>:<format>     -> VIDEO_LIST:<entry>;<entry>...
    START_STREAM:<filename>:<protocol>   -> STREAM_STARTED:<filename>:<protocol>
    anything else                        -> ERROR:<message>

Fields are separated by ``:``; protocol tokens such as ``RTP/UDP`` never
contain one, and filenames that do cannot be catalog entries.
"""

import math
from dataclasses import dataclass, field
from enum import Enum

from tierstream.errors import ProtocolError

FIELD_SEPARATOR = ":"
ENTRY_SEPARATOR = ";"
ENCODING = "utf-8"

MALFORMED_REQUEST = "Malformed request"


class Command(str, Enum):
    """Client to server commands."""

    GET_VIDEOS = "GET_VIDEOS"
    START_STREAM = "START_STREAM"


class Reply(str, Enum):
    """Server to client replies."""

    VIDEO_LIST = "VIDEO_LIST"
    STREAM_STARTED = "STREAM_STARTED"
    ERROR = "ERROR"


@dataclass
class Request:
    command: str
    args: list[str] = field(default_factory=list)

    def require_args(self, count: int) -> list[str]:
        """First ``count`` arguments, or ProtocolError when there are fewer."""
        if len(self.args) < count:
            raise ProtocolError(MALFORMED_REQUEST)
        return self.args[:count]


@dataclass
class Response:
    kind: str
    payload: str = ""

    @property
    def is_error(self) -> bool:
        return self.kind == Reply.ERROR.value


def parse_request(line: str) -> Request:
    """Split a command line into its command word and arguments."""
    command, *args = line.strip().split(FIELD_SEPARATOR)
    return Request(command=command.strip().upper(), args=[a.strip() for a in args])


def parse_speed(token: str) -> float:
    """Parse a ``speedMbps`` argument; it must be a finite, non-negative number."""
    try:
        speed = float(token)
    except ValueError:
        raise ProtocolError(f"Invalid speed: {token}")
    if math.isnan(speed) or math.isinf(speed) or speed < 0:
        raise ProtocolError(f"Invalid speed: {token}")
    return speed


def format_get_videos(speed_mbps: float, fmt: str) -> str:
    return f"{Command.GET_VIDEOS.value}:{speed_mbps}:{fmt}"


def format_start_stream(filename: str, protocol: str) -> str:
    return f"{Command.START_STREAM.value}:{filename}:{protocol}"


def format_video_list(entries: list[str]) -> str:
    return f"{Reply.VIDEO_LIST.value}:{ENTRY_SEPARATOR.join(entries)}"


def format_stream_started(filename: str, protocol: str) -> str:
    return f"{Reply.STREAM_STARTED.value}:{filename}:{protocol}"


def format_error(message: str) -> str:
    # Keep the reply on one line
    return f"{Reply.ERROR.value}:{' '.join(message.splitlines())}"


def parse_response(line: str) -> Response:
    """Split a reply line into its kind and the rest of the line."""
    kind, _, payload = line.strip().partition(FIELD_SEPARATOR)
    return Response(kind=kind, payload=payload)


def parse_video_list(payload: str) -> list[str]:
    """Entries of a VIDEO_LIST payload; trailing separators and blanks are dropped."""
    return [entry.strip() for entry in payload.split(ENTRY_SEPARATOR) if entry.strip()]


def encode_line(message: str) -> bytes:
    return (message + "\n").encode(ENCODING)


def decode_line(raw: bytes) -> str:
    return raw.decode(ENCODING, errors="replace").strip()
