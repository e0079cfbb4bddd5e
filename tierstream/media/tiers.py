"""
Resolution tiers, container formats and transport protocols.

Tiers are ordered by height; each carries the minimum connection speed
needed to stream it and the frame geometry used when transcoding to it.
"""

from enum import Enum
from typing import Optional


class ResolutionTier(str, Enum):
    """Named resolution class with fixed geometry and minimum bitrate."""

    P240 = "240p"
    P360 = "360p"
    P480 = "480p"
    P720 = "720p"
    P1080 = "1080p"

    @property
    def height(self) -> int:
        return int(self.value[:-1])

    @property
    def min_bitrate_kbps(self) -> int:
        return _MIN_BITRATES_KBPS[self]

    @property
    def geometry(self) -> tuple[int, int]:
        """(width, height) in pixels."""
        return _GEOMETRY[self]

    @property
    def scale(self) -> str:
        """FFmpeg scale filter argument, e.g. ``1280:720``."""
        width, height = self.geometry
        return f"{width}:{height}"

    def __lt__(self, other: "ResolutionTier") -> bool:
        if not isinstance(other, ResolutionTier):
            return NotImplemented
        return self.height < other.height

    def __le__(self, other: "ResolutionTier") -> bool:
        if not isinstance(other, ResolutionTier):
            return NotImplemented
        return self.height <= other.height

    def __gt__(self, other: "ResolutionTier") -> bool:
        if not isinstance(other, ResolutionTier):
            return NotImplemented
        return self.height > other.height

    def __ge__(self, other: "ResolutionTier") -> bool:
        if not isinstance(other, ResolutionTier):
            return NotImplemented
        return self.height >= other.height

    @classmethod
    def parse(cls, token: str) -> Optional["ResolutionTier"]:
        """Return the tier for a token like ``720p``, or None."""
        try:
            return cls(token.lower())
        except ValueError:
            return None

    @classmethod
    def up_to(cls, maximum: "ResolutionTier") -> list["ResolutionTier"]:
        """All tiers not above ``maximum``, lowest first."""
        return [tier for tier in cls if tier <= maximum]


_MIN_BITRATES_KBPS = {
    ResolutionTier.P240: 300,
    ResolutionTier.P360: 400,
    ResolutionTier.P480: 500,
    ResolutionTier.P720: 1500,
    ResolutionTier.P1080: 3000,
}

_GEOMETRY = {
    ResolutionTier.P240: (426, 240),
    ResolutionTier.P360: (640, 360),
    ResolutionTier.P480: (854, 480),
    ResolutionTier.P720: (1280, 720),
    ResolutionTier.P1080: (1920, 1080),
}


class ContainerFormat(str, Enum):
    """Supported container formats (with leading dot, as on the wire)."""

    AVI = ".avi"
    MP4 = ".mp4"
    MKV = ".mkv"

    @classmethod
    def parse(cls, token: str) -> Optional["ContainerFormat"]:
        """Accept ``.mkv``, ``mkv`` or ``MKV``."""
        value = token.strip().lower()
        if value and not value.startswith("."):
            value = "." + value
        try:
            return cls(value)
        except ValueError:
            return None


class TransportProtocol(str, Enum):
    """Transport strategies for a streaming session."""

    TCP = "TCP"
    UDP = "UDP"
    RTP_UDP = "RTP/UDP"

    @classmethod
    def parse(cls, token: str) -> Optional["TransportProtocol"]:
        """Case-insensitive lookup, None when unsupported."""
        try:
            return cls(token.strip().upper())
        except ValueError:
            return None
