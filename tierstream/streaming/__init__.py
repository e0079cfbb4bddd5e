"""
TierStream Streaming Module

Producer and consumer processes for a streaming session.

Components:
- ProcessSupervisor: spawn, read status lines, terminate
- StreamSession: FFmpeg producer per START_STREAM
- PlaybackSupervisor: FFplay consumer with liveness heuristic
- auto_select: resolution tier to transport mapping
"""

from tierstream.streaming.playback import (
    HealthVerdict,
    PlaybackResult,
    PlaybackSupervisor,
    StreamHealthMonitor,
)
from tierstream.streaming.process_supervisor import ProcessSupervisor
from tierstream.streaming.protocol_selector import AUTO_PROTOCOL_SELECTION, auto_select, extract_tier
from tierstream.streaming.stream_session import StreamSession, build_sdp

__all__ = [
    "AUTO_PROTOCOL_SELECTION",
    "HealthVerdict",
    "PlaybackResult",
    "PlaybackSupervisor",
    "ProcessSupervisor",
    "StreamHealthMonitor",
    "StreamSession",
    "auto_select",
    "build_sdp",
    "extract_tier",
]
