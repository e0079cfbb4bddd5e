"""
TierStream Media Module

Resolution tiers, the media catalog and variant generation.
"""

from tierstream.media.catalog import CatalogManager, RefreshStats, VideoFile, parse_video_filename
from tierstream.media.tiers import ContainerFormat, ResolutionTier, TransportProtocol
from tierstream.media.transcoder import GenerationMethod, GenerationResult, Transcoder, detect_encoder

__all__ = [
    "CatalogManager",
    "ContainerFormat",
    "GenerationMethod",
    "GenerationResult",
    "RefreshStats",
    "ResolutionTier",
    "Transcoder",
    "TransportProtocol",
    "VideoFile",
    "detect_encoder",
    "parse_video_filename",
]
