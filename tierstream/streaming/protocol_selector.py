"""
Automatic transport selection from a variant's resolution tier.

Low tiers go over plain TCP or UDP; HD tiers go over RTP so the player can
use the session description. Filenames without a recognizable tier fall
back to UDP.
"""

import re
from typing import Optional

from tierstream.media.tiers import ResolutionTier, TransportProtocol

AUTO_PROTOCOL_SELECTION: dict[ResolutionTier, TransportProtocol] = {
    ResolutionTier.P240: TransportProtocol.TCP,
    ResolutionTier.P360: TransportProtocol.UDP,
    ResolutionTier.P480: TransportProtocol.UDP,
    ResolutionTier.P720: TransportProtocol.RTP_UDP,
    ResolutionTier.P1080: TransportProtocol.RTP_UDP,
}

DEFAULT_PROTOCOL = TransportProtocol.UDP

_TIER_TOKEN = re.compile(r"-(\d+p)(?=\.|$)", re.IGNORECASE)


def extract_tier(filename: str) -> Optional[ResolutionTier]:
    """Find the ``-<tier>`` token in a filename, last occurrence wins."""
    for token in reversed(_TIER_TOKEN.findall(filename)):
        tier = ResolutionTier.parse(token)
        if tier is not None:
            return tier
    return None


def auto_select(filename: str) -> TransportProtocol:
    """Map the filename's tier to a transport; UDP when no tier is found."""
    tier = extract_tier(filename)
    if tier is None:
        return DEFAULT_PROTOCOL
    return AUTO_PROTOCOL_SELECTION.get(tier, DEFAULT_PROTOCOL)
