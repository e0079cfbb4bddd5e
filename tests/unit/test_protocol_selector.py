"""
Unit tests for automatic transport selection.
"""

import pytest

from tierstream.media.tiers import ResolutionTier, TransportProtocol
from tierstream.streaming.protocol_selector import auto_select, extract_tier


@pytest.mark.unit
class TestAutoSelect:
    """Tests for auto_select."""

    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("Movie-240p.mkv", TransportProtocol.TCP),
            ("Movie-360p.mp4", TransportProtocol.UDP),
            ("Movie-480p.avi", TransportProtocol.UDP),
            ("Movie-720p.mkv", TransportProtocol.RTP_UDP),
            ("Movie-1080p.mp4", TransportProtocol.RTP_UDP),
        ],
    )
    def test_tier_table(self, filename, expected):
        """Each tier maps to its fixed transport."""
        assert auto_select(filename) is expected

    def test_untagged_defaults_to_udp(self):
        """No tier token means UDP."""
        assert auto_select("Movie.mkv") is TransportProtocol.UDP
        assert auto_select("") is TransportProtocol.UDP

    def test_unknown_tier_defaults_to_udp(self):
        """A tier outside the table means UDP."""
        assert auto_select("Movie-144p.mkv") is TransportProtocol.UDP

    def test_deterministic(self):
        """Same input, same answer."""
        assert {auto_select("Movie-720p.mkv") for _ in range(20)} == {TransportProtocol.RTP_UDP}


@pytest.mark.unit
class TestExtractTier:
    """Tests for extract_tier."""

    def test_title_with_dashes(self):
        """Dashes in the title do not confuse the tier token."""
        assert extract_tier("My-Home-Movie-360p.mp4") is ResolutionTier.P360

    def test_last_token_wins(self):
        """A tier-like token inside the title is ignored in favor of the suffix."""
        assert extract_tier("Remaster-1080p-240p.mkv") is ResolutionTier.P240

    def test_no_extension(self):
        """The token may end the name."""
        assert extract_tier("Movie-720p") is ResolutionTier.P720

    def test_not_a_tier(self):
        """Digits without the tier suffix are not a tier."""
        assert extract_tier("Movie-2024.mkv") is None
