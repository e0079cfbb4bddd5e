"""
TierStream - adaptive-resolution video delivery and playback

Two endpoints sharing one package:
- Delivery: catalog of resolution/format variants, control server, FFmpeg producer
- Playback: speed probe, control client, supervised FFplay consumer
"""

__version__ = "1.0.0"
__license__ = "MIT"

from tierstream.config import get_config, load_config

__all__ = [
    "__version__",
    "get_config",
    "load_config",
]
