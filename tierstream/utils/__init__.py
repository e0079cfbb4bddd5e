"""Utility modules for TierStream"""

from .locks import ReadWriteLock
from .logging_setup import parse_size, setup_logging

__all__ = [
    "ReadWriteLock",
    "parse_size",
    "setup_logging",
]
