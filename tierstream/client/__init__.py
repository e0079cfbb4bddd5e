"""Playback-side control client and speed probe"""

from tierstream.client.control_client import ControlClient
from tierstream.client.speed_probe import SpeedMeasurement, SpeedProbe

__all__ = ["ControlClient", "SpeedMeasurement", "SpeedProbe"]
