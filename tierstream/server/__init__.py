"""Delivery-side control server and wire codec"""

from tierstream.server.session_server import Session, SessionServer

__all__ = ["Session", "SessionServer"]
