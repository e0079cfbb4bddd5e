"""
State-change notifications for presentation layers.

The core publishes connection, catalog, stream and speed events on an
EventBus; a UI (or the CLI) subscribes. Nothing in the core depends on
who is listening.

Usage:
    bus = EventBus()
    bus.subscribe(lambda event: print(event))
    bus.publish(ConnectionStateChanged(ConnectionState.CONNECTED, "127.0.0.1"))
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Control channel states."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class StreamStatus(str, Enum):
    """Lifecycle of a producer or consumer process."""

    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class Event:
    """Base event."""

    timestamp: datetime = field(default_factory=datetime.now, init=False)


@dataclass
class ConnectionStateChanged(Event):
    state: ConnectionState
    peer: Optional[str] = None


@dataclass
class CatalogUpdated(Event):
    titles: int
    total_files: int


@dataclass
class StreamStatusChanged(Event):
    filename: str
    protocol: str
    status: StreamStatus
    detail: str = ""


@dataclass
class SpeedMeasured(Event):
    mbps: float
    method: str


class EventBus:
    """Fan-out of events to subscribed callbacks."""

    def __init__(self):
        self._subscribers: list[Callable[[Event], Any]] = []

    def subscribe(self, callback: Callable[[Event], Any]) -> None:
        """Add a callback. Coroutine functions are scheduled on the running loop."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Event], Any]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event: Event) -> None:
        """Deliver an event to every subscriber."""
        logger.debug(f"Publishing {type(event).__name__}: {event}")
        for callback in list(self._subscribers):
            try:
                if inspect.iscoroutinefunction(callback):
                    asyncio.get_running_loop().create_task(callback(event))
                else:
                    callback(event)
            except Exception as e:
                logger.warning(f"Event callback error: {e}")
