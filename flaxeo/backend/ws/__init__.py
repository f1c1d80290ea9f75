"""WebSocket push of engine output and process state."""

from .connection_manager import ConnectionManager
from .events import EventBroadcaster, EventType, LogEvent, ProcessStateEvent
from .handlers import WebSocketHandler

__all__ = [
    "ConnectionManager",
    "EventBroadcaster",
    "EventType",
    "LogEvent",
    "ProcessStateEvent",
    "WebSocketHandler",
]
