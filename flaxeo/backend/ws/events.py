"""Event definitions and the broadcaster that forwards supervisor activity."""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from flaxeo.backend.services.process_supervisor import ProcessListener, ProcessState

from .connection_manager import ConnectionManager

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """WebSocket event types."""

    LOG = "log"
    PROCESS_STATE = "process_state"


@dataclass
class LogEvent:
    """A chunk of engine output."""

    slot: str
    text: str
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = EventType.LOG.value
        if self.timestamp is None:
            data["timestamp"] = datetime.now().isoformat()
        return data


@dataclass
class ProcessStateEvent:
    """A slot changed lifecycle state."""

    slot: str
    state: ProcessState
    return_code: Optional[int] = None
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = EventType.PROCESS_STATE.value
        data["state"] = self.state.value
        if self.timestamp is None:
            data["timestamp"] = datetime.now().isoformat()
        return data


class EventBroadcaster(ProcessListener):
    """
    Process listener that pushes supervisor output and state changes to
    WebSocket clients.
    """

    def __init__(self, connection_manager: ConnectionManager):
        self.connection_manager = connection_manager

    async def on_process_output(self, slot: str, text: str) -> None:
        await self.broadcast_log(slot, text)

    async def on_process_state(self, slot: str, state: ProcessState, return_code: Optional[int] = None) -> None:
        event = ProcessStateEvent(slot=slot, state=state, return_code=return_code)
        await self.connection_manager.broadcast(event.to_dict(), EventType.PROCESS_STATE.value)

    async def broadcast_log(self, slot: str, text: str) -> None:
        event = LogEvent(slot=slot, text=text)
        await self.connection_manager.broadcast(event.to_dict(), EventType.LOG.value)
