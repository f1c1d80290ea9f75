"""WebSocket connection manager for the Flaxeo server."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks connected clients and what each of them listens to."""

    def __init__(self, default_events: Optional[Iterable[str]] = None):
        self._connections: Dict[str, WebSocket] = {}
        # client_id -> event types
        self._subscriptions: Dict[str, Set[str]] = {}
        self._default_events: Set[str] = set(default_events or ())
        self._lock = asyncio.Lock()
        self._connection_counter = 0

    async def connect(self, websocket: WebSocket) -> str:
        """
        Accept a new WebSocket connection.

        New clients start subscribed to the default events so a UI receives
        log lines without any handshake.

        Returns:
            str: Unique client ID for this connection
        """
        await websocket.accept()

        async with self._lock:
            self._connection_counter += 1
            client_id = f"client_{self._connection_counter}_{datetime.now().timestamp()}"
            self._connections[client_id] = websocket
            self._subscriptions[client_id] = set(self._default_events)
            logger.info(f"WebSocket client connected: {client_id} ({len(self._connections)} active)")

        await self._send_to_client(
            client_id,
            {
                "type": "connection_established",
                "client_id": client_id,
                "subscriptions": sorted(self._default_events),
                "timestamp": datetime.now().isoformat(),
            },
        )
        return client_id

    async def disconnect(self, client_id: str):
        async with self._lock:
            if self._connections.pop(client_id, None) is not None:
                logger.info(f"WebSocket client disconnected: {client_id}")
            self._subscriptions.pop(client_id, None)

    async def subscribe(self, client_id: str, event_types: List[str]):
        async with self._lock:
            self._subscriptions.setdefault(client_id, set()).update(event_types)
            logger.debug(f"Client {client_id} subscribed to: {event_types}")

    async def unsubscribe(self, client_id: str, event_types: List[str]):
        async with self._lock:
            if client_id in self._subscriptions:
                self._subscriptions[client_id].difference_update(event_types)
                logger.debug(f"Client {client_id} unsubscribed from: {event_types}")

    async def broadcast(self, message: Dict[str, Any], event_type: Optional[str] = None):
        """
        Send a message to every client, or only to those subscribed to event_type.

        Clients that fail to receive are dropped.
        """
        if not self._connections:
            return

        async with self._lock:
            targets = [
                (client_id, websocket)
                for client_id, websocket in self._connections.items()
                if event_type is None or event_type in self._subscriptions.get(client_id, set())
            ]

        disconnected = []
        for client_id, websocket in targets:
            try:
                await websocket.send_json(message)
            except WebSocketDisconnect:
                logger.warning(f"Client {client_id} disconnected during broadcast")
                disconnected.append(client_id)
            except Exception as e:
                logger.error(f"Error sending to client {client_id}: {e}")
                disconnected.append(client_id)

        for client_id in disconnected:
            await self.disconnect(client_id)

    async def send_to_client(self, client_id: str, message: Dict[str, Any]):
        await self._send_to_client(client_id, message)

    async def _send_to_client(self, client_id: str, message: Dict[str, Any]):
        websocket = self._connections.get(client_id)
        if not websocket:
            logger.warning(f"Client {client_id} not found")
            return

        try:
            await websocket.send_json(message)
        except WebSocketDisconnect:
            logger.warning(f"Client {client_id} disconnected during send")
            await self.disconnect(client_id)
        except Exception as e:
            logger.error(f"Error sending to client {client_id}: {e}")
            await self.disconnect(client_id)

    def get_connection_count(self) -> int:
        return len(self._connections)

    def get_client_subscriptions(self, client_id: str) -> Set[str]:
        return self._subscriptions.get(client_id, set()).copy()
