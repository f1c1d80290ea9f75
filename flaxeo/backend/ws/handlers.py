"""WebSocket message handlers for the Flaxeo server."""

import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

from .connection_manager import ConnectionManager

logger = logging.getLogger(__name__)

Command = Callable[[], Awaitable[Dict[str, Any]]]


class WebSocketHandler:
    """Routes incoming client messages: subscribe, unsubscribe, command, ping."""

    def __init__(self, connection_manager: ConnectionManager, commands: Optional[Dict[str, Command]] = None):
        self.connection_manager = connection_manager
        self.commands: Dict[str, Command] = dict(commands or {})
        self._handlers = {
            "subscribe": self._handle_subscribe,
            "unsubscribe": self._handle_unsubscribe,
            "command": self._handle_command,
            "ping": self._handle_ping,
        }

    async def handle_connection(self, websocket: WebSocket):
        """Connection lifecycle: accept, route messages until disconnect, clean up."""
        client_id = await self.connection_manager.connect(websocket)

        try:
            while True:
                try:
                    data = await websocket.receive_json()
                except json.JSONDecodeError as e:
                    logger.error(f"Invalid JSON from client {client_id}: {e}")
                    await self._send_error(client_id, "Invalid JSON format", "INVALID_JSON")
                    continue
                await self._route_message(client_id, data)

        except WebSocketDisconnect:
            logger.info(f"Client {client_id} disconnected")
        except Exception as e:
            logger.error(f"Error handling client {client_id}: {e}", exc_info=True)
        finally:
            await self.connection_manager.disconnect(client_id)

    async def _route_message(self, client_id: str, message: Any):
        if not isinstance(message, dict):
            await self._send_error(client_id, "Message must be a JSON object", "INVALID_MESSAGE_TYPE")
            return

        message_type = message.get("type")
        if not message_type:
            await self._send_error(client_id, "Message missing 'type' field", "MISSING_TYPE")
            return

        handler = self._handlers.get(message_type)
        if not handler:
            await self._send_error(client_id, f"Unknown message type: {message_type}", "UNKNOWN_MESSAGE_TYPE")
            return

        try:
            await handler(client_id, message)
        except Exception as e:
            logger.error(f"Error handling message type '{message_type}' from client {client_id}: {e}", exc_info=True)
            await self._send_error(client_id, f"Error processing message: {e}", "PROCESSING_ERROR")

    async def _handle_subscribe(self, client_id: str, message: Dict[str, Any]):
        """
        Message format:
        {"type": "subscribe", "events": ["log", "process_state"]}
        """
        event_types = message.get("events", [])
        if not isinstance(event_types, list):
            await self._send_error(client_id, "'events' must be an array", "INVALID_EVENTS")
            return
        if not event_types:
            await self._send_error(client_id, "'events' array cannot be empty", "EMPTY_EVENTS")
            return

        await self.connection_manager.subscribe(client_id, event_types)
        await self.connection_manager.send_to_client(
            client_id,
            {
                "type": "subscribed",
                "events": event_types,
                "all_subscriptions": sorted(self.connection_manager.get_client_subscriptions(client_id)),
            },
        )

    async def _handle_unsubscribe(self, client_id: str, message: Dict[str, Any]):
        event_types = message.get("events", [])
        if not isinstance(event_types, list):
            await self._send_error(client_id, "'events' must be an array", "INVALID_EVENTS")
            return

        await self.connection_manager.unsubscribe(client_id, event_types)
        await self.connection_manager.send_to_client(
            client_id,
            {
                "type": "unsubscribed",
                "events": event_types,
                "remaining_subscriptions": sorted(self.connection_manager.get_client_subscriptions(client_id)),
            },
        )

    async def _handle_command(self, client_id: str, message: Dict[str, Any]):
        """
        Message format:
        {"type": "command", "command": "cancel-cli"}
        """
        command = message.get("command")
        if not command:
            await self._send_error(client_id, "'command' field is required", "MISSING_COMMAND")
            return

        action = self.commands.get(command)
        if action is None:
            await self._send_error(client_id, f"Unknown command: {command}", "UNKNOWN_COMMAND")
            return

        logger.info(f"Received command '{command}' from client {client_id}")
        result = await action()
        await self.connection_manager.send_to_client(
            client_id,
            {"type": "command_result", "command": command, "result": result},
        )

    async def _handle_ping(self, client_id: str, message: Dict[str, Any]):
        await self.connection_manager.send_to_client(
            client_id,
            {
                "type": "pong",
                "client_timestamp": message.get("timestamp"),
                "server_timestamp": datetime.now().isoformat(),
            },
        )

    async def _send_error(self, client_id: str, message: str, error_code: str):
        await self.connection_manager.send_to_client(
            client_id,
            {
                "type": "error",
                "error_code": error_code,
                "message": message,
                "timestamp": datetime.now().isoformat(),
            },
        )
