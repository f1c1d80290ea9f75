"""
Tests for WebSocket components.

Run with: pytest flaxeo/backend/ws/test_websocket.py
"""

import asyncio
from datetime import datetime

import pytest
from fastapi import WebSocketDisconnect

from flaxeo.backend.services.process_supervisor import ProcessState

from .connection_manager import ConnectionManager
from .events import EventBroadcaster, EventType, LogEvent, ProcessStateEvent
from .handlers import WebSocketHandler

DEFAULT_EVENTS = [e.value for e in EventType]


class MockWebSocket:
    """Mock WebSocket for testing."""

    def __init__(self):
        self.messages_sent = []
        self.messages_to_receive = []
        self.is_connected = True

    async def accept(self):
        pass

    async def send_json(self, data):
        if not self.is_connected:
            raise Exception("WebSocket disconnected")
        self.messages_sent.append(data)

    async def receive_json(self):
        while not self.messages_to_receive:
            await asyncio.sleep(0.05)
            if not self.is_connected:
                raise WebSocketDisconnect()
        return self.messages_to_receive.pop(0)

    def disconnect(self):
        self.is_connected = False


async def run_session(handler, ws, delay=0.2):
    """Feed queued messages through handle_connection, then hang up."""
    async def delayed_disconnect():
        await asyncio.sleep(delay)
        ws.disconnect()

    task = asyncio.create_task(delayed_disconnect())
    await handler.handle_connection(ws)
    await task


# =============================================================================
# ConnectionManager Tests
# =============================================================================


@pytest.mark.asyncio
async def test_connect_subscribes_to_default_events():
    manager = ConnectionManager(default_events=DEFAULT_EVENTS)
    ws = MockWebSocket()

    client_id = await manager.connect(ws)

    assert client_id.startswith("client_")
    assert manager.get_connection_count() == 1
    assert manager.get_client_subscriptions(client_id) == {"log", "process_state"}
    welcome = ws.messages_sent[0]
    assert welcome["type"] == "connection_established"
    assert welcome["subscriptions"] == ["log", "process_state"]


@pytest.mark.asyncio
async def test_disconnect():
    manager = ConnectionManager()
    client_id = await manager.connect(MockWebSocket())

    await manager.disconnect(client_id)
    assert manager.get_connection_count() == 0
    assert manager.get_client_subscriptions(client_id) == set()


@pytest.mark.asyncio
async def test_broadcast_respects_subscriptions():
    manager = ConnectionManager(default_events=DEFAULT_EVENTS)
    listening = MockWebSocket()
    muted = MockWebSocket()

    await manager.connect(listening)
    muted_id = await manager.connect(muted)
    await manager.unsubscribe(muted_id, ["log"])

    await manager.broadcast({"type": "log", "text": "step 1/20"}, "log")

    assert listening.messages_sent[-1]["text"] == "step 1/20"
    assert all(m.get("type") != "log" for m in muted.messages_sent)


@pytest.mark.asyncio
async def test_broadcast_drops_dead_clients():
    manager = ConnectionManager(default_events=DEFAULT_EVENTS)
    ws = MockWebSocket()
    await manager.connect(ws)
    ws.disconnect()

    await manager.broadcast({"type": "log", "text": "x"}, "log")

    assert manager.get_connection_count() == 0


# =============================================================================
# Event Tests
# =============================================================================


def test_log_event_to_dict():
    data = LogEvent(slot="cli", text="sampling").to_dict()

    assert data["type"] == "log"
    assert data["slot"] == "cli"
    assert data["text"] == "sampling"
    assert data["timestamp"]


def test_process_state_event_to_dict():
    data = ProcessStateEvent(slot="server", state=ProcessState.RUNNING, return_code=None).to_dict()

    assert data["type"] == "process_state"
    assert data["state"] == "running"
    assert data["return_code"] is None


@pytest.mark.asyncio
async def test_broadcaster_forwards_process_activity():
    manager = ConnectionManager(default_events=DEFAULT_EVENTS)
    broadcaster = EventBroadcaster(manager)
    ws = MockWebSocket()
    await manager.connect(ws)

    await broadcaster.on_process_output("cli", "loading model\n")
    await broadcaster.on_process_state("cli", ProcessState.FAILED, return_code=3)

    log_msg, state_msg = ws.messages_sent[1], ws.messages_sent[2]
    assert log_msg["type"] == "log"
    assert log_msg["text"] == "loading model\n"
    assert state_msg["type"] == "process_state"
    assert state_msg["state"] == "failed"
    assert state_msg["return_code"] == 3


# =============================================================================
# WebSocketHandler Tests
# =============================================================================


@pytest.mark.asyncio
async def test_handler_subscribe():
    manager = ConnectionManager()
    handler = WebSocketHandler(manager)
    ws = MockWebSocket()
    ws.messages_to_receive.append({"type": "subscribe", "events": ["log"]})

    await run_session(handler, ws)

    subscribed = ws.messages_sent[1]
    assert subscribed["type"] == "subscribed"
    assert subscribed["all_subscriptions"] == ["log"]
    assert manager.get_connection_count() == 0


@pytest.mark.asyncio
async def test_handler_rejects_empty_subscription():
    handler = WebSocketHandler(ConnectionManager())
    ws = MockWebSocket()
    ws.messages_to_receive.append({"type": "subscribe", "events": []})

    await run_session(handler, ws)

    assert ws.messages_sent[1]["error_code"] == "EMPTY_EVENTS"


@pytest.mark.asyncio
async def test_handler_ping():
    handler = WebSocketHandler(ConnectionManager())
    ws = MockWebSocket()
    sent_at = datetime.now().isoformat()
    ws.messages_to_receive.append({"type": "ping", "timestamp": sent_at})

    await run_session(handler, ws)

    pong = ws.messages_sent[1]
    assert pong["type"] == "pong"
    assert pong["client_timestamp"] == sent_at
    assert "server_timestamp" in pong


@pytest.mark.asyncio
async def test_handler_runs_command():
    calls = []

    async def cancel_cli():
        calls.append("cancel")
        return {"success": True, "message": "No process running"}

    handler = WebSocketHandler(ConnectionManager(), commands={"cancel-cli": cancel_cli})
    ws = MockWebSocket()
    ws.messages_to_receive.append({"type": "command", "command": "cancel-cli"})

    await run_session(handler, ws)

    assert calls == ["cancel"]
    result = ws.messages_sent[1]
    assert result["type"] == "command_result"
    assert result["command"] == "cancel-cli"
    assert result["result"]["success"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize("message,error_code", [
    ({"type": "command", "command": "format-disk"}, "UNKNOWN_COMMAND"),
    ({"type": "command"}, "MISSING_COMMAND"),
    ({"data": "invalid"}, "MISSING_TYPE"),
    ({"type": "train"}, "UNKNOWN_MESSAGE_TYPE"),
    (["not", "an", "object"], "INVALID_MESSAGE_TYPE"),
])
async def test_handler_errors(message, error_code):
    handler = WebSocketHandler(ConnectionManager())
    ws = MockWebSocket()
    ws.messages_to_receive.append(message)

    await run_session(handler, ws)

    error = ws.messages_sent[1]
    assert error["type"] == "error"
    assert error["error_code"] == error_code


@pytest.mark.asyncio
async def test_failing_command_reports_processing_error():
    async def broken():
        raise RuntimeError("supervisor gone")

    handler = WebSocketHandler(ConnectionManager(), commands={"status": broken})
    ws = MockWebSocket()
    ws.messages_to_receive.append({"type": "command", "command": "status"})

    await run_session(handler, ws)

    assert ws.messages_sent[1]["error_code"] == "PROCESSING_ERROR"
