"""Tests for websocket fan-out."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import WebSocketDisconnect

from parallel_dev_agent.api.websocket import (
    Client,
    ConnectionManager,
    WebSocketNotifier,
    _handle_client_message,
)
from parallel_dev_agent.protocols import NotificationEvent


def fake_socket(send=None) -> MagicMock:
    socket = MagicMock()
    socket.accept = AsyncMock()
    socket.send_text = send or AsyncMock()
    return socket


class TestConnectionManager:
    """Tests for ConnectionManager.broadcast."""

    @pytest.mark.asyncio
    async def test_broadcast_reaches_subscribers(self):
        manager = ConnectionManager()
        everything = fake_socket()
        filtered = fake_socket()
        await manager.connect(everything)
        client = await manager.connect(filtered)
        client.events = {"task.output_changed"}

        delivered = await manager.broadcast("session.status_changed", {"session_id": 1})

        assert delivered == 1
        everything.send_text.assert_awaited_once()
        filtered.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disconnected_clients_are_dropped(self):
        manager = ConnectionManager()
        gone = fake_socket(AsyncMock(side_effect=WebSocketDisconnect()))
        await manager.connect(gone)

        assert await manager.broadcast("task.status_changed", {}) == 0
        assert manager.clients == {}

    @pytest.mark.asyncio
    async def test_slow_clients_are_dropped(self):
        async def hang(message):
            await asyncio.sleep(10)

        manager = ConnectionManager(send_timeout=0.05)
        slow = fake_socket(AsyncMock(side_effect=hang))
        fast = fake_socket()
        await manager.connect(slow)
        await manager.connect(fast)

        assert await manager.broadcast("task.output_changed", {"output": "x"}) == 1
        assert list(manager.clients.values())[0].websocket is fast

    @pytest.mark.asyncio
    async def test_notifier_uses_event_value(self):
        manager = ConnectionManager()
        socket = fake_socket()
        await manager.connect(socket)

        await WebSocketNotifier(manager).notify(NotificationEvent.TASK_STATUS_CHANGED, {"a": 1})

        sent = socket.send_text.await_args.args[0]
        assert '"event": "task.status_changed"' in sent


class TestClientMessages:
    """Tests for control messages sent by clients."""

    def test_subscribe_rejects_non_list_events(self):
        client = Client(MagicMock())
        client.events = {"task.status_changed"}

        for events in ("task.status_changed", 3, {"task.status_changed": True}):
            kind, data = _handle_client_message(
                client, json.dumps({"type": "subscribe", "events": events})
            )
            assert kind == "error"
            assert "list of event names" in data["detail"]

        assert client.events == {"task.status_changed"}

    def test_subscribe_to_everything(self):
        client = Client(MagicMock())
        client.events = {"task.status_changed"}

        kind, data = _handle_client_message(client, '{"type": "subscribe", "events": null}')

        assert kind == "subscribed"
        assert client.events is None
        assert data["events"] == sorted(e.value for e in NotificationEvent)
