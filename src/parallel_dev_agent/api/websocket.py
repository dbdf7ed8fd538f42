"""WebSocket transport for orchestrator notifications.

Clients connect to ``/ws/events`` and receive every event as
``{"event": ..., "data": ..., "timestamp": ...}``. A client can narrow
what it receives by sending ``{"type": "subscribe", "events": [...]}``
and can send ``{"type": "ping"}`` to get a ``pong``.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..protocols import NotificationEvent

logger = logging.getLogger(__name__)

router = APIRouter()

# Clients slower than this are dropped
SEND_TIMEOUT_SECONDS = 5.0


@dataclass(eq=False)
class Client:
    websocket: WebSocket
    events: Optional[set[str]] = None  # None means every event

    def wants(self, event: str) -> bool:
        return self.events is None or event in self.events


@dataclass
class ConnectionManager:
    """Connected clients and fan-out of events to them."""
    send_timeout: float = SEND_TIMEOUT_SECONDS
    clients: dict[int, Client] = field(default_factory=dict)

    async def connect(self, websocket: WebSocket) -> Client:
        await websocket.accept()
        client = Client(websocket)
        self.clients[id(websocket)] = client
        logger.debug(f"WebSocket client connected ({len(self.clients)} total)")
        return client

    def disconnect(self, websocket: WebSocket) -> None:
        if self.clients.pop(id(websocket), None) is not None:
            logger.debug(f"WebSocket client disconnected ({len(self.clients)} total)")

    @staticmethod
    def encode(event: str, data: dict[str, Any]) -> str:
        return json.dumps(
            {"event": event, "data": data, "timestamp": datetime.now().isoformat()},
            default=str,
        )

    async def _send(self, client: Client, message: str) -> bool:
        try:
            await asyncio.wait_for(client.websocket.send_text(message), self.send_timeout)
        except (WebSocketDisconnect, RuntimeError, asyncio.TimeoutError) as e:
            logger.info(f"Dropping websocket client: {e!r}")
            return False
        return True

    async def broadcast(self, event: str, data: dict[str, Any]) -> int:
        """Send an event to every subscribed client. Returns how many got it."""
        targets = [c for c in list(self.clients.values()) if c.wants(event)]
        if not targets:
            return 0

        message = self.encode(event, data)
        results = await asyncio.gather(*(self._send(c, message) for c in targets))
        for client, delivered in zip(targets, results):
            if not delivered:
                self.disconnect(client.websocket)
        return sum(results)

    async def send(self, websocket: WebSocket, event: str, data: dict[str, Any]) -> None:
        await websocket.send_text(self.encode(event, data))


class WebSocketNotifier:
    """Notifier that broadcasts orchestrator events to websocket clients."""

    def __init__(self, manager: ConnectionManager):
        self.manager = manager

    async def notify(self, event: NotificationEvent, payload: dict[str, Any]) -> None:
        await self.manager.broadcast(event.value, payload)


def _handle_client_message(client: Client, raw: str) -> Optional[tuple[str, dict[str, Any]]]:
    """Apply a client control message; returns a reply when one is due."""
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        return "error", {"detail": "Messages must be JSON"}
    if not isinstance(message, dict):
        return "error", {"detail": "Messages must be JSON objects"}

    kind = message.get("type")
    if kind == "ping":
        return "pong", {}
    if kind == "subscribe":
        events = message.get("events")
        known = {e.value for e in NotificationEvent}
        if events is None:
            client.events = None
        elif not isinstance(events, list) or not all(isinstance(e, str) for e in events):
            return "error", {"detail": "events must be a list of event names"}
        else:
            unknown = sorted(set(events) - known)
            if unknown:
                return "error", {"detail": f"Unknown events: {', '.join(unknown)}"}
            client.events = set(events)
        subscribed = sorted(client.events) if client.events is not None else sorted(known)
        return "subscribed", {"events": subscribed}
    return "error", {"detail": f"Unknown message type: {kind}"}


@router.websocket("/events")
async def websocket_events(websocket: WebSocket):
    manager: ConnectionManager = websocket.app.state.connections
    client = await manager.connect(websocket)

    try:
        await manager.send(websocket, "connected", {"client_count": len(manager.clients)})
        while True:
            reply = _handle_client_message(client, await websocket.receive_text())
            if reply is not None:
                await manager.send(websocket, *reply)
    except WebSocketDisconnect:
        logger.debug("WebSocket closed by client")
    finally:
        manager.disconnect(websocket)
