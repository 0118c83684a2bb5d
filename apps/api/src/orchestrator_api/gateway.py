"""Real-time fan-out of task status and agent log events to project rooms.

Frames on the wire are JSON objects ``{"event": <name>, "data": <payload>}``.
Clients send ``joinProjectRoom`` (data: project id) and optionally ``ping``;
the server pushes ``joinedRoom``, ``taskStatusUpdate``, ``agentLog`` and
``pong``.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import threading
import weakref
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket
from pydantic import BaseModel

logger = logging.getLogger(__name__)

MAX_ROOM_ID_LENGTH = 128
MAX_FRAME_CHARS = 64 * 1024
MAX_PENDING_MESSAGES = 1000

_connection_seq = itertools.count(1)


class ConnectionClosedError(Exception):
    pass


class Connection:
    """A subscriber. ``deliver`` must not block and may be called from any thread."""

    def __init__(self, connection_id: str | None = None) -> None:
        self.connection_id = connection_id or f"conn-{next(_connection_seq)}"

    def deliver(self, message: dict[str, Any]) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.connection_id!r})"


class WebSocketConnection(Connection):
    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self._websocket = websocket
        self._loop = loop
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=MAX_PENDING_MESSAGES)
        self._closed = False

    def deliver(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionClosedError(self.connection_id)
        try:
            self._loop.call_soon_threadsafe(self._enqueue, message)
        except RuntimeError as exc:
            self._closed = True
            raise ConnectionClosedError(self.connection_id) from exc

    def close(self) -> None:
        self._closed = True

    async def pump(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._websocket.send_json(message)
            except Exception:  # noqa: BLE001
                logger.info("stopped writing to %s", self.connection_id)
                self._closed = True
                return

    def _enqueue(self, message: dict[str, Any]) -> None:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("dropping '%s' for slow subscriber %s", message.get("event"), self.connection_id)


class BroadcastGateway:
    """Project-scoped rooms of live connections.

    Rooms hold weak references, so a connection that goes away leaves every
    room without an explicit cleanup. Membership is copied under the lock and
    delivery happens outside it.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, weakref.WeakSet[Connection]] = {}
        self._lock = threading.Lock()

    def join(self, connection: Connection, room_id: Any) -> str | None:
        room = _normalize_room_id(room_id)
        if room is None:
            logger.debug("ignored malformed join from %s", connection.connection_id)
            return None
        with self._lock:
            self._rooms.setdefault(room, weakref.WeakSet()).add(connection)
        logger.info("%s joined room %s", connection.connection_id, room)
        self._deliver(connection, _frame("joinedRoom", f"Joined project room {room}"))
        return room

    def leave(self, connection: Connection, room_id: Any) -> bool:
        room = _normalize_room_id(room_id)
        if room is None:
            return False
        with self._lock:
            members = self._rooms.get(room)
            if members is None or connection not in members:
                return False
            members.discard(connection)
            if not members:
                del self._rooms[room]
        return True

    def disconnect(self, connection: Connection) -> None:
        with self._lock:
            for room in list(self._rooms):
                members = self._rooms[room]
                members.discard(connection)
                if not members:
                    del self._rooms[room]
        logger.info("%s disconnected", connection.connection_id)

    def emit(self, room_id: str, event: str, payload: Any) -> int:
        with self._lock:
            members = list(self._rooms.get(room_id, ()))
        message = _frame(event, payload)
        delivered = 0
        for connection in members:
            if self._deliver(connection, message):
                delivered += 1
        logger.debug("sent '%s' to %d subscriber(s) of room %s", event, delivered, room_id)
        return delivered

    def emit_model(self, room_id: str, event: str, model: BaseModel) -> int:
        return self.emit(room_id, event, model.model_dump(by_alias=True, mode="json"))

    def rooms_of(self, connection: Connection) -> list[str]:
        with self._lock:
            return sorted(room for room, members in self._rooms.items() if connection in members)

    def room_size(self, room_id: str) -> int:
        with self._lock:
            return len(self._rooms.get(room_id, ()))

    def _deliver(self, connection: Connection, message: dict[str, Any]) -> bool:
        try:
            connection.deliver(message)
        except Exception:  # noqa: BLE001
            logger.warning("dropping unreachable subscriber %s", connection.connection_id)
            self.disconnect(connection)
            return False
        return True


async def serve_websocket(websocket: WebSocket, gateway: BroadcastGateway) -> None:
    await websocket.accept()
    connection = WebSocketConnection(websocket, asyncio.get_running_loop())
    writer = asyncio.create_task(connection.pump())
    logger.info("%s connected", connection.connection_id)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            frame = _parse_frame(message.get("text"))
            if frame is None:
                continue
            event, data = frame
            if event == "joinProjectRoom":
                gateway.join(connection, data)
            elif event == "leaveProjectRoom":
                gateway.leave(connection, data)
            elif event == "ping":
                if not gateway._deliver(connection, _frame("pong", {"timestamp": _utc_now()})):
                    break
    finally:
        gateway.disconnect(connection)
        connection.close()
        writer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await writer


def _parse_frame(raw: str | None) -> tuple[str, Any] | None:
    if raw is None or len(raw) > MAX_FRAME_CHARS:
        return None
    try:
        decoded = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(decoded, dict):
        return None
    event = decoded.get("event")
    if not isinstance(event, str):
        return None
    return event, decoded.get("data")


def _normalize_room_id(room_id: Any) -> str | None:
    if not isinstance(room_id, str):
        return None
    trimmed = room_id.strip()
    if not trimmed or len(trimmed) > MAX_ROOM_ID_LENGTH:
        return None
    return trimmed


def _frame(event: str, data: Any) -> dict[str, Any]:
    return {"event": event, "data": data}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
