"""Live fan-out of webhook deliveries to WebSocket observers.

Provides:
- Connection: one observer (state, subscription filter, liveness, outbound queue)
- BroadcastHub: owns the connection set; connect/disconnect, fan-out, heartbeat

Delivery to observers is best-effort: a connection that cannot accept a
message is dropped without affecting the others or the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from webhook_inspector.errors import BroadcastDeliveryError
from webhook_inspector.timeutils import utcnow

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_SECONDS = 30.0
_QUEUE_SIZE = 500


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """One connected observer. Owned by BroadcastHub."""

    websocket: Any
    remote_address: str | None = None
    user_agent: str | None = None
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    connected_at: datetime = field(default_factory=utcnow)
    subscriptions: frozenset[str] = frozenset()
    is_alive: bool = True
    state: ConnectionState = ConnectionState.CONNECTING
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=_QUEUE_SIZE))
    sender: asyncio.Task | None = None

    def wants(self, event_type: str | None) -> bool:
        """Empty filter means "receive everything"."""
        return not self.subscriptions or event_type in self.subscriptions

    def info(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "ip": self.remote_address,
            "user_agent": self.user_agent,
            "connected_at": self.connected_at.isoformat(),
            "subscriptions": sorted(self.subscriptions),
            "is_alive": self.is_alive,
            "state": self.state.value,
        }


def _stamp(message: dict[str, Any]) -> dict[str, Any]:
    return {**message, "timestamp": utcnow().isoformat()}


class BroadcastHub:
    """Fans out events to every connected observer.

    The connection set is guarded by one lock; broadcast iterates a
    snapshot so concurrent connect/disconnect never breaks iteration.
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._lock = threading.Lock()
        self._closing: set[asyncio.Task] = set()
        self.running = True

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def connect(
        self,
        websocket: Any,
        remote_address: str | None = None,
        user_agent: str | None = None,
    ) -> Connection:
        """Register an accepted websocket and queue the welcome message."""
        conn = Connection(websocket=websocket, remote_address=remote_address, user_agent=user_agent)
        with self._lock:
            self._connections[conn.connection_id] = conn
            conn.state = ConnectionState.OPEN
            count = len(self._connections)
        conn.sender = asyncio.create_task(self.pump(conn))
        self._enqueue(conn, {
            "type": "connected",
            "message": "WebSocket connection established",
            "connection_id": conn.connection_id,
            "client_count": count,
        })
        logger.info("Observer connected: %s from %s (total: %d)", conn.connection_id, remote_address, count)
        return conn

    def _detach(self, conn: Connection) -> bool:
        """Remove from the set; False if it was already gone."""
        with self._lock:
            if conn.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
                return False
            conn.state = ConnectionState.CLOSING
            self._connections.pop(conn.connection_id, None)
            remaining = len(self._connections)
        if conn.sender is not None and conn.sender is not asyncio.current_task():
            conn.sender.cancel()
        logger.info("Observer disconnected: %s (total: %d)", conn.connection_id, remaining)
        return True

    async def _close_socket(self, conn: Connection, code: int, reason: str) -> None:
        try:
            await conn.websocket.close(code=code, reason=reason)
        except Exception:
            logger.debug("Close failed for %s (already gone)", conn.connection_id)
        finally:
            conn.state = ConnectionState.CLOSED

    def _drop(self, conn: Connection, code: int = 1011, reason: str = "") -> None:
        """Detach now and close the socket in the background."""
        if not self._detach(conn):
            return
        task = asyncio.get_running_loop().create_task(self._close_socket(conn, code, reason))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def disconnect(self, conn: Connection, code: int = 1000, reason: str = "") -> None:
        """Remove a connection and close its socket (idempotent)."""
        if self._detach(conn):
            await self._close_socket(conn, code, reason)

    def forget(self, conn: Connection) -> None:
        """Remove a connection whose socket the peer already closed."""
        if self._detach(conn):
            conn.state = ConnectionState.CLOSED

    async def close_all(self) -> None:
        """Close every connection (server shutdown)."""
        self.running = False
        for conn in self.snapshot():
            await self.disconnect(conn, code=1001, reason="Server shutdown")
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    # ── Outbound ──────────────────────────────────────────────────────────

    def _enqueue(self, conn: Connection, message: dict[str, Any]) -> bool:
        if conn.state is not ConnectionState.OPEN:
            return False
        try:
            conn.queue.put_nowait(_stamp(message))
            return True
        except asyncio.QueueFull:
            logger.warning("Observer %s is not keeping up, dropping it", conn.connection_id)
            self._drop(conn, code=1013, reason="Too slow")
            return False

    async def _send(self, conn: Connection, message: dict[str, Any]) -> None:
        try:
            await conn.websocket.send_json(message)
        except Exception as exc:
            raise BroadcastDeliveryError(conn.connection_id) from exc

    async def pump(self, conn: Connection) -> None:
        """Per-connection sender: drains the queue to the websocket in order."""
        while True:
            message = await conn.queue.get()
            try:
                await self._send(conn, message)
            except BroadcastDeliveryError as exc:
                logger.warning("%s: dropping observer", exc.message)
                self._drop(conn)
                return

    def broadcast(self, event: dict[str, Any], event_type: str | None = None) -> int:
        """Send an event to every subscribed observer (non-blocking, never raises).

        Returns the number of observers the event was queued for.
        """
        sent = 0
        for conn in self.snapshot():
            if not conn.wants(event_type):
                continue
            try:
                if self._enqueue(conn, event):
                    sent += 1
            except Exception:
                logger.warning("Broadcast to %s failed", conn.connection_id, exc_info=True)
                self._drop(conn)
        if sent:
            logger.debug("Broadcast %s to %d observer(s)", event.get("type"), sent)
        return sent

    def broadcast_webhook(self, webhook: dict[str, Any], stats: dict[str, Any] | None = None) -> int:
        return self.broadcast(
            {"type": "webhook_received", "webhook": webhook, "stats": stats},
            event_type=webhook.get("event_type"),
        )

    # ── Inbound ───────────────────────────────────────────────────────────

    def subscribe(self, conn: Connection, events: Iterable[Any] | None) -> None:
        conn.subscriptions = frozenset(str(e) for e in (events or []) if e)
        self._enqueue(conn, {"type": "subscribed", "events": sorted(conn.subscriptions)})

    def handle_message(self, conn: Connection, raw: str) -> None:
        """React to a client message. Any message proves the peer is alive."""
        conn.is_alive = True
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring malformed message from %s", conn.connection_id)
            return
        if not isinstance(data, dict):
            return

        msg_type = data.get("type")
        if msg_type == "ping":
            self._enqueue(conn, {"type": "pong"})
        elif msg_type == "subscribe":
            events = data.get("events")
            self.subscribe(conn, events if isinstance(events, list) else [])
        elif msg_type in ("pong", "heartbeat_ack"):
            pass
        else:
            logger.debug("Unhandled message type from %s: %s", conn.connection_id, msg_type)

    # ── Heartbeat ─────────────────────────────────────────────────────────

    async def sweep(self) -> int:
        """One heartbeat cycle. Returns the number of connections closed.

        Connections that have not sent anything since the previous sweep
        are closed; the rest are marked pending and sent a heartbeat.
        """
        closed = 0
        for conn in self.snapshot():
            if not conn.is_alive:
                logger.info("Closing unresponsive observer %s", conn.connection_id)
                await self.disconnect(conn, code=1001, reason="Heartbeat timeout")
                closed += 1
                continue
            conn.is_alive = False
            self._enqueue(conn, {"type": "heartbeat"})
        return closed

    async def run_heartbeat(self, interval: float = HEARTBEAT_INTERVAL_SECONDS) -> None:
        while self.running:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Heartbeat sweep failed")

    # ── Introspection ─────────────────────────────────────────────────────

    def snapshot(self) -> list[Connection]:
        with self._lock:
            return list(self._connections.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def stats(self) -> dict[str, Any]:
        connections = self.snapshot()
        return {
            "total_connections": len(connections),
            "active_connections": [c.info() for c in connections],
            "server_status": "running" if self.running else "stopped",
        }
