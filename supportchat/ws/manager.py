# supportchat/ws/manager.py
"""
Realtime fan-out for room and message mutations.

Two channel scopes:
- ``room:{id}``      message inserts for one room (ordered by created_at)
- ``tenant:{id}``    room inserts/updates plus a ``room_activity`` hint per message

Consumers are either in-process ``Subscription`` buffers or WebSocket
connections. Delivery is at-least-once and ordered per channel only; an
aggregate event is a hint to refetch, never the state itself. Nothing is
buffered for disconnected consumers: they resync from the store.

``seq`` is contiguous per channel and audience: the visitor view of a room
channel is numbered separately, so hidden internal notes leave no gap.

Usage:
- Store side: realtime_hub.publish_message(message) / realtime_hub.publish_room(room, "room_updated")
- In-process:  with realtime_hub.subscribe_room(room_id) as sub: events = sub.drain()
- WebSocket:   await realtime_hub.connections.connect(channel, websocket, audience)
"""
from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

import anyio
from fastapi import WebSocket

from supportchat.core.config import FANOUT_BUFFER_SIZE
from supportchat.core.errors import DeliveryGapError
from supportchat.core.timezone import isoformat, utcnow

log = logging.getLogger("supportchat.ws")

AUDIENCE_STAFF = "staff"
AUDIENCE_VISITOR = "visitor"


def room_channel(room_id: int) -> str:
    return f"room:{room_id}"


def tenant_channel(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


def visible_to(event: Dict[str, Any], audience: str) -> bool:
    """Internal notes never reach the visitor audience"""
    if audience == AUDIENCE_VISITOR:
        return not (event.get("data") or {}).get("is_internal", False)
    return True


def serialize_message(message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "room_id": message.room_id,
        "sender_type": message.sender_type,
        "sender_id": message.sender_id,
        "sender_name": message.sender_name,
        "content": message.content,
        "is_internal": bool(message.is_internal),
        "metadata": message.meta_data or {},
        "created_at": isoformat(message.created_at),
    }


def serialize_room(room) -> Dict[str, Any]:
    return {
        "id": room.id,
        "status": room.status,
        "resolution_status": room.resolution_status,
        "attendant_id": room.attendant_id,
        "visitor_id": room.visitor_id,
        "priority": room.priority,
        "started_at": isoformat(room.started_at),
        "assigned_at": isoformat(room.assigned_at),
        "closed_at": isoformat(room.closed_at),
        "csat_score": room.csat_score,
    }


class Subscription:
    """
    Bounded in-process event buffer for one channel.

    When the buffer overflows the oldest events are dropped and the next
    ``drain()`` raises DeliveryGapError, forcing the consumer to resync.
    """

    def __init__(self, hub: "RealtimeHub", channel: str, audience: str = AUDIENCE_STAFF, maxsize: int = FANOUT_BUFFER_SIZE):
        self.hub = hub
        self.channel = channel
        self.audience = audience
        self.maxsize = maxsize
        self.closed = False
        self._events: Deque[Dict[str, Any]] = deque()
        self._gap = False
        self._lock = threading.Lock()

    def push(self, event: Optional[Dict[str, Any]]) -> None:
        if self.closed or event is None or not visible_to(event, self.audience):
            return
        with self._lock:
            if len(self._events) >= self.maxsize:
                self._events.popleft()
                self._gap = True
            self._events.append(event)

    def drain(self) -> List[Dict[str, Any]]:
        """Return and clear buffered events; raises DeliveryGapError if any were dropped"""
        with self._lock:
            if self._gap:
                self._gap = False
                self._events.clear()
                raise DeliveryGapError(self.channel)
            events = list(self._events)
            self._events.clear()
        return events

    def pending(self) -> int:
        with self._lock:
            return len(self._events)

    def close(self) -> None:
        if not self.closed:
            self.hub.unsubscribe(self)
            self.closed = True

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self):
        return f"<Subscription {self.channel} {self.audience} pending={self.pending()}>"


class WebSocketConnectionManager:
    """WebSocket sinks keyed by channel, each with its audience"""

    def __init__(self) -> None:
        # Map channel -> {websocket: audience}
        self.active: Dict[str, Dict[WebSocket, str]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, channel: str, websocket: WebSocket, audience: str = AUDIENCE_STAFF) -> None:
        """Accept and register a websocket under a channel."""
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        self.active.setdefault(channel, {})[websocket] = audience
        log.info("WS connected: channel=%s total=%d", channel, self.connection_count(channel))

    def disconnect(self, channel: str, websocket: WebSocket) -> None:
        """Unregister a websocket; other sockets on the channel are untouched."""
        conns = self.active.get(channel)
        if conns is not None:
            conns.pop(websocket, None)
            if not conns:
                # cleanup empty channel bucket
                self.active.pop(channel, None)
        log.info("WS disconnected: channel=%s total=%d", channel, self.connection_count(channel))

    async def notify_clients(self, channel: str, views: Dict[str, Dict[str, Any]]) -> None:
        """Async: send each socket of a channel the view of the event for its audience."""
        connections = list(self.active.get(channel, {}).items())
        if not connections:
            return

        stale: Set[WebSocket] = set()
        sent_count = 0
        event = views[AUDIENCE_STAFF]
        for ws, audience in connections:
            view = views.get(audience)
            if view is None:
                continue
            try:
                await ws.send_json(view)
                sent_count += 1
            except Exception as e:
                # mark stale; the client resyncs when it reconnects
                log.warning(f"⚠️ WS send failed on {channel}, marking stale: {e}")
                stale.add(ws)

        log.debug(f"📢 {event.get('event')} sent to {sent_count}/{len(connections)} sockets on {channel}")

        for ws in stale:
            self.disconnect(channel, ws)

    def connection_count(self, channel: Optional[str] = None) -> int:
        if channel is None:
            return sum(len(s) for s in self.active.values())
        return len(self.active.get(channel, {}))

    def notify_clients_sync(self, channel: str, views: Dict[str, Dict[str, Any]]) -> None:
        """
        Sync-safe helper to dispatch notify_clients from route handlers and worker threads.

        Strategy:
        - anyio.from_thread.run when called from an AnyIO worker thread (sync FastAPI routes)
        - loop.create_task when already on the event loop thread
        - run_coroutine_threadsafe onto the loop the sockets were accepted on
        """
        try:
            anyio.from_thread.run(self.notify_clients, channel, views)
            return
        except RuntimeError:
            pass

        try:
            loop = asyncio.get_running_loop()
            loop.create_task(self.notify_clients(channel, views))
            return
        except RuntimeError:
            pass

        if self._loop is not None and self._loop.is_running():
            asyncio.run_coroutine_threadsafe(self.notify_clients(channel, views), self._loop)
        else:
            log.warning(f"⚠️ No event loop for WS broadcast on {channel}; sockets will resync")


class RealtimeHub:
    """Publish/subscribe hub for room and tenant channels."""

    def __init__(self, buffer_size: int = FANOUT_BUFFER_SIZE) -> None:
        self.buffer_size = buffer_size
        self.connections = WebSocketConnectionManager()
        self._subs: Dict[str, Set[Subscription]] = {}
        self._seq: Dict[str, int] = {}
        # visitor sinks skip internal notes, so they count only what they see
        self._visitor_seq: Dict[str, int] = {}
        self._lock = threading.Lock()

    # ────────────────────────────────────────────
    # Subscriptions
    # ────────────────────────────────────────────

    def subscribe(self, channel: str, audience: str = AUDIENCE_STAFF) -> Subscription:
        sub = Subscription(self, channel, audience, self.buffer_size)
        with self._lock:
            self._subs.setdefault(channel, set()).add(sub)
        log.debug(f"➕ subscribed {channel} ({audience})")
        return sub

    def subscribe_room(self, room_id: int, audience: str = AUDIENCE_STAFF) -> Subscription:
        return self.subscribe(room_channel(room_id), audience)

    def subscribe_tenant(self, tenant_id: str) -> Subscription:
        return self.subscribe(tenant_channel(tenant_id))

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.channel)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    self._subs.pop(sub.channel, None)

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subs.get(channel, ()))

    def last_seq(self, channel: str, audience: str = AUDIENCE_STAFF) -> int:
        with self._lock:
            if audience == AUDIENCE_VISITOR:
                return self._visitor_seq.get(channel, 0)
            return self._seq.get(channel, 0)

    # ────────────────────────────────────────────
    # Publishing
    # ────────────────────────────────────────────

    def publish(
        self,
        channel: str,
        event_type: str,
        tenant_id: str,
        data: Dict[str, Any],
        room_id: Optional[int] = None
    ) -> Dict[str, Any]:
        with self._lock:
            seq = self._seq.get(channel, 0) + 1
            self._seq[channel] = seq
            event = {
                "event": event_type,
                "channel": channel,
                "seq": seq,
                "tenant_id": tenant_id,
                "room_id": room_id,
                "data": data,
                "emitted_at": isoformat(utcnow()),
            }
            views = {AUDIENCE_STAFF: event}
            if visible_to(event, AUDIENCE_VISITOR):
                visitor_seq = self._visitor_seq.get(channel, 0) + 1
                self._visitor_seq[channel] = visitor_seq
                views[AUDIENCE_VISITOR] = dict(event, seq=visitor_seq)
            # push under the lock so per-channel seq order matches buffer order
            for sub in self._subs.get(channel, ()):
                sub.push(views.get(sub.audience))

        if self.connections.connection_count(channel):
            try:
                self.connections.notify_clients_sync(channel, views)
            except Exception as e:
                # WS consumers resync on reconnect; the store write already succeeded
                log.error(f"❌ WebSocket broadcast failed on {channel}: {e}")
        return event

    def publish_message(self, message) -> Dict[str, Any]:
        """Message insert on the room channel plus an activity hint on the tenant channel"""
        payload = serialize_message(message)
        event = self.publish(room_channel(message.room_id), "message_inserted", message.tenant_id, payload, message.room_id)
        self.publish(
            tenant_channel(message.tenant_id),
            "room_activity",
            message.tenant_id,
            {
                "message_id": message.id,
                "sender_type": message.sender_type,
                "is_internal": bool(message.is_internal),
                "created_at": payload["created_at"],
            },
            message.room_id,
        )
        return event

    def publish_room(self, room, event_type: str = "room_updated") -> Dict[str, Any]:
        return self.publish(tenant_channel(room.tenant_id), event_type, room.tenant_id, serialize_room(room), room.id)

    def publish_tenant(self, tenant_id: str, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.publish(tenant_channel(tenant_id), event_type, tenant_id, data)

    def publish_transition(self, room, message=None, event_type: str = "room_updated") -> None:
        """Audit message (if any) first, then the room update"""
        if message is not None:
            self.publish_message(message)
        self.publish_room(room, event_type)


# Singleton hub instance
realtime_hub = RealtimeHub()
