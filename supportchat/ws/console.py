# supportchat/ws/console.py
"""
Consumer side of the fan-out: an attendant console's local view.

The console never trusts events as state. Its room list and the open room's
messages are a cache over authoritative reads; events only say "something
changed, refetch" (tenant channel) or carry a message insert that is merged
by id (room channel). Missed events (seq gap or DeliveryGapError) force a
full resync.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from supportchat.core.errors import DeliveryGapError
from supportchat.ws.manager import RealtimeHub, Subscription

log = logging.getLogger("supportchat.console")

RoomsFetcher = Callable[[], List[Dict[str, Any]]]
MessagesFetcher = Callable[[int], List[Dict[str, Any]]]


class AttendantConsole:
    """
    Args:
        hub: fan-out hub to subscribe to
        tenant_id: tenant whose rooms are listed
        attendant_id: the attendant using this console
        fetch_rooms: authoritative room list read (list of dicts with "id")
        fetch_messages: authoritative message read for one room (dicts with "id", "created_at")
        on_notify: called with the tenant event of a visitor message in a room that is not open
    """

    def __init__(
        self,
        hub: RealtimeHub,
        tenant_id: str,
        attendant_id: int,
        fetch_rooms: RoomsFetcher,
        fetch_messages: MessagesFetcher,
        on_notify: Optional[Callable[[Dict[str, Any]], None]] = None
    ):
        self.hub = hub
        self.tenant_id = tenant_id
        self.attendant_id = attendant_id
        self.fetch_rooms = fetch_rooms
        self.fetch_messages = fetch_messages
        self.on_notify = on_notify

        self.rooms: Dict[int, Dict[str, Any]] = {}
        self.room_order: List[int] = []
        self.open_room_id: Optional[int] = None
        self.messages: List[Dict[str, Any]] = []
        self.resyncs = 0

        self._tenant_sub: Optional[Subscription] = None
        self._room_sub: Optional[Subscription] = None
        self._last_seq: Dict[str, int] = {}
        self._stale_rooms = False
        self._resync_requested = False

    # ────────────────────────────────────────────
    # Lifecycle
    # ────────────────────────────────────────────

    def connect(self) -> None:
        """Subscribe first, then read, so nothing between the two is lost"""
        self._tenant_sub = self.hub.subscribe_tenant(self.tenant_id)
        self.resync()

    def disconnect(self) -> None:
        self.close_room()
        if self._tenant_sub is not None:
            self._tenant_sub.close()
            self._tenant_sub = None

    def open_room(self, room_id: int) -> None:
        self.close_room()
        self.open_room_id = room_id
        self._room_sub = self.hub.subscribe_room(room_id)
        self._load_messages()

    def close_room(self) -> None:
        if self._room_sub is not None:
            self._room_sub.close()
            self._last_seq.pop(self._room_sub.channel, None)
        self._room_sub = None
        self.open_room_id = None
        self.messages = []

    def resync(self) -> None:
        """Drop everything cached and re-read the authoritative state"""
        self.resyncs += 1
        for sub in (self._tenant_sub, self._room_sub):
            if sub is not None:
                self._discard_pending(sub)
        self._last_seq.clear()
        self._load_rooms()
        if self.open_room_id is not None:
            self._load_messages()
        log.debug(f"Console for attendant {self.attendant_id} resynced ({self.resyncs})")

    @staticmethod
    def _discard_pending(sub: Subscription) -> None:
        # the fresh read below supersedes anything buffered, gaps included
        try:
            sub.drain()
        except DeliveryGapError:
            pass

    # ────────────────────────────────────────────
    # Event processing
    # ────────────────────────────────────────────

    def pump(self) -> int:
        """Process all pending events; returns how many were applied"""
        applied = 0
        for sub, handler in ((self._tenant_sub, self._on_tenant_event), (self._room_sub, self._on_room_event)):
            if sub is None:
                continue
            try:
                events = sub.drain()
            except DeliveryGapError as e:
                log.warning(f"⚠️ {e.message}; resyncing")
                self.resync()
                continue
            for event in events:
                if not self._in_sequence(sub.channel, event):
                    self.resync()
                    break
                handler(event)
                applied += 1

        if self._resync_requested:
            self._resync_requested = False
            self.resync()
        elif self._stale_rooms:
            self._load_rooms()
        return applied

    def _in_sequence(self, channel: str, event: Dict[str, Any]) -> bool:
        last = self._last_seq.get(channel)
        seq = event.get("seq", 0)
        if last is not None and seq <= last:
            # redelivery; handlers are idempotent
            return True
        self._last_seq[channel] = seq
        if last is not None and seq != last + 1:
            log.warning(f"⚠️ Sequence gap on {channel}: {last} -> {seq}")
            return False
        return True

    def _on_tenant_event(self, event: Dict[str, Any]) -> None:
        # aggregate events are hints: refetch instead of applying the payload
        self._stale_rooms = True

        if event.get("event") == "tenant_resync":
            # changes made without fan-out may include the open room's messages
            self._resync_requested = True
            return
        if event.get("event") != "room_activity":
            return
        data = event.get("data") or {}
        if (
            data.get("sender_type") == "visitor"
            and not data.get("is_internal")
            and event.get("room_id") != self.open_room_id
            and self.on_notify is not None
        ):
            self.on_notify(event)

    def _on_room_event(self, event: Dict[str, Any]) -> None:
        if event.get("event") != "message_inserted" or event.get("room_id") != self.open_room_id:
            return
        message = event["data"]
        if any(m["id"] == message["id"] for m in self.messages):
            return
        self.messages.append(message)
        self.messages.sort(key=lambda m: (m["created_at"] or "", m["id"]))

    # ────────────────────────────────────────────
    # Authoritative reads
    # ────────────────────────────────────────────

    def _load_rooms(self) -> None:
        rooms = self.fetch_rooms()
        self.rooms = {r["id"]: r for r in rooms}
        self.room_order = [r["id"] for r in rooms]
        self._stale_rooms = False

    def _load_messages(self) -> None:
        if self.open_room_id is None:
            return
        self.messages = list(self.fetch_messages(self.open_room_id))
