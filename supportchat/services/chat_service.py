# supportchat/services/chat_service.py
"""
Chat service - the logical operations of the live chat core.

Every mutation goes through the room store's conditional update, is written
to the audit log, and is published on the fan-out hub after commit.
Callers (REST routes, websocket handlers, the scheduler) never touch rooms
directly.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_
from sqlalchemy.orm import Session

from supportchat.core.config import DEFAULT_MAX_CONVERSATIONS, MAX_ATTACHMENT_BYTES
from supportchat.core.config_loader import ChatConfigLoader
from supportchat.core.errors import CapacityExceededError, RoomNotFoundError
from supportchat.core.logging_config import log_transition
from supportchat.core.timezone import utcnow
from supportchat.models.attendant import AttendantProfile
from supportchat.models.message import ChatMessage
from supportchat.models.read_cursor import ReadCursor
from supportchat.models.room import ChatRoom
from supportchat.models.visitor import Visitor
from supportchat.services import assignment
from supportchat.services import read_tracking
from supportchat.services.read_tracking import RoomListEntry
from supportchat.services.room_store import RoomStore, not_before
from supportchat.services.state_machine import (
    Priority, RoomStatus, SenderType,
    check_close, check_csat, check_message,
    close_condition, csat_condition,
)

log = logging.getLogger("supportchat.chat_service")

ATTENDANT_STATUSES = ("online", "busy", "offline")


def _validate_attachment(attachment: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not attachment:
        return None
    if not attachment.get("file_url"):
        raise ValueError("Attachment requires a file_url")
    size = attachment.get("file_size") or 0
    if size > MAX_ATTACHMENT_BYTES:
        raise ValueError(f"Attachment exceeds {MAX_ATTACHMENT_BYTES // (1024 * 1024)} MB")
    return {k: attachment.get(k) for k in ("file_url", "file_name", "file_type", "file_size")}


class ChatService:
    """Room lifecycle, messaging and read tracking for one fan-out hub"""

    def __init__(self, hub=None):
        """
        Args:
            hub: RealtimeHub that receives every accepted mutation (optional)
        """
        self.hub = hub

    def _publish_room(self, room: ChatRoom, message: Optional[ChatMessage] = None, event_type: str = "room_updated"):
        if self.hub is not None:
            self.hub.publish_transition(room, message, event_type)

    def _publish_message(self, message: ChatMessage):
        if self.hub is not None:
            self.hub.publish_message(message)

    # ────────────────────────────────────────────
    # Rooms
    # ────────────────────────────────────────────

    def create_room(
        self,
        db: Session,
        tenant_id: str,
        visitor_token: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        contact_id: Optional[str] = None,
        company_contact_id: Optional[str] = None,
        priority: str = Priority.NORMAL.value,
        metadata: Optional[Dict[str, Any]] = None,
        first_message: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> ChatRoom:
        """
        Start a conversation for a visitor.

        Raises:
            CapacityExceededError: the visitor's open-room limit or the tenant's
                queue limit is reached
        """
        now = now or utcnow()
        priority = Priority(priority).value
        store = RoomStore(db)
        loader = ChatConfigLoader(db, tenant_id)

        visitor = store.get_or_create_visitor(tenant_id, visitor_token, name=name, email=email, phone=phone)
        if contact_id or company_contact_id:
            visitor = store.link_contact(visitor, contact_id, company_contact_id)

        # Check-then-insert: limits are best-effort under concurrent creates
        limit = loader.get_max_rooms_per_visitor()
        if limit is not None and store.count_open_rooms_for_visitor(tenant_id, visitor.id) >= limit:
            log.warning(f"⚠️ Visitor {visitor.id} already has {limit} open room(s)")
            raise CapacityExceededError(f"Visitor already has {limit} open conversation(s)")

        max_queue = loader.get_max_queue_size()
        if max_queue > 0 and store.count_waiting(tenant_id) >= max_queue:
            log.warning(f"⚠️ Queue full for tenant {tenant_id} ({max_queue})")
            raise CapacityExceededError("All attendants are busy, please try again in a moment")

        room = store.insert_room(tenant_id, visitor.id, priority, metadata, now)
        log.info(f"💬 Room {room.id} created for visitor {visitor.id} (tenant={tenant_id})")
        log_transition("create", tenant_id, room.id, visitor_id=visitor.id, priority=priority)
        self._publish_room(room, event_type="room_inserted")

        welcome = loader.get_welcome_message()
        if welcome:
            self._publish_message(store.append_message(room, SenderType.SYSTEM.value, welcome, now, metadata={"event": "welcome"}))

        outside_hours = loader.is_outside_hours()
        if outside_hours and loader.get_outside_hours_message():
            self._publish_message(store.append_message(
                room, SenderType.SYSTEM.value, loader.get_outside_hours_message(), now, metadata={"event": "outside_hours"}
            ))

        if first_message:
            self.send_message(
                db, tenant_id, room.id, SenderType.VISITOR.value, first_message,
                sender_id=str(visitor.id), sender_name=visitor.name, now=now
            )

        if loader.is_auto_assignment_enabled() and not outside_hours:
            assigned = assignment.auto_assign_room(db, tenant_id, room.id, now=now, hub=self.hub)
            if assigned is None and loader.get_all_busy_message():
                self._publish_message(store.append_message(
                    room, SenderType.SYSTEM.value, loader.get_all_busy_message(), now, metadata={"event": "all_busy"}
                ))

        return store.get_room(tenant_id, room.id)

    def get_room(self, db: Session, tenant_id: str, room_id: int) -> ChatRoom:
        return RoomStore(db).get_room(tenant_id, room_id)

    def get_visitor_room(self, db: Session, tenant_id: str, room_id: int, visitor_token: str) -> ChatRoom:
        """Room lookup for the widget; a foreign token looks like a missing room"""
        room = RoomStore(db).get_room(tenant_id, room_id)
        if room.visitor is None or room.visitor.visitor_token != visitor_token:
            raise RoomNotFoundError(f"Room {room_id} not found", room_id)
        return room

    def list_rooms(
        self,
        db: Session,
        tenant_id: str,
        attendant_id: Optional[int] = None,
        statuses: Optional[List[str]] = None,
        mine: bool = False
    ) -> List[RoomListEntry]:
        """Room list with unread counts from ``attendant_id``'s perspective"""
        rooms = RoomStore(db).list_rooms(tenant_id, statuses, attendant_id if mine else None)
        return read_tracking.build_room_list(db, rooms, attendant_id)

    def list_visitor_rooms(self, db: Session, tenant_id: str, visitor_token: str) -> List[ChatRoom]:
        store = RoomStore(db)
        visitor = store.get_visitor_by_token(tenant_id, visitor_token)
        if visitor is None:
            return []
        return db.query(ChatRoom).filter(
            ChatRoom.tenant_id == tenant_id,
            ChatRoom.visitor_id == visitor.id
        ).order_by(ChatRoom.started_at.desc()).all()

    def list_messages(
        self,
        db: Session,
        tenant_id: str,
        room_id: int,
        include_internal: bool = True,
        since: Optional[datetime] = None
    ) -> List[ChatMessage]:
        store = RoomStore(db)
        store.get_room(tenant_id, room_id)
        return store.list_messages(room_id, include_internal=include_internal, since=since)

    # ────────────────────────────────────────────
    # Messages
    # ────────────────────────────────────────────

    def send_message(
        self,
        db: Session,
        tenant_id: str,
        room_id: int,
        sender_type: str,
        content: str,
        sender_id: Optional[str] = None,
        sender_name: Optional[str] = None,
        is_internal: bool = False,
        attachment: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> ChatMessage:
        """
        Append a message to a room.

        Public messages are conditional on the room not being closed; internal
        notes may still be added to a closed room (the room row is untouched).
        """
        now = now or utcnow()
        sender_type = SenderType(sender_type).value
        if sender_type == SenderType.VISITOR.value:
            is_internal = False

        attachment = _validate_attachment(attachment)
        if not (content or "").strip() and not attachment:
            raise ValueError("Message content or attachment is required")

        store = RoomStore(db)
        room = store.get_room(tenant_id, room_id)
        check_message(room, is_internal)

        metadata = {"attachment": attachment} if attachment else None
        if room.status == RoomStatus.CLOSED.value:
            message = store.append_message(
                room, sender_type, content, now,
                sender_id=sender_id, sender_name=sender_name, is_internal=is_internal, metadata=metadata
            )
        else:
            _, message = store.apply_transition(
                tenant_id,
                room_id,
                and_(ChatRoom.id == room_id, ChatRoom.status != RoomStatus.CLOSED.value),
                {ChatRoom.updated_at: now},
                audit={
                    "sender_type": sender_type,
                    "content": content,
                    "sender_id": sender_id,
                    "sender_name": sender_name,
                    "is_internal": is_internal,
                    "metadata": metadata,
                },
                now=now,
            )

        log.debug(f"✉️ Message {message.id} in room {room_id} from {sender_type}")
        self._publish_message(message)
        return message

    def send_visitor_message(
        self,
        db: Session,
        tenant_id: str,
        room_id: int,
        visitor_token: str,
        content: str,
        attachment: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> ChatMessage:
        room = self.get_visitor_room(db, tenant_id, room_id, visitor_token)
        return self.send_message(
            db, tenant_id, room_id, SenderType.VISITOR.value, content,
            sender_id=str(room.visitor_id), sender_name=room.visitor.name,
            attachment=attachment, now=now
        )

    # ────────────────────────────────────────────
    # Transitions
    # ────────────────────────────────────────────

    def claim_room(self, db: Session, tenant_id: str, room_id: int, attendant_id: int, now: Optional[datetime] = None) -> ChatRoom:
        attendant = assignment.get_attendant(db, tenant_id, attendant_id)
        room, _ = assignment.claim(db, tenant_id, room_id, attendant, now=now, hub=self.hub)
        return room

    def transfer_room(
        self,
        db: Session,
        tenant_id: str,
        room_id: int,
        to_attendant_id: int,
        from_attendant_id: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> Tuple[ChatRoom, ChatMessage]:
        return assignment.transfer(
            db, tenant_id, room_id, to_attendant_id,
            from_attendant_id=from_attendant_id, now=now, hub=self.hub
        )

    def close_room(
        self,
        db: Session,
        tenant_id: str,
        room_id: int,
        resolution_status: str,
        note: Optional[str] = None,
        closed_by: Optional[AttendantProfile] = None,
        now: Optional[datetime] = None
    ) -> ChatRoom:
        """
        Close an active room.

        An optional note is stored as an internal message before the close.
        """
        now = now or utcnow()
        store = RoomStore(db)
        room = store.get_room(tenant_id, room_id)
        check_close(room, resolution_status)

        if note:
            self.send_message(
                db, tenant_id, room_id,
                SenderType.ATTENDANT.value if closed_by else SenderType.SYSTEM.value,
                note,
                sender_id=str(closed_by.id) if closed_by else None,
                sender_name=closed_by.display_name if closed_by else None,
                is_internal=True,
                now=now,
            )

        room, message = store.apply_transition(
            tenant_id,
            room_id,
            close_condition(room_id),
            {
                ChatRoom.status: RoomStatus.CLOSED.value,
                ChatRoom.resolution_status: resolution_status,
                ChatRoom.closed_at: not_before(ChatRoom.assigned_at, now),
                ChatRoom.updated_at: now,
            },
            audit={
                "content": "Conversation closed",
                "metadata": {
                    "event": "closed",
                    "resolution_status": resolution_status,
                    "closed_by": closed_by.id if closed_by else None,
                },
            },
            now=now,
        )

        log.info(f"🔒 Room {room_id} closed ({resolution_status})")
        log_transition("close", tenant_id, room_id, resolution=resolution_status, closed_by=closed_by.id if closed_by else None)
        self._publish_room(room, message)
        return room

    def submit_csat(
        self,
        db: Session,
        tenant_id: str,
        room_id: int,
        score: int,
        comment: Optional[str] = None,
        visitor_token: Optional[str] = None
    ) -> ChatRoom:
        """Rate a closed room once; ``visitor_token`` must match when given"""
        store = RoomStore(db)
        if visitor_token is not None:
            room = self.get_visitor_room(db, tenant_id, room_id, visitor_token)
        else:
            room = store.get_room(tenant_id, room_id)
        check_csat(room, score)

        room, _ = store.apply_transition(
            tenant_id,
            room_id,
            csat_condition(room_id),
            {
                ChatRoom.csat_score: score,
                ChatRoom.csat_comment: comment,
                # closed rooms keep every other column, including updated_at
                ChatRoom.updated_at: ChatRoom.updated_at,
            },
        )

        log.info(f"⭐ CSAT {score} for room {room_id}")
        log_transition("csat", tenant_id, room_id, score=score)
        self._publish_room(room)
        return room

    # ────────────────────────────────────────────
    # Read tracking
    # ────────────────────────────────────────────

    def mark_read(self, db: Session, tenant_id: str, room_id: int, attendant_id: int, now: Optional[datetime] = None) -> ReadCursor:
        RoomStore(db).get_room(tenant_id, room_id)
        assignment.get_attendant(db, tenant_id, attendant_id)
        return read_tracking.mark_read(db, tenant_id, room_id, attendant_id, now)

    def unread_count(self, db: Session, tenant_id: str, room_id: int, attendant_id: int) -> int:
        RoomStore(db).get_room(tenant_id, room_id)
        return read_tracking.unread_count(db, room_id, attendant_id)

    # ────────────────────────────────────────────
    # Attendants & widget
    # ────────────────────────────────────────────

    def get_or_create_attendant(
        self,
        db: Session,
        tenant_id: str,
        user_id: str,
        display_name: Optional[str] = None,
        max_conversations: Optional[int] = None
    ) -> AttendantProfile:
        attendant = assignment.get_attendant_by_user(db, tenant_id, user_id)
        if attendant is None:
            attendant = AttendantProfile(
                tenant_id=tenant_id,
                user_id=str(user_id),
                display_name=display_name or f"Attendant {user_id}",
                max_conversations=max_conversations or DEFAULT_MAX_CONVERSATIONS,
            )
            db.add(attendant)
            db.commit()
            db.refresh(attendant)
            log.info(f"👤 Attendant profile created: {attendant.display_name} (tenant={tenant_id})")
        return attendant

    def update_attendant(
        self,
        db: Session,
        tenant_id: str,
        attendant_id: int,
        status: Optional[str] = None,
        max_conversations: Optional[int] = None,
        display_name: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> AttendantProfile:
        """Presence / capacity update; going online may drain the queue"""
        attendant = assignment.get_attendant(db, tenant_id, attendant_id)
        if status is not None:
            if status not in ATTENDANT_STATUSES:
                raise ValueError(f"Invalid attendant status '{status}'")
            attendant.status = status
        if max_conversations is not None:
            attendant.max_conversations = max_conversations
        if display_name:
            attendant.display_name = display_name
        db.commit()
        db.refresh(attendant)

        log.info(f"Attendant {attendant.id} is {attendant.status} ({attendant.max_conversations} max)")
        if self.hub is not None:
            self.hub.publish_tenant(tenant_id, "attendant_updated", {
                "attendant_id": attendant.id,
                "status": attendant.status,
                "max_conversations": attendant.max_conversations,
            })

        if attendant.status == "online" and ChatConfigLoader(db, tenant_id).is_auto_assignment_enabled():
            assignment.auto_assign_queue(db, tenant_id, now=now, hub=self.hub)
            db.refresh(attendant)
        return attendant

    def widget_state(self, db: Session, tenant_id: str) -> Dict[str, Any]:
        """What the visitor widget shows before a room exists"""
        loader = ChatConfigLoader(db, tenant_id)
        return {
            "tenant_id": tenant_id,
            "outside_hours": loader.is_outside_hours(),
            "welcome_message": loader.get_welcome_message(),
            "outside_hours_message": loader.get_outside_hours_message(),
            "all_busy_message": loader.get_all_busy_message(),
            "attendants_available": bool(assignment.available_candidates(db, tenant_id)),
        }

    def get_visitor(self, db: Session, tenant_id: str, visitor_token: str) -> Optional[Visitor]:
        return RoomStore(db).get_visitor_by_token(tenant_id, visitor_token)
