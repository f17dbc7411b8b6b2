# supportchat/services/room_store.py
"""
Room store - the authoritative record of rooms and messages.

Every room mutation goes through ``apply_transition``: a single conditional
UPDATE (compare-and-swap) whose WHERE clause re-checks the transition's
precondition, optionally followed by an audit message in the same
transaction. Zero affected rows means another actor changed the room first.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from supportchat.core.config import CLAIM_TIMEOUT_MS
from supportchat.core.errors import ConflictError, RoomNotFoundError
from supportchat.core.timezone import utcnow
from supportchat.models.message import ChatMessage
from supportchat.models.room import ChatRoom
from supportchat.models.visitor import Visitor
from supportchat.services.state_machine import RoomStatus, SenderType, OPEN_STATUSES

log = logging.getLogger("supportchat.room_store")

# Postgres error codes raised when statement_timeout / lock_timeout fire
_TIMEOUT_PGCODES = {"57014", "55P03"}


def not_before(column, value: datetime):
    """SQL expression: ``value`` clamped so it is never earlier than ``column``"""
    return case((column > value, column), else_=value)


class RoomStore:
    """Persistence and conditional-mutation primitives for one database session"""

    def __init__(self, db: Session):
        self.db = db

    # ────────────────────────────────────────────
    # Reads
    # ────────────────────────────────────────────

    def get_room(self, tenant_id: str, room_id: int) -> ChatRoom:
        room = self.db.query(ChatRoom).populate_existing().filter(
            ChatRoom.id == room_id,
            ChatRoom.tenant_id == tenant_id
        ).first()
        if not room:
            raise RoomNotFoundError(f"Room {room_id} not found", room_id)
        return room

    def list_rooms(
        self,
        tenant_id: str,
        statuses: Optional[List[str]] = None,
        attendant_id: Optional[int] = None
    ) -> List[ChatRoom]:
        query = self.db.query(ChatRoom).filter(ChatRoom.tenant_id == tenant_id)
        if statuses:
            query = query.filter(ChatRoom.status.in_(statuses))
        if attendant_id is not None:
            query = query.filter(ChatRoom.attendant_id == attendant_id)
        return query.order_by(ChatRoom.started_at.desc(), ChatRoom.id.desc()).all()

    def list_messages(
        self,
        room_id: int,
        include_internal: bool = True,
        since: Optional[datetime] = None
    ) -> List[ChatMessage]:
        """Messages of a room in (created_at, id) order"""
        query = self.db.query(ChatMessage).filter(ChatMessage.room_id == room_id)
        if not include_internal:
            query = query.filter(ChatMessage.is_internal == False)  # noqa: E712
        if since is not None:
            query = query.filter(ChatMessage.created_at > since)
        return query.order_by(ChatMessage.created_at, ChatMessage.id).all()

    def latest_message_at(self, room_id: int) -> Optional[datetime]:
        return self.db.query(func.max(ChatMessage.created_at)).filter(
            ChatMessage.room_id == room_id
        ).scalar()

    def count_open_rooms_for_visitor(self, tenant_id: str, visitor_id: int) -> int:
        return self.db.query(ChatRoom).filter(
            ChatRoom.tenant_id == tenant_id,
            ChatRoom.visitor_id == visitor_id,
            ChatRoom.status.in_(OPEN_STATUSES)
        ).count()

    def count_waiting(self, tenant_id: str) -> int:
        return self.db.query(ChatRoom).filter(
            ChatRoom.tenant_id == tenant_id,
            ChatRoom.status == RoomStatus.WAITING.value
        ).count()

    # ────────────────────────────────────────────
    # Visitors
    # ────────────────────────────────────────────

    def get_visitor_by_token(self, tenant_id: str, visitor_token: str) -> Optional[Visitor]:
        return self.db.query(Visitor).filter(
            Visitor.tenant_id == tenant_id,
            Visitor.visitor_token == visitor_token
        ).first()

    def get_or_create_visitor(self, tenant_id: str, visitor_token: str, **fields) -> Visitor:
        """Return the visitor for a widget token, creating it on first load"""
        visitor = self.get_visitor_by_token(tenant_id, visitor_token)
        if visitor:
            return visitor

        visitor = Visitor(tenant_id=tenant_id, visitor_token=visitor_token, **fields)
        self.db.add(visitor)
        try:
            self.db.commit()
        except IntegrityError:
            # Another request created it between our read and insert
            self.db.rollback()
            visitor = self.get_visitor_by_token(tenant_id, visitor_token)
            if visitor is None:
                raise
            return visitor
        self.db.refresh(visitor)
        log.info(f"👤 Visitor created: tenant={tenant_id} id={visitor.id}")
        return visitor

    def link_contact(
        self,
        visitor: Visitor,
        contact_id: Optional[str],
        company_contact_id: Optional[str] = None
    ) -> Visitor:
        """Attach known-contact links; identity fields stay untouched"""
        if contact_id and visitor.contact_id != contact_id:
            visitor.contact_id = contact_id
        if company_contact_id and visitor.company_contact_id != company_contact_id:
            visitor.company_contact_id = company_contact_id
        self.db.commit()
        self.db.refresh(visitor)
        return visitor

    # ────────────────────────────────────────────
    # Writes
    # ────────────────────────────────────────────

    def insert_room(
        self,
        tenant_id: str,
        visitor_id: int,
        priority: str,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> ChatRoom:
        now = now or utcnow()
        room = ChatRoom(
            tenant_id=tenant_id,
            visitor_id=visitor_id,
            status=RoomStatus.WAITING.value,
            resolution_status="none",
            priority=priority,
            started_at=now,
            attendant_id=None,
            assigned_at=None,
            meta_data=metadata,
        )
        self.db.add(room)
        self.db.commit()
        self.db.refresh(room)
        return room

    def _new_message(
        self,
        room: ChatRoom,
        sender_type: str,
        content: str,
        now: datetime,
        sender_id: Optional[str] = None,
        sender_name: Optional[str] = None,
        is_internal: bool = False,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ChatMessage:
        # Never write a message older than the latest one already in the room
        last = self.latest_message_at(room.id)
        created_at = max(now, last) if last else now

        message = ChatMessage(
            tenant_id=room.tenant_id,
            room_id=room.id,
            sender_type=sender_type,
            sender_id=sender_id,
            sender_name=sender_name,
            content=content or "",
            is_internal=is_internal,
            meta_data=metadata,
            created_at=created_at,
            updated_at=created_at,
        )
        self.db.add(message)
        return message

    def append_message(self, room: ChatRoom, sender_type: str, content: str, now: Optional[datetime] = None, **kwargs) -> ChatMessage:
        """Insert one message and commit"""
        message = self._new_message(room, sender_type, content, now or utcnow(), **kwargs)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(message)
        return message

    def apply_transition(
        self,
        tenant_id: str,
        room_id: int,
        condition,
        values: Dict[Any, Any],
        audit: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        timeout: bool = False
    ) -> tuple[ChatRoom, Optional[ChatMessage]]:
        """
        Conditional update of one room.

        Args:
            condition: WHERE clause re-checking the transition precondition
            values: columns to set
            audit: optional system/internal message written in the same transaction
                   (keys: content, sender_type, sender_id, sender_name, is_internal, metadata)
            timeout: apply the claim statement timeout (PostgreSQL)

        Returns:
            (refreshed room, audit message or None)

        Raises:
            ConflictError: the condition matched zero rows
        """
        now = now or utcnow()
        try:
            if timeout:
                self._apply_statement_timeout()

            affected = self.db.query(ChatRoom).filter(
                ChatRoom.tenant_id == tenant_id,
                condition
            ).update(values, synchronize_session=False)

            if affected == 0:
                self.db.rollback()
                raise ConflictError(f"Room {room_id} changed concurrently; refresh and retry", room_id)

            message = None
            if audit:
                room = self.db.query(ChatRoom).populate_existing().filter(ChatRoom.id == room_id).one()
                audit = dict(audit)
                message = self._new_message(
                    room,
                    audit.pop("sender_type", SenderType.SYSTEM.value),
                    audit.pop("content", ""),
                    now,
                    **audit,
                )
            self.db.commit()
        except OperationalError as e:
            self.db.rollback()
            if getattr(e.orig, "pgcode", None) in _TIMEOUT_PGCODES:
                log.warning(f"⏱️ Conditional update timed out on room {room_id}")
                raise ConflictError(f"Room {room_id} is busy; refresh and retry", room_id) from e
            raise

        if message is not None:
            self.db.refresh(message)
        return self.get_room(tenant_id, room_id), message

    def _apply_statement_timeout(self) -> None:
        if CLAIM_TIMEOUT_MS and self.db.get_bind().dialect.name == "postgresql":
            self.db.execute(text(f"SET LOCAL statement_timeout = {int(CLAIM_TIMEOUT_MS)}"))
