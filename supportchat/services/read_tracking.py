# supportchat/services/read_tracking.py
"""
Read cursors and unread counts.

A cursor is a per-(room, attendant) watermark that only ever moves forward.
Unread = public visitor messages created after the watermark. Counts are
recomputed on every room-list fetch; nothing is cached server-side.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supportchat.core.timezone import EPOCH, utcnow
from supportchat.models.message import ChatMessage
from supportchat.models.read_cursor import ReadCursor
from supportchat.models.room import ChatRoom
from supportchat.services.state_machine import SenderType

log = logging.getLogger("supportchat.read_tracking")


@dataclass
class RoomListEntry:
    room: ChatRoom
    unread_count: int
    last_message_at: Optional[datetime]

    @property
    def activity_at(self) -> datetime:
        return self.last_message_at or self.room.started_at or EPOCH


def _cursor_query(db: Session, room_id: int, attendant_id: int):
    return db.query(ReadCursor).filter(
        ReadCursor.room_id == room_id,
        ReadCursor.attendant_id == attendant_id
    )


def _advance(db: Session, room_id: int, attendant_id: int, now: datetime) -> int:
    # Conditional on the stored value being older, so the cursor never moves back
    return _cursor_query(db, room_id, attendant_id).filter(
        ReadCursor.last_read_at < now
    ).update({ReadCursor.last_read_at: now, ReadCursor.updated_at: now}, synchronize_session=False)


def mark_read(
    db: Session,
    tenant_id: str,
    room_id: int,
    attendant_id: int,
    now: Optional[datetime] = None
) -> ReadCursor:
    """
    Move the attendant's read cursor for a room to ``now``.

    Upsert: advance an existing cursor if it is older than ``now``, otherwise
    insert one. A concurrent insert of the same cursor is resolved by retrying
    the conditional advance.
    """
    now = now or utcnow()

    if _advance(db, room_id, attendant_id, now) == 0 and _cursor_query(db, room_id, attendant_id).first() is None:
        db.add(ReadCursor(tenant_id=tenant_id, room_id=room_id, attendant_id=attendant_id, last_read_at=now))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            log.debug(f"Read cursor for room {room_id} created concurrently; advancing instead")
            _advance(db, room_id, attendant_id, now)
            db.commit()
    else:
        db.commit()

    return _cursor_query(db, room_id, attendant_id).populate_existing().one()


def get_last_read_at(db: Session, room_id: int, attendant_id: int) -> datetime:
    cursor = _cursor_query(db, room_id, attendant_id).first()
    return cursor.last_read_at if cursor else EPOCH


def _unread_filter():
    return and_(
        ChatMessage.sender_type == SenderType.VISITOR.value,
        ChatMessage.is_internal == False,  # noqa: E712
    )


def unread_count(db: Session, room_id: int, attendant_id: int) -> int:
    last_read_at = get_last_read_at(db, room_id, attendant_id)
    return db.query(func.count(ChatMessage.id)).filter(
        ChatMessage.room_id == room_id,
        _unread_filter(),
        ChatMessage.created_at > last_read_at
    ).scalar() or 0


def unread_counts(db: Session, room_ids: Iterable[int], attendant_id: int) -> Dict[int, int]:
    """Unread counts for many rooms in one grouped query (missing rooms count 0)"""
    room_ids = list(room_ids)
    if not room_ids:
        return {}

    rows = db.query(ChatMessage.room_id, func.count(ChatMessage.id)).outerjoin(
        ReadCursor,
        and_(ReadCursor.room_id == ChatMessage.room_id, ReadCursor.attendant_id == attendant_id)
    ).filter(
        ChatMessage.room_id.in_(room_ids),
        _unread_filter(),
        ChatMessage.created_at > func.coalesce(ReadCursor.last_read_at, EPOCH)
    ).group_by(ChatMessage.room_id).all()

    counts = {room_id: 0 for room_id in room_ids}
    counts.update({room_id: count for room_id, count in rows})
    return counts


def last_message_times(db: Session, room_ids: Iterable[int]) -> Dict[int, datetime]:
    room_ids = list(room_ids)
    if not room_ids:
        return {}
    rows = db.query(ChatMessage.room_id, func.max(ChatMessage.created_at)).filter(
        ChatMessage.room_id.in_(room_ids)
    ).group_by(ChatMessage.room_id).all()
    return dict(rows)


def sort_room_list(entries: List[RoomListEntry]) -> List[RoomListEntry]:
    """Rooms with unread messages first, then most recent activity first"""
    ordered = sorted(entries, key=lambda e: (e.activity_at, e.room.id), reverse=True)
    # stable sort keeps the recency order inside each group
    return sorted(ordered, key=lambda e: e.unread_count == 0)


def build_room_list(db: Session, rooms: List[ChatRoom], attendant_id: Optional[int]) -> List[RoomListEntry]:
    """Attach unread counts for ``attendant_id`` and order the list for the console"""
    room_ids = [room.id for room in rooms]
    counts = unread_counts(db, room_ids, attendant_id) if attendant_id is not None else {}
    last_times = last_message_times(db, room_ids)
    entries = [
        RoomListEntry(room=room, unread_count=counts.get(room.id, 0), last_message_at=last_times.get(room.id))
        for room in rooms
    ]
    return sort_room_list(entries)
