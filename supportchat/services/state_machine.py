# supportchat/services/state_machine.py
"""
Room state machine.

    waiting ──claim / transfer──▶ active ──close──▶ closed
                                   │  ▲
                                   └──┘ transfer (owner changes)

``closed`` is terminal; only the CSAT fields may be written afterwards.

Each transition has two guards:
- ``check_*`` validates a freshly read room and raises InvalidTransitionError
  (or ConflictError when another actor visibly won the race);
- ``*_condition`` is the SQL WHERE clause the store uses for the
  compare-and-swap, so the precondition is re-checked atomically at write time.
"""
from enum import Enum
from typing import Optional

from sqlalchemy import and_

from supportchat.core.errors import ConflictError, InvalidTransitionError
from supportchat.models.room import ChatRoom


class RoomStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    CLOSED = "closed"


class ResolutionStatus(str, Enum):
    NONE = "none"
    RESOLVED = "resolved"
    PENDING = "pending"
    ESCALATED = "escalated"


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class SenderType(str, Enum):
    VISITOR = "visitor"
    ATTENDANT = "attendant"
    SYSTEM = "system"


OPEN_STATUSES = (RoomStatus.WAITING.value, RoomStatus.ACTIVE.value)

# Queue order: most urgent first
PRIORITY_RANK = {Priority.URGENT.value: 0, Priority.HIGH.value: 1, Priority.NORMAL.value: 2}

CSAT_MIN, CSAT_MAX = 1, 5


# ────────────────────────────────────────────
# Guards on a freshly read room
# ────────────────────────────────────────────

def check_claim(room: ChatRoom) -> None:
    # a closed room was claimed first, so a late claimer lost the race
    if room.status == RoomStatus.CLOSED.value:
        raise ConflictError(f"Room {room.id} was already claimed and closed", room.id)
    if room.attendant_id is not None or room.status != RoomStatus.WAITING.value:
        raise ConflictError(f"Room {room.id} is already owned by attendant {room.attendant_id}", room.id)


def check_transfer(room: ChatRoom, to_attendant_id: int) -> None:
    if room.status == RoomStatus.CLOSED.value:
        raise InvalidTransitionError(f"Room {room.id} is closed and cannot be transferred", room.id)
    if room.attendant_id == to_attendant_id:
        raise InvalidTransitionError(f"Room {room.id} is already owned by attendant {to_attendant_id}", room.id)


def check_close(room: ChatRoom, resolution_status: str) -> None:
    if room.status == RoomStatus.CLOSED.value:
        raise InvalidTransitionError(f"Room {room.id} is already closed", room.id)
    if room.status != RoomStatus.ACTIVE.value:
        raise InvalidTransitionError(f"Room {room.id} must be claimed before it can be closed", room.id)
    if resolution_status not in {r.value for r in ResolutionStatus} or resolution_status == ResolutionStatus.NONE.value:
        raise InvalidTransitionError(f"Invalid resolution status '{resolution_status}'", room.id)


def check_csat(room: ChatRoom, score: int) -> None:
    if room.status != RoomStatus.CLOSED.value:
        raise InvalidTransitionError(f"Room {room.id} is not closed yet; CSAT is offered after closure", room.id)
    if not CSAT_MIN <= score <= CSAT_MAX:
        raise InvalidTransitionError(f"CSAT score must be between {CSAT_MIN} and {CSAT_MAX}", room.id)
    if room.csat_score is not None:
        raise ConflictError(f"CSAT already submitted for room {room.id}", room.id)


def check_message(room: ChatRoom, is_internal: bool) -> None:
    if room.status == RoomStatus.CLOSED.value and not is_internal:
        raise InvalidTransitionError(f"Room {room.id} is closed; only internal notes may be added", room.id)


# ────────────────────────────────────────────
# Compare-and-swap conditions
# ────────────────────────────────────────────

def claim_condition(room_id: int):
    return and_(
        ChatRoom.id == room_id,
        ChatRoom.attendant_id.is_(None),
        ChatRoom.status == RoomStatus.WAITING.value,
    )


def transfer_condition(room_id: int, previous_attendant_id: Optional[int]):
    # Owner must still be the one named in the audit message
    owner = (
        ChatRoom.attendant_id.is_(None)
        if previous_attendant_id is None
        else ChatRoom.attendant_id == previous_attendant_id
    )
    return and_(ChatRoom.id == room_id, ChatRoom.status != RoomStatus.CLOSED.value, owner)


def close_condition(room_id: int):
    return and_(ChatRoom.id == room_id, ChatRoom.status == RoomStatus.ACTIVE.value)


def csat_condition(room_id: int):
    return and_(
        ChatRoom.id == room_id,
        ChatRoom.status == RoomStatus.CLOSED.value,
        ChatRoom.csat_score.is_(None),
    )


def escalate_condition(room_id: int):
    return and_(
        ChatRoom.id == room_id,
        ChatRoom.status == RoomStatus.WAITING.value,
        ChatRoom.priority != Priority.URGENT.value,
    )


def unchanged_condition(room: ChatRoom):
    """Room still has the status and version (updated_at) it was read with"""
    return and_(
        ChatRoom.id == room.id,
        ChatRoom.status == room.status,
        ChatRoom.updated_at == room.updated_at,
    )


def check_invariants(room: ChatRoom) -> None:
    """Assert the room-level invariants; used by tests and debug tooling."""
    waiting = room.status == RoomStatus.WAITING.value
    if waiting != (room.attendant_id is None) or waiting != (room.assigned_at is None):
        raise AssertionError(f"waiting/attendant/assigned_at mismatch on room {room.id}")
    if room.status == RoomStatus.ACTIVE.value and room.attendant_id is None:
        raise AssertionError(f"active room {room.id} has no attendant")
    stamps = [t for t in (room.started_at, room.assigned_at, room.closed_at) if t is not None]
    if stamps != sorted(stamps):
        raise AssertionError(f"non-monotonic timestamps on room {room.id}")
