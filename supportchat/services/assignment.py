# supportchat/services/assignment.py
"""
Queue & assignment engine.

Manual claim is the main path: one conditional UPDATE per attempt, so two
attendants racing for the same waiting room get exactly one winner and one
ConflictError. Auto-assignment is a policy that picks the room's target and
then goes through the very same claim.

Loads (active_count / waiting_count) are always recomputed from the room set.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from supportchat.core.config_loader import ChatConfigLoader, get_or_create_tenant_settings
from supportchat.core.errors import AttendantNotFoundError, ConflictError
from supportchat.core.logging_config import log_transition
from supportchat.core.timezone import utcnow
from supportchat.models.attendant import AttendantProfile
from supportchat.models.message import ChatMessage
from supportchat.models.room import ChatRoom
from supportchat.services.room_store import RoomStore, not_before
from supportchat.services.state_machine import (
    PRIORITY_RANK, RoomStatus, SenderType,
    check_claim, check_transfer, claim_condition, transfer_condition,
)

log = logging.getLogger("supportchat.assignment")

ATTENDANT_ONLINE = "online"


@dataclass
class AttendantLoad:
    attendant: AttendantProfile
    active_count: int = 0
    waiting_count: int = 0

    @property
    def capacity_label(self) -> str:
        return f"{self.active_count}/{self.attendant.max_conversations}"

    @property
    def has_capacity(self) -> bool:
        return self.active_count < self.attendant.max_conversations

    @property
    def is_available(self) -> bool:
        return self.attendant.status == ATTENDANT_ONLINE and self.has_capacity

    def to_dict(self) -> Dict:
        return {
            "attendant_id": self.attendant.id,
            "user_id": self.attendant.user_id,
            "display_name": self.attendant.display_name,
            "status": self.attendant.status,
            "max_conversations": self.attendant.max_conversations,
            "active_count": self.active_count,
            "waiting_count": self.waiting_count,
            "capacity_label": self.capacity_label,
            "available": self.is_available,
        }


# ────────────────────────────────────────────
# Attendants and loads
# ────────────────────────────────────────────

def get_attendant(db: Session, tenant_id: str, attendant_id: int) -> AttendantProfile:
    attendant = db.query(AttendantProfile).filter(
        AttendantProfile.id == attendant_id,
        AttendantProfile.tenant_id == tenant_id
    ).first()
    if not attendant:
        raise AttendantNotFoundError(f"Attendant {attendant_id} not found")
    return attendant


def get_attendant_by_user(db: Session, tenant_id: str, user_id: str) -> Optional[AttendantProfile]:
    return db.query(AttendantProfile).filter(
        AttendantProfile.tenant_id == tenant_id,
        AttendantProfile.user_id == str(user_id)
    ).first()


def awaiting_reply_room_ids(db: Session, room_ids: List[int]) -> List[int]:
    """Rooms whose latest public, non-system message was sent by the visitor"""
    if not room_ids:
        return []

    latest = db.query(func.max(ChatMessage.id).label("message_id")).filter(
        ChatMessage.room_id.in_(room_ids),
        ChatMessage.is_internal == False,  # noqa: E712
        ChatMessage.sender_type != SenderType.SYSTEM.value
    ).group_by(ChatMessage.room_id).subquery()

    rows = db.query(ChatMessage.room_id, ChatMessage.sender_type).join(
        latest, ChatMessage.id == latest.c.message_id
    ).all()
    return [room_id for room_id, sender_type in rows if sender_type == SenderType.VISITOR.value]


def attendant_loads(db: Session, tenant_id: str) -> List[AttendantLoad]:
    attendants = db.query(AttendantProfile).filter(
        AttendantProfile.tenant_id == tenant_id
    ).order_by(AttendantProfile.id).all()
    loads = {a.id: AttendantLoad(attendant=a) for a in attendants}

    active_rooms = db.query(ChatRoom.id, ChatRoom.attendant_id).filter(
        ChatRoom.tenant_id == tenant_id,
        ChatRoom.status == RoomStatus.ACTIVE.value
    ).all()
    owner_by_room = {}
    for room_id, attendant_id in active_rooms:
        owner_by_room[room_id] = attendant_id
        if attendant_id in loads:
            loads[attendant_id].active_count += 1

    for room_id in awaiting_reply_room_ids(db, list(owner_by_room)):
        owner = owner_by_room[room_id]
        if owner in loads:
            loads[owner].waiting_count += 1

    return list(loads.values())


def attendant_load(db: Session, tenant_id: str, attendant_id: int) -> AttendantLoad:
    for load in attendant_loads(db, tenant_id):
        if load.attendant.id == attendant_id:
            return load
    raise AttendantNotFoundError(f"Attendant {attendant_id} not found")


# ────────────────────────────────────────────
# Queue
# ────────────────────────────────────────────

def _priority_order():
    return case(PRIORITY_RANK, value=ChatRoom.priority, else_=len(PRIORITY_RANK))


def live_queue(db: Session, tenant_id: str) -> List[ChatRoom]:
    """Unassigned waiting rooms: most urgent first, then oldest first"""
    return db.query(ChatRoom).filter(
        ChatRoom.tenant_id == tenant_id,
        ChatRoom.status == RoomStatus.WAITING.value
    ).order_by(_priority_order(), ChatRoom.started_at, ChatRoom.id).all()


def attendant_queue(db: Session, tenant_id: str, attendant_id: int) -> List[ChatRoom]:
    """Rooms owned by the attendant that are waiting on their reply"""
    rooms = RoomStore(db).list_rooms(tenant_id, [RoomStatus.ACTIVE.value], attendant_id)
    awaiting = set(awaiting_reply_room_ids(db, [r.id for r in rooms]))
    return [r for r in rooms if r.id in awaiting]


# ────────────────────────────────────────────
# Claim / transfer
# ────────────────────────────────────────────

def claim(
    db: Session,
    tenant_id: str,
    room_id: int,
    attendant: AttendantProfile,
    now: Optional[datetime] = None,
    hub=None,
    source: str = "manual"
) -> Tuple[ChatRoom, Optional[ChatMessage]]:
    """
    Take ownership of a waiting room.

    Raises:
        ConflictError: the room was claimed (and possibly closed) by someone else first
    """
    now = now or utcnow()
    store = RoomStore(db)
    check_claim(store.get_room(tenant_id, room_id))

    room, message = store.apply_transition(
        tenant_id,
        room_id,
        claim_condition(room_id),
        {
            ChatRoom.status: RoomStatus.ACTIVE.value,
            ChatRoom.attendant_id: attendant.id,
            ChatRoom.assigned_at: not_before(ChatRoom.started_at, now),
            ChatRoom.updated_at: now,
        },
        audit={
            "content": f"{attendant.display_name} joined the conversation",
            "metadata": {"event": "claimed", "attendant_id": attendant.id, "source": source},
        },
        now=now,
        timeout=True,
    )

    log.info(f"✅ Room {room_id} claimed by attendant {attendant.id} ({source})")
    log_transition("claim", tenant_id, room_id, attendant_id=attendant.id, source=source)
    if hub is not None:
        hub.publish_transition(room, message)
    return room, message


def transfer(
    db: Session,
    tenant_id: str,
    room_id: int,
    to_attendant_id: int,
    from_attendant_id: Optional[int] = None,
    now: Optional[datetime] = None,
    hub=None
) -> Tuple[ChatRoom, Optional[ChatMessage]]:
    """
    Move a waiting or active room to another attendant.

    ``from_attendant_id`` is the owner the caller believes holds the room;
    if ownership changed meanwhile the transfer is rejected with ConflictError.
    """
    now = now or utcnow()
    store = RoomStore(db)
    room = store.get_room(tenant_id, room_id)
    target = get_attendant(db, tenant_id, to_attendant_id)
    check_transfer(room, target.id)

    previous_id = room.attendant_id
    if from_attendant_id is not None and previous_id != from_attendant_id:
        raise ConflictError(
            f"Room {room_id} is no longer owned by attendant {from_attendant_id}", room_id
        )
    previous_name = room.attendant.display_name if room.attendant else "queue"

    room, message = store.apply_transition(
        tenant_id,
        room_id,
        transfer_condition(room_id, previous_id),
        {
            ChatRoom.status: RoomStatus.ACTIVE.value,
            ChatRoom.attendant_id: target.id,
            ChatRoom.assigned_at: not_before(ChatRoom.started_at, now),
            ChatRoom.updated_at: now,
        },
        audit={
            "content": f"Conversation transferred from {previous_name} to {target.display_name}",
            "metadata": {
                "event": "transferred",
                "from_attendant_id": previous_id,
                "to_attendant_id": target.id,
            },
        },
        now=now,
        timeout=True,
    )

    log.info(f"🔀 Room {room_id} transferred {previous_id} -> {target.id}")
    log_transition("transfer", tenant_id, room_id, from_attendant_id=previous_id, to_attendant_id=target.id)
    if hub is not None:
        hub.publish_transition(room, message)
    return room, message


# ────────────────────────────────────────────
# Auto-assignment policies
# ────────────────────────────────────────────

class AssignmentPolicy:
    """Chooses the attendant for a waiting room among available candidates"""

    name = "base"

    def choose(self, db: Session, tenant_id: str, candidates: List[AttendantLoad], room: ChatRoom) -> Optional[AttendantLoad]:
        raise NotImplementedError

    def on_assigned(self, db: Session, tenant_id: str, attendant: AttendantProfile) -> None:
        pass


class LeastLoadedPolicy(AssignmentPolicy):
    name = "least_loaded"

    def choose(self, db, tenant_id, candidates, room):
        if not candidates:
            return None
        return min(candidates, key=lambda c: (c.active_count, c.waiting_count, c.attendant.id))


class RoundRobinPolicy(AssignmentPolicy):
    """Rotates through candidates by id, remembering the last pick per tenant"""

    name = "round_robin"

    def choose(self, db, tenant_id, candidates, room):
        if not candidates:
            return None
        ordered = sorted(candidates, key=lambda c: c.attendant.id)
        settings = ChatConfigLoader(db, tenant_id).get_settings_row()
        last_id = settings.rr_last_attendant_id if settings else None
        if last_id is not None:
            for candidate in ordered:
                if candidate.attendant.id > last_id:
                    return candidate
        return ordered[0]

    def on_assigned(self, db, tenant_id, attendant):
        settings = get_or_create_tenant_settings(db, tenant_id)
        settings.rr_last_attendant_id = attendant.id
        db.commit()


POLICIES = {
    LeastLoadedPolicy.name: LeastLoadedPolicy,
    RoundRobinPolicy.name: RoundRobinPolicy,
}


def get_policy(name: Optional[str]) -> AssignmentPolicy:
    policy_cls = POLICIES.get(name or "", LeastLoadedPolicy)
    if name and name not in POLICIES:
        log.warning(f"⚠️ Unknown assignment policy '{name}', using least_loaded")
    return policy_cls()


def available_candidates(db: Session, tenant_id: str) -> List[AttendantLoad]:
    """Online attendants below their max_conversations"""
    return [load for load in attendant_loads(db, tenant_id) if load.is_available]


def auto_assign_room(
    db: Session,
    tenant_id: str,
    room_id: int,
    now: Optional[datetime] = None,
    hub=None,
    policy: Optional[AssignmentPolicy] = None
) -> Optional[ChatRoom]:
    """
    Assign one waiting room through the tenant's policy.

    Returns the claimed room, or None when nobody is available, the tenant is
    outside business hours, or another actor claimed the room first.
    """
    loader = ChatConfigLoader(db, tenant_id)
    if loader.is_outside_hours():
        log.debug(f"Tenant {tenant_id} outside hours, room {room_id} stays queued")
        return None

    policy = policy or get_policy(loader.get_assignment_policy())
    room = RoomStore(db).get_room(tenant_id, room_id)
    if room.status != RoomStatus.WAITING.value:
        return None

    choice = policy.choose(db, tenant_id, available_candidates(db, tenant_id), room)
    if choice is None:
        log.info(f"⏳ No available attendant for room {room_id}")
        return None

    try:
        room, _ = claim(db, tenant_id, room_id, choice.attendant, now=now, hub=hub, source=policy.name)
    except ConflictError:
        log.info(f"Room {room_id} was claimed before auto-assignment")
        return None

    policy.on_assigned(db, tenant_id, choice.attendant)
    return room


def auto_assign_queue(
    db: Session,
    tenant_id: str,
    now: Optional[datetime] = None,
    hub=None
) -> List[ChatRoom]:
    """Drain the live queue in order while any attendant has capacity"""
    loader = ChatConfigLoader(db, tenant_id)
    if loader.is_outside_hours():
        return []

    policy = get_policy(loader.get_assignment_policy())
    assigned = []
    for room in live_queue(db, tenant_id):
        if not available_candidates(db, tenant_id):
            break
        result = auto_assign_room(db, tenant_id, room.id, now=now, hub=hub, policy=policy)
        if result is not None:
            assigned.append(result)

    if assigned:
        log.info(f"📥 Auto-assigned {len(assigned)} room(s) for tenant {tenant_id}")
    return assigned


def room_availability(db: Session, tenant_id: str, room_id: int) -> Dict:
    """What the visitor widget should show for a room"""
    room = RoomStore(db).get_room(tenant_id, room_id)
    loader = ChatConfigLoader(db, tenant_id)
    assigned = room.attendant_id is not None
    return {
        "room_id": room.id,
        "room_status": room.status,
        "assigned": assigned,
        "attendant_name": room.attendant.display_name if assigned and room.attendant else None,
        "all_busy": room.status == RoomStatus.WAITING.value and not available_candidates(db, tenant_id),
        "outside_hours": loader.is_outside_hours(),
    }
