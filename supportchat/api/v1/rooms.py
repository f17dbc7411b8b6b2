# supportchat/api/v1/rooms.py
"""
Room endpoints: lifecycle transitions, messages, CSAT and read cursors.

Staff routes resolve the attendant from the JWT (or dev headers); widget
routes take the tenant from X-Tenant-Id and prove the visitor with the
visitor_token. Transition failures are raised as ChatError subclasses and
mapped to status codes in supportchat.main.
"""
import logging
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from supportchat.api.deps import (
    get_current_attendant, get_optional_attendant, get_service, get_tenant_id, get_widget_tenant_id,
)
from supportchat.db.session import get_db
from supportchat.models.attendant import AttendantProfile
from supportchat.schemas.message import MessageCreate, MessageResponse, ReadCursorResponse, VisitorMessageCreate
from supportchat.schemas.room import (
    AvailabilityResponse, CloseRequest, CsatRequest, RoomCreate, RoomListItem,
    RoomListResponse, RoomResponse, TransferRequest, TransferResponse,
)
from supportchat.services import ChatService
from supportchat.services.assignment import room_availability
from supportchat.services.state_machine import SenderType

router = APIRouter()
log = logging.getLogger("supportchat.api.rooms")


# ────────────────────────────────────────────
# Widget (visitor) routes
# ────────────────────────────────────────────

@router.post("", response_model=RoomResponse, status_code=status.HTTP_201_CREATED)
def create_room(
    data: RoomCreate,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_widget_tenant_id),
    service: ChatService = Depends(get_service)
):
    """Start a conversation (waiting until an attendant claims it)"""
    return service.create_room(
        db,
        tenant_id,
        data.visitor_token,
        name=data.name,
        email=data.email,
        phone=data.phone,
        contact_id=data.contact_id,
        company_contact_id=data.company_contact_id,
        priority=data.priority,
        metadata=data.metadata,
        first_message=data.first_message,
    )


@router.get("/visitor", response_model=List[RoomResponse])
def list_visitor_rooms(
    visitor_token: str = Query(...),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_widget_tenant_id),
    service: ChatService = Depends(get_service)
):
    return service.list_visitor_rooms(db, tenant_id, visitor_token)


@router.post("/{room_id}/visitor-messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
def send_visitor_message(
    room_id: int,
    data: VisitorMessageCreate,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_widget_tenant_id),
    service: ChatService = Depends(get_service)
):
    return service.send_visitor_message(
        db, tenant_id, room_id, data.visitor_token, data.content,
        attachment=data.attachment.model_dump() if data.attachment else None
    )


@router.get("/{room_id}/visitor-messages", response_model=List[MessageResponse])
def list_visitor_messages(
    room_id: int,
    visitor_token: str = Query(...),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_widget_tenant_id),
    service: ChatService = Depends(get_service)
):
    """Public messages of the visitor's own room (internal notes excluded)"""
    service.get_visitor_room(db, tenant_id, room_id, visitor_token)
    return service.list_messages(db, tenant_id, room_id, include_internal=False)


@router.get("/{room_id}/availability", response_model=AvailabilityResponse)
def get_availability(
    room_id: int,
    visitor_token: str = Query(...),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_widget_tenant_id),
    service: ChatService = Depends(get_service)
):
    service.get_visitor_room(db, tenant_id, room_id, visitor_token)
    return room_availability(db, tenant_id, room_id)


@router.post("/{room_id}/csat", response_model=RoomResponse)
def submit_csat(
    room_id: int,
    data: CsatRequest,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_widget_tenant_id),
    service: ChatService = Depends(get_service)
):
    """Rate a closed conversation (once)"""
    return service.submit_csat(db, tenant_id, room_id, data.score, data.comment, visitor_token=data.visitor_token)


# ────────────────────────────────────────────
# Attendant routes
# ────────────────────────────────────────────

@router.get("", response_model=RoomListResponse)
def list_rooms(
    status_filter: Optional[List[str]] = Query(None, alias="status"),
    mine: bool = Query(False, description="Only rooms owned by the calling attendant"),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    attendant: Optional[AttendantProfile] = Depends(get_optional_attendant),
    service: ChatService = Depends(get_service)
):
    """Room list ordered unread-first, then by latest activity"""
    entries = service.list_rooms(
        db,
        tenant_id,
        attendant_id=attendant.id if attendant else None,
        statuses=status_filter,
        mine=mine and attendant is not None,
    )
    return RoomListResponse(
        total=len(entries),
        rooms=[
            RoomListItem(
                room=RoomResponse.model_validate(e.room),
                unread_count=e.unread_count,
                last_message_at=e.last_message_at,
            )
            for e in entries
        ],
    )


@router.get("/{room_id}", response_model=RoomResponse)
def get_room(
    room_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: ChatService = Depends(get_service)
):
    return service.get_room(db, tenant_id, room_id)


@router.get("/{room_id}/messages", response_model=List[MessageResponse])
def list_messages(
    room_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: ChatService = Depends(get_service)
):
    return service.list_messages(db, tenant_id, room_id, include_internal=True)


@router.post("/{room_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
def send_message(
    room_id: int,
    data: MessageCreate,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    attendant: AttendantProfile = Depends(get_current_attendant),
    service: ChatService = Depends(get_service)
):
    """Attendant reply, or internal note when is_internal is set"""
    return service.send_message(
        db,
        tenant_id,
        room_id,
        SenderType.ATTENDANT.value,
        data.content,
        sender_id=str(attendant.id),
        sender_name=attendant.display_name,
        is_internal=data.is_internal,
        attachment=data.attachment.model_dump() if data.attachment else None,
    )


@router.post("/{room_id}/claim", response_model=RoomResponse)
def claim_room(
    room_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    attendant: AttendantProfile = Depends(get_current_attendant),
    service: ChatService = Depends(get_service)
):
    """Take a waiting room; 409 when another attendant got it first"""
    return service.claim_room(db, tenant_id, room_id, attendant.id)


@router.post("/{room_id}/transfer", response_model=TransferResponse)
def transfer_room(
    room_id: int,
    data: TransferRequest,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    attendant: AttendantProfile = Depends(get_current_attendant),
    service: ChatService = Depends(get_service)
):
    room, message = service.transfer_room(
        db, tenant_id, room_id, data.to_attendant_id, from_attendant_id=data.from_attendant_id
    )
    log.info(f"Transfer of room {room_id} requested by attendant {attendant.id}")
    return TransferResponse(room=RoomResponse.model_validate(room), message_id=message.id if message else None)


@router.post("/{room_id}/close", response_model=RoomResponse)
def close_room(
    room_id: int,
    data: CloseRequest,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    attendant: AttendantProfile = Depends(get_current_attendant),
    service: ChatService = Depends(get_service)
):
    return service.close_room(db, tenant_id, room_id, data.resolution_status, note=data.note, closed_by=attendant)


@router.post("/{room_id}/read", response_model=ReadCursorResponse)
def mark_read(
    room_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    attendant: AttendantProfile = Depends(get_current_attendant),
    service: ChatService = Depends(get_service)
):
    cursor = service.mark_read(db, tenant_id, room_id, attendant.id)
    return ReadCursorResponse(
        room_id=cursor.room_id,
        attendant_id=cursor.attendant_id,
        last_read_at=cursor.last_read_at,
        unread_count=service.unread_count(db, tenant_id, room_id, attendant.id),
    )
