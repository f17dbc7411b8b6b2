# supportchat/api/v1/queue.py
import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from supportchat.api.deps import get_optional_attendant, get_service, get_tenant_id
from supportchat.db.session import get_db
from supportchat.models.attendant import AttendantProfile
from supportchat.schemas.room import RoomResponse
from supportchat.services import ChatService
from supportchat.services.assignment import attendant_queue, auto_assign_queue, live_queue

router = APIRouter()
log = logging.getLogger("supportchat.api.queue")


@router.get("", response_model=List[RoomResponse])
def get_queue(
    scope: str = Query("unassigned", description="unassigned (waiting rooms) or attendant (rooms awaiting an attendant's reply)"),
    attendant_id: Optional[int] = Query(None, description="Defaults to the calling attendant"),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    attendant: Optional[AttendantProfile] = Depends(get_optional_attendant)
):
    """Live queue, most urgent first then oldest first"""
    if scope == "unassigned":
        return live_queue(db, tenant_id)
    if scope == "attendant":
        target = attendant_id or (attendant.id if attendant else None)
        if target is None:
            raise HTTPException(400, "attendant_id is required")
        return attendant_queue(db, tenant_id, target)
    raise HTTPException(400, "scope must be 'unassigned' or 'attendant'")


@router.post("/auto-assign", response_model=List[RoomResponse])
def run_auto_assignment(
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: ChatService = Depends(get_service)
):
    """Drain the queue through the tenant's assignment policy"""
    assigned = auto_assign_queue(db, tenant_id, hub=service.hub)
    log.info(f"Manual auto-assign run for {tenant_id}: {len(assigned)} room(s)")
    return assigned
