# supportchat/api/v1/attendants.py
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List

from supportchat.api.deps import get_current_attendant, get_service, get_tenant_id
from supportchat.db.session import get_db
from supportchat.models.attendant import AttendantProfile
from supportchat.schemas.attendant import (
    AttendantCreate, AttendantLoadResponse, AttendantResponse, AttendantUpdate,
)
from supportchat.services import ChatService
from supportchat.services.assignment import attendant_load, attendant_loads, get_attendant_by_user

router = APIRouter()
log = logging.getLogger("supportchat.api.attendants")


@router.get("", response_model=List[AttendantLoadResponse])
def list_attendants(
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id)
):
    """Attendants with their derived load (active/max)"""
    return [load.to_dict() for load in attendant_loads(db, tenant_id)]


@router.post("", response_model=AttendantResponse, status_code=status.HTTP_201_CREATED)
def create_attendant(
    data: AttendantCreate,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: ChatService = Depends(get_service)
):
    if get_attendant_by_user(db, tenant_id, data.user_id):
        raise HTTPException(400, "Attendant profile exists")
    return service.get_or_create_attendant(
        db, tenant_id, data.user_id, display_name=data.display_name, max_conversations=data.max_conversations
    )


@router.get("/me", response_model=AttendantLoadResponse)
def get_me(
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    attendant: AttendantProfile = Depends(get_current_attendant)
):
    return attendant_load(db, tenant_id, attendant.id).to_dict()


@router.patch("/{attendant_id}", response_model=AttendantResponse)
def update_attendant(
    attendant_id: int,
    data: AttendantUpdate,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: ChatService = Depends(get_service)
):
    """Presence / capacity update"""
    return service.update_attendant(
        db, tenant_id, attendant_id,
        status=data.status,
        max_conversations=data.max_conversations,
        display_name=data.display_name,
    )
