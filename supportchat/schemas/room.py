# supportchat/schemas/room.py
"""
Pydantic schemas for chat rooms.
"""
from pydantic import AliasChoices, BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime

from supportchat.services.state_machine import CSAT_MAX, CSAT_MIN, Priority, ResolutionStatus


class RoomCreate(BaseModel):
    """Widget request to start a conversation"""
    visitor_token: str = Field(..., min_length=1, max_length=100, description="Opaque widget identity")
    name: Optional[str] = Field(None, max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    contact_id: Optional[str] = Field(None, description="Known contact record to link", max_length=100)
    company_contact_id: Optional[str] = Field(None, max_length=100)
    priority: str = Field(Priority.NORMAL.value, description="normal, high or urgent")
    first_message: Optional[str] = Field(None, max_length=4096)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator('priority')
    @classmethod
    def validate_priority(cls, v):
        valid = [p.value for p in Priority]
        if v not in valid:
            raise ValueError(f'priority must be one of: {", ".join(valid)}')
        return v


class TransferRequest(BaseModel):
    to_attendant_id: int
    from_attendant_id: Optional[int] = Field(None, description="Owner the caller expects; defaults to the current owner")


class CloseRequest(BaseModel):
    resolution_status: str = Field(ResolutionStatus.RESOLVED.value, description="resolved, pending or escalated")
    note: Optional[str] = Field(None, max_length=4096, description="Internal closing note")

    @field_validator('resolution_status')
    @classmethod
    def validate_resolution(cls, v):
        valid = [r.value for r in ResolutionStatus if r != ResolutionStatus.NONE]
        if v not in valid:
            raise ValueError(f'resolution_status must be one of: {", ".join(valid)}')
        return v


class CsatRequest(BaseModel):
    score: int = Field(..., ge=CSAT_MIN, le=CSAT_MAX)
    comment: Optional[str] = Field(None, max_length=2000)
    visitor_token: Optional[str] = Field(None, description="Required when submitted from the widget")


class VisitorInfo(BaseModel):
    id: int
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    contact_id: Optional[str] = None
    company_contact_id: Optional[str] = None

    class Config:
        from_attributes = True


class RoomResponse(BaseModel):
    id: int
    tenant_id: str
    status: str
    resolution_status: str
    attendant_id: Optional[int] = None
    visitor_id: int
    priority: str
    started_at: datetime
    assigned_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    csat_score: Optional[int] = None
    csat_comment: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("meta_data", "metadata"))
    visitor: Optional[VisitorInfo] = None

    class Config:
        from_attributes = True


class RoomListItem(BaseModel):
    room: RoomResponse
    unread_count: int
    last_message_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RoomListResponse(BaseModel):
    total: int
    rooms: List[RoomListItem]


class TransferResponse(BaseModel):
    room: RoomResponse
    message_id: Optional[int] = None


class AvailabilityResponse(BaseModel):
    room_id: int
    room_status: str
    assigned: bool
    attendant_name: Optional[str] = None
    all_busy: bool
    outside_hours: bool


class WidgetStateResponse(BaseModel):
    tenant_id: str
    outside_hours: bool
    welcome_message: Optional[str] = None
    outside_hours_message: Optional[str] = None
    all_busy_message: Optional[str] = None
    attendants_available: bool
