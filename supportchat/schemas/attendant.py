# supportchat/schemas/attendant.py
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime

ATTENDANT_STATUSES = ['online', 'busy', 'offline']


class AttendantCreate(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=100)
    display_name: str = Field(..., min_length=1, max_length=255)
    max_conversations: Optional[int] = Field(None, ge=1, le=100)


class AttendantUpdate(BaseModel):
    """Presence and capacity; load counters are derived and cannot be set"""
    status: Optional[str] = None
    max_conversations: Optional[int] = Field(None, ge=1, le=100)
    display_name: Optional[str] = Field(None, max_length=255)

    @field_validator('status')
    @classmethod
    def validate_status(cls, v):
        if v is not None and v not in ATTENDANT_STATUSES:
            raise ValueError(f'status must be one of: {", ".join(ATTENDANT_STATUSES)}')
        return v


class AttendantResponse(BaseModel):
    id: int
    tenant_id: str
    user_id: str
    display_name: str
    status: str
    max_conversations: int
    created_at: datetime

    class Config:
        from_attributes = True


class AttendantLoadResponse(BaseModel):
    attendant_id: int
    user_id: str
    display_name: str
    status: str
    max_conversations: int
    active_count: int
    waiting_count: int
    capacity_label: str
    available: bool
