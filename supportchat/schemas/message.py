# supportchat/schemas/message.py
"""
Pydantic schemas for chat messages and read cursors.
"""
from pydantic import AliasChoices, BaseModel, Field, field_validator
from typing import Optional, Dict, Any
from datetime import datetime

from supportchat.core.config import MAX_ATTACHMENT_BYTES


# ────────────────────────────────────────────
# Request Schemas (Input)
# ────────────────────────────────────────────

class Attachment(BaseModel):
    """Already-uploaded file referenced by a message"""
    file_url: str = Field(..., description="Public or signed URL of the uploaded file", max_length=2000)
    file_name: Optional[str] = Field(None, max_length=255)
    file_type: Optional[str] = Field(None, description="MIME type", max_length=100)
    file_size: Optional[int] = Field(None, ge=0, description="Size in bytes (max 10 MB)")

    @field_validator('file_size')
    @classmethod
    def validate_size(cls, v):
        if v is not None and v > MAX_ATTACHMENT_BYTES:
            raise ValueError(f'Attachment must be at most {MAX_ATTACHMENT_BYTES // (1024 * 1024)} MB')
        return v


class MessageCreate(BaseModel):
    """Attendant message or internal note"""
    content: str = Field("", description="Message text", max_length=4096)
    is_internal: bool = Field(False, description="Internal note, never shown to the visitor")
    attachment: Optional[Attachment] = Field(None, validate_default=True)

    @field_validator('attachment')
    @classmethod
    def validate_not_empty(cls, v, info):
        if v is None and not (info.data.get('content') or '').strip():
            raise ValueError('Message content or attachment is required')
        return v


class VisitorMessageCreate(BaseModel):
    """Message sent from the widget"""
    visitor_token: str = Field(..., min_length=1, max_length=100)
    content: str = Field("", max_length=4096)
    attachment: Optional[Attachment] = None


# ────────────────────────────────────────────
# Response Schemas (Output)
# ────────────────────────────────────────────

class MessageResponse(BaseModel):
    id: int
    room_id: int
    sender_type: str
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    content: str
    is_internal: bool
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("meta_data", "metadata"))
    created_at: datetime

    class Config:
        from_attributes = True


class ReadCursorResponse(BaseModel):
    room_id: int
    attendant_id: int
    last_read_at: datetime
    unread_count: int = 0

    class Config:
        from_attributes = True
