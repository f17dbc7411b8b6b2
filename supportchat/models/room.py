# supportchat/models/room.py
"""
Chat room - one visitor conversation.

Status values: waiting, active, closed (see services.state_machine).
Load counters are never stored here or on the attendant; they are derived
from this table on every read.
"""
from sqlalchemy import Column, String, Integer, Text, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import relationship

from supportchat.models.base import BaseModel
from supportchat.core.timezone import utcnow


class ChatRoom(BaseModel):
    __tablename__ = "chat_rooms"

    visitor_id = Column(Integer, ForeignKey("chat_visitors.id"), index=True, nullable=False)
    attendant_id = Column(Integer, ForeignKey("attendant_profiles.id"), index=True, nullable=True)

    status = Column(String(20), nullable=False, default="waiting", index=True)
    resolution_status = Column(String(20), nullable=False, default="none")
    priority = Column(String(20), nullable=False, default="normal")

    started_at = Column(DateTime, nullable=False, default=utcnow)
    assigned_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    csat_score = Column(Integer, nullable=True)
    csat_comment = Column(Text, nullable=True)

    meta_data = Column("metadata", JSON, nullable=True)

    visitor = relationship("Visitor", lazy="joined")
    attendant = relationship("AttendantProfile", lazy="select")

    def __repr__(self):
        return f"<ChatRoom {self.id} {self.status} attendant={self.attendant_id}>"


Index('idx_room_tenant_status', ChatRoom.tenant_id, ChatRoom.status)
