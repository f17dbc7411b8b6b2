# supportchat/models/attendant.py
"""Attendant profile - a staff member's chat identity and presence"""
from sqlalchemy import Column, String, Integer, UniqueConstraint
from supportchat.models.base import BaseModel


class AttendantProfile(BaseModel):
    __tablename__ = "attendant_profiles"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'user_id', name='uq_tenant_attendant_user'),
    )

    user_id = Column(String(100), index=True, nullable=False)
    display_name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="offline")  # 'online', 'busy', 'offline'
    max_conversations = Column(Integer, nullable=False, default=5)

    def __repr__(self):
        return f"<AttendantProfile {self.display_name} ({self.status})>"
