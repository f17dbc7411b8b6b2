# supportchat/models/read_cursor.py
"""Per-attendant, per-room read watermark"""
from sqlalchemy import Column, Integer, DateTime, ForeignKey, UniqueConstraint
from supportchat.models.base import BaseModel


class ReadCursor(BaseModel):
    __tablename__ = "chat_room_reads"
    __table_args__ = (
        UniqueConstraint('room_id', 'attendant_id', name='uq_room_attendant_read'),
    )

    room_id = Column(Integer, ForeignKey("chat_rooms.id"), index=True, nullable=False)
    attendant_id = Column(Integer, ForeignKey("attendant_profiles.id"), index=True, nullable=False)
    last_read_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<ReadCursor room={self.room_id} attendant={self.attendant_id} at={self.last_read_at}>"
