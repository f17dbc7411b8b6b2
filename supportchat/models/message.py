# supportchat/models/message.py
"""
Chat messages. Rows are immutable once written.
Ordering key is (room_id, created_at) with the autoincrement id as tie-breaker.
"""
from sqlalchemy import Column, String, Text, Boolean, Integer, JSON, ForeignKey, Index
from supportchat.models.base import BaseModel


class ChatMessage(BaseModel):
    __tablename__ = "chat_messages"

    room_id = Column(Integer, ForeignKey("chat_rooms.id"), nullable=False)
    sender_type = Column(String(20), nullable=False)  # 'visitor', 'attendant' or 'system'
    sender_id = Column(String(100), nullable=True)
    sender_name = Column(String(255), nullable=True)
    content = Column(Text, nullable=False, default="")
    is_internal = Column(Boolean, nullable=False, default=False)
    meta_data = Column("metadata", JSON, nullable=True)  # attachment, auto_rule, event

    def __repr__(self):
        return f"<ChatMessage {self.id} room={self.room_id} {self.sender_type}>"


Index('idx_message_room_created', ChatMessage.room_id, ChatMessage.created_at, ChatMessage.id)
