# supportchat/db/base.py
"""Import all models so Base.metadata knows every table"""
from supportchat.models.base import Base

from supportchat.models.visitor import Visitor
from supportchat.models.attendant import AttendantProfile
from supportchat.models.room import ChatRoom
from supportchat.models.message import ChatMessage
from supportchat.models.read_cursor import ReadCursor
from supportchat.models.business_hours import BusinessHourRule, ChatAutoRule
from supportchat.models.tenant_settings import TenantChatSettings

__all__ = ["Base"]
