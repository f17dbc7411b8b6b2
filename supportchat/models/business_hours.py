# supportchat/models/business_hours.py
"""
Business hours and time-based auto-rules evaluated by the scheduler.
"""
from sqlalchemy import Column, String, Integer, Boolean, Text, Time, UniqueConstraint
from supportchat.models.base import BaseModel


class BusinessHourRule(BaseModel):
    """Opening window for one weekday (0 = Monday ... 6 = Sunday)"""
    __tablename__ = "chat_business_hours"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'day_of_week', name='uq_tenant_weekday'),
    )

    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<BusinessHourRule day={self.day_of_week} {self.start_time}-{self.end_time}>"


class ChatAutoRule(BaseModel):
    """
    Time-based rule applied to open rooms.

    rule_type: inactivity_warning, inactivity_warning_2, auto_close,
    attendant_absence, waiting_escalation
    """
    __tablename__ = "chat_auto_rules"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'rule_type', name='uq_tenant_rule_type'),
    )

    rule_type = Column(String(40), nullable=False)
    trigger_minutes = Column(Integer, nullable=False)
    message_content = Column(Text, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<ChatAutoRule {self.rule_type} after {self.trigger_minutes}m>"
