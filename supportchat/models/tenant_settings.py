# supportchat/models/tenant_settings.py
"""
Tenant chat settings. Overrides the process-wide defaults in core.config
when a row exists (see core.config_loader).
"""
from sqlalchemy import Column, String, Text, DateTime, Boolean, Integer, UniqueConstraint
from supportchat.models.base import BaseModel


class TenantChatSettings(BaseModel):
    __tablename__ = "chat_settings"
    __table_args__ = (
        UniqueConstraint('tenant_id', name='uq_chat_settings_tenant'),
    )

    timezone = Column(String(64), nullable=True)

    # Assignment
    auto_assignment = Column(Boolean, nullable=True)
    assignment_policy = Column(String(30), nullable=True)  # 'least_loaded' or 'round_robin'
    rr_last_attendant_id = Column(Integer, nullable=True)

    # Capacity
    max_queue_size = Column(Integer, nullable=True)
    max_rooms_per_visitor = Column(Integer, nullable=True)
    multi_conversation = Column(Boolean, nullable=False, default=False)

    # Visitor-facing texts
    welcome_message = Column(Text, nullable=True)
    outside_hours_message = Column(Text, nullable=True)
    all_busy_message = Column(Text, nullable=True)

    # Outside-hours gate, written by the scheduler
    outside_hours = Column(Boolean, nullable=False, default=False)
    outside_hours_changed_at = Column(DateTime, nullable=True)

    # Earliest change made by a scheduler tick that had no hub to publish through
    unpublished_since = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<TenantChatSettings tenant_id={self.tenant_id}>"
