# supportchat/models/visitor.py
"""Chat visitor - a non-staff participant, anonymous or linked to a known contact"""
from sqlalchemy import Column, String, JSON, UniqueConstraint
from supportchat.models.base import BaseModel


class Visitor(BaseModel):
    __tablename__ = "chat_visitors"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'visitor_token', name='uq_tenant_visitor_token'),
    )

    # Widget identity, generated client-side on first load
    visitor_token = Column(String(100), index=True, nullable=False)
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)

    # Links to contact/company records owned by the CRM side (no FK enforced)
    contact_id = Column(String(100), nullable=True)
    company_contact_id = Column(String(100), nullable=True)

    meta_data = Column("metadata", JSON, nullable=True)

    def __repr__(self):
        return f"<Visitor {self.name or self.visitor_token}>"
