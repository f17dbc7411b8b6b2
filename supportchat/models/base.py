# supportchat/models/base.py
"""
Base model with the columns every chat table shares.
Rows are always scoped by tenant_id.
"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import declarative_base

from supportchat.core.timezone import utcnow

Base = declarative_base()


class BaseModel(Base):
    """
    Abstract base model with common fields.

    Provides:
    - id: Primary key
    - tenant_id: Tenant scope
    - created_at: Set on insert
    - updated_at: Set on insert and on ORM updates; room transitions set it explicitly
    """
    __abstract__ = True

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(100), index=True, nullable=False, default="default")
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
