# supportchat/core/config_loader.py
"""
Dynamic configuration loader that prioritizes database over .env files.
Resolves tenant-specific chat settings (assignment, capacity, timezone, texts).
"""
from typing import Optional, Dict, Any
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from supportchat.models.tenant_settings import TenantChatSettings
from supportchat.core import config


class ChatConfigLoader:
    """
    Configuration loader with database-first fallback to .env.

    Priority:
    1. Tenant chat settings row from database
    2. Environment variables from .env file

    Usage:
        loader = ChatConfigLoader(db, tenant_id="your-tenant-id")
        tz = loader.get_timezone()
        limit = loader.get_max_rooms_per_visitor()
    """

    def __init__(self, db: Session, tenant_id: str):
        """
        Initialize config loader for a specific tenant.

        Args:
            db: Database session
            tenant_id: Tenant identifier
        """
        self.db = db
        self.tenant_id = tenant_id
        self._settings: Optional[TenantChatSettings] = None
        self._load_tenant_settings()

    def _load_tenant_settings(self):
        """Load tenant settings from database if available"""
        if self.db:
            self._settings = self.db.query(TenantChatSettings).filter(
                TenantChatSettings.tenant_id == self.tenant_id
            ).first()

    def _value(self, attr: str, default):
        value = getattr(self._settings, attr, None) if self._settings else None
        return default if value is None else value

    def get_timezone(self) -> str:
        return self._value("timezone", config.DEFAULT_TIMEZONE)

    def is_auto_assignment_enabled(self) -> bool:
        return bool(self._value("auto_assignment", config.AUTO_ASSIGNMENT_DEFAULT))

    def get_assignment_policy(self) -> str:
        return self._value("assignment_policy", config.ASSIGNMENT_POLICY_DEFAULT)

    def get_max_queue_size(self) -> int:
        """Maximum waiting rooms for the tenant (0 = unlimited)"""
        return int(self._value("max_queue_size", config.DEFAULT_MAX_QUEUE_SIZE))

    def get_max_rooms_per_visitor(self) -> Optional[int]:
        """Concurrent open rooms allowed per visitor; None when multi-conversation is enabled"""
        if self._settings and self._settings.multi_conversation:
            return None
        return int(self._value("max_rooms_per_visitor", config.DEFAULT_MAX_ROOMS_PER_VISITOR))

    def get_welcome_message(self) -> Optional[str]:
        return self._value("welcome_message", None)

    def get_outside_hours_message(self) -> Optional[str]:
        return self._value("outside_hours_message", None)

    def get_all_busy_message(self) -> Optional[str]:
        return self._value("all_busy_message", None)

    def is_outside_hours(self) -> bool:
        """Persisted outside-hours gate, last written by the scheduler"""
        return bool(self._settings and self._settings.outside_hours)

    def has_tenant_settings(self) -> bool:
        return self._settings is not None

    def get_settings_row(self) -> Optional[TenantChatSettings]:
        return self._settings

    def get_all_config(self) -> Dict[str, Any]:
        """All resolved settings as a dictionary (database-first fallback)"""
        return {
            "timezone": self.get_timezone(),
            "auto_assignment": self.is_auto_assignment_enabled(),
            "assignment_policy": self.get_assignment_policy(),
            "max_queue_size": self.get_max_queue_size(),
            "max_rooms_per_visitor": self.get_max_rooms_per_visitor(),
            "welcome_message": self.get_welcome_message(),
            "outside_hours_message": self.get_outside_hours_message(),
            "all_busy_message": self.get_all_busy_message(),
            "outside_hours": self.is_outside_hours(),
            "has_tenant_settings": self.has_tenant_settings(),
        }


# ────────────────────────────────────────────────────────────────────
# Helper Functions (Convenience Methods)
# ────────────────────────────────────────────────────────────────────

def get_chat_config(db: Session, tenant_id: str) -> Dict[str, Any]:
    """Resolved chat configuration for a tenant"""
    return ChatConfigLoader(db, tenant_id).get_all_config()


def get_or_create_tenant_settings(db: Session, tenant_id: str) -> TenantChatSettings:
    """Fetch the tenant settings row, creating an empty one (all fields falling back to .env)"""
    row = db.query(TenantChatSettings).filter(TenantChatSettings.tenant_id == tenant_id).first()
    if row is not None:
        return row

    row = TenantChatSettings(tenant_id=tenant_id)
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Another scheduler or request created it between our read and insert
        db.rollback()
        row = db.query(TenantChatSettings).filter(TenantChatSettings.tenant_id == tenant_id).first()
        if row is None:
            raise
        return row
    db.refresh(row)
    return row
