# supportchat/db/session.py
"""
Database session management.
Provides database connections for FastAPI, background tasks and scripts.
"""
import logging
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from contextlib import contextmanager

from supportchat.core.config import DATABASE_URL

log = logging.getLogger("supportchat.database")


def build_engine(url: str):
    """Create an engine; SQLite (development/tests) gets a single shared connection."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool if url in ("sqlite://", "sqlite:///:memory:") else None,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before using
        echo=False  # Set to True for SQL debugging
    )


# ────────────────────────────────────────────
# SQLAlchemy Engine
# ────────────────────────────────────────────
engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ────────────────────────────────────────────
# FastAPI Dependency
# ────────────────────────────────────────────
def get_db() -> Session:
    """
    FastAPI dependency for database sessions.

    Usage:
        @router.get("/rooms")
        def list_rooms(db: Session = Depends(get_db)):
            return db.query(ChatRoom).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ────────────────────────────────────────────
# Context Manager
# ────────────────────────────────────────────
@contextmanager
def get_db_session():
    """
    Context manager for database sessions (scheduler ticks, scripts).

    Usage:
        with get_db_session() as db:
            evaluate_business_rules(db, tenant_id, now)
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ────────────────────────────────────────────
# Database Utilities
# ────────────────────────────────────────────
def test_db_connection() -> bool:
    """Test database connection"""
    try:
        with get_db_session() as db:
            db.execute(text("SELECT 1"))
        log.info("✅ Database connection successful")
        return True
    except Exception as e:
        log.error(f"❌ Database connection failed: {e}")
        return False


def init_db(bind=None):
    """
    Initialize database tables.
    This will create all tables defined in models.
    """
    from supportchat.db.base import Base
    try:
        Base.metadata.create_all(bind=bind or engine)
        log.info("✅ Database tables initialized")
    except Exception as e:
        log.error(f"❌ Failed to initialize database: {e}")
        raise
