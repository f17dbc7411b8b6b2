# supportchat/core/config.py
"""
Application configuration - loads from environment variables.
Single source of truth for process-wide settings. Per-tenant chat settings
live in the database and are resolved through ``core.config_loader``.
"""
import os
from urllib.parse import quote_plus
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables FIRST
BASE_DIR = Path(__file__).resolve().parent.parent.parent
env_path = BASE_DIR / '.env'
load_dotenv(dotenv_path=env_path)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() not in ("0", "false", "no")


# ────────────────────────────────────────────
# Logging
# ────────────────────────────────────────────
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR: str = os.getenv("LOG_DIR", str(BASE_DIR / "logs"))

# ────────────────────────────────────────────
# Tenant / Multi-tenant
# ────────────────────────────────────────────
DEFAULT_TENANT_ID: str = os.getenv("TENANT_ID") or os.getenv("DEFAULT_TENANT_ID") or "default"
DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "America/Sao_Paulo")

# ────────────────────────────────────────────
# Chat defaults (overridden per tenant by TenantChatSettings)
# ────────────────────────────────────────────
DEFAULT_MAX_CONVERSATIONS: int = int(os.getenv("DEFAULT_MAX_CONVERSATIONS", "5"))
DEFAULT_MAX_ROOMS_PER_VISITOR: int = int(os.getenv("DEFAULT_MAX_ROOMS_PER_VISITOR", "1"))
DEFAULT_MAX_QUEUE_SIZE: int = int(os.getenv("DEFAULT_MAX_QUEUE_SIZE", "0"))  # 0 = unlimited
AUTO_ASSIGNMENT_DEFAULT: bool = _env_bool("AUTO_ASSIGNMENT_DEFAULT", "false")
ASSIGNMENT_POLICY_DEFAULT: str = os.getenv("ASSIGNMENT_POLICY_DEFAULT", "least_loaded")
MAX_ATTACHMENT_BYTES: int = int(os.getenv("MAX_ATTACHMENT_BYTES", str(10 * 1024 * 1024)))

# ────────────────────────────────────────────
# Realtime / Scheduler
# ────────────────────────────────────────────
FANOUT_BUFFER_SIZE: int = int(os.getenv("FANOUT_BUFFER_SIZE", "200"))
SCHEDULER_ENABLED: bool = _env_bool("SCHEDULER_ENABLED", "true")
SCHEDULER_INTERVAL_SECONDS: float = float(os.getenv("SCHEDULER_INTERVAL_SECONDS", "120"))
CLAIM_TIMEOUT_MS: int = int(os.getenv("CLAIM_TIMEOUT_MS", "5000"))

# ────────────────────────────────────────────
# Database Configuration
# ────────────────────────────────────────────
DB_USER = os.getenv("DB_USER", "postgres")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "supportchat_db")


def build_database_url(user: str, password: str, host: str, port: str, name: str) -> str:
    return f"postgresql+psycopg2://{user}:{quote_plus(password)}@{host}:{port}/{name}"


def with_psycopg2_driver(url: str) -> str:
    """Pin bare postgres URLs to psycopg2, the driver this project ships"""
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+psycopg2://" + url[len(prefix):]
    return url


# Build DATABASE_URL
DATABASE_URL: str = with_psycopg2_driver(
    os.getenv("DATABASE_URL") or build_database_url(DB_USER, DB_PASSWORD, DB_HOST, DB_PORT, DB_NAME)
)

# ────────────────────────────────────────────
# JWT Configuration
# ────────────────────────────────────────────
JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "")
JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

if not JWT_SECRET_KEY:
    import warnings
    warnings.warn("JWT_SECRET_KEY not set!")

# ────────────────────────────────────────────
# CORS
# ────────────────────────────────────────────
ALLOWED_ORIGINS = [
    o.strip() for o in os.getenv(
        "ALLOWED_ORIGINS",
        "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173",
    ).split(",") if o.strip()
]


# ────────────────────────────────────────────
# Settings Class
# ────────────────────────────────────────────
class Settings:
    DATABASE_URL: str = DATABASE_URL
    JWT_SECRET_KEY: str = JWT_SECRET_KEY
    JWT_ALGORITHM: str = JWT_ALGORITHM
    LOG_LEVEL: str = LOG_LEVEL
    LOG_DIR: str = LOG_DIR
    DEFAULT_TENANT_ID: str = DEFAULT_TENANT_ID
    DEFAULT_TIMEZONE: str = DEFAULT_TIMEZONE
    FANOUT_BUFFER_SIZE: int = FANOUT_BUFFER_SIZE
    SCHEDULER_ENABLED: bool = SCHEDULER_ENABLED
    SCHEDULER_INTERVAL_SECONDS: float = SCHEDULER_INTERVAL_SECONDS


settings = Settings()
