# supportchat/core/logging_config.py
"""
Logging configuration for the chat core.
Console output plus rotating files; accepted room transitions are also
written to a dedicated audit log (chat_events.log).
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from supportchat.core.config import LOG_DIR, LOG_LEVEL

CHAT_EVENTS_LOGGER = "chat_events"


class ColoredFormatter(logging.Formatter):
    """Colored console formatter for better readability"""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record):
        # work on a copy so file handlers keep the plain level name
        record = logging.makeLogRecord(record.__dict__)
        log_color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        record.levelname = f"{log_color}{record.levelname}{self.COLORS['RESET']}"
        return super().format(record)


def _rotating(path: Path, level: int, fmt: str, max_mb: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=5,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt='%Y-%m-%d %H:%M:%S'))
    return handler


def setup_logging(app_name: str = "supportchat", level: str = LOG_LEVEL, log_dir: Optional[str] = None):
    """
    Setup logging with console and file handlers.

    Creates three log files:
    - error.log: Only ERROR and CRITICAL messages
    - debug.log: All DEBUG and above messages
    - chat_events.log: Accepted room transitions (claim, transfer, close, csat, auto-rules)
    """
    logs_dir = Path(log_dir or LOG_DIR)
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # ═══════════════════════════════════════════════════════════
    # Console Handler - with colors
    # ═══════════════════════════════════════════════════════════
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    console_handler.setFormatter(ColoredFormatter('%(levelname)s | %(name)s | %(message)s'))
    root_logger.addHandler(console_handler)

    root_logger.addHandler(_rotating(
        logs_dir / "error.log",
        logging.ERROR,
        '%(asctime)s | %(levelname)s | %(name)s | %(filename)s:%(lineno)d | %(message)s',
        10,
    ))
    root_logger.addHandler(_rotating(
        logs_dir / "debug.log",
        logging.DEBUG,
        '%(asctime)s | %(levelname)-8s | %(name)-30s | %(filename)s:%(lineno)d | %(message)s',
        20,
    ))

    # ═══════════════════════════════════════════════════════════
    # Chat events audit log - only attached to the audit logger
    # ═══════════════════════════════════════════════════════════
    events_logger = logging.getLogger(CHAT_EVENTS_LOGGER)
    for handler in events_logger.handlers[:]:
        events_logger.removeHandler(handler)
    events_logger.addHandler(_rotating(
        logs_dir / "chat_events.log",
        logging.INFO,
        '%(asctime)s | %(message)s',
        20,
    ))
    events_logger.setLevel(logging.INFO)
    events_logger.propagate = True  # Also send to root handlers

    logger = logging.getLogger(__name__)
    logger.info(f"{'='*60}")
    logger.info(f"Logging initialized for {app_name}")
    logger.info(f"Log directory: {logs_dir}")
    logger.info(f"{'='*60}")

    return root_logger


def get_events_logger() -> logging.Logger:
    """Get the audit logger for room transitions"""
    return logging.getLogger(CHAT_EVENTS_LOGGER)


def log_transition(action: str, tenant_id: str, room_id: Optional[int] = None, **fields) -> None:
    """Write one accepted transition to the audit log as key=value pairs"""
    scope = f"tenant={tenant_id}" if room_id is None else f"tenant={tenant_id} room={room_id}"
    details = " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
    get_events_logger().info(f"{action} | {scope} {details}".rstrip())
