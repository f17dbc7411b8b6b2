# supportchat/core/errors.py
"""
Typed outcomes of concurrent chat operations.

None of these are fatal: they are the expected results of racing actors
(consoles, the visitor widget, the scheduler) and are mapped to HTTP
status codes in ``supportchat.main``.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for all chat-core errors"""

    status_code = 400
    code = "chat_error"

    def __init__(self, message: str, room_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.room_id = room_id

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, "room_id": self.room_id}


class StaleStateError(ChatError):
    """A transition was attempted on a room that no longer satisfies its precondition"""

    status_code = 409
    code = "stale_state"


class ConflictError(StaleStateError):
    """A conditional update affected zero rows - another actor won the race.

    Recoverable: refetch the room and retry (possibly against another room).
    """

    status_code = 409
    code = "conflict"


class InvalidTransitionError(StaleStateError):
    """The requested transition is not reachable from the room's current state"""

    status_code = 422
    code = "invalid_transition"


class CapacityExceededError(ChatError):
    """Room creation rejected: visitor or tenant concurrency limit reached"""

    status_code = 429
    code = "capacity_exceeded"


class RoomNotFoundError(ChatError):
    status_code = 404
    code = "room_not_found"


class AttendantNotFoundError(ChatError):
    status_code = 404
    code = "attendant_not_found"


class DeliveryGapError(ChatError):
    """Consumer side: a subscription missed events and must resync from the store"""

    code = "delivery_gap"

    def __init__(self, channel: str, message: Optional[str] = None):
        super().__init__(message or f"Delivery gap on channel {channel}")
        self.channel = channel
