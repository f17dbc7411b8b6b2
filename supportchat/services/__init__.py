# supportchat/services/__init__.py
"""
Service layer initialization.
Provides singleton instances of services.
"""
from supportchat.services.chat_service import ChatService
from supportchat.ws.manager import RealtimeHub, realtime_hub

# Global hub instance (replaceable in tests)
_hub: RealtimeHub = realtime_hub


def set_realtime_hub(hub: RealtimeHub):
    """Set global fan-out hub instance"""
    global _hub
    _hub = hub


def get_realtime_hub() -> RealtimeHub:
    """Get global fan-out hub instance"""
    return _hub


def get_chat_service() -> ChatService:
    """Get ChatService instance bound to the current hub"""
    return ChatService(_hub)


__all__ = [
    'ChatService',
    'set_realtime_hub',
    'get_realtime_hub',
    'get_chat_service'
]
