from collab_hub.sessions.coordinator import ClientConnection, SessionCoordinator
from collab_hub.sessions.registry import (
    SESSION_STATUS_ACTIVE,
    SESSION_STATUS_ENDED,
    SessionEntry,
    SessionRegistry,
)

__all__ = [
    "ClientConnection",
    "SESSION_STATUS_ACTIVE",
    "SESSION_STATUS_ENDED",
    "SessionCoordinator",
    "SessionEntry",
    "SessionRegistry",
]
