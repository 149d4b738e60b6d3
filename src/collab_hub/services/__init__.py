"""Collab Hub service modules."""

__all__ = [
    "session_service",
]
