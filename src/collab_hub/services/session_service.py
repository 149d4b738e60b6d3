from __future__ import annotations

from typing import Any

from fastapi import HTTPException

from collab_core.errors import RateLimitedError
from collab_core.paths import is_session_id
from collab_hub.admission import AdmissionControl
from collab_hub.sessions.coordinator import ClientConnection
from collab_hub.sessions.registry import SessionRegistry


class SessionService:
    def __init__(self, *, registry: SessionRegistry, admission: AdmissionControl) -> None:
        self._registry = registry
        self._admission = admission

    def create_session(self, repo: Any) -> dict[str, Any]:
        if not self._admission.allow_session_create():
            raise RateLimitedError("Rate limited. Max 5 sessions per minute.")
        return self._registry.create(repo)

    def list_sessions(self) -> list[dict[str, Any]]:
        return self._registry.list()

    def session(self, session_id: str) -> dict[str, Any]:
        info = self._registry.get(session_id)
        if info is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return info

    def end_session(self, session_id: str) -> dict[str, Any]:
        self.session(session_id)
        self._registry.end(session_id)
        return {"ok": True}

    def restart_session(self, session_id: str) -> dict[str, Any]:
        info = self.session(session_id)
        if info["status"] != "active":
            raise HTTPException(status_code=409, detail="Session has ended")
        if not self._registry.restart_process(session_id):
            raise HTTPException(status_code=409, detail="Session has ended")
        return {"ok": True}

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "activeSessions": self._registry.active_count(),
            "maxSessions": self._registry.max_sessions,
        }

    def preview_port(self, session_id: str) -> int | None:
        if not is_session_id(session_id):
            return None
        return self._registry.preview_port(session_id)

    def allow_connection(self, source: str) -> bool:
        return self._admission.allow_connection(source)

    def attach_client(self, session_id: str, source: str) -> ClientConnection | None:
        entry = self._registry.get_internal(session_id)
        if entry is None or not entry.is_active or entry.coordinator is None:
            return None
        return entry.coordinator.open_connection(source)

    def post_client_message(self, session_id: str, connection: ClientConnection, raw: str | bytes) -> None:
        entry = self._registry.get_internal(session_id)
        if entry is not None and entry.coordinator is not None:
            entry.coordinator.post_message(connection, raw)

    def detach_client(self, session_id: str, connection: ClientConnection) -> None:
        entry = self._registry.get_internal(session_id)
        if entry is None or entry.coordinator is None:
            connection.close()
            return
        entry.coordinator.close_connection(connection)

    def shutdown(self) -> int:
        return self._registry.shutdown_all()


__all__ = ["SessionService"]
