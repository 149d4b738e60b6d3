from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock, Timer
from typing import Any, Protocol

from collab_core.errors import RepositoryAcquisitionError, SessionCapacityError, TypedCollabError
from collab_core.logging import session_log_extra
from collab_core.paths import DataPaths
from collab_hub.integrations.repository import AcquiredRepository, parse_repository_reference
from collab_hub.runtime.prompts import PromptDetector
from collab_hub.sessions.chat import SessionChat, now_ms
from collab_hub.sessions.coordinator import ClientConnection, SessionCoordinator
from collab_hub.sessions.scanners import is_preview_port


LOGGER = logging.getLogger("collab_hub.sessions")

SESSION_STATUS_ACTIVE = "active"
SESSION_STATUS_ENDED = "ended"


class AgentProcess(Protocol):
    def write(self, data: str | bytes) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def get_scrollback(self) -> str: ...

    def restart(self) -> None: ...

    def destroy(self) -> None: ...


ProcessFactory = Callable[..., AgentProcess]
RepositoryAcquirer = Callable[[str, Path], AcquiredRepository]
EndHook = Callable[[str], None]


@dataclass(eq=False)
class SessionEntry:
    id: str
    repo: str
    workdir: Path
    chat: SessionChat
    prompts: PromptDetector = field(default_factory=PromptDetector)
    status: str = SESSION_STATUS_ACTIVE
    created_at: int = field(default_factory=now_ms)
    ended_at: int | None = None
    process: AgentProcess | None = None
    coordinator: SessionCoordinator | None = None
    clients: dict[str, ClientConnection] = field(default_factory=dict)
    idle_timer: Timer | None = None
    preview_port: int | None = None
    file_url_warned: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == SESSION_STATUS_ACTIVE

    def public_info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "repo": self.repo,
            "status": self.status,
            "clientCount": len(self.clients),
            "createdAt": self.created_at,
            "endedAt": self.ended_at,
            "url": f"/s/{self.id}",
        }


class SessionRegistry:
    """Owns every session of the process: creation, capacity, idle expiry and teardown."""

    def __init__(
        self,
        *,
        paths: DataPaths,
        process_factory: ProcessFactory,
        acquire_repository: RepositoryAcquirer,
        max_sessions: int,
        idle_timeout_minutes: float = 0,
        server_port: int = 0,
        chat_enabled: bool = True,
        on_end: list[EndHook] | None = None,
    ) -> None:
        self.paths = paths
        self.max_sessions = max_sessions
        self.idle_timeout_minutes = idle_timeout_minutes
        self.server_port = server_port
        self.chat_enabled = chat_enabled
        self._process_factory = process_factory
        self._acquire_repository = acquire_repository
        self._on_end = list(on_end or [])
        self._lock = Lock()
        self._sessions: dict[str, SessionEntry] = {}
        self._pending_creates = 0

    def _active_count_locked(self) -> int:
        return sum(1 for entry in self._sessions.values() if entry.is_active)

    def active_count(self) -> int:
        with self._lock:
            return self._active_count_locked()

    def create(self, repo_url: Any) -> dict[str, Any]:
        parse_repository_reference(repo_url)
        with self._lock:
            if self._active_count_locked() + self._pending_creates >= self.max_sessions:
                raise SessionCapacityError(
                    f"Maximum sessions ({self.max_sessions}) reached. End an existing session first."
                )
            session_id = secrets.token_hex(16)
            while session_id in self._sessions:
                session_id = secrets.token_hex(16)
            self._pending_creates += 1

        try:
            entry = self._build_entry(session_id, repo_url)
        except Exception as exc:
            with self._lock:
                self._pending_creates -= 1
            LOGGER.warning(
                "Session creation failed: %s",
                exc,
                extra=session_log_extra(
                    session_id,
                    component="registry",
                    operation="create",
                    result="failed",
                    error_class=type(exc).__name__,
                ),
            )
            if isinstance(exc, TypedCollabError):
                raise
            raise RepositoryAcquisitionError(f"Session setup failed: {exc}") from exc

        with self._lock:
            self._pending_creates -= 1
            self._sessions[session_id] = entry
        LOGGER.info(
            "Session created",
            extra=session_log_extra(
                session_id, component="registry", operation="create", result="active", repo=entry.repo
            ),
        )
        return entry.public_info()

    def _build_entry(self, session_id: str, repo_url: str) -> SessionEntry:
        self.paths.session_dir(session_id).mkdir(parents=True, exist_ok=True)
        repository = self._acquire_repository(repo_url, self.paths.repos_dir)
        entry = SessionEntry(
            id=session_id,
            repo=repository.label,
            workdir=repository.workdir,
            chat=SessionChat(self.paths.chat_file(session_id)),
        )
        coordinator = SessionCoordinator(
            entry,
            registry=self,
            server_port=self.server_port,
            chat_enabled=self.chat_enabled,
        )
        entry.coordinator = coordinator
        entry.process = self._process_factory(
            repository.workdir,
            on_output=coordinator.post_output,
            on_exit=coordinator.post_exit,
        )
        coordinator.start()
        return entry

    def get(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._sessions.get(session_id)
            return entry.public_info() if entry is not None else None

    def list(self) -> list[dict[str, Any]]:
        with self._lock:
            return [entry.public_info() for entry in self._sessions.values()]

    def get_internal(self, session_id: str) -> SessionEntry | None:
        with self._lock:
            return self._sessions.get(session_id)

    def end(self, session_id: str) -> bool:
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None or not entry.is_active:
                return False
            entry.status = SESSION_STATUS_ENDED
            entry.ended_at = now_ms()
            timer, entry.idle_timer = entry.idle_timer, None
        if timer is not None:
            timer.cancel()

        coordinator = entry.coordinator
        if coordinator is not None:
            coordinator.announce_end()
        for hook in self._on_end:
            hook(session_id)

        if entry.process is not None:
            entry.process.destroy()
        entry.chat.save()

        if coordinator is not None:
            coordinator.close_all_clients()
            coordinator.stop()
        else:
            entry.clients.clear()
        LOGGER.info(
            "Session ended",
            extra=session_log_extra(session_id, component="registry", operation="end", result="ended", repo=entry.repo),
        )
        return True

    def add_client(self, session_id: str, connection: ClientConnection) -> bool:
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None:
                return False
            entry.clients[connection.client_id] = connection
            timer, entry.idle_timer = entry.idle_timer, None
        if timer is not None:
            timer.cancel()
        return True

    def remove_client(self, session_id: str, connection: ClientConnection) -> None:
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None:
                return
            entry.clients.pop(connection.client_id, None)
            if entry.clients or not entry.is_active or self.idle_timeout_minutes <= 0:
                return
            if entry.idle_timer is not None:
                entry.idle_timer.cancel()
            entry.idle_timer = self._start_idle_timer_locked(session_id)

    def _start_idle_timer_locked(self, session_id: str) -> Timer:
        timer = Timer(self.idle_timeout_minutes * 60, lambda: self._end_if_idle(session_id, timer))
        timer.daemon = True
        timer.start()
        return timer

    def _end_if_idle(self, session_id: str, timer: Timer) -> None:
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None or entry.idle_timer is not timer or entry.clients:
                return
            entry.idle_timer = None
        LOGGER.info(
            "Session idle for %smin, ending.",
            self.idle_timeout_minutes,
            extra=session_log_extra(session_id, component="registry", operation="idle_timeout"),
        )
        self.end(session_id)

    def set_preview_port(self, session_id: str, port: Any) -> bool:
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None or not entry.is_active:
                return False
            if port is None:
                entry.preview_port = None
                return True
            if not is_preview_port(port):
                return False
            entry.preview_port = port
            return True

    def preview_port(self, session_id: str) -> int | None:
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None or not entry.is_active:
                return None
            return entry.preview_port

    def restart_process(self, session_id: str) -> bool:
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None or not entry.is_active or entry.coordinator is None:
                return False
            coordinator = entry.coordinator
        coordinator.post_restart()
        return True

    def shutdown_all(self) -> int:
        with self._lock:
            session_ids = [session_id for session_id, entry in self._sessions.items() if entry.is_active]
        return sum(1 for session_id in session_ids if self.end(session_id))
