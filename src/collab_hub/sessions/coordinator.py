from __future__ import annotations

import itertools
import json
import logging
import queue
import re
from dataclasses import dataclass, field
from threading import Lock, RLock, Thread
from typing import TYPE_CHECKING, Any

from collab_core.logging import session_log_extra
from collab_hub.admission import RollingWindowLimiter, chat_limiter
from collab_hub.runtime.prompts import PromptDetector, PromptState, strip_ansi
from collab_hub.runtime.terminal import effective_viewport, is_valid_viewport, queue_put_drop_oldest
from collab_hub.sessions.chat import is_valid_chat_text, now_ms, sanitize_display_name
from collab_hub.sessions.scanners import FILE_URL_HINT, detect_file_url, detect_port

if TYPE_CHECKING:
    from collab_hub.sessions.registry import SessionEntry, SessionRegistry


LOGGER = logging.getLogger("collab_hub.sessions")

CLIENT_OUTBOX_MAX = 2048
MAX_TERMINAL_INPUT = 1024
CLOSE_NORMAL = 1000

EVENT_OUTPUT = "output"
EVENT_EXIT = "exit"
EVENT_CONNECT = "connect"
EVENT_MESSAGE = "message"
EVENT_DISCONNECT = "disconnect"
EVENT_RESTART = "restart"
_EVENT_STOP = "stop"

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_client_ids = itertools.count(1)


@dataclass
class SessionEvent:
    kind: str
    payload: Any = None
    connection: ClientConnection | None = None


@dataclass(eq=False)
class ClientConnection:
    """Server-side record of one connected viewer.

    The outbox carries JSON-ready message dicts; ``None`` tells the transport
    to close the socket.
    """

    source: str
    client_id: str = field(default_factory=lambda: str(next(_client_ids)))
    outbox: queue.Queue[dict[str, Any] | None] = field(
        default_factory=lambda: queue.Queue(maxsize=CLIENT_OUTBOX_MAX)
    )
    size: tuple[int, int] | None = None
    input_buffer: str = ""
    chat_limiter: RollingWindowLimiter = field(default_factory=chat_limiter)
    close_code: int = CLOSE_NORMAL
    closed: bool = False

    def send(self, message: dict[str, Any]) -> None:
        if self.closed:
            return
        queue_put_drop_oldest(self.outbox, message)

    def close(self, code: int = CLOSE_NORMAL) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        queue_put_drop_oldest(self.outbox, None)


class SessionCoordinator:
    """Per-session actor fanning agent output to viewers and arbitrating their input.

    Process callbacks and websocket handlers only enqueue events; a single
    worker thread handles them in arrival order under the session lock.
    """

    def __init__(
        self,
        entry: SessionEntry,
        *,
        registry: SessionRegistry,
        server_port: int = 0,
        chat_enabled: bool = True,
    ) -> None:
        self.entry = entry
        self.registry = registry
        self.server_port = server_port
        self.chat_enabled = chat_enabled
        self.lock = RLock()
        self._inbox: queue.Queue[SessionEvent] = queue.Queue()
        self._inbox_lock = Lock()
        self._worker: Thread | None = None
        self._stopped = False

    # lifecycle

    def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = Thread(
            target=self._run,
            name=f"collab-session-{self.entry.id[:8]}",
            daemon=True,
        )
        self._worker.start()

    def stop(self) -> None:
        with self._inbox_lock:
            if self._stopped:
                return
            self._stopped = True
            self._inbox.put(SessionEvent(_EVENT_STOP))

    def join(self) -> None:
        """Block until every event queued so far has been handled."""
        self._inbox.join()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def post(self, event: SessionEvent) -> bool:
        with self._inbox_lock:
            if self._stopped:
                return False
            self._inbox.put(event)
        return True

    # inbound events

    def post_output(self, chunk: str) -> None:
        self.post(SessionEvent(EVENT_OUTPUT, chunk))

    def post_exit(self, exit_code: int | None, signal_number: int | None) -> None:
        self.post(SessionEvent(EVENT_EXIT, (exit_code, signal_number)))

    def open_connection(self, source: str) -> ClientConnection | None:
        connection = ClientConnection(source=source)
        if not self.post(SessionEvent(EVENT_CONNECT, connection=connection)):
            return None
        return connection

    def post_message(self, connection: ClientConnection, raw: str | bytes) -> None:
        self.post(SessionEvent(EVENT_MESSAGE, raw, connection))

    def close_connection(self, connection: ClientConnection) -> None:
        if not self.post(SessionEvent(EVENT_DISCONNECT, connection=connection)):
            connection.close()

    def post_restart(self) -> None:
        self.post(SessionEvent(EVENT_RESTART))

    # worker

    def _run(self) -> None:
        while True:
            event = self._inbox.get()
            try:
                if event.kind == _EVENT_STOP:
                    return
                with self.lock:
                    self._dispatch(event)
            except Exception:
                LOGGER.exception(
                    "Session event handler failed",
                    extra=session_log_extra(self.entry.id, component="coordinator", operation=event.kind),
                )
            finally:
                self._inbox.task_done()

    def _dispatch(self, event: SessionEvent) -> None:
        if not self.entry.is_active:
            if event.connection is not None:
                event.connection.close()
            return
        if event.kind == EVENT_OUTPUT:
            self._handle_output(event.payload)
        elif event.kind == EVENT_EXIT:
            self._handle_exit(*event.payload)
        elif event.kind == EVENT_CONNECT:
            self._handle_connect(event.connection)
        elif event.kind == EVENT_MESSAGE:
            self._handle_message(event.connection, event.payload)
        elif event.kind == EVENT_DISCONNECT:
            self._handle_disconnect(event.connection)
        elif event.kind == EVENT_RESTART:
            self._handle_restart()

    # fan-out

    def broadcast(self, message: dict[str, Any]) -> None:
        with self.lock:
            for connection in list(self.entry.clients.values()):
                connection.send(message)

    def broadcast_users(self) -> None:
        names = self.entry.chat.unique_names()
        self.broadcast({"type": "users-update", "users": names, "count": len(names)})

    def effective_size(self) -> tuple[int, int]:
        with self.lock:
            sizes = [c.size for c in self.entry.clients.values() if c.size is not None]
        return effective_viewport(sizes)

    def _apply_viewport(self) -> None:
        cols, rows = self.effective_size()
        if self.entry.process is not None:
            self.entry.process.resize(cols, rows)
        self.broadcast({"type": "resize", "cols": cols, "rows": rows})

    def announce_end(self) -> None:
        self.broadcast({"type": "session-ended"})

    def close_all_clients(self) -> None:
        with self.lock:
            for connection in list(self.entry.clients.values()):
                self.entry.chat.remove_user(connection.client_id)
                connection.close(CLOSE_NORMAL)
            self.entry.clients.clear()

    # handlers

    def _handle_output(self, chunk: str) -> None:
        self.broadcast({"type": "terminal-output", "data": chunk})
        self.entry.prompts.feed(chunk)

        if self.entry.preview_port is None:
            port = detect_port(chunk, self.server_port)
            if port is not None and self.registry.set_preview_port(self.entry.id, port):
                LOGGER.info(
                    "Detected dev server on port %s",
                    port,
                    extra=session_log_extra(self.entry.id, component="coordinator", operation="detect_port"),
                )
                self.broadcast({"type": "preview-port-update", "port": port})

        if not self.entry.file_url_warned and detect_file_url(chunk) is not None:
            self.entry.file_url_warned = True
            self.broadcast({"type": "preview-hint", "message": FILE_URL_HINT})

    def _handle_exit(self, exit_code: int | None, signal_number: int | None) -> None:
        reason = f"signal {signal_number}" if signal_number else f"exit code {exit_code}"
        LOGGER.info(
            "Agent process exited (%s)",
            reason,
            extra=session_log_extra(self.entry.id, component="coordinator", operation="process_exit"),
        )
        self.broadcast(
            {
                "type": "terminal-output",
                "data": f"\r\n\r\n[Agent process exited ({reason}). Restart it or end this session.]\r\n",
            }
        )

    def _handle_connect(self, connection: ClientConnection) -> None:
        entry = self.entry
        entry.chat.add_user(connection.client_id)
        if not self.registry.add_client(entry.id, connection):
            entry.chat.remove_user(connection.client_id)
            connection.close()
            return

        connection.send({"type": "session-info", "repo": entry.repo, "chatEnabled": self.chat_enabled})
        scrollback = entry.process.get_scrollback() if entry.process is not None else ""
        if scrollback:
            connection.send({"type": "terminal-output", "data": scrollback})
        connection.send({"type": "chat-history", "messages": entry.chat.history() if self.chat_enabled else []})
        connection.send({"type": "preview-port-update", "port": entry.preview_port})
        self.broadcast_users()
        LOGGER.debug(
            "Client connected",
            extra=session_log_extra(
                entry.id,
                component="coordinator",
                operation="connect",
                client_id=connection.client_id,
            ),
        )

    def _handle_disconnect(self, connection: ClientConnection) -> None:
        entry = self.entry
        connection.close()
        if entry.clients.get(connection.client_id) is not connection:
            return
        entry.chat.remove_user(connection.client_id)
        self.registry.remove_client(entry.id, connection)
        self.broadcast_users()
        self._apply_viewport()
        LOGGER.debug(
            "Client disconnected",
            extra=session_log_extra(
                entry.id,
                component="coordinator",
                operation="disconnect",
                client_id=connection.client_id,
            ),
        )

    def _handle_restart(self) -> None:
        entry = self.entry
        entry.prompts = PromptDetector()
        for connection in entry.clients.values():
            connection.input_buffer = ""
        if entry.process is not None:
            entry.process.restart()
        LOGGER.info(
            "Agent process restarted",
            extra=session_log_extra(entry.id, component="coordinator", operation="restart"),
        )
        self.broadcast({"type": "terminal-output", "data": "\r\n[Agent process restarted.]\r\n"})

    def _handle_message(self, connection: ClientConnection, raw: str | bytes) -> None:
        if self.entry.clients.get(connection.client_id) is not connection:
            return
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return
        if not isinstance(message, dict):
            return

        kind = message.get("type")
        if kind == "terminal-input":
            self._handle_terminal_input(connection, message.get("data"))
        elif kind == "chat-message":
            self._handle_chat(connection, message.get("text"))
        elif kind == "set-name":
            self._handle_set_name(connection, message.get("name"))
        elif kind == "resize":
            self._handle_resize(connection, message.get("cols"), message.get("rows"))
        elif kind == "set-preview-port":
            self._handle_set_preview_port(message)

    def _handle_terminal_input(self, connection: ClientConnection, data: Any) -> None:
        if not isinstance(data, str) or len(data) > MAX_TERMINAL_INPUT:
            return
        if self.entry.process is not None:
            self.entry.process.write(data)

        for char in data:
            if char in "\r\n":
                self._flush_input(connection)
            elif char in "\x7f\b":
                connection.input_buffer = connection.input_buffer[:-1]
            else:
                connection.input_buffer += char
                if len(connection.input_buffer) != 1:
                    continue
                prompt = self.entry.prompts.get_active_prompt()
                if prompt is not None and prompt.accepts_keystroke(char):
                    self._flush_input(connection, prompt)

    def _flush_input(self, connection: ClientConnection, prompt: PromptState | None = None) -> None:
        raw, connection.input_buffer = connection.input_buffer, ""
        text = _CONTROL_CHARS_RE.sub("", strip_ansi(raw)).strip()
        if not text:
            return

        submission: dict[str, Any] = {
            "type": "terminal-submission",
            "name": self.entry.chat.user_name(connection.client_id),
            "text": text,
            "ts": now_ms(),
        }
        active = prompt or self.entry.prompts.get_active_prompt()
        if active is not None:
            submission["promptQuestion"] = active.question
            answer = active.resolve_answer(text)
            if answer is not None:
                submission["selectedOption"] = answer
            self.entry.prompts.clear_prompt()
        self.broadcast(submission)

    def _handle_chat(self, connection: ClientConnection, text: Any) -> None:
        if not self.chat_enabled or not is_valid_chat_text(text):
            return
        if not connection.chat_limiter.allow():
            return
        name = self.entry.chat.user_name(connection.client_id)
        self.broadcast({"type": "chat-message", **self.entry.chat.add_message(name, text)})

    def _handle_set_name(self, connection: ClientConnection, raw_name: Any) -> None:
        name = sanitize_display_name(raw_name)
        if not name:
            return
        if self.entry.chat.set_name(connection.client_id, name):
            self.broadcast_users()

    def _handle_resize(self, connection: ClientConnection, cols: Any, rows: Any) -> None:
        if not is_valid_viewport(cols, rows):
            return
        connection.size = (cols, rows)
        self._apply_viewport()

    def _handle_set_preview_port(self, message: dict[str, Any]) -> None:
        if "port" not in message:
            return
        port = message["port"]
        if self.registry.set_preview_port(self.entry.id, port):
            self.broadcast({"type": "preview-port-update", "port": port})
