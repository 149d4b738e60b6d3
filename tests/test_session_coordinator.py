from __future__ import annotations

import json
from typing import Any

import pytest

from collab_hub.sessions.coordinator import ClientConnection
from collab_hub.sessions.scanners import FILE_URL_HINT

from conftest import drain, messages_of

REPO = "https://github.com/acme/widgets"


class SessionHarness:
    def __init__(self, registry, process_factory) -> None:
        self.registry = registry
        self.session_id = registry.create(REPO)["id"]
        self.entry = registry.get_internal(self.session_id)
        self.coordinator = self.entry.coordinator
        self.process = process_factory.last

    def connect(self, *, keep_catch_up: bool = False) -> ClientConnection | tuple[ClientConnection, list]:
        connection = self.coordinator.open_connection("127.0.0.1")
        self.coordinator.join()
        catch_up = drain(connection.outbox)
        self.drain_all()
        if keep_catch_up:
            return connection, catch_up
        return connection

    def send(self, connection: ClientConnection, payload: Any) -> None:
        raw = payload if isinstance(payload, str) else json.dumps(payload)
        self.coordinator.post_message(connection, raw)
        self.coordinator.join()

    def emit(self, chunk: str) -> None:
        self.process.emit(chunk)
        self.coordinator.join()

    def drain_all(self) -> None:
        for connection in list(self.entry.clients.values()):
            drain(connection.outbox)


@pytest.fixture
def harness(make_registry, process_factory) -> SessionHarness:
    return SessionHarness(make_registry(), process_factory)


def test_connect_sends_idempotent_catch_up(harness: SessionHarness) -> None:
    harness.emit("welcome\r\n")
    harness.registry.set_preview_port(harness.session_id, 3000)
    harness.entry.chat.add_message("User 9", "earlier")

    for _ in range(2):
        _connection, catch_up = harness.connect(keep_catch_up=True)
        kinds = [message["type"] for message in catch_up]
        assert kinds == ["session-info", "terminal-output", "chat-history", "preview-port-update", "users-update"]
        assert catch_up[0] == {"type": "session-info", "repo": "acme/widgets", "chatEnabled": True}
        assert catch_up[1]["data"] == "welcome\r\n"
        assert [message["text"] for message in catch_up[2]["messages"]] == ["earlier"]
        assert catch_up[3]["port"] == 3000


def test_empty_scrollback_is_not_sent(harness: SessionHarness) -> None:
    _connection, catch_up = harness.connect(keep_catch_up=True)

    assert messages_of(catch_up, "terminal-output") == []
    assert catch_up[-1] == {"type": "users-update", "users": ["User 1"], "count": 1}


def test_output_is_fanned_out_verbatim(harness: SessionHarness) -> None:
    first = harness.connect()
    second = harness.connect()
    harness.drain_all()

    harness.emit("\x1b[32mok\x1b[0m\r\n")

    expected = [{"type": "terminal-output", "data": "\x1b[32mok\x1b[0m\r\n"}]
    assert drain(first.outbox) == expected
    assert drain(second.outbox) == expected


def test_input_is_written_raw_and_submitted_on_enter(harness: SessionHarness) -> None:
    connection = harness.connect()

    harness.send(connection, {"type": "terminal-input", "data": "helo\x7flo"})
    harness.send(connection, {"type": "terminal-input", "data": " world\r"})

    assert harness.process.writes == ["helo\x7flo", " world\r"]
    submissions = messages_of(drain(connection.outbox), "terminal-submission")
    assert len(submissions) == 1
    assert submissions[0]["name"] == "User 1"
    assert submissions[0]["text"] == "hello world"
    assert isinstance(submissions[0]["ts"], int)
    assert "promptQuestion" not in submissions[0]


def test_escape_sequences_are_stripped_from_submissions(harness: SessionHarness) -> None:
    connection = harness.connect()

    harness.send(connection, {"type": "terminal-input", "data": "\x1b[Afoo\t\r"})
    harness.send(connection, {"type": "terminal-input", "data": "   \r"})

    submissions = messages_of(drain(connection.outbox), "terminal-submission")
    assert [submission["text"] for submission in submissions] == ["foo"]


def test_yes_no_prompt_auto_flushes_single_keystroke(harness: SessionHarness) -> None:
    connection = harness.connect()
    harness.emit("? Allow edit to file.py? (Y/n) ")
    drain(connection.outbox)

    harness.send(connection, {"type": "terminal-input", "data": "y"})

    submissions = messages_of(drain(connection.outbox), "terminal-submission")
    assert len(submissions) == 1
    assert submissions[0]["text"] == "y"
    assert submissions[0]["promptQuestion"] == "Allow edit to file.py?"
    assert submissions[0]["selectedOption"] == "Yes"
    assert harness.entry.prompts.get_active_prompt() is None

    harness.send(connection, {"type": "terminal-input", "data": "\r"})
    assert messages_of(drain(connection.outbox), "terminal-submission") == []
    assert harness.process.writes == ["y", "\r"]


def test_first_keystroke_answers_prompt_and_rest_is_plain_input(harness: SessionHarness) -> None:
    connection = harness.connect()
    harness.emit("> Continue? (y/N)")

    harness.send(connection, {"type": "terminal-input", "data": "Nope\r"})

    submissions = messages_of(drain(connection.outbox), "terminal-submission")
    assert [submission["text"] for submission in submissions] == ["N", "ope"]
    assert submissions[0]["promptQuestion"] == "Continue?"
    assert submissions[0]["selectedOption"] == "No"
    assert "promptQuestion" not in submissions[1]


def test_numbered_prompt_auto_flushes_matching_option(harness: SessionHarness) -> None:
    connection = harness.connect()
    harness.emit("? Pick one:\n  1. Apply it\n  2. Skip it\n")

    harness.send(connection, {"type": "terminal-input", "data": "2"})

    submissions = messages_of(drain(connection.outbox), "terminal-submission")
    assert submissions == [
        {
            "type": "terminal-submission",
            "name": "User 1",
            "text": "2",
            "ts": submissions[0]["ts"],
            "promptQuestion": "Pick one",
            "selectedOption": "Skip it",
        }
    ]


def test_numbered_prompt_without_matching_option_omits_answer(harness: SessionHarness) -> None:
    connection = harness.connect()
    harness.emit("? Pick one:\n  1. Apply it\n  2. Skip it\n")

    harness.send(connection, {"type": "terminal-input", "data": "7"})

    submission = messages_of(drain(connection.outbox), "terminal-submission")[0]
    assert submission["promptQuestion"] == "Pick one"
    assert "selectedOption" not in submission


def test_stale_prompt_does_not_auto_flush(harness: SessionHarness) -> None:
    connection = harness.connect()
    harness.emit("? Allow edit? (Y/n)")
    harness.emit("x" * 600)

    harness.send(connection, {"type": "terminal-input", "data": "y"})
    assert messages_of(drain(connection.outbox), "terminal-submission") == []

    harness.send(connection, {"type": "terminal-input", "data": "\r"})
    submission = messages_of(drain(connection.outbox), "terminal-submission")[0]
    assert submission["text"] == "y"
    assert "promptQuestion" not in submission


def test_viewport_is_minimum_of_reported_sizes(harness: SessionHarness) -> None:
    first = harness.connect()
    second = harness.connect()
    harness.drain_all()

    harness.send(first, {"type": "resize", "cols": 100, "rows": 30})
    harness.send(second, {"type": "resize", "cols": 80, "rows": 40})
    harness.send(second, {"type": "resize", "cols": 10, "rows": 40})
    harness.send(second, {"type": "resize", "cols": "80", "rows": 24})

    resizes = messages_of(drain(first.outbox), "resize")
    assert resizes[-1] == {"type": "resize", "cols": 80, "rows": 30}
    assert harness.process.resizes == [(100, 30), (80, 30)]

    drain(second.outbox)
    harness.coordinator.close_connection(second)
    harness.coordinator.join()

    messages = drain(first.outbox)
    assert messages_of(messages, "users-update")[-1]["count"] == 1
    assert messages_of(messages, "resize") == [{"type": "resize", "cols": 100, "rows": 30}]
    assert harness.process.resizes[-1] == (100, 30)
    assert drain(second.outbox) == [None]

    harness.coordinator.close_connection(first)
    harness.coordinator.join()

    assert harness.process.resizes[-1] == (120, 40)


def test_chat_messages_are_broadcast_and_persisted(harness: SessionHarness) -> None:
    first = harness.connect()
    second = harness.connect()
    harness.drain_all()

    harness.send(first, {"type": "chat-message", "text": "hi all"})
    harness.send(first, {"type": "chat-message", "text": "   "})
    harness.send(first, {"type": "chat-message", "text": "x" * 2001})
    harness.send(first, {"type": "chat-message", "text": 42})

    received = messages_of(drain(second.outbox), "chat-message")
    assert len(received) == 1
    assert received[0]["name"] == "User 1"
    assert received[0]["text"] == "hi all"
    assert [message["text"] for message in harness.entry.chat.history()] == ["hi all"]
    assert harness.registry.paths.chat_file(harness.session_id).is_file()


def test_chat_messages_over_limit_are_dropped(harness: SessionHarness) -> None:
    connection = harness.connect()

    for index in range(35):
        harness.coordinator.post_message(connection, json.dumps({"type": "chat-message", "text": f"m{index}"}))
    harness.coordinator.join()

    assert len(messages_of(drain(connection.outbox), "chat-message")) == 30


def test_chat_disabled_ignores_chat(make_registry, process_factory) -> None:
    harness = SessionHarness(make_registry(chat_enabled=False), process_factory)
    connection, catch_up = harness.connect(keep_catch_up=True)

    assert catch_up[0]["chatEnabled"] is False
    harness.send(connection, {"type": "chat-message", "text": "hello"})
    assert messages_of(drain(connection.outbox), "chat-message") == []


def test_set_name_sanitizes_and_updates_users(harness: SessionHarness) -> None:
    connection = harness.connect()

    harness.send(connection, {"type": "set-name", "name": "  Ada\x07 Lovelace  "})
    harness.send(connection, {"type": "set-name", "name": "\x01\x02"})
    harness.send(connection, {"type": "set-name", "name": "z" * 50})

    updates = messages_of(drain(connection.outbox), "users-update")
    assert updates[0]["users"] == ["Ada Lovelace"]
    assert updates[-1]["users"] == ["z" * 30]
    assert len(updates) == 2


def test_detected_local_port_is_adopted_once(harness: SessionHarness) -> None:
    connection = harness.connect()

    harness.emit("listening on http://localhost:4321\r\n")
    assert harness.registry.preview_port(harness.session_id) is None

    harness.emit("  \x1b[1mLocal:\x1b[22m   http://localhost:\x1b[1m5173\x1b[22m/\r\n")
    harness.emit("Serving on http://localhost:5173/\r\n")
    harness.emit("also 127.0.0.1:8000\r\n")

    updates = messages_of(drain(connection.outbox), "preview-port-update")
    assert updates == [{"type": "preview-port-update", "port": 5173}]
    assert harness.registry.preview_port(harness.session_id) == 5173


def test_file_url_hint_is_sent_once(harness: SessionHarness) -> None:
    connection = harness.connect()

    harness.emit("Open file:///tmp/site/index.html in your browser\r\n")
    harness.emit("Again: file:///tmp/site/index.html\r\n")

    hints = messages_of(drain(connection.outbox), "preview-hint")
    assert hints == [{"type": "preview-hint", "message": FILE_URL_HINT}]


def test_process_exit_is_announced_and_session_stays_active(harness: SessionHarness) -> None:
    connection = harness.connect()

    harness.process.exit(1, None)
    harness.process.exit(None, 15)
    harness.coordinator.join()

    notices = [message["data"] for message in messages_of(drain(connection.outbox), "terminal-output")]
    assert "exit code 1" in notices[0]
    assert "signal 15" in notices[1]
    assert harness.registry.get(harness.session_id)["status"] == "active"


def test_set_preview_port_message(harness: SessionHarness) -> None:
    connection = harness.connect()

    harness.send(connection, {"type": "set-preview-port", "port": 3000})
    harness.send(connection, {"type": "set-preview-port", "port": 22})
    harness.send(connection, {"type": "set-preview-port", "port": None})

    updates = messages_of(drain(connection.outbox), "preview-port-update")
    assert updates == [
        {"type": "preview-port-update", "port": 3000},
        {"type": "preview-port-update", "port": None},
    ]


def test_malformed_messages_are_ignored(harness: SessionHarness) -> None:
    connection = harness.connect()

    harness.send(connection, "not json")
    harness.send(connection, "[1, 2, 3]")
    harness.send(connection, {"type": "unknown"})
    harness.send(connection, {"type": "terminal-input", "data": 123})
    harness.send(connection, {"type": "terminal-input", "data": "x" * 1025})
    harness.send(connection, {"type": "resize"})

    assert drain(connection.outbox) == []
    assert harness.process.writes == []
    assert connection.closed is False


def test_restart_resets_prompt_state(harness: SessionHarness) -> None:
    connection = harness.connect()
    harness.emit("? Allow edit? (Y/n)")
    assert harness.entry.prompts.get_active_prompt() is not None

    harness.coordinator.post_restart()
    harness.coordinator.join()

    assert harness.process.restarts == 1
    assert harness.entry.prompts.get_active_prompt() is None
    assert messages_of(drain(connection.outbox), "terminal-output")
