from __future__ import annotations

import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from collab_hub.store import ChatHistoryStore


MAX_CHAT_HISTORY = 1000
MAX_CHAT_TEXT = 2000
MAX_NAME_LENGTH = 30
UNKNOWN_USER_NAME = "Unknown"

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")


def now_ms() -> int:
    return int(time.time() * 1000)


def sanitize_display_name(raw_name: Any) -> str:
    if not isinstance(raw_name, str):
        return ""
    return _CONTROL_CHARS_RE.sub("", raw_name).strip()[:MAX_NAME_LENGTH]


def is_valid_chat_text(text: Any) -> bool:
    return isinstance(text, str) and len(text) <= MAX_CHAT_TEXT and bool(text.strip())


@dataclass
class User:
    id: str
    name: str
    connected_at: int


class SessionChat:
    """Connected users and the persisted chat log of one session."""

    def __init__(self, chat_file: Path) -> None:
        self._store = ChatHistoryStore(chat_file=chat_file, max_entries=MAX_CHAT_HISTORY)
        self._users: dict[str, User] = {}
        self._joined = 0
        self._history: list[dict[str, Any]] = self._store.load()

    def add_user(self, client_id: str) -> User:
        self._joined += 1
        user = User(id=client_id, name=f"User {self._joined}", connected_at=now_ms())
        self._users[client_id] = user
        return user

    def remove_user(self, client_id: str) -> None:
        self._users.pop(client_id, None)

    def set_name(self, client_id: str, name: str) -> bool:
        user = self._users.get(client_id)
        if user is None:
            return False
        user.name = name
        return True

    def user_name(self, client_id: str) -> str:
        user = self._users.get(client_id)
        return user.name if user is not None else UNKNOWN_USER_NAME

    def unique_names(self) -> list[str]:
        return list(dict.fromkeys(user.name for user in self._users.values()))

    def add_message(self, name: str, text: str) -> dict[str, Any]:
        message = {"name": name, "text": text, "ts": now_ms()}
        self._history.append(message)
        if len(self._history) > MAX_CHAT_HISTORY:
            del self._history[: len(self._history) - MAX_CHAT_HISTORY]
        self.save()
        return message

    def history(self) -> list[dict[str, Any]]:
        return list(self._history)

    def save(self) -> bool:
        return self._store.save(self._history)
