from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any


LOGGER = logging.getLogger("collab_hub.store")


class ChatHistoryStore:
    """JSON array of chat messages kept in one session's data directory."""

    def __init__(self, *, chat_file: Path, max_entries: int, lock: Lock | None = None) -> None:
        self.chat_file = Path(chat_file)
        self.max_entries = max_entries
        self._lock = lock or Lock()

    def load(self) -> list[dict[str, Any]]:
        with self._lock:
            if not self.chat_file.exists():
                return []
            try:
                loaded = json.loads(self.chat_file.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                preserved = self._preserve_corrupt_file_locked()
                LOGGER.warning("Chat history %s unreadable (%s); moved to %s.", self.chat_file, exc, preserved)
                return []
            if not isinstance(loaded, list):
                preserved = self._preserve_corrupt_file_locked()
                LOGGER.warning("Chat history %s is not a JSON array; moved to %s.", self.chat_file, preserved)
                return []
        messages = [entry for entry in loaded if isinstance(entry, dict)]
        return messages[-self.max_entries :]

    def save(self, messages: list[dict[str, Any]]) -> bool:
        with self._lock:
            try:
                self.chat_file.parent.mkdir(parents=True, exist_ok=True)
                tmp_file = self.chat_file.with_name(f"{self.chat_file.name}.tmp")
                with tmp_file.open("w", encoding="utf-8") as fp:
                    json.dump(messages[-self.max_entries :], fp, indent=2)
                tmp_file.replace(self.chat_file)
            except OSError as exc:
                LOGGER.error("Failed to save chat history %s: %s", self.chat_file, exc)
                return False
        return True

    def _preserve_corrupt_file_locked(self) -> Path | None:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        base_name = f"{self.chat_file.name}.corrupt-{timestamp}"
        preserved_path = self.chat_file.with_name(base_name)
        suffix = 1
        while preserved_path.exists():
            preserved_path = self.chat_file.with_name(f"{base_name}.{suffix}")
            suffix += 1
        try:
            self.chat_file.replace(preserved_path)
        except OSError:
            return None
        return preserved_path
