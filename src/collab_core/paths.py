from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path


SESSION_ID_PATTERN = re.compile(r"^[a-f0-9]{32}$")
CHAT_FILE_NAME = "chat.json"


@dataclass(frozen=True)
class DataPaths:
    data_dir: Path

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    @property
    def repos_dir(self) -> Path:
        return self.data_dir / "repos"

    def session_dir(self, session_id: str) -> Path:
        if not is_session_id(session_id):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.sessions_dir / session_id

    def chat_file(self, session_id: str) -> Path:
        return self.session_dir(session_id) / CHAT_FILE_NAME

    def ensure(self) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.repos_dir.mkdir(parents=True, exist_ok=True)


def is_session_id(value: str) -> bool:
    return bool(SESSION_ID_PATTERN.match(str(value or "")))


def repo_root(start_file: Path) -> Path:
    resolved = start_file.resolve()
    for parent in resolved.parents:
        if (parent / "pyproject.toml").exists():
            return parent
    return resolved.parent


def default_config_file(repo_root: Path) -> Path:
    return repo_root / "config" / "collab.config.toml"
