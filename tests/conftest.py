from __future__ import annotations

import queue
import sys
from pathlib import Path
from typing import Any

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from collab_core.paths import DataPaths
from collab_hub.integrations.repository import AcquiredRepository, parse_repository_reference
from collab_hub.sessions.registry import SessionRegistry


class FakeProcess:
    def __init__(self, workdir: Path, *, on_output=None, on_exit=None) -> None:
        self.workdir = workdir
        self.on_output = on_output
        self.on_exit = on_exit
        self.writes: list[str] = []
        self.resizes: list[tuple[int, int]] = []
        self.scrollback = ""
        self.restarts = 0
        self.destroyed = 0

    def emit(self, chunk: str) -> None:
        self.scrollback += chunk
        self.on_output(chunk)

    def exit(self, code: int | None = 0, signal_number: int | None = None) -> None:
        self.on_exit(code, signal_number)

    def write(self, data: str) -> None:
        self.writes.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.resizes.append((cols, rows))

    def get_scrollback(self) -> str:
        return self.scrollback

    def restart(self) -> None:
        self.restarts += 1
        self.scrollback = ""

    def destroy(self) -> None:
        self.destroyed += 1


class FakeProcessFactory:
    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []

    def __call__(self, workdir: Path, *, on_output=None, on_exit=None) -> FakeProcess:
        process = FakeProcess(workdir, on_output=on_output, on_exit=on_exit)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


def fake_acquire(url: str, repos_dir: Path) -> AcquiredRepository:
    reference = parse_repository_reference(url)
    workdir = Path(repos_dir) / reference.owner / reference.name
    workdir.mkdir(parents=True, exist_ok=True)
    return AcquiredRepository(owner=reference.owner, name=reference.name, workdir=workdir)


def drain(listener: queue.Queue) -> list[dict[str, Any] | None]:
    messages: list[dict[str, Any] | None] = []
    while True:
        try:
            messages.append(listener.get_nowait())
        except queue.Empty:
            return messages


def messages_of(messages: list[dict[str, Any] | None], kind: str) -> list[dict[str, Any]]:
    return [message for message in messages if message is not None and message.get("type") == kind]


@pytest.fixture
def process_factory() -> FakeProcessFactory:
    return FakeProcessFactory()


@pytest.fixture
def make_registry(tmp_path: Path, process_factory: FakeProcessFactory):
    created: list[SessionRegistry] = []

    def _make(**overrides: Any) -> SessionRegistry:
        paths = DataPaths(tmp_path / "data")
        paths.ensure()
        kwargs: dict[str, Any] = {
            "paths": paths,
            "process_factory": process_factory,
            "acquire_repository": fake_acquire,
            "max_sessions": 3,
            "server_port": 4321,
        }
        kwargs.update(overrides)
        registry = SessionRegistry(**kwargs)
        created.append(registry)
        return registry

    yield _make
    for registry in created:
        registry.shutdown_all()
