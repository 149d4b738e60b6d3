from __future__ import annotations

import codecs
import logging
import os
import shutil
import signal
import subprocess
import time
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from threading import Lock, Thread

from collab_hub.runtime.terminal import DEFAULT_COLS, DEFAULT_ROWS, set_terminal_size


LOGGER = logging.getLogger("collab_hub.runtime")

MAX_SCROLLBACK = 50 * 1024
READ_CHUNK_BYTES = 4096
STOP_GRACE_SECONDS = 3.0

# Output is streamed to remote viewers, so only these variables are inherited.
ENV_ALLOWLIST = (
    "PATH",
    "HOME",
    "USER",
    "SHELL",
    "TERM",
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
    "TMPDIR",
    "XDG_CONFIG_HOME",
    "XDG_DATA_HOME",
    "XDG_CACHE_HOME",
    "ANTHROPIC_API_KEY",
)

COLLAB_SYSTEM_PROMPT = " ".join(
    [
        "This is a collaborative terminal session shared with other users.",
        "When serving web content (HTML, static sites, frontend apps), ALWAYS use an HTTP server",
        "(e.g. npx serve, python3 -m http.server, npx http-server) instead of opening files with",
        "file:// URLs. The session has a live preview feature that proxies localhost ports to all",
        "connected users; file:// URLs only work on the local machine and cannot be previewed.",
    ]
)

OutputCallback = Callable[[str], None]
ExitCallback = Callable[[int | None, int | None], None]


def safe_env(
    extra_allowlist: Iterable[str] = (),
    *,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    source = os.environ if environ is None else environ
    env: dict[str, str] = {}
    for key in (*ENV_ALLOWLIST, *extra_allowlist):
        value = source.get(key)
        if value is not None:
            env[key] = value
    env.setdefault("TERM", "xterm-256color")
    return env


def resolve_agent_command(command: str) -> str:
    if os.path.isabs(command):
        return command
    return shutil.which(command) or command


def build_agent_argv(command: str, args: Iterable[str] = ()) -> list[str]:
    return [resolve_agent_command(command), "--append-system-prompt", COLLAB_SYSTEM_PROMPT, *args]


def _stop_process(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        return
    deadline = time.monotonic() + STOP_GRACE_SECONDS
    while time.monotonic() < deadline:
        if process.poll() is not None:
            return
        time.sleep(0.05)
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        return


class ProcessWrapper:
    """One PTY-backed child process with bounded scrollback.

    ``on_output`` is called from the reader thread with every decoded chunk and
    ``on_exit`` with ``(exit_code, signal)`` once the child terminates. Neither
    fires for a process that was replaced by :meth:`restart` or torn down by
    :meth:`destroy`.
    """

    def __init__(
        self,
        workdir: Path,
        *,
        argv: list[str],
        env: Mapping[str, str] | None = None,
        on_output: OutputCallback | None = None,
        on_exit: ExitCallback | None = None,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
    ) -> None:
        self.workdir = Path(workdir)
        self.argv = list(argv)
        self.env = dict(env) if env is not None else safe_env()
        self._on_output = on_output or (lambda _chunk: None)
        self._on_exit = on_exit or (lambda _code, _signal: None)
        self._cols = cols
        self._rows = rows
        self._lock = Lock()
        self._scrollback = ""
        self._generation = 0
        self.process: subprocess.Popen | None = None
        self.master_fd: int | None = None
        self._spawn()

    def is_running(self) -> bool:
        process = self.process
        return process is not None and process.poll() is None

    def _spawn(self) -> None:
        master_fd, slave_fd = os.openpty()
        try:
            set_terminal_size(slave_fd, self._cols, self._rows)
            process = subprocess.Popen(
                self.argv,
                cwd=str(self.workdir),
                env=self.env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                close_fds=True,
                start_new_session=True,
            )
        except Exception:
            for fd in (master_fd, slave_fd):
                try:
                    os.close(fd)
                except OSError:
                    pass
            raise

        try:
            os.close(slave_fd)
        except OSError:
            pass

        with self._lock:
            self._generation += 1
            generation = self._generation
            self.process = process
            self.master_fd = master_fd

        reader_thread = Thread(
            target=self._reader_loop,
            args=(generation, process, master_fd),
            name=f"pty-reader-{process.pid}",
            daemon=True,
        )
        reader_thread.start()
        LOGGER.debug("Spawned agent pid=%s cwd=%s", process.pid, self.workdir)

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation and self.process is not None

    def _reader_loop(self, generation: int, process: subprocess.Popen, master_fd: int) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")("replace")
        while True:
            try:
                chunk = os.read(master_fd, READ_CHUNK_BYTES)
            except OSError:
                break
            if not chunk:
                break
            decoded = decoder.decode(chunk)
            if decoded:
                self._deliver(generation, decoded)
        tail = decoder.decode(b"", final=True)
        if tail:
            self._deliver(generation, tail)

        returncode = process.wait()
        if not self._is_current(generation):
            return
        with self._lock:
            self.process = None
            fd, self.master_fd = self.master_fd, None
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass
        exit_code, exit_signal = (None, -returncode) if returncode < 0 else (returncode, None)
        self._on_exit(exit_code, exit_signal)

    def _deliver(self, generation: int, data: str) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._append_scrollback_locked(data)
        self._on_output(data)

    def _append_scrollback_locked(self, data: str) -> None:
        self._scrollback += data
        if len(self._scrollback) > MAX_SCROLLBACK:
            self._scrollback = self._scrollback[-MAX_SCROLLBACK:]

    def append_scrollback(self, data: str) -> None:
        with self._lock:
            self._append_scrollback_locked(data)

    def get_scrollback(self) -> str:
        with self._lock:
            return self._scrollback

    def write(self, data: str | bytes) -> None:
        with self._lock:
            fd = self.master_fd if self.process is not None else None
        if fd is None or not data:
            return
        payload = data.encode("utf-8", errors="ignore") if isinstance(data, str) else data
        try:
            os.write(fd, payload)
        except OSError as exc:
            LOGGER.debug("Dropped terminal input for exited process: %s", exc)

    def resize(self, cols: int, rows: int) -> None:
        with self._lock:
            self._cols, self._rows = cols, rows
            fd = self.master_fd if self.process is not None else None
        if fd is None:
            return
        try:
            set_terminal_size(fd, cols, rows)
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.debug("Ignored resize for exited process: %s", exc)

    def restart(self) -> None:
        self.destroy()
        with self._lock:
            self._scrollback = ""
        self._spawn()

    def destroy(self) -> None:
        with self._lock:
            process, self.process = self.process, None
            fd, self.master_fd = self.master_fd, None
            self._generation += 1
        if process is not None:
            _stop_process(process)
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass
