from __future__ import annotations

import fcntl
import queue
import struct
import termios
from typing import Any, TypeVar


T = TypeVar("T")

DEFAULT_COLS = 120
DEFAULT_ROWS = 40
MIN_COLS = 20
MIN_ROWS = 5
MAX_COLS = 500
MAX_ROWS = 200


def queue_put_drop_oldest(listener: queue.Queue[T], value: T) -> None:
    try:
        listener.put_nowait(value)
        return
    except queue.Full:
        pass

    try:
        listener.get_nowait()
    except queue.Empty:
        return

    try:
        listener.put_nowait(value)
    except queue.Full:
        return


def set_terminal_size(fd: int, cols: int, rows: int) -> None:
    safe_cols = max(1, int(cols))
    safe_rows = max(1, int(rows))
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", safe_rows, safe_cols, 0, 0))


def is_valid_viewport(cols: Any, rows: Any) -> bool:
    if isinstance(cols, bool) or isinstance(rows, bool):
        return False
    if not isinstance(cols, int) or not isinstance(rows, int):
        return False
    return MIN_COLS <= cols <= MAX_COLS and MIN_ROWS <= rows <= MAX_ROWS


def effective_viewport(sizes: list[tuple[int, int]]) -> tuple[int, int]:
    """Coordinate-wise minimum of all reported sizes, floored and defaulted."""
    cols, rows = DEFAULT_COLS, DEFAULT_ROWS
    if sizes:
        cols = min(size[0] for size in sizes)
        rows = min(size[1] for size in sizes)
    return max(cols, MIN_COLS), max(rows, MIN_ROWS)
