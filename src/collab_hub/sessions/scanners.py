from __future__ import annotations

import re

from collab_hub.runtime.prompts import strip_ansi


PREVIEW_PORT_MIN = 1024
PREVIEW_PORT_MAX = 65535

FILE_URL_HINT = (
    "The agent opened a file:// URL, which only works on the host machine. "
    "Ask it to serve the page over HTTP instead (for example `python3 -m http.server` "
    "or `npx serve`) so everyone can see it in the live preview."
)

_LOCAL_URL_RE = re.compile(r"(?:https?://localhost|(?:https?://)?127\.0\.0\.1):(\d{1,6})\b")
_FILE_URL_RE = re.compile(r"file://\S+")


def is_preview_port(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return PREVIEW_PORT_MIN <= value <= PREVIEW_PORT_MAX


def detect_port(text: str, server_port: int) -> int | None:
    """First local dev-server port announced in ``text``, if usable for preview."""
    for match in _LOCAL_URL_RE.finditer(strip_ansi(text)):
        port = int(match.group(1))
        if is_preview_port(port) and port != server_port:
            return port
    return None


def detect_file_url(text: str) -> str | None:
    match = _FILE_URL_RE.search(strip_ansi(text))
    return match.group(0) if match else None
