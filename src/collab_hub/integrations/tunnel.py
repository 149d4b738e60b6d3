from __future__ import annotations

import logging
import queue
import re
import shutil
import socket
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Thread
from typing import IO


LOGGER = logging.getLogger("collab_hub.integrations")

TUNNEL_KIND_CLOUDFLARED = "cloudflared"
TUNNEL_KIND_LOCAL = "local"
CLOUDFLARED_URL_RE = re.compile(r"(https://[a-z0-9-]+\.trycloudflare\.com)")


@dataclass
class Tunnel:
    url: str
    kind: str
    _close: Callable[[], None] = field(default=lambda: None, repr=False)

    def close(self) -> None:
        try:
            self._close()
        except OSError as exc:
            LOGGER.debug("Tunnel cleanup failed: %s", exc)


class TunnelUnavailable(RuntimeError):
    pass


def _scan_output(stream: IO[str], found: queue.Queue[str | None]) -> None:
    for line in stream:
        match = CLOUDFLARED_URL_RE.search(line)
        if match:
            found.put(match.group(1))
    found.put(None)


def try_cloudflared(port: int, *, timeout: float) -> Tunnel:
    binary = shutil.which("cloudflared")
    if binary is None:
        raise TunnelUnavailable("cloudflared not found in PATH")
    process = subprocess.Popen(
        [binary, "tunnel", "--url", f"http://localhost:{port}"],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )
    found: queue.Queue[str | None] = queue.Queue()
    Thread(target=_scan_output, args=(process.stdout, found), daemon=True).start()
    try:
        url = found.get(timeout=timeout)
    except queue.Empty:
        process.kill()
        raise TunnelUnavailable("cloudflared timed out waiting for URL") from None
    if url is None:
        process.kill()
        raise TunnelUnavailable(f"cloudflared exited with code {process.poll()}")
    LOGGER.info("Tunnel established: %s", url)
    return Tunnel(url=url, kind=TUNNEL_KIND_CLOUDFLARED, _close=process.terminate)


def local_network_address() -> str | None:
    probe = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # UDP connect selects a route without sending packets.
        probe.connect(("10.255.255.255", 1))
        address = probe.getsockname()[0]
    except OSError:
        return None
    finally:
        probe.close()
    if not address or address.startswith("127."):
        return None
    return address


def local_url(port: int) -> Tunnel:
    address = local_network_address()
    if address:
        url = f"http://{address}:{port}"
        LOGGER.info("No tunnel available. Using local network: %s", url)
        return Tunnel(url=url, kind=TUNNEL_KIND_LOCAL)
    return Tunnel(url=f"http://localhost:{port}", kind=TUNNEL_KIND_LOCAL)


def open_tunnel(port: int, *, timeout: float = 30.0) -> Tunnel:
    try:
        return try_cloudflared(port, timeout=timeout)
    except (TunnelUnavailable, OSError) as exc:
        LOGGER.info("cloudflared not available: %s", exc)
    return local_url(port)
