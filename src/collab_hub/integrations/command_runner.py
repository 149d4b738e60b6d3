from __future__ import annotations

import os
import subprocess
from pathlib import Path

from collab_core.errors import RepositoryAcquisitionError


def run_command(
    cmd: list[str],
    *,
    cwd: Path | None = None,
    capture: bool = False,
    check: bool = True,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    resolved_env: dict[str, str] | None = None
    if env:
        resolved_env = dict(os.environ)
        for key, value in env.items():
            resolved_env[str(key)] = str(value)
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            check=False,
            text=True,
            capture_output=capture,
            env=resolved_env,
        )
    except OSError as exc:
        raise RepositoryAcquisitionError(f"Command failed to start ({cmd[0]}): {exc}") from exc
    if check and result.returncode != 0:
        message = (result.stdout or "") + (result.stderr or "")
        raise RepositoryAcquisitionError(
            f"Command failed ({cmd[0]}) with exit code {result.returncode}: {message.strip()}"
        )
    return result
