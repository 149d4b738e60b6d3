from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from collab_core.errors import RepositoryReferenceError
from collab_hub.integrations.command_runner import run_command


LOGGER = logging.getLogger("collab_hub.integrations")

_HTTPS_RE = re.compile(r"^https?://github\.com/([\w.-]+)/([\w.-]+?)(?:\.git)?$")
_SSH_RE = re.compile(r"^git@github\.com:([\w.-]+)/([\w.-]+?)(?:\.git)?$")


@dataclass(frozen=True)
class RepositoryReference:
    owner: str
    name: str

    @property
    def label(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class AcquiredRepository:
    owner: str
    name: str
    workdir: Path

    @property
    def label(self) -> str:
        return f"{self.owner}/{self.name}"


def parse_repository_reference(url: Any) -> RepositoryReference:
    if not isinstance(url, str) or not url.strip():
        raise RepositoryReferenceError("repo URL is required")
    candidate = url.strip()
    match = _SSH_RE.match(candidate) or _HTTPS_RE.match(candidate)
    if match is None:
        raise RepositoryReferenceError(f"Invalid repo URL: {candidate} (only github.com URLs are supported)")
    owner, name = match.group(1), match.group(2)
    if ".." in owner or ".." in name:
        raise RepositoryReferenceError("Path traversal detected in repo URL")
    if owner in {".", ""} or name in {".", ""}:
        raise RepositoryReferenceError("Invalid repo owner/name")
    return RepositoryReference(owner=owner, name=name)


def to_ssh_url(url: str) -> str:
    match = _HTTPS_RE.match(url.strip())
    if match:
        return f"git@github.com:{match.group(1)}/{match.group(2)}.git"
    return url.strip()


def ensure_repository(
    url: str,
    repos_dir: Path,
    *,
    runner: Callable[..., Any] = run_command,
) -> AcquiredRepository:
    reference = parse_repository_reference(url)
    repo_dir = Path(repos_dir) / reference.owner / reference.name
    git_dir = repo_dir / ".git"
    if git_dir.is_dir():
        LOGGER.info("Reusing existing repo at %s", repo_dir)
    else:
        repo_dir.parent.mkdir(parents=True, exist_ok=True)
        ssh_url = to_ssh_url(url)
        LOGGER.info("Cloning %s into %s", ssh_url, repo_dir)
        runner(["git", "clone", ssh_url, str(repo_dir)], capture=True)
    return AcquiredRepository(owner=reference.owner, name=reference.name, workdir=repo_dir)
