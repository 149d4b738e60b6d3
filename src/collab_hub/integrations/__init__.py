from collab_hub.integrations.command_runner import run_command
from collab_hub.integrations.repository import (
    AcquiredRepository,
    RepositoryReference,
    ensure_repository,
    parse_repository_reference,
)
from collab_hub.integrations.tunnel import Tunnel, open_tunnel

__all__ = [
    "AcquiredRepository",
    "RepositoryReference",
    "Tunnel",
    "ensure_repository",
    "open_tunnel",
    "parse_repository_reference",
    "run_command",
]
