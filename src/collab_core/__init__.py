from __future__ import annotations

from .config import (
    CollabConfig,
    LOG_LEVEL_CHOICES,
    load_collab_config,
    load_collab_config_dict,
    normalize_log_level,
)
from .errors import (
    ConfigError,
    PreviewUpstreamError,
    RateLimitedError,
    RepositoryAcquisitionError,
    RepositoryReferenceError,
    SessionCapacityError,
    TypedCollabError,
)
from .paths import DataPaths, is_session_id

__all__ = [
    "CollabConfig",
    "ConfigError",
    "DataPaths",
    "LOG_LEVEL_CHOICES",
    "PreviewUpstreamError",
    "RateLimitedError",
    "RepositoryAcquisitionError",
    "RepositoryReferenceError",
    "SessionCapacityError",
    "TypedCollabError",
    "is_session_id",
    "load_collab_config",
    "load_collab_config_dict",
    "normalize_log_level",
]
