from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

from collab_core.errors import ConfigError


_SECTION_KEYS = ("server", "sessions", "agent", "logging", "tunnel")
LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 4321
DEFAULT_DATA_DIR = "./data"
DEFAULT_AGENT_COMMAND = "claude"
DEFAULT_MAX_SESSIONS = 10
DEFAULT_IDLE_TIMEOUT_MINUTES = 0.0
DEFAULT_LOG_LEVEL = "info"
DEFAULT_TUNNEL_TIMEOUT_SECONDS = 30.0


def _ensure_dict(value: object, *, label: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a table/object.")
    return dict(value)


def _ensure_optional_str(value: object, *, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string.")
    return value


def _ensure_int(value: object, *, label: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label} must be an integer.")
    return value


def _ensure_number(value: object, *, label: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{label} must be a number.")
    return float(value)


def _ensure_bool(value: object, *, label: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"{label} must be a boolean.")
    return value


def _ensure_str_list(value: object, *, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{label} must be a list of strings.")
    return tuple(value)


def normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return DEFAULT_LOG_LEVEL


def parse_log_level(value: object, *, label: str = "logging.level") -> str:
    if value is None:
        return DEFAULT_LOG_LEVEL
    resolved = str(value).strip().lower()
    if resolved not in LOG_LEVEL_CHOICES:
        raise ConfigError(f"{label} must be one of: {', '.join(LOG_LEVEL_CHOICES)}.")
    return resolved


@dataclass(frozen=True)
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    base_url: str | None = None
    static_dir: Path | None = None


@dataclass(frozen=True)
class SessionsConfig:
    data_dir: Path = field(default_factory=lambda: Path(DEFAULT_DATA_DIR).resolve())
    max_sessions: int = DEFAULT_MAX_SESSIONS
    idle_timeout_minutes: float = DEFAULT_IDLE_TIMEOUT_MINUTES
    chat_enabled: bool = True


@dataclass(frozen=True)
class AgentConfig:
    command: str = DEFAULT_AGENT_COMMAND
    args: tuple[str, ...] = ()
    env_allowlist: tuple[str, ...] = ()


@dataclass(frozen=True)
class LoggingConfig:
    level: str = DEFAULT_LOG_LEVEL
    domains: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TunnelConfig:
    enabled: bool = True
    timeout_seconds: float = DEFAULT_TUNNEL_TIMEOUT_SECONDS


@dataclass(frozen=True)
class CollabConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    tunnel: TunnelConfig = field(default_factory=TunnelConfig)
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | dict[str, Any]) -> "CollabConfig":
        if not isinstance(payload, Mapping):
            raise ConfigError("Config payload root must be a table/object.")

        raw = dict(payload)
        config = cls(
            server=_parse_server(raw),
            sessions=_parse_sessions(raw),
            agent=_parse_agent(raw),
            logging=_parse_logging(raw),
            tunnel=_parse_tunnel(raw),
            extras={k: v for k, v in raw.items() if k not in _SECTION_KEYS},
        )
        config.validate()
        return config

    @classmethod
    def from_toml_path(cls, path: str | Path) -> "CollabConfig":
        config_path = Path(path)
        try:
            raw = config_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Unable to read config file {config_path}: {exc}") from exc
        try:
            parsed = tomllib.loads(raw)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
        return cls.from_dict(parsed)

    def validate(self) -> None:
        if self.server.port < 0 or self.server.port > 65535:
            raise ConfigError(f"Invalid port: {self.server.port}")
        if self.sessions.max_sessions < 1:
            raise ConfigError(f"Invalid max_sessions: {self.sessions.max_sessions}")
        if self.sessions.idle_timeout_minutes < 0:
            raise ConfigError(f"Invalid idle timeout: {self.sessions.idle_timeout_minutes}")
        if not self.agent.command.strip():
            raise ConfigError("agent.command must not be empty.")

    def with_env(self, env: Mapping[str, str]) -> "CollabConfig":
        server = self.server
        sessions = self.sessions
        agent = self.agent
        logging = self.logging

        if env.get("COLLAB_HOST"):
            server = replace(server, host=env["COLLAB_HOST"])
        port = _env_positive_int(env.get("COLLAB_PORT"))
        if port is not None:
            server = replace(server, port=port)
        if env.get("COLLAB_BASE_URL"):
            server = replace(server, base_url=env["COLLAB_BASE_URL"])
        if env.get("COLLAB_STATIC_DIR"):
            server = replace(server, static_dir=Path(env["COLLAB_STATIC_DIR"]).expanduser().resolve())

        if env.get("COLLAB_DATA_DIR"):
            sessions = replace(sessions, data_dir=Path(env["COLLAB_DATA_DIR"]).expanduser().resolve())
        max_sessions = _env_positive_int(env.get("COLLAB_MAX_SESSIONS"))
        if max_sessions is not None:
            sessions = replace(sessions, max_sessions=max_sessions)
        idle_timeout = _env_number(env.get("COLLAB_SESSION_IDLE_TIMEOUT"))
        if idle_timeout is not None:
            sessions = replace(sessions, idle_timeout_minutes=idle_timeout)
        if env.get("COLLAB_NO_CHAT") == "1":
            sessions = replace(sessions, chat_enabled=False)

        if env.get("COLLAB_AGENT_COMMAND"):
            agent = replace(agent, command=env["COLLAB_AGENT_COMMAND"])
        if env.get("COLLAB_LOG_LEVEL"):
            logging = replace(logging, level=parse_log_level(env["COLLAB_LOG_LEVEL"], label="COLLAB_LOG_LEVEL"))

        updated = replace(self, server=server, sessions=sessions, agent=agent, logging=logging)
        updated.validate()
        return updated


def _env_positive_int(raw_value: str | None) -> int | None:
    # Non-numeric and zero values keep the configured default.
    if raw_value is None:
        return None
    try:
        value = int(raw_value.strip(), 10)
    except ValueError:
        return None
    return value or None


def _env_number(raw_value: str | None) -> float | None:
    if raw_value is None:
        return None
    try:
        return float(raw_value.strip())
    except ValueError:
        return None


def _parse_server(raw_root: dict[str, Any]) -> ServerConfig:
    raw = _ensure_dict(raw_root.get("server"), label="section 'server'")
    static_dir = _ensure_optional_str(raw.get("static_dir"), label="server.static_dir")
    return ServerConfig(
        host=_ensure_optional_str(raw.get("host"), label="server.host") or DEFAULT_HOST,
        port=_ensure_int(raw.get("port"), label="server.port", default=DEFAULT_PORT),
        base_url=_ensure_optional_str(raw.get("base_url"), label="server.base_url"),
        static_dir=Path(static_dir).expanduser().resolve() if static_dir else None,
    )


def _parse_sessions(raw_root: dict[str, Any]) -> SessionsConfig:
    raw = _ensure_dict(raw_root.get("sessions"), label="section 'sessions'")
    data_dir = _ensure_optional_str(raw.get("data_dir"), label="sessions.data_dir") or DEFAULT_DATA_DIR
    return SessionsConfig(
        data_dir=Path(data_dir).expanduser().resolve(),
        max_sessions=_ensure_int(raw.get("max_sessions"), label="sessions.max_sessions", default=DEFAULT_MAX_SESSIONS),
        idle_timeout_minutes=_ensure_number(
            raw.get("idle_timeout_minutes"),
            label="sessions.idle_timeout_minutes",
            default=DEFAULT_IDLE_TIMEOUT_MINUTES,
        ),
        chat_enabled=_ensure_bool(raw.get("chat_enabled"), label="sessions.chat_enabled", default=True),
    )


def _parse_agent(raw_root: dict[str, Any]) -> AgentConfig:
    raw = _ensure_dict(raw_root.get("agent"), label="section 'agent'")
    return AgentConfig(
        command=_ensure_optional_str(raw.get("command"), label="agent.command") or DEFAULT_AGENT_COMMAND,
        args=_ensure_str_list(raw.get("args"), label="agent.args"),
        env_allowlist=_ensure_str_list(raw.get("env_allowlist"), label="agent.env_allowlist"),
    )


def _parse_logging(raw_root: dict[str, Any]) -> LoggingConfig:
    raw = _ensure_dict(raw_root.get("logging"), label="section 'logging'")
    return LoggingConfig(
        level=parse_log_level(raw.get("level")),
        domains=_ensure_dict(raw.get("domains"), label="section 'logging.domains'"),
    )


def _parse_tunnel(raw_root: dict[str, Any]) -> TunnelConfig:
    raw = _ensure_dict(raw_root.get("tunnel"), label="section 'tunnel'")
    return TunnelConfig(
        enabled=_ensure_bool(raw.get("enabled"), label="tunnel.enabled", default=True),
        timeout_seconds=_ensure_number(
            raw.get("timeout_seconds"),
            label="tunnel.timeout_seconds",
            default=DEFAULT_TUNNEL_TIMEOUT_SECONDS,
        ),
    )


def load_collab_config(
    path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> CollabConfig:
    config = CollabConfig.from_toml_path(path) if path is not None else CollabConfig.from_dict({})
    return config.with_env(os.environ if env is None else env)


def load_collab_config_dict(payload: Mapping[str, Any] | dict[str, Any]) -> CollabConfig:
    return CollabConfig.from_dict(payload)


__all__ = [
    "AgentConfig",
    "CollabConfig",
    "DEFAULT_AGENT_COMMAND",
    "DEFAULT_HOST",
    "DEFAULT_MAX_SESSIONS",
    "DEFAULT_PORT",
    "LOG_LEVEL_CHOICES",
    "LoggingConfig",
    "ServerConfig",
    "SessionsConfig",
    "TunnelConfig",
    "load_collab_config",
    "load_collab_config_dict",
    "normalize_log_level",
    "parse_log_level",
]
