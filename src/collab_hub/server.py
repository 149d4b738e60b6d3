from __future__ import annotations

import functools
import logging
import shutil
from dataclasses import replace
from pathlib import Path
from typing import Any

import click
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from collab_core import logging as core_logging
from collab_core.config import (
    LOG_LEVEL_CHOICES,
    CollabConfig,
    load_collab_config,
    normalize_log_level,
    parse_log_level,
)
from collab_core.errors import ConfigError, TypedCollabError, typed_error_payload
from collab_core.paths import DataPaths, default_config_file, repo_root
from collab_hub.admission import AdmissionControl
from collab_hub.api.routes import register_collab_routes
from collab_hub.integrations.repository import ensure_repository
from collab_hub.integrations.tunnel import Tunnel, open_tunnel
from collab_hub.proxy.preview import PreviewProxy
from collab_hub.runtime.process import ProcessWrapper, build_agent_argv, safe_env
from collab_hub.services.session_service import SessionService
from collab_hub.sessions.registry import ProcessFactory, RepositoryAcquirer, SessionRegistry


LOGGER = logging.getLogger("collab_hub")


def _configure_hub_logging(level: str, domains: dict[str, Any] | None = None) -> None:
    normalized = normalize_log_level(level)
    core_logging.configure_structured_logger(LOGGER, level=normalized)
    core_logging.configure_domain_log_levels(
        domains=domains,
        logger_prefix="collab_hub",
        normalize_level=normalize_log_level,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _uvicorn_log_level(hub_level: str) -> str:
    normalized = normalize_log_level(hub_level)
    if normalized == "debug":
        return "info"
    return normalized


def _core_error_payload(exc: BaseException) -> tuple[int, dict[str, Any]]:
    typed_payload = typed_error_payload(exc)
    if typed_payload is not None:
        status_by_code = {
            "CONFIG_ERROR": 400,
            "INVALID_REPOSITORY": 400,
            "REPOSITORY_ACQUISITION_ERROR": 400,
            "SESSION_CAPACITY_REACHED": 429,
            "RATE_LIMITED": 429,
            "PREVIEW_UPSTREAM_ERROR": 502,
        }
        status = status_by_code.get(str(typed_payload.get("error_code") or ""), 500)
        return status, typed_payload
    return 500, {"error_code": "INTERNAL_ERROR", "detail": str(exc)}


def _http_error_code(status_code: int) -> str:
    status = int(status_code or 500)
    if status == 400:
        return "BAD_REQUEST"
    if status == 404:
        return "NOT_FOUND"
    if status == 409:
        return "CONFLICT"
    if status == 422:
        return "UNPROCESSABLE_ENTITY"
    if status == 429:
        return "RATE_LIMITED"
    if status in {500, 502, 503, 504}:
        return "UPSTREAM_ERROR"
    return f"HTTP_{status}"


def _frontend_not_built_page() -> str:
    return """
<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>Collab Hub Frontend Missing</title>
  <style>
    body { font-family: ui-sans-serif, system-ui, sans-serif; margin: 2rem; color: #111827; }
    pre { padding: 0.75rem; border: 1px solid #d1d5db; border-radius: 8px; background: #f9fafb; }
  </style>
</head>
<body>
  <h1>Collab Hub frontend is not available</h1>
  <p>Point the hub at a built frontend directory, then restart it.</p>
  <pre>collab-hub --config-file config/collab.config.toml
# [server]
# static_dir = "web/dist"</pre>
</body>
</html>
    """


def _agent_process_factory(config: CollabConfig) -> ProcessFactory:
    return functools.partial(
        ProcessWrapper,
        argv=build_agent_argv(config.agent.command, config.agent.args),
        env=safe_env(config.agent.env_allowlist),
    )


class CollabState:
    """Process-wide root object: registry, admission counters, proxy client and tunnel."""

    def __init__(
        self,
        config: CollabConfig,
        *,
        process_factory: ProcessFactory | None = None,
        acquire_repository: RepositoryAcquirer | None = None,
        proxy: PreviewProxy | None = None,
    ) -> None:
        self.config = config
        self.paths = DataPaths(config.sessions.data_dir)
        self.paths.ensure()
        self.admission = AdmissionControl()
        self.registry = SessionRegistry(
            paths=self.paths,
            process_factory=process_factory or _agent_process_factory(config),
            acquire_repository=acquire_repository or ensure_repository,
            max_sessions=config.sessions.max_sessions,
            idle_timeout_minutes=config.sessions.idle_timeout_minutes,
            server_port=config.server.port,
            chat_enabled=config.sessions.chat_enabled,
        )
        self.session_service = SessionService(registry=self.registry, admission=self.admission)
        self.proxy = proxy or PreviewProxy(resolve_port=self.session_service.preview_port)
        self.tunnel: Tunnel | None = None

    @property
    def share_url(self) -> str:
        if self.config.server.base_url:
            return self.config.server.base_url
        if self.tunnel is not None:
            return self.tunnel.url
        return f"http://localhost:{self.config.server.port}"

    def startup(self) -> None:
        if self.config.tunnel.enabled and not self.config.server.base_url and self.tunnel is None:
            self.tunnel = open_tunnel(self.config.server.port, timeout=self.config.tunnel.timeout_seconds)
        LOGGER.info(
            "Collab hub ready at %s",
            self.share_url,
            extra={"component": "startup", "operation": "hub_ready", "result": "ready"},
        )
        click.echo(
            "\n".join(
                [
                    "",
                    "  Collab hub is running",
                    f"  Local:  http://localhost:{self.config.server.port}",
                    f"  Share:  {self.share_url}",
                    f"  Max sessions: {self.config.sessions.max_sessions}",
                    "",
                ]
            )
        )

    def close_tunnel(self) -> None:
        tunnel, self.tunnel = self.tunnel, None
        if tunnel is not None:
            tunnel.close()


def create_app(state: CollabState) -> FastAPI:
    app = FastAPI()
    app.state.collab_state = state

    @app.exception_handler(TypedCollabError)
    async def _handle_typed_collab_error(_request: Request, exc: TypedCollabError) -> JSONResponse:
        status, payload = _core_error_payload(exc)
        return JSONResponse(status_code=status, content=payload)

    @app.exception_handler(HTTPException)
    async def _handle_http_exception(_request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=int(exc.status_code or 500),
            content={"error_code": _http_error_code(int(exc.status_code or 500)), "detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    register_collab_routes(
        app,
        state=state,
        static_dir=state.config.server.static_dir,
        logger=LOGGER,
        frontend_not_built_page=_frontend_not_built_page,
    )
    return app


def _cli_overrides(
    config: CollabConfig,
    *,
    host: str | None,
    port: int | None,
    data_dir: Path | None,
    max_sessions: int | None,
    idle_timeout: float | None,
    agent_command: str | None,
    tunnel: bool | None,
    log_level: str | None,
) -> CollabConfig:
    server, sessions, agent = config.server, config.sessions, config.agent
    if host:
        server = replace(server, host=host)
    if port is not None:
        server = replace(server, port=port)
    if data_dir is not None:
        sessions = replace(sessions, data_dir=Path(data_dir).expanduser().resolve())
    if max_sessions is not None:
        sessions = replace(sessions, max_sessions=max_sessions)
    if idle_timeout is not None:
        sessions = replace(sessions, idle_timeout_minutes=idle_timeout)
    if agent_command:
        agent = replace(agent, command=agent_command)
    updated = replace(config, server=server, sessions=sessions, agent=agent)
    if tunnel is not None:
        updated = replace(updated, tunnel=replace(updated.tunnel, enabled=tunnel))
    if log_level:
        updated = replace(updated, logging=replace(updated.logging, level=parse_log_level(log_level, label="--log-level")))
    updated.validate()
    return updated


@click.command(help="Share one interactive agent terminal with remote collaborators.")
@click.option(
    "--config-file",
    default=None,
    show_default=str(default_config_file(repo_root(Path(__file__)))),
    type=click.Path(dir_okay=False, path_type=Path),
    help="TOML config file; missing default file is ignored.",
)
@click.option("--host", default=None, help="Interface to bind.")
@click.option("--port", default=None, type=int, help="Port to listen on.")
@click.option("--data-dir", default=None, type=click.Path(file_okay=False, path_type=Path), help="Directory for session data and cloned repos.")
@click.option("--max-sessions", default=None, type=click.IntRange(min=1), help="Maximum concurrently active sessions.")
@click.option("--idle-timeout", default=None, type=click.FloatRange(min=0), help="Minutes without viewers before a session ends (0 disables).")
@click.option("--agent-command", default=None, help="Agent executable to run in each session.")
@click.option("--tunnel/--no-tunnel", default=None, help="Expose the hub through a cloudflared quick tunnel.")
@click.option("--open/--no-open", "open_browser", default=False, show_default=True, help="Open the dashboard in a browser.")
@click.option(
    "--log-level",
    default=None,
    show_default="config logging.level or info",
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Hub logging verbosity (applies to Collab Hub logs and Uvicorn).",
)
@click.option("--debug", is_flag=True, default=False, help="Shortcut for --log-level debug.")
def main(
    config_file: Path | None,
    host: str | None,
    port: int | None,
    data_dir: Path | None,
    max_sessions: int | None,
    idle_timeout: float | None,
    agent_command: str | None,
    tunnel: bool | None,
    open_browser: bool,
    log_level: str | None,
    debug: bool,
) -> None:
    if config_file is None:
        candidate = default_config_file(repo_root(Path(__file__)))
        config_file = candidate if candidate.is_file() else None
    elif not config_file.is_file():
        raise click.ClickException(f"Missing config file: {config_file}")

    try:
        config = _cli_overrides(
            load_collab_config(config_file),
            host=host,
            port=port,
            data_dir=data_dir,
            max_sessions=max_sessions,
            idle_timeout=idle_timeout,
            agent_command=agent_command,
            tunnel=tunnel,
            log_level="debug" if debug else log_level,
        )
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    if shutil.which(config.agent.command) is None and not Path(config.agent.command).is_file():
        raise click.ClickException(
            f"Agent command '{config.agent.command}' not found in PATH. Install it or pass --agent-command."
        )

    normalized_log_level = normalize_log_level(config.logging.level)
    _configure_hub_logging(normalized_log_level, config.logging.domains)
    LOGGER.info(
        "Starting Collab Hub host=%s port=%s log_level=%s max_sessions=%s",
        config.server.host,
        config.server.port,
        normalized_log_level,
        config.sessions.max_sessions,
        extra={"component": "startup", "operation": "hub_start", "result": "started"},
    )

    state = CollabState(config)
    app = create_app(state)
    if open_browser:
        click.launch(f"http://localhost:{config.server.port}")

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=_uvicorn_log_level(normalized_log_level),
        access_log=normalized_log_level == "debug",
    )


if __name__ == "__main__":
    main()
