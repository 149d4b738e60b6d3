from __future__ import annotations

import asyncio
import json
import logging
import queue
from pathlib import Path
from typing import Any, Callable

import click
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse, HTMLResponse
from fastapi.staticfiles import StaticFiles

from collab_core.paths import is_session_id


CLOSE_POLICY_VIOLATION = 1008
CLOSE_BAD_SESSION_ID = 4400
CLOSE_SESSION_NOT_FOUND = 4404
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def register_collab_routes(
    app: FastAPI,
    *,
    state: Any,
    static_dir: Path | None,
    logger: logging.Logger,
    frontend_not_built_page: Callable[[], str],
) -> None:
    def _page(name: str):
        if static_dir is not None and (static_dir / name).is_file():
            return FileResponse(static_dir / name)
        return HTMLResponse(frontend_not_built_page(), status_code=503)

    @app.get("/", response_class=HTMLResponse)
    def index():
        return _page("index.html")

    @app.get("/s/{session_id}", response_class=HTMLResponse)
    def session_page(session_id: str):
        return _page("session.html")

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        return state.session_service.health()

    @app.post("/api/sessions")
    async def api_create_session(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON payload.") from exc
        repo = payload.get("repo") if isinstance(payload, dict) else None
        return await asyncio.to_thread(state.session_service.create_session, repo)

    @app.get("/api/sessions")
    def api_list_sessions() -> list[dict[str, Any]]:
        return state.session_service.list_sessions()

    @app.get("/api/sessions/{session_id}")
    def api_session(session_id: str) -> dict[str, Any]:
        return state.session_service.session(session_id)

    @app.delete("/api/sessions/{session_id}")
    def api_end_session(session_id: str) -> dict[str, Any]:
        return state.session_service.end_session(session_id)

    @app.post("/api/sessions/{session_id}/restart")
    def api_restart_session(session_id: str) -> dict[str, Any]:
        return state.session_service.restart_session(session_id)

    @app.api_route("/preview/{session_id}/{path:path}", methods=PROXY_METHODS)
    async def preview(session_id: str, path: str, request: Request):
        if not is_session_id(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return await state.proxy.forward(session_id, path, request)

    @app.websocket("/ws/{session_id}")
    async def ws_session(session_id: str, websocket: WebSocket) -> None:
        source = websocket.client.host if websocket.client else "unknown"
        if not state.session_service.allow_connection(source):
            logger.debug("Websocket rejected: rate limited (%s)", source)
            await websocket.close(code=CLOSE_POLICY_VIOLATION)
            return
        if not is_session_id(session_id):
            await websocket.close(code=CLOSE_BAD_SESSION_ID)
            return

        connection = state.session_service.attach_client(session_id, source)
        if connection is None:
            await websocket.close(code=CLOSE_SESSION_NOT_FOUND)
            return

        await websocket.accept()
        listener: queue.Queue[dict[str, Any] | None] = connection.outbox

        async def stream_output() -> None:
            while True:
                try:
                    message = await asyncio.to_thread(listener.get, True, 0.25)
                except queue.Empty:
                    continue
                if message is None:
                    await websocket.close(code=connection.close_code, reason="Session ended")
                    break
                await websocket.send_text(json.dumps(message))

        async def stream_input() -> None:
            while True:
                message = await websocket.receive_text()
                state.session_service.post_client_message(session_id, connection, message)

        sender = asyncio.create_task(stream_output())
        receiver = asyncio.create_task(stream_input())
        try:
            done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc and not isinstance(exc, WebSocketDisconnect):
                    raise exc
        except WebSocketDisconnect:
            pass
        finally:
            state.session_service.detach_client(session_id, connection)
            if not sender.done():
                sender.cancel()
            if not receiver.done():
                receiver.cancel()
            logger.debug("Session websocket disconnected.")

    if static_dir is not None and static_dir.is_dir():
        app.mount("/static", StaticFiles(directory=str(static_dir)), name="collab-static")

    @app.on_event("startup")
    async def app_startup() -> None:
        state.startup()

    @app.on_event("shutdown")
    async def app_shutdown() -> None:
        try:
            ended = state.session_service.shutdown()
            if ended > 0:
                click.echo(f"Shutdown cleanup completed: ended_sessions={ended}")
        except Exception as exc:  # pragma: no cover - shutdown guard
            click.echo(f"Shutdown cleanup failed: {exc}", err=True)
        await state.proxy.aclose()
        state.close_tunnel()
