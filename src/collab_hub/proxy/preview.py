from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

import httpx
from fastapi import HTTPException, Request
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

from collab_core.errors import PreviewUpstreamError
from collab_core.logging import session_log_extra


LOGGER = logging.getLogger("collab_hub.proxy")

PREVIEW_HOST = "127.0.0.1"
UPSTREAM_TIMEOUT_SECONDS = 30.0

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
STRIPPED_RESPONSE_HEADERS = frozenset(
    {
        "x-frame-options",
        "content-security-policy",
        "content-security-policy-report-only",
        "set-cookie",
    }
)


def _connection_tokens(headers: Iterable[tuple[str, str]]) -> set[str]:
    tokens: set[str] = set()
    for name, value in headers:
        if name.lower() == "connection":
            tokens.update(token.strip().lower() for token in value.split(",") if token.strip())
    return tokens


def forward_request_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    items = list(headers)
    dropped = HOP_BY_HOP_HEADERS | {"host"} | _connection_tokens(items)
    return [(name, value) for name, value in items if name.lower() not in dropped]


def filter_response_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    """Drop headers that break iframe embedding, leak cookies, or only apply to one hop."""
    items = list(headers)
    dropped = HOP_BY_HOP_HEADERS | STRIPPED_RESPONSE_HEADERS | {"content-length"} | _connection_tokens(items)
    return [(name, value) for name, value in items if name.lower() not in dropped]


class PreviewProxy:
    def __init__(
        self,
        *,
        resolve_port: Callable[[str], int | None],
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = UPSTREAM_TIMEOUT_SECONDS,
    ) -> None:
        self._resolve_port = resolve_port
        self._transport = transport
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=self._timeout,
                follow_redirects=False,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def target_url(self, port: int, path: str, query: str) -> str:
        url = f"http://{PREVIEW_HOST}:{port}/{path.lstrip('/')}"
        if query:
            url = f"{url}?{query}"
        return url

    async def forward(self, session_id: str, path: str, request: Request) -> StreamingResponse:
        port = self._resolve_port(session_id)
        if port is None:
            raise HTTPException(status_code=404, detail="No preview available for this session.")

        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        client = self.client()
        upstream_request = client.build_request(
            request.method,
            self.target_url(port, path, request.url.query),
            headers=forward_request_headers(request.headers.items()),
            content=request.stream() if has_body else None,
        )
        try:
            upstream = await client.send(upstream_request, stream=True)
        except httpx.TransportError as exc:
            LOGGER.warning(
                "Preview upstream on port %s unreachable: %s",
                port,
                exc,
                extra=session_log_extra(
                    session_id,
                    component="proxy",
                    operation="forward",
                    result="unreachable",
                    error_class=type(exc).__name__,
                ),
            )
            raise PreviewUpstreamError(f"Preview server on port {port} is not reachable.") from exc

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in filter_response_headers(upstream.headers.multi_items())
        ]
        return response
