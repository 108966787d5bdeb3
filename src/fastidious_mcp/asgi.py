"""ASGI app hosting the Streamable HTTP and legacy SSE endpoints."""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator

from mcp.server.streamable_http import MCP_SESSION_ID_HEADER
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

from .sessions import SessionRegistry
from .settings import TOKEN_PREFIX, VERSION, Settings
from .transport import TransportManager


def _valid_token(token: str | None) -> bool:
    return bool(token) and token.startswith(TOKEN_PREFIX)


class TokenMiddleware:
    """Rejects requests to token-gated paths before any session work."""

    def __init__(self, app: ASGIApp, *, gated_paths: frozenset[str] = frozenset({"/sse"})) -> None:
        self.app = app
        self._gated_paths = gated_paths

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["path"] not in self._gated_paths:
            await self.app(scope, receive, send)
            return
        # Let CORS preflights through.
        if scope["method"] == "OPTIONS":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        if not _valid_token(request.query_params.get("token")):
            response = JSONResponse(
                {"error": "Valid token required as query parameter"}, status_code=401
            )
            await response(scope, receive, send)
            return
        await self.app(scope, receive, send)


class SseEndpoint:
    """``/sse``: Streamable HTTP sessions, or a legacy event stream on a bare GET."""

    def __init__(self, manager: TransportManager) -> None:
        self._manager = manager

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope)
        token = request.query_params.get("token", "")
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if request.method == "GET" and self._manager.registry.get_streaming(session_id) is None:
            await self._manager.open_legacy(scope, receive, send, token=token)
            return
        await self._manager.handle_streaming(scope, receive, send, token=token)


async def health(_: Request) -> Response:
    return JSONResponse({"status": "ok", "version": VERSION})


def create_app(
    settings: Settings | None = None,
    *,
    registry: SessionRegistry | None = None,
) -> Starlette:
    settings = settings or Settings()
    manager = TransportManager(
        registry if registry is not None else SessionRegistry(),
        base_url=settings.base_url,
        timeout_seconds=settings.http_timeout_seconds,
    )

    @contextlib.asynccontextmanager
    async def lifespan(_: Starlette) -> AsyncIterator[None]:
        async with manager.run():
            yield

    app = Starlette(
        routes=[
            Route("/health", endpoint=health, methods=["GET"]),
            Route("/sse", endpoint=SseEndpoint(manager), methods=["GET", "POST", "DELETE"]),
            Route("/message", endpoint=manager.handle_legacy_message, methods=["POST"]),
        ],
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
                allow_headers=["Content-Type", "Authorization", MCP_SESSION_ID_HEADER],
                expose_headers=[MCP_SESSION_ID_HEADER],
            ),
            Middleware(TokenMiddleware),
        ],
        lifespan=lifespan,
    )
    app.state.manager = manager
    return app
