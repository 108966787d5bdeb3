"""Session lifecycle for the two HTTP transports.

Streamable HTTP sessions are keyed by the ``mcp-session-id`` header. Legacy
SSE sessions are keyed locally; their side-channel POSTs carry no id and go to
the newest open session.
"""

from __future__ import annotations

import contextlib
import logging
import secrets
from collections.abc import AsyncIterator
from typing import Any
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup, TaskStatus
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from mcp.shared.message import SessionMessage
from pydantic import ValidationError
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Message, Receive, Scope, Send

from .fastidious_client import ApiConfig, FastidiousClient
from .mcp_server import create_mcp_server
from .sessions import LegacySession, SessionRegistry, StreamingSession, new_legacy_session_id

logger = logging.getLogger(__name__)


def _token_hint(token: str) -> str:
    return f"{token[:8]}..."


def _without_session_header(scope: Scope) -> Scope:
    header = MCP_SESSION_ID_HEADER.encode("latin-1")
    headers = [(k, v) for k, v in scope["headers"] if k.lower() != header]
    return {**scope, "headers": headers}


class TransportManager:
    """Creates, reuses and tears down per-client engines.

    ``run()`` must be entered (normally from the ASGI lifespan) before any
    request is handled; every engine runs as a task in its task group.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        base_url: str,
        timeout_seconds: float | None = None,
        message_path: str = "/message",
        json_response: bool = True,
    ) -> None:
        self.registry = registry
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._message_path = message_path
        self._json_response = json_response
        self._task_group: TaskGroup | None = None

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            try:
                yield
            finally:
                tg.cancel_scope.cancel()
                self._task_group = None

    def _require_task_group(self) -> TaskGroup:
        if self._task_group is None:
            raise RuntimeError("TransportManager.run() has not been entered")
        return self._task_group

    def _new_engine(self, token: str) -> tuple[FastidiousClient, Server]:
        client = FastidiousClient(
            ApiConfig(base_url=self._base_url, token=token),
            timeout_seconds=self._timeout_seconds,
        )
        return client, create_mcp_server(client)

    # Streamable HTTP

    async def handle_streaming(
        self, scope: Scope, receive: Receive, send: Send, *, token: str
    ) -> None:
        request = Request(scope)
        session = self.registry.get_streaming(request.headers.get(MCP_SESSION_ID_HEADER))
        if session is not None:
            if not secrets.compare_digest(session.token, token):
                response = JSONResponse({"error": "Token does not match session"}, status_code=403)
                await response(scope, receive, send)
                return
            await self._forward(session, scope, receive, send)
            return

        if request.method != "POST":
            response = JSONResponse({"error": "Unknown or expired session"}, status_code=404)
            await response(scope, receive, send)
            return

        # A stale id must not leak into the new transport's session check.
        session = await self._open_streaming(token)
        status = await self._forward(session, _without_session_header(scope), receive, send)
        if status is None or status >= 400:
            logger.warning(
                "Streaming session %s failed its first exchange (status %s); closing",
                session.session_id,
                status,
            )
            await session.transport.terminate()

    async def _open_streaming(self, token: str) -> StreamingSession:
        tg = self._require_task_group()
        client, engine = self._new_engine(token)
        session_id = uuid4().hex
        transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=self._json_response,
        )
        session = StreamingSession(
            session_id=session_id,
            token=token,
            engine=engine,
            client=client,
            transport=transport,
        )
        self.registry.add_streaming(session)
        logger.info(
            "Streaming session %s opened for token %s", session.session_id, _token_hint(token)
        )
        await tg.start(self._run_streaming, session)
        return session

    async def _run_streaming(
        self,
        session: StreamingSession,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        try:
            async with session.transport.connect() as (read_stream, write_stream):
                task_status.started()
                await session.engine.run(
                    read_stream,
                    write_stream,
                    session.engine.create_initialization_options(),
                )
        except Exception:
            logger.exception("Streaming session %s crashed", session.session_id)
        finally:
            self.registry.remove_streaming(session.session_id)
            with anyio.CancelScope(shield=True):
                await session.client.aclose()
            logger.info("Streaming session %s closed", session.session_id)

    async def _forward(
        self, session: StreamingSession, scope: Scope, receive: Receive, send: Send
    ) -> int | None:
        """Hand one request to the session's transport; return the response status."""
        status: int | None = None

        async def tracking_send(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await session.transport.handle_request(scope, receive, tracking_send)
        except Exception:
            if status is not None:
                logger.exception(
                    "Error after response started for session %s", session.session_id
                )
                return status
            logger.exception("Error handling request for session %s", session.session_id)
            response = JSONResponse({"error": "Internal server error"}, status_code=500)
            await response(scope, receive, send)
            return 500
        return status

    # Legacy SSE

    async def open_legacy(self, scope: Scope, receive: Receive, send: Send, *, token: str) -> None:
        tg = self._require_task_group()
        client, engine = self._new_engine(token)
        inbound_writer, inbound_reader = anyio.create_memory_object_stream[
            SessionMessage | Exception
        ](0)
        outbound_writer, outbound_reader = anyio.create_memory_object_stream[SessionMessage](0)

        session = LegacySession(
            session_id=new_legacy_session_id(),
            token=token,
            engine=engine,
            client=client,
            inbound=inbound_writer,
        )
        self.registry.add_legacy(session)
        logger.info(
            "Legacy SSE session %s opened for token %s", session.session_id, _token_hint(token)
        )
        tg.start_soon(self._run_legacy, session, inbound_reader, outbound_writer)

        async def events() -> AsyncIterator[dict[str, Any]]:
            yield {"event": "endpoint", "data": self._message_path}
            async for session_message in outbound_reader:
                yield {
                    "event": "message",
                    "data": session_message.message.model_dump_json(
                        by_alias=True, exclude_none=True
                    ),
                }

        try:
            await EventSourceResponse(events())(scope, receive, send)
        finally:
            # Client went away or the engine stopped.
            self._close_legacy(session, outbound_reader)

    def _close_legacy(
        self,
        session: LegacySession,
        outbound_reader: MemoryObjectReceiveStream[SessionMessage],
    ) -> None:
        self.registry.remove_legacy(session.session_id)
        session.inbound.close()
        outbound_reader.close()

    async def _run_legacy(
        self,
        session: LegacySession,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
    ) -> None:
        try:
            async with read_stream, write_stream:
                await session.engine.run(
                    read_stream,
                    write_stream,
                    session.engine.create_initialization_options(),
                )
        except Exception:
            logger.exception("Legacy SSE session %s crashed", session.session_id)
        finally:
            self.registry.remove_legacy(session.session_id)
            with anyio.CancelScope(shield=True):
                await session.client.aclose()
            logger.info("Legacy SSE session %s closed", session.session_id)

    async def handle_legacy_message(self, request: Request) -> Response:
        session = self.registry.latest_legacy()
        if session is None:
            return JSONResponse({"error": "No active SSE connection"}, status_code=400)

        body = await request.body()
        logger.debug("Message for legacy session %s: %.100s", session.session_id, body)
        try:
            message = types.JSONRPCMessage.model_validate_json(body)
        except ValidationError as exc:
            logger.warning("Unparseable message for session %s: %s", session.session_id, exc)
            return JSONResponse({"error": "Could not parse message"}, status_code=400)

        try:
            await session.inbound.send(SessionMessage(message))
        except Exception:
            logger.exception("Error handling message for session %s", session.session_id)
            return JSONResponse({"error": "Failed to handle message"}, status_code=500)
        return Response("Accepted", status_code=202)
