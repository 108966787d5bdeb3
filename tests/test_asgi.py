from __future__ import annotations

import json
import logging
import time
from functools import partial

import anyio
import pytest
from mcp import types
from mcp.shared.message import SessionMessage
from starlette.testclient import TestClient

from conftest import BASE_URL, TOKEN
from fastidious_mcp.asgi import create_app
from fastidious_mcp.sessions import LegacySession, SessionRegistry, StreamingSession
from fastidious_mcp.settings import Settings
from fastidious_mcp.transport import TransportManager

MCP_HEADERS = {
    "Accept": "application/json, text/event-stream",
    "mcp-protocol-version": types.LATEST_PROTOCOL_VERSION,
}
INITIALIZE = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": types.LATEST_PROTOCOL_VERSION,
        "capabilities": {},
        "clientInfo": {"name": "pytest", "version": "0"},
    },
}
INITIALIZED = {"jsonrpc": "2.0", "method": "notifications/initialized"}


class RecordingInbound:
    def __init__(self) -> None:
        self.received: list[SessionMessage | Exception] = []

    async def send(self, item: SessionMessage | Exception) -> None:
        self.received.append(item)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, FASTIDIOUS_URL=BASE_URL)


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


def _legacy(session_id: str) -> LegacySession:
    return LegacySession(
        session_id=session_id,
        token=TOKEN,
        engine=object(),
        client=None,
        inbound=RecordingInbound(),
    )


def test_health_needs_no_token(settings) -> None:
    with TestClient(create_app(settings)) as client:
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok", "version": "1.0.0"}


@pytest.mark.parametrize(
    ("method", "query"),
    [
        ("POST", ""),
        ("POST", "?token="),
        ("POST", "?token=abc123"),
        ("GET", ""),
        ("GET", "?token=FST_upper"),
        ("DELETE", "?token=nope"),
    ],
)
def test_sse_rejects_missing_or_foreign_token(
    settings, registry, monkeypatch, method, query
) -> None:
    def no_remote_client(*args, **kwargs):
        raise AssertionError("no remote client may be created for a rejected request")

    monkeypatch.setattr("fastidious_mcp.transport.FastidiousClient", no_remote_client)

    with TestClient(create_app(settings, registry=registry)) as client:
        r = client.request(method, f"/sse{query}", json=INITIALIZE, headers=MCP_HEADERS)

    assert r.status_code == 401
    assert r.json() == {"error": "Valid token required as query parameter"}
    assert registry.streaming_count == 0
    assert registry.legacy_count == 0


def test_cors_preflight_and_exposed_session_header(settings) -> None:
    with TestClient(create_app(settings)) as client:
        r = client.options(
            "/sse",
            headers={
                "Origin": "https://desktop.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "content-type, mcp-session-id",
            },
        )
        assert r.status_code == 200
        assert r.headers["access-control-allow-origin"] == "*"

        r2 = client.post("/sse", headers={"Origin": "https://desktop.example"})
        assert r2.status_code == 401
        assert "mcp-session-id" in r2.headers["access-control-expose-headers"].lower()


def test_message_without_open_stream_is_rejected(settings, registry) -> None:
    with TestClient(create_app(settings, registry=registry)) as client:
        r = client.post("/message", json=INITIALIZED)

    assert r.status_code == 400
    assert r.json() == {"error": "No active SSE connection"}


def test_message_goes_to_most_recent_legacy_session(settings, registry) -> None:
    first, second = _legacy("1000-a"), _legacy("2000-b")
    registry.add_legacy(first)
    registry.add_legacy(second)

    with TestClient(create_app(settings, registry=registry)) as client:
        r = client.post("/message", json=INITIALIZED)

    assert r.status_code == 202
    assert first.inbound.received == []
    assert len(second.inbound.received) == 1
    delivered = second.inbound.received[0]
    assert isinstance(delivered, SessionMessage)
    assert delivered.message.root.method == "notifications/initialized"


def test_unparseable_message_is_rejected(settings, registry) -> None:
    session = _legacy("1000-a")
    registry.add_legacy(session)

    with TestClient(create_app(settings, registry=registry)) as client:
        r = client.post(
            "/message", content=b"not json", headers={"Content-Type": "application/json"}
        )

    assert r.status_code == 400
    assert session.inbound.received == []


def test_streaming_session_is_created_then_reused(settings, registry) -> None:
    url = f"/sse?token={TOKEN}"
    with TestClient(create_app(settings, registry=registry)) as client:
        r = client.post(url, json=INITIALIZE, headers=MCP_HEADERS)
        assert r.status_code == 200
        assert r.json()["result"]["serverInfo"]["name"] == "fastidious-mcp"
        session_id = r.headers["mcp-session-id"]

        session = registry.get_streaming(session_id)
        assert session is not None
        assert session.token == TOKEN
        engine = session.engine

        headers = {**MCP_HEADERS, "mcp-session-id": session_id}
        r = client.post(url, json=INITIALIZED, headers=headers)
        assert r.status_code == 202

        tools_list = {"jsonrpc": "2.0", "id": 2, "method": "tools/list"}
        r = client.post(url, json=tools_list, headers=headers)
        assert r.status_code == 200
        assert len(r.json()["result"]["tools"]) == 11

        r = client.post(
            url,
            json={
                "jsonrpc": "2.0",
                "id": 3,
                "method": "tools/call",
                "params": {"name": "archive_note", "arguments": {}},
            },
            headers=headers,
        )
        assert r.status_code == 200
        assert r.json()["error"]["code"] == types.METHOD_NOT_FOUND

        assert registry.streaming_count == 1
        assert registry.get_streaming(session_id).engine is engine


def test_unknown_session_id_starts_a_new_session(settings, registry) -> None:
    url = f"/sse?token={TOKEN}"
    with TestClient(create_app(settings, registry=registry)) as client:
        r = client.post(url, json=INITIALIZE, headers=MCP_HEADERS)
        first_id = r.headers["mcp-session-id"]

        r = client.post(
            url, json=INITIALIZE, headers={**MCP_HEADERS, "mcp-session-id": "no-such-session"}
        )
        assert r.status_code == 200
        second_id = r.headers["mcp-session-id"]

        assert second_id not in (first_id, "no-such-session")
        assert registry.streaming_count == 2
        first, second = registry.get_streaming(first_id), registry.get_streaming(second_id)
        assert first.engine is not second.engine


def test_session_rejects_a_different_token(settings, registry) -> None:
    with TestClient(create_app(settings, registry=registry)) as client:
        r = client.post(f"/sse?token={TOKEN}", json=INITIALIZE, headers=MCP_HEADERS)
        session_id = r.headers["mcp-session-id"]

        r = client.post(
            "/sse?token=fst_someone_else",
            json={"jsonrpc": "2.0", "id": 2, "method": "tools/list"},
            headers={**MCP_HEADERS, "mcp-session-id": session_id},
        )

    assert r.status_code == 403


def test_streaming_session_is_removed_after_delete(settings, registry) -> None:
    url = f"/sse?token={TOKEN}"
    with TestClient(create_app(settings, registry=registry)) as client:
        r = client.post(url, json=INITIALIZE, headers=MCP_HEADERS)
        session_id = r.headers["mcp-session-id"]
        assert registry.get_streaming(session_id) is not None

        r = client.delete(url, headers={**MCP_HEADERS, "mcp-session-id": session_id})
        assert r.status_code == 200

        # The engine task winds down on the app's event loop thread.
        for _ in range(100):
            if registry.get_streaming(session_id) is None:
                break
            time.sleep(0.02)
        assert registry.get_streaming(session_id) is None
        assert registry.streaming_count == 0


class FailingTransport:
    def __init__(self, *, start_response: bool) -> None:
        self.start_response = start_response

    async def handle_request(self, scope, receive, send) -> None:
        if self.start_response:
            await send({"type": "http.response.start", "status": 200, "headers": []})
        raise RuntimeError("transport blew up")


def _streaming(transport: FailingTransport) -> StreamingSession:
    return StreamingSession(
        session_id="s1", token=TOKEN, engine=object(), client=None, transport=transport
    )


async def _no_body() -> dict:
    return {"type": "http.request", "body": b"", "more_body": False}


@pytest.mark.asyncio
async def test_failure_before_headers_answers_500(registry) -> None:
    manager = TransportManager(registry, base_url=BASE_URL)
    sent: list[dict] = []

    async def send(message) -> None:
        sent.append(message)

    scope = {"type": "http", "method": "POST", "path": "/sse", "headers": []}
    status = await manager._forward(
        _streaming(FailingTransport(start_response=False)), scope, _no_body, send
    )

    assert status == 500
    assert sent[0]["type"] == "http.response.start"
    assert sent[0]["status"] == 500
    body = b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")
    assert json.loads(body) == {"error": "Internal server error"}


@pytest.mark.asyncio
async def test_failure_after_headers_is_only_logged(registry, caplog) -> None:
    manager = TransportManager(registry, base_url=BASE_URL)
    sent: list[dict] = []

    async def send(message) -> None:
        sent.append(message)

    scope = {"type": "http", "method": "POST", "path": "/sse", "headers": []}
    with caplog.at_level(logging.ERROR, logger="fastidious_mcp.transport"):
        status = await manager._forward(
            _streaming(FailingTransport(start_response=True)), scope, _no_body, send
        )

    assert status == 200
    assert [m["type"] for m in sent] == ["http.response.start"]
    assert "Error after response started for session s1" in caplog.text


@pytest.mark.asyncio
async def test_legacy_stream_registers_answers_and_deregisters(registry) -> None:
    manager = TransportManager(registry, base_url=BASE_URL)
    chunks: list[str] = []
    endpoint_seen = anyio.Event()
    answered = anyio.Event()
    disconnected = anyio.Event()

    async def receive() -> dict:
        await disconnected.wait()
        return {"type": "http.disconnect"}

    async def send(message) -> None:
        if message["type"] != "http.response.body":
            return
        chunk = message.get("body", b"").decode()
        chunks.append(chunk)
        if "event: endpoint" in chunk:
            endpoint_seen.set()
        elif "serverInfo" in chunk:
            answered.set()

    scope = {
        "type": "http",
        "method": "GET",
        "path": "/sse",
        "query_string": f"token={TOKEN}".encode(),
        "headers": [],
    }
    with anyio.fail_after(10):
        async with manager.run():
            async with anyio.create_task_group() as tg:
                tg.start_soon(partial(manager.open_legacy, scope, receive, send, token=TOKEN))

                await endpoint_seen.wait()
                assert registry.legacy_count == 1
                session = registry.latest_legacy()
                assert session.token == TOKEN
                assert any("data: /message" in chunk for chunk in chunks)

                initialize = types.JSONRPCMessage.model_validate(INITIALIZE)
                await session.inbound.send(SessionMessage(initialize))
                await answered.wait()

                disconnected.set()

            assert registry.legacy_count == 0
