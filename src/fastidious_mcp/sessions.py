"""Session records and the registry that owns them."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass

from anyio.streams.memory import MemoryObjectSendStream
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import StreamableHTTPServerTransport
from mcp.shared.message import SessionMessage

from .fastidious_client import FastidiousClient

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StreamingSession:
    """A Streamable HTTP session, keyed by its ``mcp-session-id``."""

    session_id: str
    token: str
    engine: Server
    client: FastidiousClient
    transport: StreamableHTTPServerTransport


@dataclass(slots=True)
class LegacySession:
    """A legacy SSE session; ``inbound`` feeds the engine's read stream."""

    session_id: str
    token: str
    engine: Server
    client: FastidiousClient
    inbound: MemoryObjectSendStream[SessionMessage | Exception]


def new_legacy_session_id() -> str:
    # Only unique within this process, which is all the legacy table needs.
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class SessionRegistry:
    """Lookup tables for both transport styles.

    The two tables are independent keyspaces. The legacy table keeps
    registration order so the newest open session can be found.
    """

    def __init__(self) -> None:
        self._streaming: dict[str, StreamingSession] = {}
        self._legacy: dict[str, LegacySession] = {}

    @property
    def streaming_count(self) -> int:
        return len(self._streaming)

    @property
    def legacy_count(self) -> int:
        return len(self._legacy)

    def add_streaming(self, session: StreamingSession) -> None:
        if session.session_id in self._streaming:
            raise KeyError(f"Streaming session already registered: {session.session_id}")
        self._streaming[session.session_id] = session
        logger.info("Streaming session registered: %s", session.session_id)

    def get_streaming(self, session_id: str | None) -> StreamingSession | None:
        if not session_id:
            return None
        return self._streaming.get(session_id)

    def remove_streaming(self, session_id: str) -> StreamingSession | None:
        session = self._streaming.pop(session_id, None)
        if session is not None:
            logger.info("Streaming session removed: %s", session_id)
        return session

    def add_legacy(self, session: LegacySession) -> None:
        if session.session_id in self._legacy:
            raise KeyError(f"Legacy session already registered: {session.session_id}")
        self._legacy[session.session_id] = session
        logger.info("Legacy SSE session registered: %s", session.session_id)

    def remove_legacy(self, session_id: str) -> LegacySession | None:
        session = self._legacy.pop(session_id, None)
        if session is not None:
            logger.info("Legacy SSE session removed: %s", session_id)
        return session

    def latest_legacy(self) -> LegacySession | None:
        """Newest open legacy session; the side-channel POST is routed here."""
        if not self._legacy:
            return None
        return next(reversed(self._legacy.values()))
