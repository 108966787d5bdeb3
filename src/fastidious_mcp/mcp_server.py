"""MCP server (engine) definition: one instance per connected client."""

from __future__ import annotations

import json
import logging

from mcp import types
from mcp.server.lowlevel import Server
from mcp.shared.exceptions import McpError

from .fastidious_client import FastidiousClient
from .settings import VERSION
from .tools import dispatch, list_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "fastidious-mcp"


def create_mcp_server(client: FastidiousClient) -> Server:
    """Build an engine whose tool calls all go through ``client``."""
    server: Server = Server(
        SERVER_NAME,
        version=VERSION,
        instructions=(
            "Create, read, update, delete, search and organize Fastidious notes. "
            "Collections are notes that hold other notes and can be nested."
        ),
    )

    @server.list_tools()
    async def _list_tools() -> list[types.Tool]:
        return list_tools()

    async def _call_tool(req: types.CallToolRequest) -> types.ServerResult:
        name = req.params.name
        logger.debug("Tool call: %s", name)
        try:
            result = await dispatch(client, name, req.params.arguments)
        except McpError as exc:
            logger.warning("Tool %s failed: %s", name, exc.error.message)
            raise
        return types.ServerResult(
            types.CallToolResult(
                content=[types.TextContent(type="text", text=json.dumps(result, indent=2))]
            )
        )

    # Registered directly rather than via @server.call_tool() so that an
    # McpError reaches the client as a JSON-RPC error carrying its code.
    server.request_handlers[types.CallToolRequest] = _call_tool
    return server
