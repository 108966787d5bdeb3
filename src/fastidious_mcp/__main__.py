"""CLI entrypoints: stdio (local) and HTTP (hosted)."""

from __future__ import annotations

import argparse
import logging
import sys

import anyio
import uvicorn
from mcp.server.stdio import stdio_server
from pydantic import ValidationError

from .asgi import create_app
from .fastidious_client import ApiConfig, FastidiousClient
from .mcp_server import create_mcp_server
from .settings import Settings

logger = logging.getLogger("fastidious_mcp")


def configure_logging(level: str) -> None:
    # stderr only: in stdio mode stdout carries the protocol.
    logging.basicConfig(
        level=level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


def load_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        raise SystemExit(1) from None


async def serve_stdio(settings: Settings, token: str) -> None:
    config = ApiConfig(base_url=settings.base_url, token=token)
    async with FastidiousClient(config, timeout_seconds=settings.http_timeout_seconds) as client:
        server = create_mcp_server(client)
        async with stdio_server() as (read_stream, write_stream):
            logger.info("Fastidious MCP server running on stdio (API URL: %s)", settings.base_url)
            await server.run(read_stream, write_stream, server.create_initialization_options())


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    if not settings.fastidious_token:
        print("Error: FASTIDIOUS_TOKEN environment variable is required", file=sys.stderr)
        raise SystemExit(1)

    try:
        anyio.run(serve_stdio, settings, settings.fastidious_token)
    except KeyboardInterrupt:
        pass
    except Exception:
        logger.exception("Fatal error")
        raise SystemExit(1) from None


def main_http() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    logger.info("Fastidious API URL: %s", settings.base_url)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(prog="python -m fastidious_mcp")
    parser.add_argument("--http", action="store_true", help="serve over HTTP instead of stdio")
    if parser.parse_args().http:
        main_http()
    else:
        main()
