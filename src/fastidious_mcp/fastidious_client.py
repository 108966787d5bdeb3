"""Async client for the Fastidious HTTP API."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import httpx

from .errors import FastidiousApiError


@dataclass(frozen=True, slots=True)
class ApiConfig:
    base_url: str
    token: str


class FastidiousClient:
    """Thin wrapper around the Fastidious REST API.

    Every instance is bound to one (base URL, token) pair; nothing is shared
    between sessions.
    """

    def __init__(self, config: ApiConfig, *, timeout_seconds: float | None = None) -> None:
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def __aenter__(self) -> FastidiousClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch(
        self,
        path: str,
        *,
        method: str = "GET",
        json_body: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Issue one authenticated request and return the response as-is."""
        url_path = path if path.startswith("/") else f"/{path}"
        request_headers = {"Authorization": f"Bearer {self.config.token}"}
        request_headers.update(headers or {})

        content: str | None = None
        if json_body is not None:
            content = json.dumps(json_body)
            request_headers["Content-Type"] = "application/json"

        return await self._client.request(
            method.upper(),
            url_path,
            params=params,
            content=content,
            headers=request_headers,
        )

    async def request_json(
        self,
        operation: str,
        path: str,
        *,
        method: str = "GET",
        json_body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        resp = await self.fetch(path, method=method, json_body=json_body, params=params)
        if not resp.is_success:
            raise FastidiousApiError(
                operation=operation,
                status_code=resp.status_code,
                reason=resp.reason_phrase or str(resp.status_code),
                method=resp.request.method,
                url=str(resp.request.url),
            )
        if not resp.content:
            return None
        return resp.json()
