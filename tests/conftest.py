from __future__ import annotations

import json
import re
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest
import pytest_asyncio

from fastidious_mcp.fastidious_client import ApiConfig, FastidiousClient

BASE_URL = "http://fastidious.test"
TOKEN = "fst_test_token"

_ITEM_PATH = re.compile(r"^/api/pastes/([^/]+)(/move)?$")


class FakeFastidious:
    """In-memory stand-in for the Fastidious items API."""

    def __init__(self) -> None:
        self.items: dict[str, dict[str, Any]] = {}
        self._seq = 0

    def _stamp(self) -> str:
        self._seq += 1
        return f"2024-01-01T00:00:{self._seq:02d}Z"

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.headers.get("authorization") != f"Bearer {TOKEN}":
            return httpx.Response(401)

        path = request.url.path
        if path == "/api/pastes":
            if request.method == "GET":
                return self._list(request.url.params)
            if request.method == "POST":
                return self._create(json.loads(request.content))
            return httpx.Response(405)

        match = _ITEM_PATH.match(path)
        if match is None:
            return httpx.Response(404)
        item = self.items.get(match.group(1))
        if item is None:
            return httpx.Response(404)

        if match.group(2):
            if request.method != "POST":
                return httpx.Response(405)
            item["parentId"] = json.loads(request.content)["targetParentId"]
            item["updatedAt"] = self._stamp()
            return httpx.Response(200, json=item)
        if request.method == "GET":
            return httpx.Response(200, json=item)
        if request.method == "PUT":
            item.update(json.loads(request.content))
            item["updatedAt"] = self._stamp()
            return httpx.Response(200, json=item)
        if request.method == "DELETE":
            del self.items[item["id"]]
            return httpx.Response(204)
        return httpx.Response(405)

    def _list(self, params: httpx.QueryParams) -> httpx.Response:
        parent_id = params.get("parentId")
        query = params.get("q")
        items = [i for i in self.items.values() if i.get("parentId") == parent_id]
        if query:
            needle = query.lower()
            items = [
                i
                for i in items
                if needle in (i.get("title") or "").lower()
                or needle in (i.get("content") or "").lower()
            ]
        return httpx.Response(200, json={"pastes": items})

    def _create(self, body: dict[str, Any]) -> httpx.Response:
        item_id = f"p{len(self.items) + 1}"
        now = self._stamp()
        item = {"id": item_id, **body, "createdAt": now, "updatedAt": now}
        item.setdefault("parentId", None)
        self.items[item_id] = item
        return httpx.Response(201, json=item)


@pytest_asyncio.fixture
async def api_client() -> AsyncIterator[FastidiousClient]:
    async with FastidiousClient(ApiConfig(base_url=BASE_URL, token=TOKEN)) as client:
        yield client


@pytest.fixture
def fake_service() -> FakeFastidious:
    return FakeFastidious()
