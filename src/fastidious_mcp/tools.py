"""Tool catalog and dispatcher.

Each tool is declared once, as a ``ToolDef``: the argument model doubles as
the advertised input schema and as the validator applied before dispatch.
Items come back exactly as the service sent them; the only reshaping is the
note/collection filtering of list results.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from mcp import types
from mcp.shared.exceptions import McpError
from pydantic import ValidationError

from .errors import FastidiousApiError
from .fastidious_client import FastidiousClient
from .models import (
    COLLECTION_TYPE,
    DEFAULT_DISPLAY_FIELDS,
    CreateCollectionArgs,
    CreateNoteArgs,
    DeleteNoteArgs,
    GetCollectionArgs,
    GetNoteArgs,
    ListCollectionsArgs,
    ListNotesArgs,
    MoveNoteArgs,
    SearchNotesArgs,
    ToolArguments,
    UpdateCollectionArgs,
    UpdateNoteArgs,
)

logger = logging.getLogger(__name__)

ITEMS_PATH = "/api/pastes"

Item = dict[str, Any]
ToolHandler = Callable[[FastidiousClient, Any], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class ToolDef:
    name: str
    description: str
    arguments: type[ToolArguments]
    handler: ToolHandler

    def to_tool(self) -> types.Tool:
        return types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.arguments.model_json_schema(by_alias=True),
        )


def _item_path(item_id: str) -> str:
    return f"{ITEMS_PATH}/{item_id}"


def _parent_params(parent_id: str | None) -> dict[str, str]:
    return {"parentId": parent_id} if parent_id else {}


def _is_collection(item: Item) -> bool:
    return item.get("type") == COLLECTION_TYPE


async def _list_items(
    client: FastidiousClient, operation: str, params: dict[str, str]
) -> list[Item]:
    data = await client.request_json(operation, ITEMS_PATH, params=params or None)
    return list((data or {}).get("pastes") or [])


async def create_note(client: FastidiousClient, args: CreateNoteArgs) -> Item:
    payload: dict[str, Any] = {"type": "text", "title": args.title, "content": args.content}
    if args.parent_id is not None:
        payload["parentId"] = args.parent_id
    if args.fields is not None:
        payload["fields"] = args.fields
    return await client.request_json("create note", ITEMS_PATH, method="POST", json_body=payload)


async def get_note(client: FastidiousClient, args: GetNoteArgs) -> Item:
    return await client.request_json("get note", _item_path(args.id))


async def update_note(client: FastidiousClient, args: UpdateNoteArgs) -> Item:
    updates = args.model_dump(by_alias=True, exclude_unset=True, exclude={"id"})
    return await client.request_json(
        "update note", _item_path(args.id), method="PUT", json_body=updates
    )


async def delete_note(client: FastidiousClient, args: DeleteNoteArgs) -> dict[str, Any]:
    await client.request_json("delete note", _item_path(args.id), method="DELETE")
    return {"success": True, "id": args.id}


async def list_notes(client: FastidiousClient, args: ListNotesArgs) -> dict[str, list[Item]]:
    items = await _list_items(client, "list notes", _parent_params(args.parent_id))
    return {"notes": [item for item in items if not _is_collection(item)]}


async def search_notes(client: FastidiousClient, args: SearchNotesArgs) -> dict[str, list[Item]]:
    params = {"q": args.query, **_parent_params(args.parent_id)}
    items = await _list_items(client, "search notes", params)
    return {"notes": [item for item in items if not _is_collection(item)]}


async def create_collection(client: FastidiousClient, args: CreateCollectionArgs) -> Item:
    payload: dict[str, Any] = {"type": "collection", "title": args.title}
    if args.parent_id is not None:
        payload["parentId"] = args.parent_id
    if args.field_definitions is not None:
        payload["fieldDefinitions"] = [
            d.model_dump(by_alias=True, exclude_none=True) for d in args.field_definitions
        ]
    # An explicit empty list is kept; only an omitted value gets the defaults.
    payload["displayFields"] = (
        list(args.display_fields)
        if args.display_fields is not None
        else list(DEFAULT_DISPLAY_FIELDS)
    )
    payload["viewMode"] = args.view_mode
    payload["sortField"] = args.sort_field
    payload["sortDirection"] = args.sort_direction
    return await client.request_json(
        "create collection", ITEMS_PATH, method="POST", json_body=payload
    )


async def update_collection(client: FastidiousClient, args: UpdateCollectionArgs) -> Item:
    updates = args.model_dump(by_alias=True, exclude_unset=True, exclude={"id"})
    return await client.request_json(
        "update collection", _item_path(args.id), method="PUT", json_body=updates
    )


async def get_collection(client: FastidiousClient, args: GetCollectionArgs) -> dict[str, Any]:
    collection = await client.request_json("get collection", _item_path(args.id))
    if not args.include_children:
        return {"collection": collection}

    children = await _list_items(client, "get collection children", {"parentId": args.id})
    return {"collection": collection, "children": children}


async def list_collections(
    client: FastidiousClient, args: ListCollectionsArgs
) -> dict[str, list[Item]]:
    items = await _list_items(client, "list collections", _parent_params(args.parent_id))
    return {"collections": [item for item in items if _is_collection(item)]}


async def move_note(client: FastidiousClient, args: MoveNoteArgs) -> Item:
    # An explicit null means "move to root"; the key is always sent.
    payload = {"targetParentId": args.target_parent_id or None}
    return await client.request_json(
        "move note", f"{_item_path(args.id)}/move", method="POST", json_body=payload
    )


TOOLS: tuple[ToolDef, ...] = (
    ToolDef(
        "create_note",
        "Create a new note in Fastidious. Notes should be in Markdown format.",
        CreateNoteArgs,
        create_note,
    ),
    ToolDef("get_note", "Get a specific note by ID with its full content", GetNoteArgs, get_note),
    ToolDef("update_note", "Update an existing note", UpdateNoteArgs, update_note),
    ToolDef("delete_note", "Delete a note by ID", DeleteNoteArgs, delete_note),
    ToolDef(
        "list_notes",
        "List all notes, optionally filtered by parent collection",
        ListNotesArgs,
        list_notes,
    ),
    ToolDef("search_notes", "Search notes by content", SearchNotesArgs, search_notes),
    ToolDef(
        "create_collection",
        "Create a new collection to organize notes",
        CreateCollectionArgs,
        create_collection,
    ),
    ToolDef(
        "update_collection",
        "Update a collection's settings, including field definitions",
        UpdateCollectionArgs,
        update_collection,
    ),
    ToolDef(
        "get_collection",
        "Get a collection by ID, optionally including its children",
        GetCollectionArgs,
        get_collection,
    ),
    ToolDef(
        "list_collections",
        "List all collections at root level or within a parent",
        ListCollectionsArgs,
        list_collections,
    ),
    ToolDef(
        "move_note",
        "Move a note or collection to a different parent collection",
        MoveNoteArgs,
        move_note,
    ),
)

TOOLS_BY_NAME: dict[str, ToolDef] = {tool.name: tool for tool in TOOLS}


def list_tools() -> list[types.Tool]:
    return [tool.to_tool() for tool in TOOLS]


def _validation_message(exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err["loc"]) or "arguments"
        problems.append(f"{where}: {err['msg']}")
    return "Invalid arguments: " + "; ".join(problems)


async def dispatch(client: FastidiousClient, name: str, arguments: dict[str, Any] | None) -> Any:
    """Run one tool call and return its JSON-ready result.

    Failures surface as ``McpError``: ``METHOD_NOT_FOUND`` for an unknown tool,
    ``INTERNAL_ERROR`` for everything else.
    """
    tool = TOOLS_BY_NAME.get(name)
    if tool is None:
        raise McpError(
            types.ErrorData(code=types.METHOD_NOT_FOUND, message=f"Unknown tool: {name}")
        )

    try:
        args = tool.arguments.model_validate(arguments or {})
    except ValidationError as exc:
        raise McpError(
            types.ErrorData(code=types.INTERNAL_ERROR, message=_validation_message(exc))
        ) from exc

    try:
        return await tool.handler(client, args)
    except McpError:
        raise
    except FastidiousApiError as exc:
        raise McpError(types.ErrorData(code=types.INTERNAL_ERROR, message=str(exc))) from exc
    except Exception as exc:
        logger.exception("Tool %s failed", name)
        raise McpError(
            types.ErrorData(code=types.INTERNAL_ERROR, message=f"Tool {name} failed: {exc}")
        ) from exc
