"""Argument models of the MCP tools.

Service responses are not modelled here: they are handed back to the caller
as the JSON the service sent.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

COLLECTION_TYPE = "collection"
DEFAULT_DISPLAY_FIELDS = ("title", "type", "createdAt")

FieldType = Literal["text", "number", "checkbox", "select"]
ViewMode = Literal["grid", "list"]
SortDirection = Literal["asc", "desc"]


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FieldOption(_Model):
    id: str
    value: str
    color: str | None = Field(default=None, description="Optional tailwind color name")


class FieldDefinition(_Model):
    name: str = Field(description="Field name")
    type: FieldType = Field(description="Field type")
    options: list[FieldOption] | None = Field(
        default=None, description="Options for select fields"
    )
    required: bool | None = Field(default=None, description="Whether field is required")
    description: str | None = Field(default=None, description="Field description")


# Tool arguments. The JSON schema of each model is the tool's inputSchema.


class ToolArguments(_Model):
    pass


class CreateNoteArgs(ToolArguments):
    title: str = Field(description="Title of the note")
    content: str = Field(description="Content of the note in Markdown format")
    parent_id: str | None = Field(
        default=None, description="Optional: ID of parent collection to add this note to"
    )
    fields: dict[str, str] | None = Field(
        default=None, description="Optional: Custom fields as key-value pairs"
    )


class GetNoteArgs(ToolArguments):
    id: str = Field(description="ID of the note to retrieve")


class UpdateNoteArgs(ToolArguments):
    id: str = Field(description="ID of the note to update")
    title: str | None = Field(default=None, description="New title for the note")
    content: str | None = Field(default=None, description="New content in Markdown format")
    fields: dict[str, str] | None = Field(default=None, description="Custom fields to update")


class DeleteNoteArgs(ToolArguments):
    id: str = Field(description="ID of the note to delete")


class ListNotesArgs(ToolArguments):
    parent_id: str | None = Field(
        default=None,
        description="Optional: Filter notes by parent collection ID. Omit for root-level items.",
    )


class SearchNotesArgs(ToolArguments):
    query: str = Field(description="Search query to match against note content")
    parent_id: str | None = Field(
        default=None, description="Optional: Limit search to a specific collection"
    )


class CreateCollectionArgs(ToolArguments):
    title: str = Field(description="Title of the collection")
    parent_id: str | None = Field(
        default=None,
        description="Optional: ID of parent collection for nesting. Omit for root-level.",
    )
    field_definitions: list[FieldDefinition] | None = Field(
        default=None,
        description="Optional: Schema defining fields for items in this collection",
    )
    display_fields: list[str] | None = Field(
        default=None,
        description='Optional: Fields to display in list view (e.g., ["title", "createdAt"])',
    )
    view_mode: ViewMode = Field(default="grid", description="View mode for the collection")
    sort_field: str = Field(default="createdAt", description="Field to sort by")
    sort_direction: SortDirection = Field(default="desc", description="Sort direction")


class UpdateCollectionArgs(ToolArguments):
    id: str = Field(description="ID of the collection to update")
    title: str | None = Field(default=None, description="New title for the collection")
    field_definitions: list[FieldDefinition] | None = Field(
        default=None, description="Updated field definitions schema"
    )
    display_fields: list[str] | None = Field(
        default=None, description="Fields to display in list view"
    )
    view_mode: ViewMode | None = Field(default=None, description="View mode for the collection")
    sort_field: str | None = Field(default=None, description="Field to sort by")
    sort_direction: SortDirection | None = Field(default=None, description="Sort direction")


class GetCollectionArgs(ToolArguments):
    id: str = Field(description="ID of the collection to retrieve")
    include_children: bool = Field(
        default=False, description="Whether to include child notes/collections"
    )


class ListCollectionsArgs(ToolArguments):
    parent_id: str | None = Field(
        default=None, description="Optional: List collections within a parent collection"
    )


class MoveNoteArgs(ToolArguments):
    id: str = Field(description="ID of the note or collection to move")
    target_parent_id: str | None = Field(
        default=None,
        description="ID of the target parent collection. Omit or null to move to root.",
    )
