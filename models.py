"""Shared data models for prompt-bank."""

import json
from functools import lru_cache
from typing import Any

from lancedb.pydantic import LanceModel, Vector
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class PromptMetadata(BaseModel):
    """Everything stored alongside a prompt's vector.

    Field names are snake_case in Python and camelCase on the wire.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )

    schema_version: int = 1
    model_id: str
    text: str
    preview: str
    title: str | None = None
    tags: list[str] | None = None
    source: str | None = None
    upload_id: str | None = None
    chunk_index: int | None = None
    chunk_count: int | None = None
    created_at: str
    updated_at: str
    length: int
    word_count: int

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PromptRecord(BaseModel):
    key: str
    metadata: PromptMetadata
    distance: float | None = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"key": self.key, "metadata": self.metadata.to_wire()}
        if self.distance is not None:
            payload["distance"] = self.distance
        return payload


@lru_cache(maxsize=8)
def prompt_row_model(dimension: int) -> type[LanceModel]:
    """LanceDB table schema for one user's prompts.

    The vector size is whatever the embedding model produced when the table
    was created; existing tables keep their size.
    """

    class PromptRow(LanceModel):
        model_config = ConfigDict(protected_namespaces=())

        key: str
        vector: Vector(dimension)  # type: ignore[valid-type]
        text: str  # not used in filters
        preview: str  # not used in filters
        title: str | None = None
        tags: str = "[]"  # JSON array as string
        source: str | None = None
        upload_id: str | None = None
        chunk_index: int | None = None
        chunk_count: int | None = None
        created_at: str
        updated_at: str
        length: int
        word_count: int
        model_id: str
        schema_version: int

    return PromptRow


def metadata_to_row(key: str, vector: list[float], metadata: PromptMetadata) -> dict[str, Any]:
    row = metadata.model_dump(exclude={"tags"})
    row["key"] = key
    row["vector"] = vector
    row["tags"] = json.dumps(metadata.tags or [])
    return row


def row_to_metadata(row: dict[str, Any]) -> PromptMetadata | None:
    """Rebuild metadata from a LanceDB row; None when the row has no usable text."""
    text = row.get("text")
    if not isinstance(text, str) or not text.strip():
        return None
    try:
        tags = json.loads(row.get("tags") or "[]")
    except (TypeError, json.JSONDecodeError):
        tags = []
    fields = {
        name: row.get(name)
        for name in PromptMetadata.model_fields
        if name != "tags" and row.get(name) is not None
    }
    fields["tags"] = [t for t in tags if isinstance(t, str)] or None
    try:
        return PromptMetadata.model_validate(fields)
    except ValueError:
        return None


# =============================================================================
# Tool Request Schemas
# =============================================================================


def _required(value: str, field: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"`{field}` is required")
    return value


class PromptInput(BaseModel):
    """One prompt as supplied by a caller; blank text is allowed in batches."""

    text: str = ""
    title: str | None = None
    tags: list[str] | None = None
    source: str | None = None


class SavePromptRequest(PromptInput):
    @field_validator("text")
    @classmethod
    def _text_required(cls, value: str) -> str:
        return _required(value, "text")


class SavePromptsRequest(BaseModel):
    prompts: list[PromptInput] = Field(default_factory=list)
    text: str | None = None  # raw multi-prompt text, split server-side
    upload_id: str | None = None


class UpdatePromptRequest(PromptInput):
    key: str

    @field_validator("key")
    @classmethod
    def _key_required(cls, value: str) -> str:
        return _required(value, "key").strip()

    @field_validator("text")
    @classmethod
    def _text_required(cls, value: str) -> str:
        return _required(value, "text")


class DeletePromptRequest(BaseModel):
    key: str

    @field_validator("key")
    @classmethod
    def _key_required(cls, value: str) -> str:
        return _required(value, "key").strip()


class FetchPromptsRequest(BaseModel):
    query: str = ""
    limit: int = Field(default=4, ge=1)
    max_distance: float | None = Field(default=None, ge=0.0, le=2.0)
    source: str | None = None
    upload_id: str | None = None
    tags_any: list[str] | None = None
    tags_all: list[str] | None = None
