#!/usr/bin/env python3
"""
PromptBank MCP Server - LanceDB Prompt Library

Lets a chat host save, update, delete, list and semantically search a user's
prompts using:
- FastMCP for clean, idiomatic MCP server patterns
- LanceDB for one vector table per user (cosine distance)
- Ollama/qwen3-embedding for local embeddings, Google Gemini as alternative
- Content-addressed keys so re-saving a prompt replaces it
"""

from __future__ import annotations

import asyncio
import sys
import threading
from typing import Any, TypeVar

import pydantic
from mcp.server.auth.middleware.auth_context import get_access_token
from mcp.server.fastmcp import Context, FastMCP

from config import CONFIG, LOCAL_USER_ID
from errors import IndexNotFoundError, PromptBankError, ValidationError
from models import (
    DeletePromptRequest,
    FetchPromptsRequest,
    PromptInput,
    SavePromptRequest,
    SavePromptsRequest,
    UpdatePromptRequest,
)
from ranking import apply_distance_cutoff, dedupe_records, filter_records
from sessions import SessionRegistry
from utils import split_prompts
from vector_store import PromptStore

RequestT = TypeVar("RequestT", bound=pydantic.BaseModel)


# =============================================================================
# Store & Session Registry (Lazy Singletons)
# =============================================================================

_lock = threading.RLock()
_store: PromptStore | None = None

SESSIONS = SessionRegistry()


def get_store() -> PromptStore:
    """Get or create the prompt store (thread-safe)."""
    global _store
    if _store is None:
        with _lock:
            if _store is None:  # Double-check after acquiring lock
                _store = PromptStore(CONFIG)
    return _store


def resolve_user_id(ctx: Context | None, registry: SessionRegistry) -> str:
    """Identity that selects the user's table.

    The token's subject (the end user, not the OAuth client) wins; without
    one, a configured user id; else the stable local user, so prompts
    survive reconnects. PROMPT_BANK_PER_SESSION=1 gives each MCP session
    its own throwaway identity instead.
    """
    token = get_access_token()
    subject = getattr(token, "subject", None) if token is not None else None
    if subject:
        return subject
    if CONFIG.default_user_id:
        return CONFIG.default_user_id
    if CONFIG.per_session_users and ctx is not None:
        return registry.resolve(ctx.session).user_id
    return LOCAL_USER_ID


def _error(exc: PromptBankError, status: str = "error") -> dict[str, Any]:
    return {"status": status, "error": exc.to_dict()}


def _parse(model: type[RequestT], **fields: Any) -> tuple[RequestT | None, dict | None]:
    """Validate tool arguments into a request model, or return a failure result."""
    try:
        return model.model_validate(fields), None
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg'].removeprefix('Value error, ')}"
            for err in e.errors()
        )
        return None, _error(ValidationError(f"Invalid input - {problems}"))


def _failed(tool: str, exc: PromptBankError) -> dict[str, Any]:
    print(f"[prompt-bank] {tool} failed: {exc.kind}: {exc}", file=sys.stderr)
    return _error(exc)


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "prompt-bank",
    instructions="Personal prompt library: save prompts and find the most relevant ones by meaning",
    host=CONFIG.host,
    port=CONFIG.port,
    sse_path="/mcp",
    message_path="/mcp/messages/",
)


@mcp.tool(
    name="savePrompt",
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)
async def save_prompt(
    text: str,
    title: str | None = None,
    tags: list[str] | None = None,
    source: str | None = None,
    ctx: Context | None = None,
) -> dict[str, Any]:
    """Save a prompt for the current user. Saving the same text again updates it.

    Args:
        text: Prompt text. A leading markdown heading becomes the title.
        title: Optional short title (inferred from a heading when omitted)
        tags: Optional tags (inferred from the text when omitted)
        source: Optional origin, e.g. chatgpt, web, api
    """
    request, error = _parse(SavePromptRequest, text=text, title=title, tags=tags, source=source)
    if error:
        return error

    user_id = resolve_user_id(ctx, SESSIONS)
    try:
        saved = await get_store().upsert_prompt(
            user_id, request.text, title=request.title, tags=request.tags, source=request.source
        )
    except PromptBankError as e:
        return _failed("savePrompt", e)

    return {
        "status": "success",
        "key": saved.key,
        "indexName": saved.index_name,
        "prompt": saved.metadata.to_wire(),
    }


@mcp.tool(
    name="savePrompts",
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)
async def save_prompts(
    prompts: list[PromptInput] | None = None,
    text: str | None = None,
    upload_id: str | None = None,
    ctx: Context | None = None,
) -> dict[str, Any]:
    """Save several prompts at once as one upload.

    Args:
        prompts: Prompts to save, each with text and optional title/tags/source
        text: Alternatively, pasted text holding many prompts (split on blank
            lines, headings, bullets and numbered items)
        upload_id: Optional id grouping this upload (generated when omitted)
    """
    request, error = _parse(SavePromptsRequest, prompts=prompts or [], text=text, upload_id=upload_id)
    if error:
        return error

    items = list(request.prompts)
    if request.text:
        items.extend(PromptInput(text=p.text, title=p.title) for p in split_prompts(request.text))
    if not items:
        return _error(ValidationError("At least one prompt is required"))
    if len(items) > CONFIG.max_batch_size:
        return _error(
            ValidationError(
                f"Too many prompts: {len(items)} exceeds the maximum of {CONFIG.max_batch_size}"
            )
        )

    user_id = resolve_user_id(ctx, SESSIONS)
    try:
        result = await get_store().upsert_prompts(user_id, items, upload_id=request.upload_id)
    except PromptBankError as e:
        return _failed("savePrompts", e)

    return {
        "status": "success",
        "indexName": result.index_name,
        "uploadId": result.upload_id,
        "count": len(result.saved),
        "keys": result.keys,
    }


@mcp.tool(
    name="updatePrompt",
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)
async def update_prompt(
    key: str,
    text: str,
    title: str | None = None,
    tags: list[str] | None = None,
    source: str | None = None,
    ctx: Context | None = None,
) -> dict[str, Any]:
    """Update a saved prompt by key. Omitted title/tags/source keep their values.

    Args:
        key: Key of the prompt to update
        text: Updated prompt text
        title: Optional new title
        tags: Optional new tags (replace existing)
        source: Optional new source
    """
    request, error = _parse(
        UpdatePromptRequest, key=key, text=text, title=title, tags=tags, source=source
    )
    if error:
        return error

    user_id = resolve_user_id(ctx, SESSIONS)
    try:
        saved = await get_store().update_prompt(
            user_id,
            request.key,
            request.text,
            title=request.title,
            tags=request.tags,
            source=request.source,
        )
    except IndexNotFoundError as e:
        return _error(e, status="not_found")
    except PromptBankError as e:
        return _failed("updatePrompt", e)

    return {
        "status": "success",
        "key": saved.key,
        "indexName": saved.index_name,
        "prompt": saved.metadata.to_wire(),
    }


@mcp.tool(
    name="deletePrompt",
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)
async def delete_prompt(key: str, ctx: Context | None = None) -> dict[str, Any]:
    """Delete a saved prompt. Only call after the user confirms which prompt.

    Args:
        key: Key of the prompt to delete
    """
    request, error = _parse(DeletePromptRequest, key=key)
    if error:
        return error

    user_id = resolve_user_id(ctx, SESSIONS)
    try:
        result = await get_store().delete_prompt(user_id, request.key)
    except PromptBankError as e:
        return _failed("deletePrompt", e)

    return {
        "status": "success",
        "key": request.key,
        "indexName": result.index_name,
        "deleted": result.deleted,
    }


@mcp.tool(
    name="fetchPrompts",
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)
async def fetch_prompts(
    query: str = "",
    limit: int = 4,
    max_distance: float | None = None,
    source: str | None = None,
    upload_id: str | None = None,
    tags_any: list[str] | None = None,
    tags_all: list[str] | None = None,
    ctx: Context | None = None,
) -> dict[str, Any]:
    """Find the user's prompts most relevant to a query, or list recent ones.

    Args:
        query: Text to search for; leave empty to list the newest prompts
        limit: Max prompts to return (default 4, max 50)
        max_distance: Optional cosine distance ceiling (0-2, lower is stricter)
        source: Only prompts saved with this source
        upload_id: Only prompts from this upload
        tags_any: Only prompts with at least one of these tags
        tags_all: Only prompts with all of these tags
    """
    request, error = _parse(
        FetchPromptsRequest,
        query=query or "",
        limit=limit,
        max_distance=max_distance,
        source=source,
        upload_id=upload_id,
        tags_any=tags_any,
        tags_all=tags_all,
    )
    if error:
        return error
    if request.limit > CONFIG.max_limit:
        return _error(
            ValidationError(f"limit cannot exceed {CONFIG.max_limit}, got {request.limit}")
        )

    user_id = resolve_user_id(ctx, SESSIONS)
    store = get_store()
    filters = {
        "source": request.source,
        "upload_id": request.upload_id,
        "tags_any": request.tags_any,
        "tags_all": request.tags_all,
    }
    try:
        if request.query.strip():
            fetch_limit = min(request.limit * CONFIG.candidate_multiplier, CONFIG.max_top_k)
            records = await store.query_prompts(user_id, request.query, top_k=fetch_limit)
            records = dedupe_records(filter_records(records, **filters), "closest")
            ceiling = CONFIG.max_distance if request.max_distance is None else request.max_distance
            records = apply_distance_cutoff(records, ceiling, CONFIG.distance_delta)
        else:
            records = await store.list_prompts(user_id, limit=CONFIG.max_top_k)
            records = dedupe_records(filter_records(records, **filters), "newest")
    except PromptBankError as e:
        return _failed("fetchPrompts", e)

    records = records[: request.limit]
    return {
        "status": "success",
        "prompts": [r.metadata.text for r in records],
        "matches": [r.to_wire() for r in records],
    }


@mcp.tool(
    name="promptInsights",
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)
async def prompt_insights(ctx: Context | None = None) -> dict[str, Any]:
    """Summary of the user's prompt library - count and last update."""
    user_id = resolve_user_id(ctx, SESSIONS)
    try:
        stats = await get_store().prompt_stats(user_id)
    except PromptBankError as e:
        return _failed("promptInsights", e)

    return {
        "status": "success",
        "indexName": stats.index_name,
        "count": stats.count,
        "lastUpdatedAt": stats.last_updated_at,
    }


@mcp.tool(
    name="promptHealth",
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)
async def prompt_health() -> str:
    """Get prompt-bank health status - storage, embedding model, search settings."""
    store = get_store()
    dimension = store.embedder.known_dimension
    lines = [
        "=== PromptBank Health Status ===",
        f"\nDatabase: {CONFIG.db_uri}",
        f"Embedding: {store.embedder.provider} / {store.embedder.model_id}",
        f"Embedding dimension: {dimension if dimension is not None else 'not probed yet'}",
        f"Search: cosine distance, ceiling {CONFIG.max_distance}, near-tie delta {CONFIG.distance_delta}",
        f"Batch limit: {CONFIG.max_batch_size} prompts",
        f"Transport: {CONFIG.transport}",
        f"Identity: {'per session' if CONFIG.per_session_users else 'shared'}",
        f"Active sessions: {len(SESSIONS)}",
    ]
    return "\n".join(lines)


# =============================================================================
# Server Entry Point
# =============================================================================


async def init_store() -> None:
    """Connect to LanceDB and probe the embedding model before serving."""
    store = get_store()
    try:
        store.indexes.get_db()
        dimension = await store.embedder.dimension()
        print(f"[prompt-bank] Embedding model ready ({dimension}D)", file=sys.stderr)
    except PromptBankError as e:
        # Tools report their own failures; keep serving.
        print(f"[prompt-bank] Warm-up warning: {e}", file=sys.stderr)
    print("[prompt-bank] Server ready", file=sys.stderr)


async def run_server():
    """Run the MCP server on the configured transport."""
    await init_store()
    transport = CONFIG.transport.lower()
    if transport == "sse":
        await mcp.run_sse_async()
    elif transport == "streamable-http":
        await mcp.run_streamable_http_async()
    else:
        await mcp.run_stdio_async()


def main():
    """Entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
