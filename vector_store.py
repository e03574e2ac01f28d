"""LanceDB-backed prompt store: one table per user, content-addressed keys.

The pipeline for every write is normalize -> derive key -> infer title/tags
-> embed -> merge-insert on ``key``. Reads come back through
``row_to_metadata`` so rows without usable text never reach callers.
"""

from __future__ import annotations

import asyncio
import sys
import threading
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import lancedb
import pyarrow as pa

from config import CONFIG, Config
from embeddings import EmbeddingClient
from errors import (
    ExternalServiceError,
    IndexNotFoundError,
    PromptBankError,
    StoreError,
    ValidationError,
)
from models import (
    PromptInput,
    PromptMetadata,
    PromptRecord,
    metadata_to_row,
    prompt_row_model,
    row_to_metadata,
)
from tagging import infer_tags, normalize_tags
from utils import (
    canonical_text,
    derive_key,
    extract_inline_title,
    index_name,
    later_iso,
    normalize,
    now_iso,
    preview,
    word_count,
)

DISTANCE_METRIC = "cosine"
NON_FILTERABLE_KEYS = ("text", "preview")
MAX_KEY_SLOTS = 8


@contextmanager
def _external(action: str) -> Iterator[None]:
    """Turn LanceDB failures into ExternalServiceError, keeping the cause."""
    try:
        yield
    except PromptBankError:
        raise
    except Exception as e:
        print(f"[prompt-bank] LanceDB {action} failed: {e}", file=sys.stderr)
        raise ExternalServiceError(f"LanceDB {action} failed: {e}") from e


def _escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


# =============================================================================
# Results
# =============================================================================


@dataclass(slots=True)
class SavedPrompt:
    key: str
    index_name: str
    metadata: PromptMetadata


@dataclass(slots=True)
class BatchSaveResult:
    index_name: str
    upload_id: str
    saved: list[SavedPrompt] = field(default_factory=list)

    @property
    def keys(self) -> list[str]:
        return [s.key for s in self.saved]


@dataclass(slots=True)
class DeleteResult:
    index_name: str
    deleted: bool


@dataclass(slots=True)
class PromptStats:
    index_name: str
    count: int
    last_updated_at: str | None


@dataclass(slots=True)
class _PreparedPrompt:
    key: str
    text: str
    title: str | None
    tags: list[str] | None
    source: str | None


def _prepare(
    text: str, title: str | None = None, tags: Any = None, source: str | None = None
) -> _PreparedPrompt | None:
    """Normalize one prompt; None when nothing is left after title extraction."""
    inline = extract_inline_title(text)
    body = normalize(inline.text)
    if not body:
        return None
    resolved_title = _clean(title) or inline.title
    resolved_tags = normalize_tags(tags) or infer_tags(resolved_title, inline.text)
    return _PreparedPrompt(
        key=derive_key(body),
        text=body,
        title=resolved_title,
        tags=resolved_tags,
        source=_clean(source),
    )


# =============================================================================
# Index Manager
# =============================================================================


class IndexManager:
    """Creates and opens per-user LanceDB tables."""

    def __init__(
        self,
        embedder: EmbeddingClient,
        config: Config = CONFIG,
        db: lancedb.DBConnection | None = None,
    ) -> None:
        self.embedder = embedder
        self.config = config
        self._db = db
        self._tables: dict[str, lancedb.table.Table] = {}
        self._lock = threading.RLock()

    def get_db(self) -> lancedb.DBConnection:
        """Get or create the LanceDB connection (thread-safe)."""
        if self._db is None:
            with self._lock:
                if self._db is None:  # Double-check after acquiring lock
                    uri = self.config.db_uri
                    if "://" not in uri:
                        Path(uri).parent.mkdir(parents=True, exist_ok=True)
                    with _external("connect"):
                        self._db = lancedb.connect(
                            uri,
                            api_key=self.config.db_api_key,
                            region=self.config.db_region,
                        )
        return self._db

    def _table_names(self) -> list[str]:
        db = self.get_db()
        with _external("list tables"):
            try:
                listed = db.list_tables()
            except AttributeError:
                return list(db.table_names())
            return list(getattr(listed, "tables", listed))

    def _open(self, name: str) -> lancedb.table.Table | None:
        """Open a table, or None when it does not exist.

        Any failure other than "not found" (permissions, network) propagates.
        """
        table = self._tables.get(name)
        if table is not None:
            return table
        db = self.get_db()
        try:
            table = db.open_table(name)
        except Exception as e:
            if name in self._table_names():
                raise ExternalServiceError(f"LanceDB open table '{name}' failed: {e}") from e
            return None
        self._tables[name] = table
        return table

    def index_exists(self, user_id: str) -> bool:
        """Existence probe without creating anything."""
        return self._open(index_name(user_id)) is not None

    def open_index(self, name: str) -> lancedb.table.Table:
        table = self._open(name)
        if table is None:
            raise IndexNotFoundError(f"Index {name} does not exist")
        return table

    async def ensure_index(self, user_id: str) -> str:
        """Return the user's table name, creating the table on first use."""
        name = index_name(user_id)
        if self._open(name) is not None:
            return name

        dimension = await self.embedder.dimension()
        schema = prompt_row_model(dimension).to_arrow_schema().with_metadata(
            {
                "distance_metric": DISTANCE_METRIC,
                "non_filterable_keys": ",".join(NON_FILTERABLE_KEYS),
            }
        )
        with self._lock:
            if name in self._tables:
                return name
            with _external(f"create table '{name}'"):
                # exist_ok: another process may have created it meanwhile
                table = self.get_db().create_table(name, schema=schema, exist_ok=True)
            self._tables[name] = table
        print(f"[prompt-bank] Created index {name} (dim={dimension})", file=sys.stderr)
        return name


# =============================================================================
# Prompt Store
# =============================================================================


class PromptStore:
    """Save, update, delete, list and search a user's prompts."""

    def __init__(
        self,
        config: Config = CONFIG,
        embedder: EmbeddingClient | None = None,
        db: lancedb.DBConnection | None = None,
    ) -> None:
        self.config = config
        self.embedder = embedder or EmbeddingClient(config)
        self.indexes = IndexManager(self.embedder, config, db=db)

    def _metadata(
        self,
        prepared: _PreparedPrompt,
        created_at: str,
        updated_at: str,
        upload_id: str | None = None,
        chunk_index: int | None = None,
        chunk_count: int | None = None,
    ) -> PromptMetadata:
        return PromptMetadata(
            schema_version=self.config.schema_version,
            model_id=self.embedder.model_id,
            text=prepared.text,
            preview=preview(prepared.text, self.config.preview_length),
            title=prepared.title,
            tags=prepared.tags,
            source=prepared.source,
            upload_id=upload_id,
            chunk_index=chunk_index,
            chunk_count=chunk_count,
            created_at=created_at,
            updated_at=updated_at,
            length=len(prepared.text),
            word_count=word_count(prepared.text),
        )

    def _fetch_rows(self, table: lancedb.table.Table, keys: list[str]) -> dict[str, dict]:
        if not keys:
            return {}
        quoted = ", ".join(f"'{_escape_filter_value(k)}'" for k in keys)
        with _external("get vectors"):
            rows = table.search().where(f"key IN ({quoted})").limit(len(keys)).to_list()
        return {row["key"]: row for row in rows}

    def _claim_keys(
        self, table: lancedb.table.Table, prepared: list[_PreparedPrompt]
    ) -> dict[str, dict]:
        """Point each prompt at a key it may overwrite; return the rows found there.

        A key normally holds the text it was derived from, but an update can
        leave different text behind it. Such a row is never replaced: the
        prompt moves to the first of ``<key>-1 .. <key>-N`` that is free or
        already holds the same text, so re-saving stays idempotent.
        """
        slots = {
            p.key: [p.key] + [f"{p.key}-{n}" for n in range(1, MAX_KEY_SLOTS)] for p in prepared
        }
        rows = self._fetch_rows(table, [k for keys in slots.values() for k in keys])

        existing: dict[str, dict] = {}
        for item in prepared:
            wanted = canonical_text(item.text)
            for candidate in slots[item.key]:
                row = rows.get(candidate)
                if row is None or canonical_text(row.get("text") or "") == wanted:
                    if candidate != item.key:
                        print(
                            f"[prompt-bank] {item.key} holds updated text; saving as {candidate}",
                            file=sys.stderr,
                        )
                    item.key = candidate
                    existing[candidate] = row or {}
                    break
            else:
                raise StoreError(f"No free key for {item.key}: all {MAX_KEY_SLOTS} slots taken")
        return existing

    def _write(self, table: lancedb.table.Table, rows: list[dict[str, Any]]) -> None:
        """Upsert rows by key in a single request."""
        with _external("put vectors"):
            data = pa.Table.from_pylist(rows, schema=table.schema)
            (
                table.merge_insert("key")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute(data)
            )

    @staticmethod
    def _to_records(rows: Iterable[dict], with_distance: bool) -> list[PromptRecord]:
        records = []
        for row in rows:
            key = row.get("key")
            metadata = row_to_metadata(row)
            if not isinstance(key, str) or metadata is None:
                continue
            distance = row.get("_distance") if with_distance else None
            records.append(
                PromptRecord(
                    key=key,
                    metadata=metadata,
                    distance=float(distance) if distance is not None else None,
                )
            )
        return records

    async def upsert_prompt(
        self,
        user_id: str,
        text: str,
        title: str | None = None,
        tags: list[str] | None = None,
        source: str | None = None,
    ) -> SavedPrompt:
        """Save one prompt under its content key (re-saving replaces it)."""
        if not text or not text.strip():
            raise ValidationError("`text` is required")
        prepared = _prepare(text, title, tags, source)
        if prepared is None:
            raise ValidationError("`text` is required")

        name = await self.indexes.ensure_index(user_id)
        table = self.indexes.open_index(name)
        vector = await self.embedder.embed(prepared.text)

        existing = self._claim_keys(table, [prepared])[prepared.key]
        now = now_iso()
        metadata = self._metadata(
            prepared,
            created_at=existing.get("created_at") or now,
            updated_at=later_iso(existing.get("updated_at"), now),
        )
        self._write(table, [metadata_to_row(prepared.key, vector, metadata)])
        return SavedPrompt(key=prepared.key, index_name=name, metadata=metadata)

    async def upsert_prompts(
        self,
        user_id: str,
        items: Iterable[PromptInput | dict | str],
        upload_id: str | None = None,
    ) -> BatchSaveResult:
        """Save several prompts as one upload.

        Blank items are skipped and repeated texts keep their first
        occurrence. Every item is embedded before anything is written, so an
        embedding failure leaves the table untouched.
        """
        prepared: list[_PreparedPrompt] = []
        seen: set[str] = set()
        skipped = 0
        for item in items:
            if isinstance(item, str):
                item = PromptInput(text=item)
            elif isinstance(item, dict):
                item = PromptInput.model_validate(item)
            candidate = _prepare(item.text, item.title, item.tags, item.source)
            if candidate is None or candidate.key in seen:
                skipped += 1
                continue
            seen.add(candidate.key)
            prepared.append(candidate)

        upload_id = _clean(upload_id) or uuid.uuid4().hex
        if skipped:
            print(
                f"[prompt-bank] Upload {upload_id[:8]}: skipped {skipped} blank/duplicate prompts",
                file=sys.stderr,
            )
        if not prepared:
            return BatchSaveResult(index_name=index_name(user_id), upload_id=upload_id)

        name = await self.indexes.ensure_index(user_id)
        table = self.indexes.open_index(name)
        vectors = await asyncio.gather(*(self.embedder.embed(p.text) for p in prepared))

        existing = self._claim_keys(table, prepared)
        now = now_iso()
        saved: list[SavedPrompt] = []
        rows = []
        for chunk_index, (item, vector) in enumerate(zip(prepared, vectors)):
            previous = existing.get(item.key, {})
            metadata = self._metadata(
                item,
                created_at=previous.get("created_at") or now,
                updated_at=later_iso(previous.get("updated_at"), now),
                upload_id=upload_id,
                chunk_index=chunk_index,
                chunk_count=len(prepared),
            )
            rows.append(metadata_to_row(item.key, vector, metadata))
            saved.append(SavedPrompt(key=item.key, index_name=name, metadata=metadata))

        self._write(table, rows)
        return BatchSaveResult(index_name=name, upload_id=upload_id, saved=saved)

    async def update_prompt(
        self,
        user_id: str,
        key: str,
        text: str,
        title: str | None = None,
        tags: list[str] | None = None,
        source: str | None = None,
    ) -> SavedPrompt:
        """Replace the text of an existing prompt, keeping its key and createdAt.

        Omitted title/tags/source fall back to the stored values. The read
        and the write are separate requests; a concurrent update can be lost.
        """
        if not key or not key.strip():
            raise ValidationError("`key` is required")
        if not text or not text.strip():
            raise ValidationError("`text` is required")
        key = key.strip()

        name = index_name(user_id)
        if not self.indexes.index_exists(user_id):
            raise IndexNotFoundError("User index does not exist")
        table = self.indexes.open_index(name)

        row = self._fetch_rows(table, [key]).get(key, {})
        existing = row_to_metadata(row) if row else None

        inline = extract_inline_title(text)
        body = normalize(inline.text) or normalize(text)
        resolved_title = _clean(title) or inline.title or (existing.title if existing else None)
        resolved_tags = (
            normalize_tags(tags)
            or (existing.tags if existing else None)
            or infer_tags(resolved_title, inline.text)
        )
        resolved_source = _clean(source) or (existing.source if existing else None)
        prepared = _PreparedPrompt(key, body, resolved_title, resolved_tags, resolved_source)

        vector = await self.embedder.embed(body)
        metadata = self._metadata(
            prepared,
            created_at=row.get("created_at") or now_iso(),
            updated_at=later_iso(row.get("updated_at")),
            upload_id=existing.upload_id if existing else None,
            chunk_index=existing.chunk_index if existing else None,
            chunk_count=existing.chunk_count if existing else None,
        )
        self._write(table, [metadata_to_row(key, vector, metadata)])
        return SavedPrompt(key=key, index_name=name, metadata=metadata)

    async def delete_prompt(self, user_id: str, key: str) -> DeleteResult:
        """Delete by key.

        ``deleted`` is True whenever the user's table exists: LanceDB does not
        report whether the key was present.
        """
        if not key or not key.strip():
            raise ValidationError("`key` is required")
        name = index_name(user_id)
        if not self.indexes.index_exists(user_id):
            return DeleteResult(index_name=name, deleted=False)

        table = self.indexes.open_index(name)
        with _external("delete vectors"):
            table.delete(f"key = '{_escape_filter_value(key.strip())}'")
        return DeleteResult(index_name=name, deleted=True)

    async def query_prompts(
        self,
        user_id: str,
        query_text: str,
        top_k: int = 4,
        return_distance: bool = True,
    ) -> list[PromptRecord]:
        """Nearest prompts to ``query_text`` by cosine distance, closest first."""
        if not query_text or not query_text.strip():
            raise ValidationError("`query` is required")
        top_k = max(1, min(top_k, self.config.max_top_k))

        name = await self.indexes.ensure_index(user_id)
        table = self.indexes.open_index(name)
        vector = await self.embedder.embed(normalize(query_text))
        with _external("query vectors"):
            rows = table.search(vector).distance_type(DISTANCE_METRIC).limit(top_k).to_list()
        return self._to_records(rows, with_distance=return_distance)[:top_k]

    async def list_prompts(self, user_id: str, limit: int = 4) -> list[PromptRecord]:
        """Up to ``limit`` prompts in storage order (no ranking)."""
        limit = max(1, min(limit, self.config.max_top_k))
        name = await self.indexes.ensure_index(user_id)
        table = self.indexes.open_index(name)
        with _external("list vectors"):
            rows = table.search().limit(limit).to_list()
        return self._to_records(rows, with_distance=False)[:limit]

    async def prompt_stats(self, user_id: str) -> PromptStats:
        """Prompt count and latest update for a user, without creating a table."""
        name = index_name(user_id)
        if not self.indexes.index_exists(user_id):
            return PromptStats(index_name=name, count=0, last_updated_at=None)

        table = self.indexes.open_index(name)
        with _external("count vectors"):
            count = table.count_rows()
            rows = (
                table.search().select(["updated_at"]).limit(max(count, 1)).to_list()
                if count
                else []
            )
        stamps = [r["updated_at"] for r in rows if r.get("updated_at")]
        return PromptStats(index_name=name, count=count, last_updated_at=max(stamps, default=None))
