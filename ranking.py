"""Post-processing of query and list results: filters, de-duplication, cutoffs."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Literal

from models import PromptRecord
from tagging import normalize_tags
from utils import canonical_text

DedupeMode = Literal["closest", "newest"]


def filter_records(
    records: Iterable[PromptRecord],
    source: str | None = None,
    upload_id: str | None = None,
    tags_any: list[str] | None = None,
    tags_all: list[str] | None = None,
) -> list[PromptRecord]:
    """Keep records whose metadata satisfies every supplied constraint."""
    source = source.strip() if source and source.strip() else None
    upload_id = upload_id.strip() if upload_id and upload_id.strip() else None
    wanted_any = set(normalize_tags(tags_any) or [])
    wanted_all = set(normalize_tags(tags_all) or [])

    kept = []
    for record in records:
        meta = record.metadata
        if source is not None and meta.source != source:
            continue
        if upload_id is not None and meta.upload_id != upload_id:
            continue
        tags = set(meta.tags or [])
        if wanted_any and not (tags & wanted_any):
            continue
        if wanted_all and not wanted_all <= tags:
            continue
        kept.append(record)
    return kept


def _recency(record: PromptRecord) -> str:
    return record.metadata.updated_at or record.metadata.created_at or ""


def _distance(record: PromptRecord) -> float:
    return record.distance if record.distance is not None else float("inf")


def dedupe_records(records: Iterable[PromptRecord], mode: DedupeMode) -> list[PromptRecord]:
    """Collapse records with the same canonical text to one representative.

    "closest" keeps the lowest distance and sorts ascending by distance;
    "newest" keeps the latest update and sorts newest first.
    """
    best: dict[str, PromptRecord] = {}
    for record in records:
        group = canonical_text(record.metadata.text)
        current = best.get(group)
        if current is None:
            best[group] = record
        elif mode == "closest" and _distance(record) < _distance(current):
            best[group] = record
        elif mode == "newest" and _recency(record) > _recency(current):
            best[group] = record

    if mode == "closest":
        return sorted(best.values(), key=_distance)
    return sorted(best.values(), key=_recency, reverse=True)


def apply_distance_cutoff(
    records: Iterable[PromptRecord], max_distance: float, delta: float
) -> list[PromptRecord]:
    """Drop matches worse than min(max_distance, best distance + delta).

    Near-ties with the best match survive; nothing above the absolute
    ceiling does. Records without a distance cannot be ranked and are dropped.
    """
    ranked = [r for r in records if r.distance is not None]
    if not ranked:
        return []
    best = min(r.distance for r in ranked)
    cutoff = min(max_distance, best + delta)
    return [r for r in ranked if r.distance <= cutoff]
