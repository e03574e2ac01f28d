"""Shared text utilities for prompt-bank: normalization, splitting and keys."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

ELLIPSIS = "…"
KEY_PREFIX = "p-"
INDEX_PREFIX = "u-"
MAX_INDEX_NAME_LENGTH = 63

_WHITESPACE = re.compile(r"\s+")
_HEADING_TITLE = re.compile(r"^#{1,6}\s+(?:\d+[.)]\s+)?(.+?)\s*#*$")
_NUMBERED_TITLE = re.compile(r"^\d+[.)]\s+(.+)$")
_NUMBERED_HEADING = re.compile(r"^#{1,6}\s+\d+[.)]\s+(.+?)\s*#*$")
_ANY_HEADING = re.compile(r"^#{1,6}(?:\s+.*)?$")
_LIST_ITEM = re.compile(r"^(?:[-*•]|\d+[.)])\s+(.+)$")
_INDEX_UNSAFE = re.compile(r"[^a-z0-9-]")
_HYPHEN_RUN = re.compile(r"-+")


@dataclass(frozen=True, slots=True)
class InlineTitle:
    """A prompt body with the title found in (or alongside) it."""

    text: str
    title: str | None = None


def normalize(text: str) -> str:
    """Collapse whitespace runs to a single space and trim the ends."""
    return _WHITESPACE.sub(" ", text or "").strip()


def preview(text: str, max_len: int = 160) -> str:
    """Short single-line view of ``text``, ellipsized when truncated."""
    normalized = normalize(text)
    if len(normalized) <= max_len:
        return normalized
    return normalized[: max_len - 1].rstrip() + ELLIPSIS


def word_count(text: str) -> int:
    stripped = (text or "").strip()
    if not stripped:
        return 0
    return len(stripped.split())


def extract_inline_title(text: str) -> InlineTitle:
    """Split a leading heading off ``text`` when a body follows it.

    Examples:
        "## Refactor\\nClean up this function" -> title "Refactor"
        "1. Summarize\\nSummarize the article" -> title "Summarize"
        "Just a prompt" -> no title
    """
    lines = (text or "").splitlines()
    first = next((i for i, line in enumerate(lines) if line.strip()), None)
    if first is None:
        return InlineTitle(text="")

    head = lines[first].strip()
    match = _HEADING_TITLE.match(head) or _NUMBERED_TITLE.match(head)
    rest = "\n".join(lines[first + 1 :]).strip()
    if match and rest:
        title = normalize(match.group(1))
        if title:
            return InlineTitle(text=rest, title=title)
    return InlineTitle(text=normalize(text))


def split_prompts(raw: str) -> list[InlineTitle]:
    """Segment pasted text into individual prompts.

    Blank lines and headings separate prompts; ``## 1. Label`` headings title
    the prompt that follows them; bullet and numbered list items each start a
    new prompt; any other line continues the current one.
    """
    prompts: list[InlineTitle] = []
    current: list[str] = []
    pending_title: str | None = None

    def flush() -> None:
        nonlocal pending_title
        body = normalize(" ".join(current))
        current.clear()
        if body:
            prompts.append(InlineTitle(text=body, title=pending_title))
            pending_title = None

    for line in (raw or "").splitlines():
        stripped = line.strip()
        if not stripped:
            flush()
            continue

        numbered_heading = _NUMBERED_HEADING.match(stripped)
        if numbered_heading:
            flush()
            pending_title = normalize(numbered_heading.group(1)) or None
            continue
        if _ANY_HEADING.match(stripped):
            flush()
            continue

        item = _LIST_ITEM.match(stripped)
        if item:
            flush()
            current.append(item.group(1))
            continue

        current.append(stripped)

    flush()
    return prompts


def canonical_text(text: str) -> str:
    """Case- and whitespace-insensitive form used for keys and de-duplication."""
    return normalize(text).lower()


def derive_key(text: str) -> str:
    """Content-addressed prompt key: same canonical text, same key."""
    digest = hashlib.sha256(canonical_text(text).encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}{digest[:32]}"


def index_name(user_id: str) -> str:
    """Deterministic, table-name-safe index name for a user.

    Examples:
        auth0|65a1b2 -> u-auth0-65a1b2
        ||| -> u-<16 hex chars of sha256>
    """
    cleaned = _INDEX_UNSAFE.sub("-", user_id.lower())
    cleaned = _HYPHEN_RUN.sub("-", cleaned).strip("-")

    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:16]
    base = f"{INDEX_PREFIX}{cleaned}" if cleaned else f"{INDEX_PREFIX}{digest}"
    if len(base) <= MAX_INDEX_NAME_LENGTH:
        return base

    suffix = f"-{digest}"
    prefix = base[: MAX_INDEX_NAME_LENGTH - len(suffix)].rstrip("-")
    return f"{prefix}{suffix}"


def now_iso() -> str:
    """Get current UTC timestamp as ISO string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def later_iso(previous: str | None, current: str | None = None) -> str:
    """Current timestamp, nudged past ``previous`` so updates always move forward."""
    current = current or now_iso()
    if not previous or current > previous:
        return current
    try:
        bumped = datetime.fromisoformat(previous) + timedelta(microseconds=1)
    except ValueError:
        return current
    return bumped.isoformat(timespec="microseconds")
