"""Tag normalization and heuristic tag inference for saved prompts."""

from __future__ import annotations

import re
from typing import Any

MAX_TAGS = 12
MAX_KEYWORD_TAGS = 6
MIN_KEYWORD_LENGTH = 3

_NON_SLUG = re.compile(r"[^a-z0-9]+")
_TOKEN_SPLIT = re.compile(r"[^A-Za-z0-9]+")


def _keywords(*words: str) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(word) for word in words)
    return re.compile(rf"\b(?:{alternatives})\b")


# Order matters: categories are emitted in this order.
CATEGORY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "coding",
        _keywords(
            "code", "coding", "program", "programming", "python", "javascript",
            "typescript", "java", "rust", "golang", "sql", "api", "debug", "bug",
            "refactor", "function", "regex", "script", "unit test",
        ),
    ),
    (
        "marketing",
        _keywords(
            "marketing", "seo", "campaign", "brand", "ad copy", "advert", "audience",
            "newsletter", "landing page", "social media", "conversion",
        ),
    ),
    (
        "productivity",
        _keywords(
            "productivity", "schedule", "todo", "to-do", "task", "plan", "planning",
            "habit", "calendar", "meeting", "agenda", "prioritize",
        ),
    ),
    (
        "writing",
        _keywords(
            "write", "writing", "essay", "blog", "article", "story", "rewrite",
            "proofread", "edit", "tone", "headline", "outline",
        ),
    ),
    (
        "learning",
        _keywords(
            "learn", "learning", "explain", "teach", "tutor", "study", "quiz",
            "lesson", "course", "flashcard",
        ),
    ),
    (
        "image-generation",
        _keywords(
            "image", "picture", "photo", "illustration", "midjourney", "dall-e",
            "dalle", "stable diffusion", "render", "logo",
        ),
    ),
)

STOPWORDS = frozenset(
    {
        "a", "about", "above", "after", "again", "all", "also", "am", "an", "and",
        "any", "are", "as", "at", "be", "because", "been", "before", "being", "below",
        "between", "both", "but", "by", "can", "could", "did", "do", "does", "doing",
        "down", "during", "each", "few", "for", "from", "further", "get", "give",
        "had", "has", "have", "having", "he", "her", "here", "hers", "him", "his",
        "how", "i", "if", "in", "into", "is", "it", "its", "just", "like", "make",
        "me", "more", "most", "my", "no", "nor", "not", "now", "of", "off", "on",
        "once", "only", "or", "other", "our", "out", "over", "own", "please",
        "prompt", "same", "she", "should", "so", "some", "such", "than", "that",
        "the", "their", "them", "then", "there", "these", "they", "this", "those",
        "through", "to", "too", "under", "until", "up", "use", "using", "very",
        "want", "was", "we", "were", "what", "when", "where", "which", "while",
        "who", "whom", "why", "will", "with", "would", "you", "your", "yours",
    }
)


def slugify(token: str) -> str | None:
    slug = _NON_SLUG.sub("-", token.lower()).strip("-")
    return slug or None


def _dedupe(tags: list[str], limit: int) -> list[str]:
    return list(dict.fromkeys(tags))[:limit]


def normalize_tags(raw: Any) -> list[str] | None:
    """Slugify caller-supplied tags; None unless at least one tag survives."""
    if not isinstance(raw, (list, tuple)):
        return None
    slugs = [slug for tag in raw if isinstance(tag, str) and (slug := slugify(tag))]
    tags = _dedupe(slugs, MAX_TAGS)
    return tags or None


def infer_tags(title: str | None, text: str) -> list[str] | None:
    """Guess tags from category keywords plus salient words of the title.

    When there is no title the first line of ``text`` seeds the keyword tags.
    """
    haystack = f"{title or ''}\n{text or ''}".lower()
    categories = [name for name, pattern in CATEGORY_PATTERNS if pattern.search(haystack)]

    seed = title if title and title.strip() else (text or "").strip().split("\n", 1)[0]
    keywords: list[str] = []
    for token in _TOKEN_SPLIT.split(seed):
        lowered = token.lower()
        if len(lowered) < MIN_KEYWORD_LENGTH or lowered in STOPWORDS:
            continue
        slug = slugify(lowered)
        if slug:
            keywords.append(slug)
    keywords = _dedupe(keywords, MAX_KEYWORD_TAGS)

    tags = _dedupe(categories + keywords, MAX_TAGS)
    return tags or None
