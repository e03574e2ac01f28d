#!/usr/bin/env python3
"""Web viewer for a user's saved prompts - accessible in browser."""

from __future__ import annotations

import asyncio
import os

from flask import Flask, render_template_string, request

from config import CONFIG, LOCAL_USER_ID
from models import PromptRecord
from ranking import dedupe_records, filter_records
from vector_store import PromptStore

app = Flask(__name__)
ITEMS_PER_PAGE = 10
MAX_PROMPTS = 200

_store: PromptStore | None = None


def get_store() -> PromptStore:
    global _store
    if _store is None:
        _store = PromptStore(CONFIG)
    return _store


def get_prompts(user_id: str, query: str = "", tag: str | None = None) -> list[PromptRecord]:
    """Fetch a user's prompts, newest first, one per distinct text."""
    store = get_store()
    if not store.indexes.index_exists(user_id):
        return []
    records = asyncio.run(store.list_prompts(user_id, limit=MAX_PROMPTS))
    records = dedupe_records(filter_records(records, tags_any=[tag] if tag else None), "newest")
    needle = query.strip().lower()
    if needle:
        records = [
            r
            for r in records
            if needle in f"{r.metadata.title or ''} {r.metadata.text}".lower()
        ]
    return records


def get_page_links(current: int, total: int) -> list:
    """Page numbers to show, with "..." standing in for skipped runs."""
    if total <= 7:
        return list(range(1, total + 1))

    links: list = []
    for p in range(1, total + 1):
        if p <= 2 or p > total - 2 or abs(p - current) <= 1:
            links.append(p)
        elif links[-1] != "...":
            links.append("...")
    return links


HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>PromptBank</title>
    <style>
        body { font-family: system-ui; max-width: 900px; margin: 0 auto; padding: 20px; background: #1a1a2e; color: #eee; }
        h1 { color: #00d9ff; }
        .header { display: flex; justify-content: space-between; align-items: center; flex-wrap: wrap; gap: 10px; }
        .pagination a, .pagination span { padding: 6px 12px; background: #0f3460; color: #00d9ff; text-decoration: none; border-radius: 5px; }
        .pagination span.current { background: #00d9ff; color: #1a1a2e; font-weight: bold; }
        .prompt { background: #16213e; padding: 15px; margin: 10px 0; border-radius: 8px; border-left: 4px solid #00d9ff; }
        .title { font-weight: bold; color: #00d9ff; }
        .tag { background: #0f3460; padding: 2px 6px; border-radius: 3px; font-size: 11px; margin-right: 5px; }
        .meta { color: #888; font-size: 12px; margin-top: 8px; }
        input { padding: 10px; width: 100%; border-radius: 5px; border: none; background: #0f3460; color: #fff; }
    </style>
</head>
<body>
    <div class="header">
        <h1>PromptBank</h1>
        <div class="pagination">
            {% for p in page_links %}
            {% if p == "..." %}<span>...</span>
            {% elif p == page %}<span class="current">{{ p }}</span>
            {% else %}<a href="?user={{ user|urlencode }}&q={{ query|urlencode }}&tag={{ tag|urlencode }}&page={{ p }}">{{ p }}</a>
            {% endif %}
            {% endfor %}
        </div>
    </div>
    <p>{{ total_prompts }} prompts for {{ user }}</p>
    <form><input type="hidden" name="user" value="{{ user }}"><input type="hidden" name="tag" value="{{ tag }}">
        <input type="text" name="q" value="{{ query }}" placeholder="Filter prompts...">
    </form>
    {% for r in prompts %}
    <div class="prompt">
        {% if r.metadata.title %}<div class="title">{{ r.metadata.title }}</div>{% endif %}
        <p>{{ r.metadata.text }}</p>
        <div>{% for t in r.metadata.tags or [] %}<span class="tag">{{ t }}</span>{% endfor %}</div>
        <div class="meta">{{ r.key }} | {{ r.metadata.source or "-" }} | {{ r.metadata.updated_at[:19] }}</div>
    </div>
    {% endfor %}
</body>
</html>
"""


@app.route("/")
def index():
    user = request.args.get("user") or CONFIG.default_user_id or LOCAL_USER_ID
    query = request.args.get("q", "")
    tag = request.args.get("tag", "")
    all_prompts = get_prompts(user, query, tag or None)

    total = len(all_prompts)
    total_pages = max(1, (total + ITEMS_PER_PAGE - 1) // ITEMS_PER_PAGE)
    page = min(max(request.args.get("page", 1, type=int), 1), total_pages)
    start = (page - 1) * ITEMS_PER_PAGE

    return render_template_string(
        HTML,
        prompts=all_prompts[start : start + ITEMS_PER_PAGE],
        page=page,
        page_links=get_page_links(page, total_pages),
        total_prompts=total,
        user=user,
        query=query,
        tag=tag,
    )


if __name__ == "__main__":
    port = int(os.environ.get("PROMPT_VIEWER_PORT", "5000"))
    print(f"Open http://localhost:{port} in your browser")
    app.run(port=port)
