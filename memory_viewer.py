#!/usr/bin/env python3
"""Read-only browser view of stored memories, newest first.

Run: python memory_viewer.py, then open http://localhost:5000
"""

from __future__ import annotations

import asyncio

from flask import Flask, render_template_string, request

from config import CONFIG
from embedder import Embedder
from memory_store import LanceMemoryStore
from models import MEMORY_CATEGORIES, VALID_CATEGORIES

app = Flask(__name__)
ITEMS_PER_PAGE = 10

def open_store() -> LanceMemoryStore:
    """Fresh read-only view of the database, so writes by the server show up.

    No embeddings are computed and the FTS index is left alone.
    """
    store = LanceMemoryStore(Embedder(CONFIG), CONFIG)
    asyncio.run(store.initialize(build_index=False))
    return store


def get_page_links(current: int, total: int) -> list:
    """Page numbers to show, with "..." standing in for gaps."""
    if total <= 7:
        return list(range(1, total + 1))

    links: list = []
    for p in range(1, total + 1):
        if p <= 3 or p >= total - 2 or abs(p - current) <= 1:
            links.append(p)
        elif links[-1] != "...":
            links.append("...")
    return links


HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>Agent Memory</title>
    <style>
        body { font-family: system-ui; max-width: 900px; margin: 0 auto; padding: 20px; background: #1a1a2e; color: #eee; }
        h1 { color: #00d9ff; }
        a { color: #00d9ff; }
        .header { display: flex; justify-content: space-between; align-items: center; margin-bottom: 20px; flex-wrap: wrap; gap: 10px; }
        .pagination { display: flex; gap: 6px; align-items: center; flex-wrap: wrap; }
        .pagination a, .pagination span { padding: 6px 12px; background: #0f3460; text-decoration: none; border-radius: 5px; }
        .pagination span.current { background: #00d9ff; color: #1a1a2e; font-weight: bold; }
        .pagination span.ellipsis { color: #888; background: transparent; }
        .filters a { margin-right: 8px; font-size: 12px; }
        .filters a.active { font-weight: bold; text-decoration: underline; }
        .memory { background: #16213e; padding: 15px; margin: 10px 0; border-radius: 8px; border-left: 4px solid #00d9ff; }
        .category { display: inline-block; padding: 2px 8px; border-radius: 4px; font-size: 12px; font-weight: bold; background: #0f3460; }
        .code-solution { background: #4a90d9; }
        .bug-fix { background: #e74c3c; }
        .architecture { background: #9b59b6; }
        .learning { background: #1abc9c; }
        .tool-usage { background: #e91e63; }
        .debugging { background: #c0392b; }
        .performance { background: #f39c12; }
        .security { background: #8e44ad; }
        .observation { background: #16a085; }
        .personal { background: #2ecc71; }
        .relationship { background: #ff9800; }
        .other { background: #7f8c8d; }
        .tag { background: #0f3460; padding: 2px 6px; border-radius: 3px; font-size: 11px; margin-right: 5px; }
        .meta { color: #888; font-size: 12px; margin-top: 8px; }
    </style>
</head>
<body>
    <div class="header">
        <h1>Agent Memory</h1>
        <div class="pagination">
            {% for p in page_links %}
            {% if p == "..." %}
            <span class="ellipsis">...</span>
            {% elif p == page %}
            <span class="current">{{ p }}</span>
            {% else %}
            <a href="/?page={{ p }}{% if category %}&category={{ category }}{% endif %}">{{ p }}</a>
            {% endif %}
            {% endfor %}
        </div>
    </div>
    <p>
        {{ stats.total_memories }} memories total
        {% if stats.oldest_memory %}| oldest {{ stats.oldest_memory[:19] }} | newest {{ stats.newest_memory[:19] }}{% endif %}
    </p>
    <div class="filters">
        <a href="/" class="{{ 'active' if not category }}">all</a>
        {% for c in categories %}
        <a href="/?category={{ c }}" class="{{ 'active' if c == category }}">{{ c }} ({{ stats.by_category.get(c, 0) }})</a>
        {% endfor %}
    </div>
    <div id="memories">
        {% for m in memories %}
        <div class="memory">
            <span class="category {{ m.category }}">{{ m.category }}</span>
            <p>{{ m.content }}</p>
            <div>
                {% for t in m.tags %}
                <span class="tag">{{ t }}</span>
                {% endfor %}
            </div>
            <div class="meta">{{ m.id[:8] }} | created {{ m.created_at[:19] }} | updated {{ m.updated_at[:19] }}</div>
        </div>
        {% endfor %}
    </div>
</body>
</html>
"""


@app.route("/")
def index():
    store = open_store()
    category = request.args.get("category")
    if category not in VALID_CATEGORIES:
        category = None

    stats = asyncio.run(store.stats())
    total = stats.by_category.get(category, 0) if category else stats.total_memories
    all_memories = asyncio.run(store.list_recent(max(total, 1), category))

    total_pages = max(1, (len(all_memories) + ITEMS_PER_PAGE - 1) // ITEMS_PER_PAGE)
    page = min(max(request.args.get("page", 1, type=int), 1), total_pages)
    start = (page - 1) * ITEMS_PER_PAGE

    return render_template_string(
        HTML,
        memories=all_memories[start : start + ITEMS_PER_PAGE],
        page=page,
        page_links=get_page_links(page, total_pages),
        stats=stats,
        category=category,
        categories=MEMORY_CATEGORIES,
    )


if __name__ == "__main__":
    print("Open http://localhost:5000 in your browser")
    app.run(port=5000)
