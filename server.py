#!/usr/bin/env python3
"""
Agent Memory MCP Server - LanceDB Hybrid Search Implementation

Provides persistent agent memory with hybrid search (vector + BM25) using:
- FastMCP for clean, idiomatic MCP server patterns
- LanceDB for vector + full-text search with RRF fusion
- Ollama embeddings (384-dim), Google Gemini fallback
- Exponential temporal decay, with evergreen/never-forget exemptions
"""

from __future__ import annotations

import asyncio
import json
import sys
import threading
from typing import Any

from mcp.server.fastmcp import FastMCP

from config import CONFIG, Config
from embedder import Embedder
from hardcopy_store import HardcopyMemoryStore
from memory_store import LanceMemoryStore, parse_timestamp
from models import (
    MEMORY_CATEGORIES,
    SEARCH_MODES,
    VALID_CATEGORIES,
    AmbiguousIdError,
    MemoryNotFoundError,
    MemoryStore,
    SearchFilters,
    StoreRequest,
    UpdateRequest,
)

# =============================================================================
# Store composition (lazy singletons)
# =============================================================================

_lock = threading.RLock()
_embedder: Embedder | None = None
_store: MemoryStore | None = None


def build_store(embedder: Embedder, config: Config = CONFIG) -> MemoryStore:
    """LanceDB store, wrapped with the JSON hardcopy mirror when enabled."""
    store: MemoryStore = LanceMemoryStore(embedder, config)
    if config.enable_hardcopy and config.hardcopy_path:
        print(f"[agent-memory] Mirroring mutations to {config.hardcopy_path}", file=sys.stderr)
        store = HardcopyMemoryStore(store, config.hardcopy_path)
    return store


def get_embedder() -> Embedder:
    """Get or create the embedder (thread-safe)."""
    global _embedder
    if _embedder is None:
        with _lock:
            if _embedder is None:  # Double-check after acquiring lock
                _embedder = Embedder(CONFIG)
    return _embedder


def get_store() -> MemoryStore:
    """Get or create the memory store (thread-safe)."""
    global _store
    if _store is None:
        with _lock:
            if _store is None:
                _store = build_store(get_embedder(), CONFIG)
    return _store


# =============================================================================
# Validation & formatting
# =============================================================================


def _normalize_category(category: str | None) -> tuple[str | None, str | None]:
    """Normalize and validate a category string."""
    if category is None:
        return None, None
    normalized = category.strip().lower()
    if normalized not in VALID_CATEGORIES:
        return None, f"Error: Invalid category '{category}'. Valid: {list(MEMORY_CATEGORIES)}"
    return normalized, None


def _normalize_tags(tags: list[str] | None) -> tuple[list[str] | None, str | None]:
    if tags is None:
        return None, None
    cleaned = [t.strip() for t in tags]
    if any(not t for t in cleaned):
        return None, "Error: Tags cannot be empty strings"
    return cleaned, None


def _validate_limit(limit: int) -> str | None:
    if limit <= 0:
        return f"Error: limit must be positive, got {limit}"
    if limit > CONFIG.max_limit:
        return f"Error: limit cannot exceed {CONFIG.max_limit}, got {limit}"
    return None


def _validate_timestamp(name: str, value: str | None) -> str | None:
    if value is None:
        return None
    try:
        parse_timestamp(value)
    except ValueError:
        return f"Error: {name} must be an ISO 8601 date, got '{value}'"
    return None


def _to_json(data: Any) -> str:
    return json.dumps(data, indent=2)


async def _resolve(store: MemoryStore, memory_id: str) -> tuple[str | None, str | None]:
    """Resolve a full or partial id, turning lookup failures into error text."""
    try:
        return await store.resolve_id(memory_id.strip()), None
    except MemoryNotFoundError as e:
        return None, f"Error: {e}"
    except AmbiguousIdError as e:
        return None, f"Error: {e}. Provide the full 32-char ID."


def _parse_store_request(item: dict[str, Any]) -> tuple[StoreRequest | None, str | None]:
    content = item.get("content") or ""
    if not content.strip():
        return None, "Error: content is required"
    category, error = _normalize_category(item.get("category") or "other")
    if error:
        return None, error
    tags, error = _normalize_tags(item.get("tags") or [])
    if error:
        return None, error
    return StoreRequest(content=content, category=category, tags=tags), None


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "agent-memory",
    instructions=(
        "Persistent agent memory with LanceDB hybrid search (vector + BM25 RRF fusion) "
        "and recency-weighted ranking"
    ),
)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_store(
    content: str,
    category: str = "other",
    tags: list[str] | None = None,
) -> str:
    """Store a single memory with content, category and tags. Returns the stored memory.

    Args:
        content: What you learnt, observed, or want to remember
        category: One of code-solution, bug-fix, architecture, learning, tool-usage,
            debugging, performance, security, observation, personal, relationship, other
        tags: Free-form tags. 'evergreen' or 'never-forget' exempt a memory from decay
    """
    request, error = _parse_store_request({"content": content, "category": category, "tags": tags})
    if error:
        return error
    try:
        memory = await get_store().store(request)
    except Exception as e:
        return f"Error: Failed to store memory: {e}"
    return _to_json(memory.to_dict())


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_store_batch(memories: list[dict[str, Any]]) -> str:
    """Store multiple memories in one call. Use at end of session to capture everything learnt.

    Args:
        memories: Items of the form {"content": str, "category": str, "tags": [str]}
    """
    if not memories:
        return "Error: memories must contain at least one item"
    requests = []
    for index, item in enumerate(memories):
        request, error = _parse_store_request(item)
        if error:
            return f"{error} (item {index})"
        requests.append(request)
    try:
        stored = await get_store().store_batch(requests)
    except Exception as e:
        return f"Error: Failed to store batch: {e}"
    return _to_json({"stored": len(stored), "memories": [m.to_dict() for m in stored]})


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_search(
    query: str,
    mode: str = "hybrid",
    category: str | None = None,
    tags: list[str] | None = None,
    after: str | None = None,
    before: str | None = None,
    limit: int = 10,
) -> str:
    """Search memories by meaning and/or keywords, ranked by relevance and recency.

    Args:
        query: A concept, phrase, or question
        mode: hybrid (default, vector + BM25), keyword, or semantic
        category: Optional category filter
        tags: Optional filter - memory must have at least one of these tags
        after: Optional filter - created at or after this ISO 8601 date
        before: Optional filter - created at or before this ISO 8601 date
        limit: Max results (default 10)
    """
    if not query.strip():
        return "Error: query is required"
    if mode not in SEARCH_MODES:
        return f"Error: Invalid mode '{mode}'. Valid: {list(SEARCH_MODES)}"
    error = _validate_limit(limit)
    if error:
        return error
    category, error = _normalize_category(category)
    if error:
        return error
    error = _validate_timestamp("after", after) or _validate_timestamp("before", before)
    if error:
        return error

    filters = SearchFilters(category=category, tags=tags or None, after=after, before=before, limit=limit)
    try:
        outcome = await get_store().search_with_status(query, mode, filters)
    except Exception as e:
        return f"Error: Search failed: {e}"
    return _to_json(
        {
            "count": len(outcome.results),
            "mode": mode,
            "status": outcome.status.value,
            "results": [r.to_dict() for r in outcome.results],
        }
    )


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_recall(
    topics: list[str],
    include_recent: int = 5,
    limit_per_topic: int = 5,
) -> str:
    """Multi-topic recall. Searches each topic in parallel and adds the most recent memories.
    Use at session start to restore context.

    Args:
        topics: Topics to search for
        include_recent: Number of recent memories to include (default 5)
        limit_per_topic: Max results per topic (default 5)
    """
    topics = [t for t in (topics or []) if t.strip()]
    if not topics:
        return "Error: at least one topic is required"
    error = _validate_limit(limit_per_topic)
    if error:
        return error
    if include_recent < 0:
        return f"Error: include_recent cannot be negative, got {include_recent}"

    store = get_store()
    filters = SearchFilters(limit=limit_per_topic)
    try:
        per_topic = await asyncio.gather(*(store.search(topic, "hybrid", filters) for topic in topics))
        recent = await store.list_recent(include_recent) if include_recent else []
    except Exception as e:
        return f"Error: Recall failed: {e}"
    return _to_json(
        {
            "by_topic": {
                topic: [r.to_dict() for r in results] for topic, results in zip(topics, per_topic)
            },
            "recent": [m.to_dict() for m in recent],
        }
    )


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_find_related(memory_id: str, limit: int = 5) -> str:
    """Find memories similar to a given memory - "what else do I know that connects to this?"

    Args:
        memory_id: ID of the source memory (full or partial)
        limit: Max related memories (default 5)
    """
    error = _validate_limit(limit)
    if error:
        return error
    store = get_store()
    full_id, error = await _resolve(store, memory_id)
    if error:
        return error
    try:
        results = await store.find_related(full_id, limit)
    except MemoryNotFoundError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Error: Find related failed: {e}"
    return _to_json({"count": len(results), "results": [r.to_dict() for r in results]})


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_list_recent(limit: int = 10, category: str | None = None) -> str:
    """List the most recent memories, newest first.

    Args:
        limit: Max memories (default 10)
        category: Optional category filter
    """
    error = _validate_limit(limit)
    if error:
        return error
    category, error = _normalize_category(category)
    if error:
        return error
    try:
        memories = await get_store().list_recent(limit, category)
    except Exception as e:
        return f"Error: List recent failed: {e}"
    return _to_json({"count": len(memories), "memories": [m.to_dict() for m in memories]})


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_update(
    memory_id: str,
    content: str | None = None,
    category: str | None = None,
    tags: list[str] | None = None,
) -> str:
    """Update an existing memory.

    Args:
        memory_id: The ID of the memory to update (full or partial)
        content: New content (re-embeds if changed)
        category: New category
        tags: New tags (replaces existing)
    """
    if content is not None and not content.strip():
        return "Error: content cannot be empty"
    category, error = _normalize_category(category)
    if error:
        return error
    tags, error = _normalize_tags(tags)
    if error:
        return error

    store = get_store()
    full_id, error = await _resolve(store, memory_id)
    if error:
        return error
    try:
        memory = await store.update(
            full_id, UpdateRequest(content=content, category=category, tags=tags)
        )
    except MemoryNotFoundError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Error: Update failed: {e}"
    return _to_json(memory.to_dict())


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def memory_delete(memory_id: str) -> str:
    """Permanently delete a memory by ID.

    Args:
        memory_id: The ID of the memory to delete (full or partial)
    """
    store = get_store()
    full_id, error = await _resolve(store, memory_id)
    if error:
        return error
    try:
        await store.delete(full_id)
    except Exception as e:
        return f"Error: Delete failed: {e}"
    return _to_json({"deleted": True, "id": full_id})


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_stats() -> str:
    """Get memory statistics - total, breakdown by category, oldest and newest timestamps."""
    try:
        stats = await get_store().stats()
    except Exception as e:
        return f"Error: Stats failed: {e}"
    return _to_json(stats.to_dict())


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server():
    """Initialize the embedder and store, then serve MCP over stdio."""
    await get_embedder().initialize()
    await get_store().initialize()
    print(f"[agent-memory] Server ready (db: {CONFIG.db_path})", file=sys.stderr)
    await mcp.run_stdio_async()


def main():
    """Entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
