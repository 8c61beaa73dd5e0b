"""
Write-behind mirror of memory mutations as plain JSON files.

One file per memory, named {id}.json. Reads pass straight through to the
wrapped store. The wrapped store stays the source of truth: mirror failures
are logged to stderr and never reach the caller.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

from models import (
    Memory,
    MemoryStats,
    MemoryStore,
    SearchFilters,
    SearchOutcome,
    SearchResult,
    StoreRequest,
    UpdateRequest,
)


class HardcopyMemoryStore:
    """Wraps any MemoryStore and mirrors its writes to `hardcopy_path`."""

    def __init__(self, inner: MemoryStore, hardcopy_path: Path):
        self.inner = inner
        self.hardcopy_path = Path(hardcopy_path)

    async def initialize(self) -> None:
        await self.inner.initialize()
        self.hardcopy_path.mkdir(parents=True, exist_ok=True)

    # -- mutations (mirrored) -----------------------------------------------

    async def store(self, request: StoreRequest) -> Memory:
        memory = await self.inner.store(request)
        await self._write(memory)
        return memory

    async def store_batch(self, requests: list[StoreRequest]) -> list[Memory]:
        memories = await self.inner.store_batch(requests)
        await asyncio.gather(*(self._write(m) for m in memories))
        return memories

    async def update(self, memory_id: str, updates: UpdateRequest) -> Memory:
        memory = await self.inner.update(memory_id, updates)
        await self._write(memory)
        return memory

    async def delete(self, memory_id: str) -> None:
        await self.inner.delete(memory_id)
        await self._remove(memory_id)

    # -- reads (pass through) -----------------------------------------------

    async def search(
        self, query: str, mode: str = "hybrid", filters: SearchFilters | None = None
    ) -> list[SearchResult]:
        return await self.inner.search(query, mode, filters)

    async def search_with_status(
        self, query: str, mode: str = "hybrid", filters: SearchFilters | None = None
    ) -> SearchOutcome:
        return await self.inner.search_with_status(query, mode, filters)

    async def find_related(self, memory_id: str, limit: int = 5) -> list[SearchResult]:
        return await self.inner.find_related(memory_id, limit)

    async def list_recent(self, limit: int = 10, category: str | None = None) -> list[Memory]:
        return await self.inner.list_recent(limit, category)

    async def get(self, memory_id: str) -> Memory | None:
        return await self.inner.get(memory_id)

    async def resolve_id(self, memory_id: str) -> str:
        return await self.inner.resolve_id(memory_id)

    async def stats(self) -> MemoryStats:
        return await self.inner.stats()

    # -- file mirror --------------------------------------------------------

    def _path_for(self, memory_id: str) -> Path:
        return self.hardcopy_path / f"{memory_id}.json"

    async def _write(self, memory: Memory) -> None:
        path = self._path_for(memory.id)
        try:
            text = json.dumps(memory.to_dict(), indent=2) + "\n"
            await asyncio.to_thread(path.write_text, text)
        except Exception as e:
            print(f"[agent-memory] Hardcopy write failed for {memory.id}: {e}", file=sys.stderr)

    async def _remove(self, memory_id: str) -> None:
        try:
            await asyncio.to_thread(self._path_for(memory_id).unlink)
        except FileNotFoundError:
            pass  # memory predates the mirror
        except Exception as e:
            print(f"[agent-memory] Hardcopy delete failed for {memory_id}: {e}", file=sys.stderr)
