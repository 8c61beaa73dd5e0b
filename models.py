"""Shared data models for agent-memory."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Protocol

from lancedb.pydantic import LanceModel, Vector

MEMORY_CATEGORIES = (
    "code-solution",
    "bug-fix",
    "architecture",
    "learning",
    "tool-usage",
    "debugging",
    "performance",
    "security",
    "observation",
    "personal",
    "relationship",
    "other",
)
VALID_CATEGORIES = frozenset(MEMORY_CATEGORIES)

SEARCH_MODES = ("hybrid", "keyword", "semantic")

# Memories carrying any of these tags are exempt from temporal decay.
EVERGREEN_TAGS = frozenset({"evergreen", "never-forget"})


class MemoryNotFoundError(LookupError):
    """Raised when an id (or id prefix) does not resolve to a stored memory."""

    def __init__(self, memory_id: str):
        super().__init__(f"Memory {memory_id} not found")
        self.memory_id = memory_id


class AmbiguousIdError(ValueError):
    """Raised when an id prefix matches more than one memory."""


@lru_cache(maxsize=None)
def memory_schema(dimensions: int) -> type[LanceModel]:
    """LanceDB row schema for a given embedding width.

    IMPORTANT: the vector width is fixed for the lifetime of a table. Switching to
    an embedding model with a different dimension requires a new table.
    """

    class MemoryRow(LanceModel):
        id: str  # uuid4 hex
        content: str  # Indexed for FTS
        category: str
        tags: str  # JSON array as string
        created_at: str
        updated_at: str
        vector: Vector(dimensions)  # type: ignore[valid-type]

    return MemoryRow


@dataclass(frozen=True, slots=True)
class Memory:
    id: str
    content: str
    category: str
    tags: list[str]
    created_at: str
    updated_at: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class SearchResult:
    memory: Memory
    score: float

    def to_dict(self) -> dict:
        return {"memory": self.memory.to_dict(), "score": self.score}


@dataclass(frozen=True, slots=True)
class StoreRequest:
    content: str
    category: str
    tags: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class UpdateRequest:
    """Partial update. Fields left as None keep their stored value."""

    content: str | None = None
    category: str | None = None
    tags: list[str] | None = None


@dataclass(frozen=True, slots=True)
class SearchFilters:
    category: str | None = None
    tags: list[str] | None = None  # match-any
    after: str | None = None  # inclusive lower bound on created_at
    before: str | None = None  # inclusive upper bound on created_at
    limit: int | None = None


@dataclass(frozen=True, slots=True)
class MemoryStats:
    total_memories: int
    by_category: dict[str, int]
    oldest_memory: str | None
    newest_memory: str | None

    def to_dict(self) -> dict:
        return asdict(self)


class SearchStatus(str, Enum):
    """How a search was served.

    Lets callers tell "zero real matches" apart from "capability unavailable".
    """

    OK = "ok"
    NO_TABLE = "no_table"
    FTS_UNAVAILABLE = "fts_unavailable"
    SEMANTIC_FALLBACK = "semantic_fallback"


@dataclass(frozen=True, slots=True)
class SearchOutcome:
    results: list[SearchResult]
    status: SearchStatus = SearchStatus.OK

    @property
    def degraded(self) -> bool:
        return self.status in (SearchStatus.FTS_UNAVAILABLE, SearchStatus.SEMANTIC_FALLBACK)


class MemoryStore(Protocol):
    """Contract shared by the LanceDB store and anything that wraps it."""

    async def initialize(self) -> None: ...

    async def store(self, request: StoreRequest) -> Memory: ...

    async def store_batch(self, requests: list[StoreRequest]) -> list[Memory]: ...

    async def search(
        self, query: str, mode: str = "hybrid", filters: SearchFilters | None = None
    ) -> list[SearchResult]: ...

    async def search_with_status(
        self, query: str, mode: str = "hybrid", filters: SearchFilters | None = None
    ) -> SearchOutcome: ...

    async def find_related(self, memory_id: str, limit: int = 5) -> list[SearchResult]: ...

    async def list_recent(self, limit: int = 10, category: str | None = None) -> list[Memory]: ...

    async def get(self, memory_id: str) -> Memory | None: ...

    async def resolve_id(self, memory_id: str) -> str: ...

    async def update(self, memory_id: str, updates: UpdateRequest) -> Memory: ...

    async def delete(self, memory_id: str) -> None: ...

    async def stats(self) -> MemoryStats: ...
