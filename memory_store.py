"""
LanceDB memory store: table lifecycle, CRUD, hybrid retrieval and temporal decay.

Search pipeline:
- semantic: cosine nearest-neighbour, score = 1 / (1 + distance)
- keyword: BM25 over the native FTS index on `content`
- hybrid: vector + BM25 fused by Reciprocal Rank Fusion (k=60), either by
  LanceDB's RRFReranker or by `rrf_fusion` when native fusion is switched off

Every result is rescored by exponential age decay before the final sort.
"""

from __future__ import annotations

import json
import sys
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import lancedb
import pyarrow.compute as pc
from lancedb.index import FTS
from lancedb.rerankers import RRFReranker

from config import CONFIG, Config
from models import (
    EVERGREEN_TAGS,
    SEARCH_MODES,
    AmbiguousIdError,
    Memory,
    MemoryNotFoundError,
    MemoryStats,
    SearchFilters,
    SearchOutcome,
    SearchResult,
    SearchStatus,
    StoreRequest,
    UpdateRequest,
    memory_schema,
)

if TYPE_CHECKING:
    from embedder import Embedder

SECONDS_PER_DAY = 86_400
ID_LENGTH = 32
ID_PREFIX_MATCH_LIMIT = 100


# =============================================================================
# Row helpers
# =============================================================================


def now_iso() -> str:
    """Get current UTC timestamp as ISO string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp. Naive values are taken to be UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_utc_iso(value: str) -> str:
    """Normalize any ISO-8601 timestamp to the stored UTC form, so bounds compare as strings."""
    return parse_timestamp(value).astimezone(timezone.utc).isoformat(timespec="microseconds")


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def build_row(request: StoreRequest, vector: list[float], timestamp: str) -> dict[str, Any]:
    return {
        "id": uuid.uuid4().hex,
        "content": request.content,
        "category": request.category,
        "tags": json.dumps(list(request.tags)),
        "created_at": timestamp,
        "updated_at": timestamp,
        "vector": [float(v) for v in vector],
    }


def row_tags(row: dict[str, Any]) -> list[str]:
    raw = row.get("tags")
    return json.loads(raw) if raw else []


def row_to_memory(row: dict[str, Any]) -> Memory:
    return Memory(
        id=row["id"],
        content=row["content"],
        category=row["category"],
        tags=row_tags(row),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def build_where_clause(filters: SearchFilters) -> str | None:
    """Predicates LanceDB can evaluate natively. Tags are filtered afterwards."""
    clauses = []
    if filters.category:
        clauses.append(f"category = '{escape_filter_value(filters.category)}'")
    if filters.after:
        clauses.append(f"created_at >= '{escape_filter_value(to_utc_iso(filters.after))}'")
    if filters.before:
        clauses.append(f"created_at <= '{escape_filter_value(to_utc_iso(filters.before))}'")
    return " AND ".join(clauses) if clauses else None


def matches_tags(tags: list[str], wanted: list[str] | None) -> bool:
    if not wanted:
        return True
    return any(tag in tags for tag in wanted)


# =============================================================================
# Scoring
# =============================================================================


def raw_score(row: dict[str, Any]) -> float:
    """Mode-specific relevance of a raw LanceDB result row.

    _relevance_score (RRF reranker) wins, then _distance (cosine, lower is
    better), then _score (BM25).
    """
    relevance = row.get("_relevance_score")
    if relevance is not None:
        return float(relevance)
    distance = row.get("_distance")
    if distance is not None:
        return 1.0 / (1.0 + max(0.0, float(distance)))
    keyword = row.get("_score")
    if keyword is not None:
        return float(keyword)
    return 0.0


def rows_to_results(rows: list[dict[str, Any]], filters: SearchFilters | None = None) -> list[SearchResult]:
    """Apply the tag post-filter and drop repeated ids, keeping rank order."""
    wanted = filters.tags if filters else None
    seen: set[str] = set()
    results = []
    for row in rows:
        if row["id"] in seen:
            continue
        memory = row_to_memory(row)
        if not matches_tags(memory.tags, wanted):
            continue
        seen.add(memory.id)
        results.append(SearchResult(memory=memory, score=raw_score(row)))
    return results


def decay_factor(updated_at: str, half_life_days: float, now: datetime | None = None) -> float:
    """0.5 ** (age / half-life). Never above 1: future timestamps count as age 0."""
    if half_life_days <= 0:
        return 1.0
    now = now or datetime.now(timezone.utc)
    age_days = max(0.0, (now - parse_timestamp(updated_at)).total_seconds() / SECONDS_PER_DAY)
    return 0.5 ** (age_days / half_life_days)


def is_evergreen(tags: list[str]) -> bool:
    return any(tag in EVERGREEN_TAGS for tag in tags)


def apply_decay(
    results: list[SearchResult], half_life_days: float, now: datetime | None = None
) -> list[SearchResult]:
    if half_life_days <= 0:
        return list(results)
    now = now or datetime.now(timezone.utc)
    decayed = []
    for result in results:
        if is_evergreen(result.memory.tags):
            decayed.append(result)
            continue
        factor = decay_factor(result.memory.updated_at, half_life_days, now)
        decayed.append(replace(result, score=result.score * factor))
    return decayed


def rank_results(
    results: list[SearchResult], limit: int, half_life_days: float, now: datetime | None = None
) -> list[SearchResult]:
    """Decay, re-sort and truncate. Decay can reorder, so sorting comes after it."""
    decayed = apply_decay(results, half_life_days, now)
    decayed.sort(key=lambda r: r.score, reverse=True)
    return decayed[:limit]


def rrf_fusion(
    first: list[SearchResult],
    second: list[SearchResult],
    limit: int,
    k: int = 60,
    weights: tuple[float, float] = (1.0, 1.0),
) -> list[SearchResult]:
    """Reciprocal Rank Fusion of two ranked lists.

    Each entry contributes weight / (k + rank + 1). An id present in both lists
    sums both contributions. The returned score is the fused score.
    """
    scores: dict[str, float] = {}
    memories: dict[str, Memory] = {}
    for ranked, weight in ((first, weights[0]), (second, weights[1])):
        for rank, result in enumerate(ranked):
            memory_id = result.memory.id
            scores[memory_id] = scores.get(memory_id, 0.0) + weight / (k + rank + 1)
            memories.setdefault(memory_id, result.memory)

    ordered = sorted(scores, key=lambda memory_id: scores[memory_id], reverse=True)
    return [SearchResult(memory=memories[mid], score=scores[mid]) for mid in ordered[:limit]]


def _list_table_names(db: lancedb.DBConnection) -> list[str]:
    try:
        response = db.list_tables()
    except AttributeError:
        return list(db.table_names())
    return list(getattr(response, "tables", response))


# =============================================================================
# Store
# =============================================================================


class LanceMemoryStore:
    """Memory store over a single LanceDB table.

    The table is created lazily from the first written row. Writes assume a
    single logical writer per memory id; update and delete are not isolated.
    """

    def __init__(self, embedder: Embedder, config: Config = CONFIG):
        self.embedder = embedder
        self.config = config
        self._db: lancedb.DBConnection | None = None
        self._table: lancedb.table.Table | None = None
        self._reranker: RRFReranker | None = None
        self._fts_available = False

    @property
    def fts_available(self) -> bool:
        return self._fts_available

    async def initialize(self, build_index: bool = True) -> None:
        """Connect, open an existing table and (re)build its FTS index. Idempotent.

        Read-only callers pass `build_index=False` so opening never writes.
        """
        self.config.db_path.mkdir(parents=True, exist_ok=True)
        self._db = lancedb.connect(str(self.config.db_path))
        self._reranker = RRFReranker(K=self.config.rrf_k)
        if self.config.table_name not in _list_table_names(self._db):
            return

        table = self._db.open_table(self.config.table_name)
        width = table.schema.field("vector").type.list_size
        if width != self.embedder.dimensions():
            raise ValueError(
                f"Table '{self.config.table_name}' stores {width}-dim vectors but the "
                f"embedder produces {self.embedder.dimensions()}. Use a new table."
            )
        self._table = table
        if build_index:
            self._create_fts_index()

    # -- table lifecycle ----------------------------------------------------

    def _require_db(self) -> lancedb.DBConnection:
        if self._db is None:
            raise RuntimeError("Memory store not initialised. Call initialize() first.")
        return self._db

    def _ensure_table(self, seed_row: dict[str, Any]) -> bool:
        """Create the table from `seed_row` if it does not exist yet.

        Returns True when the table was just created, in which case the seed row
        is already stored and callers MUST NOT insert it again.
        """
        if self._table is not None:
            return False

        db = self._require_db()
        schema = memory_schema(self.embedder.dimensions())
        self._table = db.create_table(self.config.table_name, data=[seed_row], schema=schema)
        print(f"[agent-memory] Created table '{self.config.table_name}'", file=sys.stderr)
        self._create_fts_index()
        return True

    def _create_fts_index(self) -> None:
        """Best-effort BM25 index on content. Failure leaves keyword search degraded."""
        try:
            self._table.create_index(
                "content",
                config=FTS(
                    with_position=True,
                    stem=True,
                    language="English",
                    remove_stop_words=True,
                    ascii_folding=True,
                ),
                replace=True,
            )
            self._fts_available = True
            print("[agent-memory] FTS index (BM25) ready on 'content'", file=sys.stderr)
        except Exception as e:
            self._fts_available = False
            print(f"[agent-memory] FTS index unavailable: {e}", file=sys.stderr)

    def _fetch_row(self, memory_id: str) -> dict[str, Any] | None:
        if self._table is None:
            return None
        rows = (
            self._table.search()
            .where(f"id = '{escape_filter_value(memory_id)}'")
            .limit(1)
            .to_list()
        )
        return rows[0] if rows else None

    def _scan(self, where: str | None = None) -> list[dict[str, Any]]:
        """Full predicate scan. Fine at single-agent scale."""
        total = self._table.count_rows(where)
        if total == 0:
            return []
        query = self._table.search()
        if where:
            query = query.where(where)
        return query.limit(total).to_list()

    # -- writes -------------------------------------------------------------

    async def store(self, request: StoreRequest) -> Memory:
        vector = await self.embedder.embed(request.content)
        row = build_row(request, vector, now_iso())
        if not self._ensure_table(row):
            self._table.add([row])
        return row_to_memory(row)

    async def store_batch(self, requests: list[StoreRequest]) -> list[Memory]:
        if not requests:
            return []

        vectors = await self.embedder.embed_batch([r.content for r in requests])
        timestamp = now_iso()
        rows = [build_row(req, vec, timestamp) for req, vec in zip(requests, vectors)]

        # A freshly created table already holds rows[0] as its seed.
        remaining = rows[1:] if self._ensure_table(rows[0]) else rows
        if remaining:
            self._table.add(remaining)
        return [row_to_memory(row) for row in rows]

    async def update(self, memory_id: str, updates: UpdateRequest) -> Memory:
        existing = self._fetch_row(memory_id)
        if existing is None:
            raise MemoryNotFoundError(memory_id)

        content = updates.content if updates.content is not None else existing["content"]
        category = updates.category if updates.category is not None else existing["category"]
        tags = list(updates.tags) if updates.tags is not None else row_tags(existing)

        if content != existing["content"]:
            vector = await self.embedder.embed(content)
        else:
            vector = [float(v) for v in existing["vector"]]

        old_updated_at = existing["updated_at"]
        new_updated_at = now_iso()
        if new_updated_at == old_updated_at:
            new_updated_at = (parse_timestamp(old_updated_at) + timedelta(microseconds=1)).isoformat(
                timespec="microseconds"
            )

        row = {
            "id": existing["id"],
            "content": content,
            "category": category,
            "tags": json.dumps(tags),
            "created_at": existing["created_at"],
            "updated_at": new_updated_at,
            "vector": vector,
        }
        # Add first, then delete only the old version: a crash in between
        # leaves two versions of the id rather than none.
        self._table.add([row])
        self._table.delete(
            f"id = '{escape_filter_value(existing['id'])}' "
            f"AND updated_at = '{escape_filter_value(old_updated_at)}'"
        )
        return row_to_memory(row)

    async def delete(self, memory_id: str) -> None:
        """Remove a memory. Unknown ids are a no-op once the table exists."""
        if self._table is None:
            raise MemoryNotFoundError(memory_id)
        self._table.delete(f"id = '{escape_filter_value(memory_id)}'")

    # -- reads --------------------------------------------------------------

    async def get(self, memory_id: str) -> Memory | None:
        row = self._fetch_row(memory_id)
        return row_to_memory(row) if row else None

    async def resolve_id(self, memory_id: str) -> str:
        """Resolve a full id or a unique id prefix to the full id."""
        if self._table is None:
            raise MemoryNotFoundError(memory_id)
        if len(memory_id) >= ID_LENGTH:
            row = self._fetch_row(memory_id)
            if row is None:
                raise MemoryNotFoundError(memory_id)
            return row["id"]

        rows = (
            self._table.search()
            .where(f"id LIKE '{escape_filter_value(memory_id)}%'")
            .select(["id"])
            .limit(ID_PREFIX_MATCH_LIMIT)
            .to_list()
        )
        ids = sorted({r["id"] for r in rows})
        if not ids:
            raise MemoryNotFoundError(memory_id)
        if len(ids) > 1:
            shown = ", ".join(ids)
            if len(rows) >= ID_PREFIX_MATCH_LIMIT:
                shown = f"{shown}..."
            raise AmbiguousIdError(f"Ambiguous ID prefix '{memory_id}'. Matches: {shown}")
        return ids[0]

    async def list_recent(self, limit: int = 10, category: str | None = None) -> list[Memory]:
        if self._table is None:
            return []
        where = f"category = '{escape_filter_value(category)}'" if category else None
        memories = [row_to_memory(row) for row in self._scan(where)]
        memories.sort(key=lambda m: m.created_at, reverse=True)
        return memories[:limit]

    async def stats(self) -> MemoryStats:
        if self._table is None:
            return MemoryStats(total_memories=0, by_category={}, oldest_memory=None, newest_memory=None)

        columns = self._table.to_arrow().select(["category", "created_at"])
        if columns.num_rows == 0:
            return MemoryStats(total_memories=0, by_category={}, oldest_memory=None, newest_memory=None)

        counts = pc.value_counts(columns["category"]).to_pylist()
        bounds = pc.min_max(columns["created_at"]).as_py()
        return MemoryStats(
            total_memories=columns.num_rows,
            by_category={c["values"]: c["counts"] for c in counts},
            oldest_memory=bounds["min"],
            newest_memory=bounds["max"],
        )

    # -- search -------------------------------------------------------------

    async def search(
        self, query: str, mode: str = "hybrid", filters: SearchFilters | None = None
    ) -> list[SearchResult]:
        outcome = await self.search_with_status(query, mode, filters)
        return outcome.results

    async def search_with_status(
        self, query: str, mode: str = "hybrid", filters: SearchFilters | None = None
    ) -> SearchOutcome:
        if mode not in SEARCH_MODES:
            raise ValueError(f"Invalid search mode '{mode}'. Valid: {list(SEARCH_MODES)}")
        filters = filters or SearchFilters()
        if self._table is None:
            return SearchOutcome([], SearchStatus.NO_TABLE)

        limit = filters.limit or self.config.default_limit
        if mode == "semantic":
            return await self._semantic_search(query, filters, limit)
        if mode == "keyword":
            return self._keyword_search(query, filters, limit)
        return await self._hybrid_search(query, filters, limit)

    async def find_related(self, memory_id: str, limit: int = 5) -> list[SearchResult]:
        original = self._fetch_row(memory_id)
        if original is None:
            raise MemoryNotFoundError(memory_id)

        # limit + 1 so the source can be dropped wherever it ranks
        rows = self._vector_query(list(original["vector"]), None, limit + 1)
        rows = [row for row in rows if row["id"] != original["id"]]
        return rank_results(rows_to_results(rows), limit, self.config.decay_half_life_days)

    def _fetch_limit(self, limit: int) -> int:
        return limit * self.config.over_fetch_factor

    def _vector_query(self, vector: list[float], where: str | None, limit: int) -> list[dict[str, Any]]:
        search = self._table.search(vector, query_type="vector").distance_type("cosine")
        if where:
            search = search.where(where, prefilter=True)
        return search.limit(limit).to_list()

    def _keyword_query(self, query: str, where: str | None, limit: int) -> list[dict[str, Any]]:
        search = self._table.search(query, query_type="fts")
        if where:
            search = search.where(where, prefilter=True)
        return search.limit(limit).to_list()

    def _semantic_from_vector(
        self, vector: list[float], filters: SearchFilters, limit: int
    ) -> list[SearchResult]:
        rows = self._vector_query(vector, build_where_clause(filters), self._fetch_limit(limit))
        return rank_results(rows_to_results(rows, filters), limit, self.config.decay_half_life_days)

    async def _semantic_search(self, query: str, filters: SearchFilters, limit: int) -> SearchOutcome:
        vector = await self.embedder.embed(query)
        return SearchOutcome(self._semantic_from_vector(vector, filters, limit))

    def _keyword_search(self, query: str, filters: SearchFilters, limit: int) -> SearchOutcome:
        if not self._fts_available:
            return SearchOutcome([], SearchStatus.FTS_UNAVAILABLE)
        try:
            rows = self._keyword_query(query, build_where_clause(filters), self._fetch_limit(limit))
        except Exception as e:
            print(f"[agent-memory] Keyword search unavailable: {e}", file=sys.stderr)
            return SearchOutcome([], SearchStatus.FTS_UNAVAILABLE)
        results = rank_results(rows_to_results(rows, filters), limit, self.config.decay_half_life_days)
        return SearchOutcome(results)

    async def _hybrid_search(self, query: str, filters: SearchFilters, limit: int) -> SearchOutcome:
        vector = await self.embedder.embed(query)
        if not self._fts_available:
            return SearchOutcome(
                self._semantic_from_vector(vector, filters, limit), SearchStatus.SEMANTIC_FALLBACK
            )
        if not self.config.native_fusion:
            return self._fused_search(query, vector, filters, limit)

        where = build_where_clause(filters)
        try:
            search = (
                self._table.search(query_type="hybrid")
                .vector(vector)
                .text(query)
                .distance_type("cosine")
                .rerank(reranker=self._reranker)
            )
            if where:
                search = search.where(where, prefilter=True)
            rows = search.limit(self._fetch_limit(limit)).to_list()
        except Exception as e:
            print(f"[agent-memory] Hybrid search failed, using vector only: {e}", file=sys.stderr)
            return SearchOutcome(
                self._semantic_from_vector(vector, filters, limit), SearchStatus.SEMANTIC_FALLBACK
            )

        results = rank_results(rows_to_results(rows, filters), limit, self.config.decay_half_life_days)
        return SearchOutcome(results)

    def _fused_search(
        self, query: str, vector: list[float], filters: SearchFilters, limit: int
    ) -> SearchOutcome:
        """Hybrid search with our own RRF instead of LanceDB's reranker."""
        where = build_where_clause(filters)
        fetch_limit = self._fetch_limit(limit)
        semantic = rows_to_results(self._vector_query(vector, where, fetch_limit), filters)
        try:
            keyword = rows_to_results(self._keyword_query(query, where, fetch_limit), filters)
        except Exception as e:
            print(f"[agent-memory] FTS search failed, using vector only: {e}", file=sys.stderr)
            results = rank_results(semantic, limit, self.config.decay_half_life_days)
            return SearchOutcome(results, SearchStatus.SEMANTIC_FALLBACK)

        fused = rrf_fusion(semantic, keyword, fetch_limit, k=self.config.rrf_k)
        return SearchOutcome(rank_results(fused, limit, self.config.decay_half_life_days))
