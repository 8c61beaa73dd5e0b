"""
Tests for Reciprocal Rank Fusion, raw score interpretation and filter plumbing.
"""

import json

import pytest

from memory_store import (
    build_where_clause,
    escape_filter_value,
    matches_tags,
    raw_score,
    rows_to_results,
    rrf_fusion,
    to_utc_iso,
)
from models import Memory, SearchFilters, SearchResult


def item(memory_id: str, score: float = 0.0) -> SearchResult:
    memory = Memory(
        id=memory_id,
        content=memory_id,
        category="other",
        tags=[],
        created_at="2026-01-01T00:00:00+00:00",
        updated_at="2026-01-01T00:00:00+00:00",
    )
    return SearchResult(memory=memory, score=score)


def row(memory_id: str, tags: list[str] | None = None, **scores) -> dict:
    return {
        "id": memory_id,
        "content": f"content {memory_id}",
        "category": "learning",
        "tags": json.dumps(tags or []),
        "created_at": "2026-01-01T00:00:00+00:00",
        "updated_at": "2026-01-01T00:00:00+00:00",
        **scores,
    }


class TestRRFFusion:
    def test_single_list(self):
        fused = rrf_fusion([item("a"), item("b")], [], 10)
        assert [r.memory.id for r in fused] == ["a", "b"]
        assert fused[0].score == pytest.approx(1 / 61)
        assert fused[1].score == pytest.approx(1 / 62)

    def test_overlap_sums_contributions(self):
        fused = rrf_fusion([item("a"), item("b")], [item("c"), item("a")], 10)
        assert fused[0].memory.id == "a"
        assert fused[0].score == pytest.approx(1 / 61 + 1 / 62)

    def test_rank_one_in_both_lists(self):
        fused = rrf_fusion([item("a")], [item("a")], 10)
        assert len(fused) == 1
        assert fused[0].score == pytest.approx(2 / 61)

    def test_replaces_original_scores(self):
        fused = rrf_fusion([item("a", score=0.99)], [item("b", score=42.0)], 10)
        assert [r.score for r in fused] == pytest.approx([1 / 61, 1 / 61])

    def test_truncates_to_limit(self):
        fused = rrf_fusion([item("a"), item("b"), item("c")], [item("d"), item("e")], 3)
        assert len(fused) == 3

    def test_no_duplicate_ids(self):
        fused = rrf_fusion([item("a"), item("b"), item("c")], [item("c"), item("b"), item("a")], 10)
        ids = [r.memory.id for r in fused]
        assert len(ids) == len(set(ids)) == 3

    def test_custom_k(self):
        fused = rrf_fusion([item("a")], [], 10, k=0)
        assert fused[0].score == pytest.approx(1.0)

    def test_empty_inputs(self):
        assert rrf_fusion([], [], 10) == []


class TestRawScore:
    def test_relevance_takes_precedence(self):
        assert raw_score({"_relevance_score": 0.7, "_distance": 0.1, "_score": 9.0}) == 0.7

    def test_distance_converted(self):
        assert raw_score({"_distance": 1.0, "_score": 9.0}) == pytest.approx(0.5)
        assert raw_score({"_distance": 0.0}) == 1.0

    def test_negative_distance_clamped(self):
        assert raw_score({"_distance": -1e-7}) == 1.0

    def test_keyword_score_used_as_is(self):
        assert raw_score({"_score": 3.25}) == 3.25

    def test_no_score(self):
        assert raw_score({"id": "x"}) == 0.0


class TestRowsToResults:
    def test_tag_post_filter_is_match_any(self):
        rows = [row("a", ["alpha"]), row("b", ["beta"]), row("c", ["alpha", "gamma"])]
        results = rows_to_results(rows, SearchFilters(tags=["alpha", "gamma"]))
        assert [r.memory.id for r in results] == ["a", "c"]

    def test_drops_repeated_ids(self):
        rows = [row("a", _distance=0.1), row("a", _distance=0.5), row("b", _distance=0.2)]
        results = rows_to_results(rows)
        assert [r.memory.id for r in results] == ["a", "b"]
        assert results[0].score == pytest.approx(1 / 1.1)

    def test_tags_deserialized(self):
        results = rows_to_results([row("a", ["x", "y", "x"])])
        assert results[0].memory.tags == ["x", "y", "x"]


class TestFilterPlumbing:
    def test_escape_doubles_quotes(self):
        assert escape_filter_value("it's") == "it''s"
        assert escape_filter_value("' OR '1'='1") == "'' OR ''1''=''1"

    def test_where_clause_empty(self):
        assert build_where_clause(SearchFilters()) is None

    def test_where_clause_combines_predicates(self):
        clause = build_where_clause(
            SearchFilters(category="learning", after="2026-01-01", before="2026-02-01")
        )
        assert clause == (
            "category = 'learning' "
            "AND created_at >= '2026-01-01T00:00:00.000000+00:00' "
            "AND created_at <= '2026-02-01T00:00:00.000000+00:00'"
        )

    def test_where_clause_normalizes_offsets_to_utc(self):
        clause = build_where_clause(
            SearchFilters(after="2026-10-17T21:39:39+05:00", before="2026-10-17T12:00:00Z")
        )
        assert clause == (
            "created_at >= '2026-10-17T16:39:39.000000+00:00' "
            "AND created_at <= '2026-10-17T12:00:00.000000+00:00'"
        )

    def test_to_utc_iso_matches_stored_format(self):
        assert to_utc_iso("2026-10-17T21:39:39+05:00") == "2026-10-17T16:39:39.000000+00:00"
        assert to_utc_iso("2026-10-17T16:39:39") == "2026-10-17T16:39:39.000000+00:00"

    def test_where_clause_escapes(self):
        clause = build_where_clause(SearchFilters(category="x' OR 'a'='a"))
        assert clause == "category = 'x'' OR ''a''=''a'"

    def test_tags_never_pushed_down(self):
        assert build_where_clause(SearchFilters(tags=["alpha"])) is None

    def test_matches_tags(self):
        assert matches_tags(["a"], None)
        assert matches_tags(["a"], [])
        assert matches_tags(["a", "b"], ["b"])
        assert not matches_tags(["a"], ["b"])
