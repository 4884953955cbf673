"""Tests for query classification, threshold resolution and similarity search.

Run with: pytest test_retrieval.py -v
"""

from datetime import datetime, timedelta

import pytest

from errors import ConfigurationError, StoreUnavailable
from models import Memory, MemoryType, QueryKind, RetrievalSettings, ScoredMemory
from primary_store import PrimaryStore
from retrieval import (
    SimilaritySearch,
    classify_query,
    effective_threshold,
    format_context,
    rank_candidates,
    resolve_threshold,
    retrieve,
)

DIM = 4


def scored(content: str, score: float, age_minutes: int = 0) -> ScoredMemory:
    timestamp = (datetime(2026, 1, 1, 12, 0) - timedelta(minutes=age_minutes)).isoformat()
    memory = Memory(content=content, type=MemoryType.PROMPT, embedding=[0.0] * DIM, timestamp=timestamp)
    return ScoredMemory(memory, score)


class DownStore:
    """Primary store stand-in that is always unreachable."""

    def nearest(self, vector, limit):
        raise StoreUnavailable("primary", "connection refused")


# =============================================================================
# Classification
# =============================================================================


class TestClassifyQuery:
    @pytest.mark.parametrize(
        "text",
        [
            "What is the deploy target?",
            "how do I rotate the keys",
            "Can you remind me of the port",
            "does the cache expire",
            "the port is 8080?",
            "  Why   ",
        ],
    )
    def test_questions(self, text):
        assert classify_query(text) is QueryKind.QUESTION

    @pytest.mark.parametrize(
        "text",
        [
            "The deploy target is us-east-1.",
            "Remember that I prefer tabs",
            "whatever works",  # "what" must be a whole word
            "however you like",
            "",
            "   ",
        ],
    )
    def test_statements(self, text):
        assert classify_query(text) is QueryKind.STATEMENT


# =============================================================================
# Threshold resolution
# =============================================================================


class TestResolveThreshold:
    def test_scenario_values(self):
        """Base 0.75 with factors 0.60/0.90 lands halfway toward each factor."""
        question = resolve_threshold(0.75, 0.60, 0.90, QueryKind.QUESTION)
        statement = resolve_threshold(0.75, 0.60, 0.90, QueryKind.STATEMENT)
        assert question == pytest.approx(0.675)
        assert statement == pytest.approx(0.825)

    @pytest.mark.parametrize("policy", ["blend", "minmax"])
    def test_question_never_stricter_than_statement(self, policy):
        bases = [i / 10 for i in range(11)]
        factors = [0.55, 0.6, 0.7, 0.8, 0.9, 0.95]
        for base in bases:
            for qf in factors:
                for sf in factors:
                    q = resolve_threshold(base, qf, sf, QueryKind.QUESTION, policy)
                    s = resolve_threshold(base, qf, sf, QueryKind.STATEMENT, policy)
                    assert 0.0 <= q <= base <= s <= 1.0, (base, qf, sf)

    def test_minmax_uses_factor_directly(self):
        assert resolve_threshold(0.75, 0.6, 0.9, QueryKind.QUESTION, "minmax") == pytest.approx(0.6)
        assert resolve_threshold(0.75, 0.6, 0.9, QueryKind.STATEMENT, "minmax") == pytest.approx(0.9)

    @pytest.mark.parametrize("qf, sf", [(0.5, 0.9), (0.6, 0.96), (0.0, 0.7)])
    def test_factor_out_of_range(self, qf, sf):
        with pytest.raises(ConfigurationError):
            resolve_threshold(0.75, qf, sf, QueryKind.QUESTION)

    def test_base_out_of_range(self):
        with pytest.raises(ConfigurationError):
            resolve_threshold(1.2, 0.7, 0.85, QueryKind.STATEMENT)

    def test_unknown_policy(self):
        with pytest.raises(ConfigurationError, match="Unknown threshold policy"):
            resolve_threshold(0.75, 0.7, 0.85, QueryKind.STATEMENT, "median")

    def test_effective_threshold_uses_settings(self):
        settings = RetrievalSettings(
            similarity_threshold=0.75, question_threshold_factor=0.6, statement_threshold_factor=0.9
        )
        assert effective_threshold(settings, QueryKind.QUESTION) == pytest.approx(0.675)


# =============================================================================
# Ranking & search
# =============================================================================


class TestRankCandidates:
    def test_filters_and_truncates(self):
        candidates = [scored(f"m{i}", s) for i, s in enumerate([0.9, 0.8, 0.7, 0.6, 0.5])]
        ranked = rank_candidates(candidates, threshold=0.65, context_size=2)
        assert [c.score for c in ranked] == [0.9, 0.8]

    def test_top_three_above_threshold(self):
        candidates = [scored(f"m{i}", s) for i, s in enumerate([0.70, 0.88, 0.77, 0.91, 0.80])]
        ranked = rank_candidates(candidates, threshold=0.78, context_size=3)
        assert [c.score for c in ranked] == [0.91, 0.88, 0.80]

    def test_threshold_is_inclusive(self):
        ranked = rank_candidates([scored("edge", 0.675)], threshold=0.675, context_size=5)
        assert len(ranked) == 1

    def test_ties_prefer_newest(self):
        older = scored("older", 0.8, age_minutes=30)
        newer = scored("newer", 0.8, age_minutes=1)
        ranked = rank_candidates([older, scored("best", 0.95), newer], threshold=0.5, context_size=3)
        assert [c.memory.content for c in ranked] == ["best", "newer", "older"]

    def test_nothing_above_threshold(self):
        assert rank_candidates([scored("low", 0.3)], threshold=0.5, context_size=5) == []


class TestSimilaritySearch:
    @pytest.fixture
    def store(self, tmp_path):
        store = PrimaryStore(tmp_path / "db", "memories", DIM)
        store.add(
            [
                Memory(content="same direction", type=MemoryType.PROMPT, embedding=[1.0, 0.0, 0.0, 0.0]),
                Memory(content="orthogonal", type=MemoryType.RESPONSE, embedding=[0.0, 1.0, 0.0, 0.0]),
                Memory(content="opposite", type=MemoryType.PROMPT, embedding=[-1.0, 0.0, 0.0, 0.0]),
            ]
        )
        return store

    async def test_scores_follow_cosine(self, store):
        results = await SimilaritySearch(store).search([1.0, 0.0, 0.0, 0.0], threshold=0.0, context_size=3)
        scores = {r.memory.content: r.score for r in results}
        assert scores["same direction"] == pytest.approx(1.0, abs=1e-5)
        assert scores["orthogonal"] == pytest.approx(0.5, abs=1e-5)
        assert scores["opposite"] == pytest.approx(0.0, abs=1e-5)

    async def test_threshold_filters(self, store):
        results = await SimilaritySearch(store).search([1.0, 0.0, 0.0, 0.0], threshold=0.75, context_size=5)
        assert [r.memory.content for r in results] == ["same direction"]

    async def test_zero_context_size(self, store):
        assert await SimilaritySearch(store).search([1.0, 0.0, 0.0, 0.0], 0.0, 0) == []

    async def test_retrieve_degrades_when_store_down(self):
        retrieval = await retrieve(SimilaritySearch(DownStore()), "what port?", [1.0, 0.0, 0.0, 0.0], RetrievalSettings())
        assert retrieval.degraded
        assert retrieval.memories == []
        assert retrieval.kind is QueryKind.QUESTION

    async def test_retrieve_reports_kind_and_threshold(self, store):
        retrieval = await retrieve(
            SimilaritySearch(store), "same direction please", [1.0, 0.0, 0.0, 0.0], RetrievalSettings()
        )
        assert retrieval.kind is QueryKind.STATEMENT
        assert retrieval.threshold == pytest.approx(0.8)
        assert [m.memory.content for m in retrieval.memories] == ["same direction"]


class TestFormatContext:
    def test_empty(self):
        assert format_context([]) == ""

    def test_numbered_block(self):
        block = format_context([scored("first", 0.9), scored("second", 0.8)])
        assert block.startswith("Here are some relevant past interactions:")
        assert "[Memory 1] first" in block
        assert "[Memory 2] second" in block
