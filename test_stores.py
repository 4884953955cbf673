"""Tests for fingerprints and both vector stores (LanceDB primary, in-memory Qdrant secondary).

Run with: pytest test_stores.py -v
"""

import pytest

from embeddings import compute_embedding_hash
from errors import ConfigurationError, DimensionMismatch, IndexNotFound, StoreUnavailable
from models import Memory, MemoryType
from primary_store import PrimaryStore
from secondary_store import SecondaryStore, SecondaryVector, point_id
from utils import cosine_distance_to_score, cosine_to_score, dedup_rate, euclidean_to_score, fingerprint, to_iso

DIM = 8


def make_memory(content: str, memory_type: MemoryType = MemoryType.PROMPT, origin: str | None = None) -> Memory:
    return Memory(
        content=content,
        type=memory_type,
        embedding=compute_embedding_hash(content, DIM),
        origin_message_id=origin,
    )


@pytest.fixture
def primary(tmp_path):
    return PrimaryStore(tmp_path / "lancedb", "memories", DIM)


@pytest.fixture
def secondary():
    return SecondaryStore(":memory:")


# =============================================================================
# Utils
# =============================================================================


class TestFingerprint:
    def test_ignores_outer_whitespace(self):
        assert fingerprint("Hi there", "prompt", "42") == fingerprint("  Hi there\n", "prompt", "42")

    def test_type_and_origin_matter(self):
        base = fingerprint("Hi", "prompt", "42")
        assert base != fingerprint("Hi", "response", "42")
        assert base != fingerprint("Hi", "prompt", "43")
        assert base != fingerprint("Hi", "prompt", None)

    def test_case_sensitive(self):
        assert fingerprint("Hi", "prompt", None) != fingerprint("hi", "prompt", None)

    def test_enum_and_string_type_agree(self):
        assert fingerprint("x", MemoryType.RESPONSE, None) == fingerprint("x", "response", None)

    def test_fields_cannot_bleed_into_each_other(self):
        assert fingerprint("a", "prompt", "b") != fingerprint("a\x1fprompt", "b", None)


class TestScores:
    def test_distance_mapping(self):
        assert cosine_distance_to_score(0.0) == 1.0
        assert cosine_distance_to_score(1.0) == 0.5
        assert cosine_distance_to_score(2.0) == 0.0
        assert cosine_distance_to_score(2.0001) == 0.0

    def test_cosine_mapping(self):
        assert cosine_to_score(1.0) == 1.0
        assert cosine_to_score(0.0) == 0.5
        assert cosine_to_score(-1.0) == 0.0

    def test_dedup_rate_empty(self):
        assert dedup_rate(0, 0) == 0.0
        assert dedup_rate(2, 10) == 0.2

    def test_euclidean_mapping_agrees_with_cosine(self):
        assert euclidean_to_score(0.0) == 1.0
        assert euclidean_to_score(2**0.5) == pytest.approx(cosine_to_score(0.0))
        assert euclidean_to_score(2.0) == 0.0

    def test_to_iso(self):
        assert to_iso("2026-01-01T00:00:00") == "2026-01-01T00:00:00"
        assert to_iso(1700000000) == to_iso(1700000000000)
        assert to_iso(10**30) == str(10**30)


class TestHashEmbedding:
    def test_deterministic_unit_vector(self):
        a = compute_embedding_hash("hello", 100)
        assert a == compute_embedding_hash("hello", 100)
        assert len(a) == 100
        assert sum(v * v for v in a) == pytest.approx(1.0)

    def test_different_text_differs(self):
        assert compute_embedding_hash("hello", DIM) != compute_embedding_hash("world", DIM)


# =============================================================================
# Primary store
# =============================================================================


class TestPrimaryStore:
    def test_add_and_read_back(self, primary):
        memory = make_memory("The deploy target is us-east-1", origin="m1")
        memory.metadata["source"] = "chat"
        assert primary.add([memory]) == 1
        [stored] = primary.all_memories()
        assert stored.id == memory.id
        assert stored.content == memory.content
        assert stored.type is MemoryType.PROMPT
        assert stored.origin_message_id == "m1"
        assert stored.metadata == {"source": "chat"}
        assert stored.embedding == pytest.approx(memory.embedding)

    def test_rejects_wrong_dimension_before_writing(self, primary):
        good = make_memory("fine")
        bad = Memory(content="bad", type=MemoryType.PROMPT, embedding=[1.0, 0.0])
        with pytest.raises(DimensionMismatch):
            primary.add([good, bad])
        assert primary.count() == 0

    def test_query_dimension_checked(self, primary):
        with pytest.raises(DimensionMismatch):
            primary.nearest([1.0] * (DIM + 1), 5)

    def test_reopen_with_other_dimension(self, tmp_path):
        PrimaryStore(tmp_path / "lancedb", "memories", DIM).add([make_memory("x")])
        with pytest.raises(DimensionMismatch):
            PrimaryStore(tmp_path / "lancedb", "memories", DIM * 2).get_table()

    def test_clear_wraps_open_failure(self, primary, monkeypatch):
        def broken():
            raise OSError("permission denied")

        monkeypatch.setattr(primary, "get_table", broken)
        with pytest.raises(StoreUnavailable):
            primary.clear()

    def test_clear_and_counts(self, primary):
        primary.add([make_memory("a"), make_memory("b", MemoryType.RESPONSE), make_memory("c")])
        assert primary.count_by_type() == {"prompt": 2, "response": 1}
        assert primary.clear() == 3
        assert primary.count() == 0

    def test_nearest_finds_identical_text(self, primary):
        primary.add([make_memory("alpha"), make_memory("beta")])
        [top, *_] = primary.nearest(compute_embedding_hash("alpha", DIM), 2)
        assert top.memory.content == "alpha"
        assert top.score == pytest.approx(1.0, abs=1e-5)


# =============================================================================
# Secondary store
# =============================================================================


def vector(content: str, namespace: str = "default") -> SecondaryVector:
    fp = fingerprint(content, "prompt", None)
    return SecondaryVector(
        id=point_id(namespace, fp),
        values=compute_embedding_hash(content, DIM),
        payload={"content": content, "type": "prompt", "fingerprint": fp},
    )


class TestSecondaryStore:
    def test_available(self, secondary):
        assert secondary.is_available()

    def test_create_is_idempotent(self, secondary):
        assert secondary.create_index("archive", DIM) is True
        assert secondary.create_index("archive", DIM) is False
        assert secondary.dimension("archive") == (DIM, "cosine")

    @pytest.mark.parametrize(
        "name, dimension, metric",
        [("", DIM, "cosine"), ("archive", 0, "cosine"), ("archive", DIM, "manhattan")],
    )
    def test_create_validation(self, secondary, name, dimension, metric):
        with pytest.raises(ConfigurationError):
            secondary.create_index(name, dimension, metric)

    def test_missing_index(self, secondary):
        with pytest.raises(IndexNotFound):
            secondary.count("nope")
        with pytest.raises(IndexNotFound):
            secondary.delete_index("nope")

    def test_namespaces_are_isolated(self, secondary):
        secondary.create_index("archive", DIM)
        secondary.upsert("archive", "alice", [vector("a1", "alice"), vector("a2", "alice")])
        secondary.upsert("archive", "bob", [vector("b1", "bob")])

        assert secondary.count("archive") == 3
        assert secondary.count("archive", "alice") == 2
        assert {v.payload["content"] for v in secondary.fetch("archive", "bob", 10)} == {"b1"}
        assert [(ns.name, ns.vector_count) for ns in secondary.namespaces("archive")] == [("alice", 2), ("bob", 1)]

        assert secondary.wipe("archive", "alice") == 2
        assert secondary.count("archive") == 1

    def test_upsert_same_id_overwrites(self, secondary):
        secondary.create_index("archive", DIM)
        secondary.upsert("archive", "default", [vector("same")])
        secondary.upsert("archive", "default", [vector("same")])
        assert secondary.count("archive") == 1
        assert secondary.fingerprints("archive", "default") == {fingerprint("same", "prompt", None)}

    def test_fetch_respects_limit(self, secondary):
        secondary.create_index("archive", DIM)
        secondary.upsert("archive", "default", [vector(f"m{i}") for i in range(5)])
        fetched = secondary.fetch("archive", "default", 3)
        assert len(fetched) == 3
        assert all(len(v.values) == DIM for v in fetched)

    def test_query_scores_normalized(self, secondary):
        secondary.create_index("archive", DIM)
        secondary.upsert("archive", "default", [vector("alpha"), vector("beta")])
        [top, *_] = secondary.query("archive", "default", compute_embedding_hash("alpha", DIM), 2)
        assert top.payload["content"] == "alpha"
        assert top.score == pytest.approx(1.0, abs=1e-5)

    @pytest.mark.parametrize("metric", ["euclidean", "dotproduct"])
    def test_query_scores_match_cosine_for_other_metrics(self, secondary, metric):
        secondary.create_index("archive", 4, metric)
        secondary.upsert(
            "archive",
            "default",
            [
                SecondaryVector(id=point_id("default", "same"), values=[1.0, 0.0, 0.0, 0.0], payload={"content": "same"}),
                SecondaryVector(id=point_id("default", "orth"), values=[0.0, 1.0, 0.0, 0.0], payload={"content": "orth"}),
            ],
        )
        scores = {m.payload["content"]: m.score for m in secondary.query("archive", "default", [1.0, 0.0, 0.0, 0.0], 2)}
        assert scores["same"] == pytest.approx(1.0, abs=1e-5)
        assert scores["orth"] == pytest.approx(0.5, abs=1e-5)

    def test_list_and_delete(self, secondary):
        secondary.create_index("zeta", DIM)
        secondary.create_index("alpha", DIM, "dotproduct")
        indexes = secondary.list_indexes()
        assert [i.name for i in indexes] == ["alpha", "zeta"]
        assert indexes[0].metric == "dotproduct"
        secondary.delete_index("zeta")
        assert not secondary.index_exists("zeta")

    def test_check_dimension(self, secondary):
        secondary.create_index("archive", DIM * 2)
        with pytest.raises(DimensionMismatch):
            secondary.check_dimension("archive", DIM)
