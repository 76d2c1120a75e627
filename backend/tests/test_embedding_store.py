"""Tests for the embedding store: upsert semantics and exact similarity search."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlmodel import Session

from omnicrm.models.embedding import Embedding
from omnicrm.services.embedding_store import EmbeddingStore, cosine_similarity

from helpers import OTHER_USER, TEST_USER, make_settings


@pytest.fixture(name="store")
def store_fixture(engine, settings) -> EmbeddingStore:
    return EmbeddingStore(engine, settings)


def _put(store, owner_id, vector, user_id=TEST_USER, owner_type="interaction", digest=None):
    row, _ = store.upsert(
        user_id=user_id,
        owner_type=owner_type,
        owner_id=owner_id,
        chunk_index=0,
        content_hash=digest or f"hash-{owner_id}",
        vector=vector,
    )
    return row


class TestCosineSimilarity:
    def test_identical_and_orthogonal(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_length_mismatch_raises(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0], [1.0, 2.0])


class TestUpsert:
    def test_existing_key_is_noop(self, store):
        row, created = store.upsert(TEST_USER, "interaction", "i1", 0, "h1", [1, 0, 0, 0])
        again, created_again = store.upsert(TEST_USER, "interaction", "i1", 0, "h1", [0, 1, 0, 0])

        assert created is True
        assert created_again is False
        assert again.id == row.id
        assert again.vector == [1, 0, 0, 0]
        assert store.count() == 1

    def test_new_hash_is_new_row(self, store):
        store.upsert(TEST_USER, "interaction", "i1", 0, "h1", [1, 0, 0, 0])
        store.upsert(TEST_USER, "interaction", "i1", 0, "h2", [0, 1, 0, 0])
        assert store.count() == 2
        assert store.has("interaction", "i1", 0, "h2")

    def test_wrong_dimensions_rejected(self, store):
        with pytest.raises(ValueError, match="dimensions"):
            store.upsert(TEST_USER, "interaction", "i1", 0, "h1", [1.0, 0.0])
        with pytest.raises(ValueError, match="Empty"):
            store.upsert(TEST_USER, "interaction", "i1", 0, "h1", [])

    def test_supersede_keeps_only_current(self, store):
        store.upsert(TEST_USER, "interaction", "i1", 0, "old", [1, 0, 0, 0])
        store.upsert(TEST_USER, "interaction", "i1", 0, "new", [0, 1, 0, 0])
        store.upsert(TEST_USER, "interaction", "i2", 0, "other", [0, 1, 0, 0])

        removed = store.supersede("interaction", "i1", {(0, "new")})

        assert removed == 1
        assert not store.has("interaction", "i1", 0, "old")
        assert store.has("interaction", "i2", 0, "other")


class TestSearch:
    def test_ordered_by_similarity(self, store):
        _put(store, "far", [0, 0, 1, 0])
        _put(store, "near", [1, 0.1, 0, 0])
        _put(store, "exact", [1, 0, 0, 0])

        results = store.search(TEST_USER, [1, 0, 0, 0], limit=3)

        assert [r.owner_id for r in results] == ["exact", "near", "far"]
        assert results[0].score == pytest.approx(1.0)

    def test_limit_applied(self, store):
        for i in range(5):
            _put(store, f"i{i}", [1, i, 0, 0])
        assert len(store.search(TEST_USER, [1, 0, 0, 0], limit=2)) == 2
        assert store.search(TEST_USER, [1, 0, 0, 0], limit=0) == []

    def test_scoped_to_tenant(self, store):
        _put(store, "mine", [0, 1, 0, 0])
        _put(store, "theirs", [1, 0, 0, 0], user_id=OTHER_USER)

        results = store.search(TEST_USER, [1, 0, 0, 0], limit=10)

        assert [r.owner_id for r in results] == ["mine"]

    def test_owner_type_filter_and_exclude(self, store):
        _put(store, "i1", [1, 0, 0, 0])
        _put(store, "c1", [1, 0, 0, 0], owner_type="contact")
        _put(store, "i2", [1, 0.2, 0, 0])

        only_contacts = store.search(TEST_USER, [1, 0, 0, 0], 10, owner_types=["contact"])
        without_i1 = store.search(TEST_USER, [1, 0, 0, 0], 10, exclude=("interaction", "i1"))

        assert [r.owner_id for r in only_contacts] == ["c1"]
        assert "i1" not in [r.owner_id for r in without_i1]

    def test_ties_broken_by_newest(self, engine, store):
        base = datetime(2024, 6, 1, tzinfo=timezone.utc)
        with Session(engine) as s:
            for n, owner_id in enumerate(["oldest", "newest", "middle"]):
                offset = {"oldest": 0, "middle": 1, "newest": 2}[owner_id]
                s.add(Embedding(
                    user_id=TEST_USER,
                    owner_type="interaction",
                    owner_id=owner_id,
                    chunk_index=0,
                    content_hash=f"h{n}",
                    vector_json=json.dumps([0.5, 0.5, 0, 0]),
                    dimensions=4,
                    created_at=base + timedelta(minutes=offset),
                ))
            s.commit()

        results = store.search(TEST_USER, [1, 1, 0, 0], limit=3)

        assert [r.owner_id for r in results] == ["newest", "middle", "oldest"]

    def test_mismatched_dimensions_skipped(self, engine):
        store = EmbeddingStore(engine, make_settings(embedding_dimensions=0))
        _put(store, "short", [1, 0])
        _put(store, "full", [1, 0, 0, 0])

        results = store.search(TEST_USER, [1, 0, 0, 0], limit=10)

        assert [r.owner_id for r in results] == ["full"]

    def test_related_vectors_for_owner(self, store):
        _put(store, "i1", [1, 0, 0, 0])
        rows = store.vectors_for(TEST_USER, "interaction", "i1")
        assert [r.vector for r in rows] == [[1, 0, 0, 0]]
        assert store.vectors_for(OTHER_USER, "interaction", "i1") == []


class TestIndexShortlist:
    def test_index_mirrors_writes_and_deletes(self, engine, settings):
        index = MagicMock()
        store = EmbeddingStore(engine, settings, index=index)

        row = _put(store, "i1", [1, 0, 0, 0], digest="old")
        store.supersede("interaction", "i1", set())

        index.upsert.assert_called_once()
        assert index.upsert.call_args[0][0].id == row.id
        index.delete.assert_called_once_with([row.id])

    def test_scores_come_from_sql_rows(self, engine, settings):
        index = MagicMock()
        store = EmbeddingStore(engine, settings, index=index)
        a = _put(store, "a", [1, 0, 0, 0])
        b = _put(store, "b", [0, 1, 0, 0])
        _put(store, "c", [1, 0.1, 0, 0])
        # Shortlist in the "wrong" order and without c
        index.query.return_value = [b.id, a.id]

        results = store.search(TEST_USER, [1, 0, 0, 0], limit=1)

        assert [r.owner_id for r in results] == ["a"]
        index.query.assert_called_once_with(TEST_USER, [1, 0, 0, 0], 12, None)

    def test_empty_shortlist_returns_nothing(self, engine, settings):
        index = MagicMock()
        index.query.return_value = []
        store = EmbeddingStore(engine, settings, index=index)
        _put(store, "a", [1, 0, 0, 0])
        assert store.search(TEST_USER, [1, 0, 0, 0], limit=5) == []


class TestIndexMirroring:
    def test_failed_index_write_is_mirrored_later(self, engine, settings):
        index = MagicMock()
        index.upsert.side_effect = [RuntimeError("qdrant unreachable"), None]
        store = EmbeddingStore(engine, settings, index=index)

        with pytest.raises(RuntimeError):
            store.upsert(TEST_USER, "interaction", "i1", 0, "h1", [1, 0, 0, 0])
        assert store.has("interaction", "i1", 0, "h1")

        assert store.mirror_pending("interaction", "i1") == 1
        assert index.upsert.call_count == 2
        assert index.upsert.call_args[0][1] == [1, 0, 0, 0]
        assert store.mirror_pending() == 0

    def test_rows_stored_before_index_are_backfilled(self, engine, settings):
        row = _put(EmbeddingStore(engine, settings), "i1", [1, 0, 0, 0])
        index = MagicMock()
        store = EmbeddingStore(engine, settings, index=index)

        assert store.mirror_pending() == 1
        assert index.upsert.call_args[0][0].id == row.id
        assert store.mirror_pending() == 0

    def test_upsert_of_unmirrored_row_mirrors_it(self, engine, settings):
        _put(EmbeddingStore(engine, settings), "i1", [1, 0, 0, 0], digest="h1")
        index = MagicMock()
        store = EmbeddingStore(engine, settings, index=index)

        _, created = store.upsert(TEST_USER, "interaction", "i1", 0, "h1", [1, 0, 0, 0])
        store.upsert(TEST_USER, "interaction", "i1", 0, "h1", [1, 0, 0, 0])

        assert created is False
        index.upsert.assert_called_once()

    def test_without_index_nothing_to_mirror(self, store):
        _put(store, "i1", [1, 0, 0, 0])
        assert store.mirror_pending() == 0
