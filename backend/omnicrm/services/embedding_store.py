"""Embedding store — persisted vectors and exact cosine nearest-neighbour search.

The ``embeddings`` table is the source of truth. Rows are addressed by
(owner_type, owner_id, chunk_index, content_hash); upserting an existing key
is a no-op. Search is an exact scan over the caller's tenant. When a Qdrant
index is attached it only narrows the candidate set: scores are always
recomputed from the stored vectors, so results match the plain scan.
"""

from __future__ import annotations

import heapq
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, func, select

from omnicrm.config import Settings
from omnicrm.models.embedding import Embedding

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScoredEmbedding:
    """A search result: the matched chunk and its cosine similarity."""

    embedding_id: str
    owner_type: str
    owner_id: str
    chunk_index: int
    score: float  # unrounded, in [-1, 1]
    created_at: datetime
    meta: dict = field(default_factory=dict)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 if either is all zeros."""
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    score = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    return max(-1.0, min(1.0, score))


class EmbeddingStore:
    """Upsert-by-content-hash storage plus tenant-scoped similarity search."""

    __slots__ = ("_engine", "_settings", "_index")

    def __init__(self, engine, settings: Settings, index=None) -> None:
        self._engine = engine
        self._settings = settings
        self._index = index  # optional QdrantIndex

    def _check_dimensions(self, vector: list[float]) -> None:
        expected = self._settings.embedding_dimensions
        if not vector:
            raise ValueError("Empty embedding vector")
        if expected and len(vector) != expected:
            raise ValueError(
                f"Embedding has {len(vector)} dimensions, expected {expected}"
            )

    def has(self, owner_type: str, owner_id: str, chunk_index: int, content_hash: str) -> bool:
        with Session(self._engine) as session:
            return session.exec(
                select(Embedding.id)
                .where(Embedding.owner_type == owner_type)
                .where(Embedding.owner_id == owner_id)
                .where(Embedding.chunk_index == chunk_index)
                .where(Embedding.content_hash == content_hash)
                .limit(1)
            ).first() is not None

    def upsert(
        self,
        user_id: str,
        owner_type: str,
        owner_id: str,
        chunk_index: int,
        content_hash: str,
        vector: list[float],
        meta: dict | None = None,
    ) -> tuple[Embedding, bool]:
        """Insert a row unless the natural key exists. Returns (row, created).

        An existing row that never reached the index is mirrored now.
        """
        self._check_dimensions(vector)
        with Session(self._engine) as session:
            existing = self._find(session, owner_type, owner_id, chunk_index, content_hash)
            if existing is not None:
                session.expunge(existing)
                if self._index is not None and existing.mirrored_at is None:
                    self._mirror(existing, existing.vector)
                return existing, False

            row = Embedding(
                user_id=user_id,
                owner_type=owner_type,
                owner_id=owner_id,
                chunk_index=chunk_index,
                content_hash=content_hash,
                vector_json=json.dumps(vector),
                dimensions=len(vector),
                meta_json=json.dumps(meta) if meta else None,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # Another writer stored the same content first
                session.rollback()
                existing = self._find(session, owner_type, owner_id, chunk_index, content_hash)
                if existing is None:
                    raise
                session.expunge(existing)
                return existing, False
            session.refresh(row)
            session.expunge(row)

        if self._index is not None:
            self._mirror(row, vector)
        return row, True

    def _mirror(self, row: Embedding, vector: list[float]) -> None:
        self._index.upsert(row, vector)
        now = datetime.now(timezone.utc)
        with Session(self._engine) as session:
            session.execute(
                update(Embedding).where(col(Embedding.id) == row.id).values(mirrored_at=now)
            )
            session.commit()
        row.mirrored_at = now

    def mirror_pending(self, owner_type: str | None = None, owner_id: str | None = None) -> int:
        """Write rows missing from the index to it. Returns the number mirrored.

        Covers rows whose index write failed and rows stored before the
        index was enabled. A no-op without an index.
        """
        if self._index is None:
            return 0
        with Session(self._engine) as session:
            stmt = select(Embedding).where(col(Embedding.mirrored_at).is_(None))
            if owner_type is not None:
                stmt = stmt.where(Embedding.owner_type == owner_type)
            if owner_id is not None:
                stmt = stmt.where(Embedding.owner_id == owner_id)
            rows = session.exec(stmt).all()
            for r in rows:
                session.expunge(r)

        for row in rows:
            self._mirror(row, row.vector)
        if rows:
            logger.info("Mirrored %d embedding(s) to the vector index", len(rows))
        return len(rows)

    @staticmethod
    def _find(session: Session, owner_type, owner_id, chunk_index, content_hash) -> Embedding | None:
        return session.exec(
            select(Embedding)
            .where(Embedding.owner_type == owner_type)
            .where(Embedding.owner_id == owner_id)
            .where(Embedding.chunk_index == chunk_index)
            .where(Embedding.content_hash == content_hash)
        ).first()

    def supersede(
        self,
        owner_type: str,
        owner_id: str,
        current: set[tuple[int, str]],
    ) -> int:
        """Delete an owner's rows whose (chunk_index, content_hash) is not current."""
        with Session(self._engine) as session:
            rows = session.exec(
                select(Embedding.id, Embedding.chunk_index, Embedding.content_hash)
                .where(Embedding.owner_type == owner_type)
                .where(Embedding.owner_id == owner_id)
            ).all()
            stale_ids = [rid for rid, idx, h in rows if (idx, h) not in current]
            if not stale_ids:
                return 0
            session.execute(delete(Embedding).where(col(Embedding.id).in_(stale_ids)))
            session.commit()

        if self._index is not None:
            self._index.delete(stale_ids)
        logger.info(
            "Superseded %d stale embedding(s) for %s/%s", len(stale_ids), owner_type, owner_id
        )
        return len(stale_ids)

    def count(self, user_id: str | None = None, owner_type: str | None = None) -> int:
        with Session(self._engine) as session:
            stmt = select(func.count()).select_from(Embedding)
            if user_id is not None:
                stmt = stmt.where(Embedding.user_id == user_id)
            if owner_type is not None:
                stmt = stmt.where(Embedding.owner_type == owner_type)
            return int(session.exec(stmt).one())

    def vectors_for(self, user_id: str, owner_type: str, owner_id: str) -> list[Embedding]:
        with Session(self._engine) as session:
            rows = session.exec(
                select(Embedding)
                .where(Embedding.user_id == user_id)
                .where(Embedding.owner_type == owner_type)
                .where(Embedding.owner_id == owner_id)
                .order_by(col(Embedding.chunk_index), col(Embedding.created_at).desc())
            ).all()
            for r in rows:
                session.expunge(r)
            return list(rows)

    def search(
        self,
        user_id: str,
        query_vector: list[float],
        limit: int,
        owner_types: list[str] | None = None,
        exclude: tuple[str, str] | None = None,
    ) -> list[ScoredEmbedding]:
        """Exact top-``limit`` by cosine similarity within one tenant.

        Ordered by score descending, ties broken by newest ``created_at``.
        """
        if limit <= 0 or not query_vector:
            return []

        with Session(self._engine) as session:
            stmt = select(Embedding).where(Embedding.user_id == user_id)
            if owner_types:
                stmt = stmt.where(col(Embedding.owner_type).in_(owner_types))
            if self._index is not None:
                candidate_ids = self._index.query(
                    user_id, query_vector, limit * 2 + 10, owner_types
                )
                if not candidate_ids:
                    return []
                stmt = stmt.where(col(Embedding.id).in_(candidate_ids))
            rows = session.exec(stmt).all()

            scored: list[ScoredEmbedding] = []
            for row in rows:
                if exclude is not None and (row.owner_type, row.owner_id) == exclude:
                    continue
                vector = row.vector
                if len(vector) != len(query_vector):
                    logger.warning(
                        "Skipping embedding %s: %d dims vs query %d",
                        row.id, len(vector), len(query_vector),
                    )
                    continue
                scored.append(
                    ScoredEmbedding(
                        embedding_id=row.id,
                        owner_type=row.owner_type,
                        owner_id=row.owner_id,
                        chunk_index=row.chunk_index,
                        score=cosine_similarity(query_vector, vector),
                        created_at=row.created_at,
                        meta=row.meta,
                    )
                )

        return heapq.nlargest(limit, scored, key=lambda s: (s.score, s.created_at))
