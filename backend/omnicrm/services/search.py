"""Semantic search over pipeline embeddings."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlmodel import Session, col, select

from omnicrm.models.contact import Contact
from omnicrm.models.interaction import Interaction
from omnicrm.services.embedding import EmbeddingProvider
from omnicrm.services.embedding_store import EmbeddingStore, ScoredEmbedding

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 50


@dataclass(frozen=True, slots=True)
class SearchEntity:
    """What a matched vector represents."""
    owner_type: str
    owner_id: str
    chunk_index: int
    title: str | None
    meta: dict


@dataclass(frozen=True, slots=True)
class SearchHit:
    entity: SearchEntity
    similarity: float  # cosine similarity in [-1, 1], unrounded


class SearchService:
    """Embed a query (or take a vector) and rank the tenant's entities."""

    __slots__ = ("provider", "store", "engine")

    def __init__(self, provider: EmbeddingProvider, store: EmbeddingStore, engine) -> None:
        self.provider = provider
        self.store = store
        self.engine = engine

    async def search(
        self,
        user_id: str,
        query: str | list[float],
        limit: int = DEFAULT_LIMIT,
        owner_types: list[str] | None = None,
    ) -> list[SearchHit]:
        limit = max(1, min(limit, MAX_LIMIT))
        if isinstance(query, str):
            if not query.strip():
                return []
            vector = await self.provider.embed(query.strip())
        else:
            vector = list(query)

        scored = self.store.search(user_id, vector, limit, owner_types=owner_types)
        return self._hydrate(user_id, scored)

    async def related(
        self,
        user_id: str,
        owner_type: str,
        owner_id: str,
        limit: int = DEFAULT_LIMIT,
    ) -> list[SearchHit] | None:
        """Entities most similar to an existing one. None if it has no vector."""
        limit = max(1, min(limit, MAX_LIMIT))
        rows = self.store.vectors_for(user_id, owner_type, owner_id)
        if not rows:
            return None
        scored = self.store.search(
            user_id, rows[0].vector, limit, exclude=(owner_type, owner_id)
        )
        return self._hydrate(user_id, scored)

    def _hydrate(self, user_id: str, scored: list[ScoredEmbedding]) -> list[SearchHit]:
        titles = self._titles(user_id, scored)
        return [
            SearchHit(
                entity=SearchEntity(
                    owner_type=s.owner_type,
                    owner_id=s.owner_id,
                    chunk_index=s.chunk_index,
                    title=titles.get((s.owner_type, s.owner_id)),
                    meta=s.meta,
                ),
                similarity=s.score,
            )
            for s in scored
        ]

    def _titles(self, user_id: str, scored: list[ScoredEmbedding]) -> dict[tuple[str, str], str | None]:
        interaction_ids = [s.owner_id for s in scored if s.owner_type == "interaction"]
        contact_ids = [s.owner_id for s in scored if s.owner_type == "contact"]
        titles: dict[tuple[str, str], str | None] = {}
        with Session(self.engine) as session:
            if interaction_ids:
                for iid, subject in session.exec(
                    select(Interaction.id, Interaction.subject)
                    .where(Interaction.user_id == user_id)
                    .where(col(Interaction.id).in_(interaction_ids))
                ).all():
                    titles[("interaction", iid)] = subject
            if contact_ids:
                for cid, name in session.exec(
                    select(Contact.id, Contact.display_name)
                    .where(Contact.user_id == user_id)
                    .where(col(Contact.id).in_(contact_ids))
                ).all():
                    titles[("contact", cid)] = name
        return titles
