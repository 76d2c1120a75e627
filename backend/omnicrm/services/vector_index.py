"""Optional Qdrant mirror of the embeddings table.

Used only to shortlist candidates for large tenants. Queries run with
``exact=True`` so the shortlist comes from a full scan rather than the HNSW
graph; the store re-scores every candidate from SQL.
"""

from __future__ import annotations

import logging

from qdrant_client import QdrantClient
from qdrant_client.models import Distance, PointStruct, VectorParams, models

from omnicrm.models.embedding import Embedding

logger = logging.getLogger(__name__)


class QdrantIndex:
    """Mirror embedding rows into a Qdrant collection keyed by embedding id."""

    __slots__ = ("qdrant", "collection", "dimensions")

    def __init__(self, qdrant_client: QdrantClient, collection: str, dimensions: int) -> None:
        self.qdrant = qdrant_client
        self.collection = collection
        self.dimensions = dimensions

    def ensure_collection(self) -> None:
        """Create the Qdrant collection if it does not already exist."""
        if self.qdrant.collection_exists(self.collection):
            logger.info("Qdrant collection '%s' already exists", self.collection)
            return
        self.qdrant.create_collection(
            collection_name=self.collection,
            vectors_config=VectorParams(size=self.dimensions, distance=Distance.COSINE),
        )
        logger.info("Created Qdrant collection '%s'", self.collection)

    def upsert(self, row: Embedding, vector: list[float]) -> None:
        self.qdrant.upsert(
            collection_name=self.collection,
            points=[
                PointStruct(
                    id=row.id,
                    vector=vector,
                    payload={
                        "user_id": row.user_id,
                        "owner_type": row.owner_type,
                        "owner_id": row.owner_id,
                        "chunk_index": row.chunk_index,
                    },
                )
            ],
        )

    def delete(self, embedding_ids: list[str]) -> None:
        if not embedding_ids:
            return
        self.qdrant.delete(
            collection_name=self.collection,
            points_selector=models.PointIdsList(points=embedding_ids),
        )

    def query(
        self,
        user_id: str,
        vector: list[float],
        limit: int,
        owner_types: list[str] | None = None,
    ) -> list[str]:
        """Return candidate embedding ids for one tenant, best first."""
        must: list[models.Condition] = [
            models.FieldCondition(key="user_id", match=models.MatchValue(value=user_id))
        ]
        if owner_types:
            must.append(
                models.FieldCondition(key="owner_type", match=models.MatchAny(any=owner_types))
            )
        response = self.qdrant.query_points(
            collection_name=self.collection,
            query=vector,
            limit=limit,
            query_filter=models.Filter(must=must),
            search_params=models.SearchParams(exact=True),
        )
        return [str(p.id) for p in response.points]
