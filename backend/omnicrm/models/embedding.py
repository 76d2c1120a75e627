from __future__ import annotations

import json
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class Embedding(SQLModel, table=True):
    """A vector for one chunk of an owner's text.

    Addressed by (owner_type, owner_id, chunk_index, content_hash): identical
    content is never stored twice; changed content lands in a new row.
    """

    __tablename__ = "embeddings"
    __table_args__ = (
        UniqueConstraint(
            "owner_type", "owner_id", "chunk_index", "content_hash",
            name="uq_embeddings_content",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: str = Field(index=True)
    owner_type: str = Field(index=True)  # "interaction", "contact", "document"
    owner_id: str = Field(index=True)
    chunk_index: int = Field(default=0)
    content_hash: str  # sha256 hex of the chunk text
    vector_json: str
    dimensions: int
    meta_json: str | None = Field(default=None)
    # Set once the row is written to the Qdrant index; NULL rows are re-mirrored
    mirrored_at: datetime | None = Field(default=None)

    @property
    def vector(self) -> list[float]:
        return json.loads(self.vector_json)

    @property
    def meta(self) -> dict:
        return json.loads(self.meta_json) if self.meta_json else {}
